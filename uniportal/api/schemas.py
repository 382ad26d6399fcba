from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

MAX_IDENTIFIER_LENGTH = 320
MAX_PASSWORD_LENGTH = 1024


class Envelope(BaseModel):
    """Response envelope shared by every JSON endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    data: Optional[Any] = None
    error: Optional[str] = None
    message: Optional[str] = None
    requires_mfa: Optional[bool] = Field(default=None, alias="requiresMfa")
    details: Optional[Any] = None

    def render(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class LoginRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username_or_email: Optional[str] = Field(
        default=None, alias="usernameOrEmail", max_length=MAX_IDENTIFIER_LENGTH
    )
    password: Optional[str] = Field(default=None, max_length=MAX_PASSWORD_LENGTH)


class MfaVerifyRequest(BaseModel):
    code: Optional[str] = Field(default=None, max_length=64)


class MfaSettingRequest(BaseModel):
    enabled: bool


class AccountSummary(BaseModel):
    id: int
    username: str
    email: str
    role: str


class MfaSettingResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mfa_email_enabled: bool = Field(alias="mfaEmailEnabled")


class SectionLanding(BaseModel):
    section: str
    user: AccountSummary
