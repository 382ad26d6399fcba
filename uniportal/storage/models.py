from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass
class Account:
    id: int
    username: str
    email: str
    password_hash: str
    role: str = "student"
    is_active: bool = True
    mfa_email_enabled: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)

    def summary(self) -> dict:
        """Public account fields; never includes the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
        }


@dataclass
class OtpRecord:
    id: int
    user_id: int
    code_hash: str
    purpose: str
    expires_at: datetime
    channel: str = "email"
    created_at: datetime = field(default_factory=datetime.utcnow)
    used_at: Optional[datetime] = None

    @property
    def is_used(self) -> bool:
        return self.used_at is not None
