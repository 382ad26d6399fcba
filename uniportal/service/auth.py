from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from uniportal.config import Settings
from uniportal.logging import get_logger
from uniportal.service.email import EmailService
from uniportal.service.errors import (
    AccountDisabledError,
    AuthenticationError,
    ForbiddenError,
    InvalidCredentialsError,
    OtpVerificationError,
    ServerError,
    SessionExpiredError,
)
from uniportal.service.otp import DEFAULT_PURPOSE, OtpLedger
from uniportal.service.tokens import TokenCodec
from uniportal.storage.models import Account

logger = get_logger(__name__)

MFA_SENT_MESSAGE = "A verification code has been sent to your email"
MFA_RESENT_MESSAGE = "A new verification code has been sent to your email"


class AccountStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]: ...

    def get_account_by_identifier(self, identifier: str) -> Optional[Account]: ...

    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: str = "student",
        is_active: bool = True,
        mfa_email_enabled: bool = False,
    ) -> Account: ...

    def update_account(
        self,
        account_id: int,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        password_hash: Optional[str] = None,
        mfa_email_enabled: Optional[bool] = None,
    ) -> Optional[Account]: ...


@dataclass
class LoginOutcome:
    """Result of a successful login step.

    Exactly one of ``session_token`` and ``pending_token`` is set. When MFA is
    pending no account fields are exposed.
    """

    account: Optional[Account] = None
    session_token: Optional[str] = None
    pending_token: Optional[str] = None
    message: Optional[str] = None
    code_delivered: bool = True

    @property
    def requires_mfa(self) -> bool:
        return self.pending_token is not None


class AuthService:
    """Password login, email MFA and session lookup for the portal.

    ``login`` moves an anonymous caller to either an active session or an
    MFA-pending state; ``verify_mfa`` promotes a pending caller to a session.
    Any failure leaves the caller where they were.
    """

    def __init__(
        self,
        store: AccountStore,
        codec: TokenCodec,
        otp: OtpLedger,
        settings: Settings,
        *,
        email: Optional[EmailService] = None,
    ) -> None:
        self.store = store
        self.codec = codec
        self.otp = otp
        self.settings = settings
        self.email = email
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        """Verify a password against the account's stored hash."""
        if not account.password_hash:
            self.logger.warning("password_record_missing", account_id=account.id)
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    async def _issue_code(self, subject_id: int) -> bool:
        return await asyncio.to_thread(
            self.otp.issue,
            subject_id,
            DEFAULT_PURPOSE,
            self.settings.mfa_otp_ttl_seconds,
        )

    async def login(self, identifier: str, password: str) -> LoginOutcome:
        identifier = (identifier or "").strip()
        account = await asyncio.to_thread(self.store.get_account_by_identifier, identifier)
        if not account:
            self.logger.info("login_failed", reason="unknown_identifier")
            raise InvalidCredentialsError()
        if not account.is_active:
            self.logger.info("login_failed", account_id=account.id, reason="inactive")
            raise AccountDisabledError()
        if not await asyncio.to_thread(self.verify_password, account, password):
            self.logger.info("login_failed", account_id=account.id, reason="bad_password")
            raise InvalidCredentialsError()

        if account.mfa_email_enabled:
            delivered = await self._issue_code(account.id)
            if not delivered:
                # Pending state still starts; the caller can request a resend
                self.logger.warning("login_mfa_code_not_delivered", account_id=account.id)
            self.logger.info("login_mfa_required", account_id=account.id)
            return LoginOutcome(
                pending_token=self.codec.issue_pending(account.id),
                message=MFA_SENT_MESSAGE,
                code_delivered=delivered,
            )

        self.logger.info("login_succeeded", account_id=account.id, role=account.role)
        return LoginOutcome(
            account=account,
            session_token=self.codec.issue_session(account.id, account.role),
        )

    async def resend_mfa_code(self, pending_token: Optional[str]) -> str:
        claims = self.codec.parse_pending(pending_token)
        if not claims:
            raise SessionExpiredError()
        if not await self._issue_code(claims.subject_id):
            raise ServerError("Failed to send verification code")
        self.logger.info("mfa_code_resent", account_id=claims.subject_id)
        return MFA_RESENT_MESSAGE

    async def verify_mfa(self, pending_token: Optional[str], code: str) -> LoginOutcome:
        claims = self.codec.parse_pending(pending_token)
        if not claims:
            raise SessionExpiredError()
        check = await asyncio.to_thread(
            self.otp.verify, claims.subject_id, code, DEFAULT_PURPOSE
        )
        if not check.success:
            raise OtpVerificationError(check)

        account = await asyncio.to_thread(self.store.get_account, claims.subject_id)
        if not account:
            raise SessionExpiredError()
        if not account.is_active:
            raise AccountDisabledError()
        self.logger.info("login_succeeded", account_id=account.id, role=account.role, mfa=True)
        return LoginOutcome(
            account=account,
            session_token=self.codec.issue_session(account.id, account.role),
        )

    async def current_account(self, session_token: Optional[str]) -> Optional[Account]:
        """Account behind a session token, re-checked against the store."""
        claims = self.codec.parse_session(session_token)
        if not claims:
            return None
        account = await asyncio.to_thread(self.store.get_account, claims.subject_id)
        if not account or not account.is_active:
            return None
        return account

    async def require_role(self, session_token: Optional[str], role: str) -> Account:
        account = await self.current_account(session_token)
        if not account:
            raise AuthenticationError("unauthenticated")
        if account.role != role:
            self.logger.info(
                "role_check_failed", account_id=account.id, role=account.role, required=role
            )
            raise ForbiddenError("forbidden")
        return account

    async def set_mfa_enabled(self, account: Account, enabled: bool) -> Account:
        updated = await asyncio.to_thread(
            self.store.update_account, account.id, mfa_email_enabled=enabled
        )
        if not updated:
            raise SessionExpiredError()
        self.logger.info("mfa_setting_changed", account_id=account.id, enabled=enabled)
        if self.email and updated.mfa_email_enabled != account.mfa_email_enabled:
            await asyncio.to_thread(
                self.email.send_mfa_setting_changed, updated.email, enabled
            )
        return updated
