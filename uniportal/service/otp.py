from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple

from uniportal.logging import get_logger
from uniportal.storage.models import Account, OtpRecord

logger = get_logger(__name__)

MIN_OTP_TTL_SECONDS = 60
DEFAULT_PURPOSE = "mfa"


class OtpStore(Protocol):
    def get_account(self, account_id: int) -> Optional[Account]: ...

    def invalidate_otp_records(self, user_id: int, purpose: str, now: datetime) -> int: ...

    def create_otp_record(
        self,
        user_id: int,
        code_hash: str,
        purpose: str,
        expires_at: datetime,
        *,
        now: datetime,
        channel: str = "email",
    ) -> OtpRecord: ...

    def find_otp_record(
        self, user_id: int, purpose: str, code_hash: str
    ) -> Optional[OtpRecord]: ...

    def mark_otp_used(self, record_id: int, now: datetime) -> bool: ...

    def list_otp_records(
        self, user_id: int, purpose: Optional[str] = None
    ) -> List[OtpRecord]: ...

    def purge_otp_records(self, before: datetime) -> int: ...


class OtpSender(Protocol):
    def send_otp_code(self, to: str, code: str, ttl_seconds: int) -> bool: ...


@dataclass(frozen=True)
class OtpCheck:
    success: bool
    message: Optional[str] = None
    reason: Optional[str] = None


OTP_OK = OtpCheck(success=True)
OTP_INVALID = OtpCheck(False, "Invalid code.", "otp_invalid")
OTP_INCORRECT = OtpCheck(False, "Incorrect code.", "otp_incorrect")
OTP_USED = OtpCheck(False, "Code already used.", "otp_used")
OTP_EXPIRED = OtpCheck(False, "Code expired.", "otp_expired")


def generate_code() -> str:
    """Uniform six digit code in 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


class OtpLedger:
    """Issues and verifies email one-time codes.

    Only a keyed hash of each code is stored. A fresh issue for a
    (subject, purpose) pair supersedes every unused code for that pair, so at
    most one record is live at a time. Expiry is evaluated lazily on verify.
    """

    def __init__(
        self,
        store: OtpStore,
        sender: OtpSender,
        secret: str,
        *,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self.store = store
        self.sender = sender
        self._key = secret.encode()
        self._clock = clock
        # (subject, purpose) -> (lock, holders); removed when the last holder leaves
        self._locks: Dict[Tuple[int, str], Tuple[threading.Lock, int]] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _issue_lock(self, subject_id: int, purpose: str) -> Iterator[None]:
        key = (subject_id, purpose)
        with self._locks_guard:
            lock, holders = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, holders + 1)
        try:
            with lock:
                yield
        finally:
            with self._locks_guard:
                lock, holders = self._locks[key]
                if holders <= 1:
                    del self._locks[key]
                else:
                    self._locks[key] = (lock, holders - 1)

    def hash_code(self, code: str) -> str:
        return hmac.new(self._key, code.encode(), hashlib.sha256).hexdigest()

    def issue(
        self, subject_id: int, purpose: str = DEFAULT_PURPOSE, ttl_seconds: int = 600
    ) -> bool:
        """Create a new code for the subject and deliver it by email.

        Returns False when the subject has no address or delivery fails. A
        record persisted before a delivery failure stays valid.
        """
        if subject_id <= 0:
            return False
        account = self.store.get_account(subject_id)
        if not account or not account.email:
            logger.warning("otp_issue_no_recipient", subject_id=subject_id, purpose=purpose)
            return False

        effective_ttl = max(MIN_OTP_TTL_SECONDS, int(ttl_seconds))
        with self._issue_lock(subject_id, purpose):
            now = self._clock()
            superseded = self.store.invalidate_otp_records(subject_id, purpose, now)
            code = generate_code()
            record = self.store.create_otp_record(
                subject_id,
                self.hash_code(code),
                purpose,
                now + timedelta(seconds=effective_ttl),
                now=now,
            )
        logger.info(
            "otp_issued",
            subject_id=subject_id,
            purpose=purpose,
            record_id=record.id,
            superseded=superseded,
            ttl_seconds=effective_ttl,
        )

        delivered = self.sender.send_otp_code(account.email, code, effective_ttl)
        if not delivered:
            logger.error("otp_delivery_failed", subject_id=subject_id, purpose=purpose)
        return delivered

    def verify(
        self, subject_id: int, code: Optional[str], purpose: str = DEFAULT_PURPOSE
    ) -> OtpCheck:
        if subject_id <= 0 or not code or not code.strip():
            return OTP_INVALID

        record = self.store.find_otp_record(
            subject_id, purpose, self.hash_code(code.strip())
        )
        if record is None:
            logger.info("otp_verify_failed", subject_id=subject_id, reason="otp_incorrect")
            return OTP_INCORRECT
        if record.used_at is not None:
            logger.info("otp_verify_failed", subject_id=subject_id, reason="otp_used")
            return OTP_USED
        now = self._clock()
        if record.expires_at < now:
            logger.info("otp_verify_failed", subject_id=subject_id, reason="otp_expired")
            return OTP_EXPIRED
        # Conditional update; a concurrent verify of the same code loses here
        if not self.store.mark_otp_used(record.id, now):
            logger.info("otp_verify_failed", subject_id=subject_id, reason="otp_used")
            return OTP_USED
        logger.info("otp_verified", subject_id=subject_id, purpose=purpose, record_id=record.id)
        return OTP_OK

    def compact(self, older_than: timedelta = timedelta(days=7)) -> int:
        """Delete records that expired or were consumed before ``now - older_than``."""
        cutoff = self._clock() - older_than
        removed = self.store.purge_otp_records(cutoff)
        logger.info("otp_compacted", removed=removed, cutoff=cutoff.isoformat())
        return removed
