from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from uniportal.logging import get_logger
from uniportal.storage.errors import ConstraintViolation
from uniportal.storage.models import Account, OtpRecord


class MemoryStore:
    """In-memory account and OTP store for tests and local development."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[int, Account] = {}
        self.otp_records: Dict[int, OtpRecord] = {}
        self._account_id_seq: int = 1
        self._otp_id_seq: int = 1
        # RLock for all data operations; sequence bumps happen under it too
        self._data_lock = threading.RLock()

    # -- accounts --------------------------------------------------------

    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: str = "student",
        is_active: bool = True,
        mfa_email_enabled: bool = False,
    ) -> Account:
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=self._account_id_seq,
                username=username,
                email=email,
                password_hash=password_hash,
                role=role,
                is_active=is_active,
                mfa_email_enabled=mfa_email_enabled,
            )
            self._account_id_seq += 1
            self.accounts[account.id] = account
            return replace(account)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_identifier(self, identifier: str) -> Optional[Account]:
        with self._data_lock:
            for account in sorted(self.accounts.values(), key=lambda a: a.id):
                if account.username == identifier or account.email == identifier:
                    return replace(account)
            return None

    def update_account(
        self,
        account_id: int,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        password_hash: Optional[str] = None,
        mfa_email_enabled: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if role is not None:
                account.role = role
            if is_active is not None:
                account.is_active = is_active
            if password_hash is not None:
                account.password_hash = password_hash
            if mfa_email_enabled is not None:
                account.mfa_email_enabled = mfa_email_enabled
            return replace(account)

    # -- otp codes -------------------------------------------------------

    def invalidate_otp_records(self, user_id: int, purpose: str, now: datetime) -> int:
        with self._data_lock:
            count = 0
            for record in self.otp_records.values():
                if (
                    record.user_id == user_id
                    and record.purpose == purpose
                    and record.used_at is None
                ):
                    record.used_at = now
                    count += 1
            return count

    def create_otp_record(
        self,
        user_id: int,
        code_hash: str,
        purpose: str,
        expires_at: datetime,
        *,
        now: datetime,
        channel: str = "email",
    ) -> OtpRecord:
        with self._data_lock:
            record = OtpRecord(
                id=self._otp_id_seq,
                user_id=user_id,
                code_hash=code_hash,
                purpose=purpose,
                expires_at=expires_at,
                channel=channel,
                created_at=now,
            )
            self._otp_id_seq += 1
            self.otp_records[record.id] = record
            return replace(record)

    def find_otp_record(
        self, user_id: int, purpose: str, code_hash: str
    ) -> Optional[OtpRecord]:
        with self._data_lock:
            matches = [
                r
                for r in self.otp_records.values()
                if r.user_id == user_id and r.purpose == purpose and r.code_hash == code_hash
            ]
            if not matches:
                return None
            newest = max(matches, key=lambda r: (r.created_at, r.id))
            return replace(newest)

    def mark_otp_used(self, record_id: int, now: datetime) -> bool:
        with self._data_lock:
            record = self.otp_records.get(record_id)
            if not record or record.used_at is not None:
                return False
            record.used_at = now
            return True

    def list_otp_records(
        self, user_id: int, purpose: Optional[str] = None
    ) -> List[OtpRecord]:
        with self._data_lock:
            results = [
                replace(r)
                for r in self.otp_records.values()
                if r.user_id == user_id and (purpose is None or r.purpose == purpose)
            ]
            return sorted(results, key=lambda r: (r.created_at, r.id))

    def purge_otp_records(self, before: datetime) -> int:
        with self._data_lock:
            stale = [
                record_id
                for record_id, r in self.otp_records.items()
                if r.expires_at < before or (r.used_at is not None and r.used_at < before)
            ]
            for record_id in stale:
                del self.otp_records[record_id]
            if stale:
                self.logger.info("otp_records_purged", count=len(stale))
            return len(stale)
