"""Signed session and pending-MFA tokens.

A token is ``base64url(payload_json) "." base64url(hmac_sha256(payload))``.
Only ``base64``, ``json``, ``hmac`` and ``hashlib`` are used so the same codec
serves the request handlers and the pre-routing access filter without I/O.

Parsing never raises: malformed, tampered, mistyped or expired tokens all
parse to ``None``, which callers treat exactly like a missing cookie.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

SESSION_TYPE = "session"
PENDING_TYPE = "mfa_pending"

SESSION_TTL_SECONDS = 8 * 60 * 60
PENDING_TTL_SECONDS = 15 * 60


@dataclass(frozen=True)
class SessionClaims:
    subject_id: int
    role: str
    expires_at: int


@dataclass(frozen=True)
class PendingClaims:
    subject_id: int
    issued_at: int
    expires_at: int


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _as_int(value: Any) -> Optional[int]:
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


class TokenCodec:
    def __init__(
        self,
        secret: str,
        *,
        session_ttl_seconds: int = SESSION_TTL_SECONDS,
        pending_ttl_seconds: int = PENDING_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not secret:
            raise ValueError("token secret must not be empty")
        self._key = secret.encode()
        self.session_ttl_seconds = session_ttl_seconds
        self.pending_ttl_seconds = pending_ttl_seconds
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    def _sign(self, payload_b64: str) -> str:
        digest = hmac.new(self._key, payload_b64.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any]) -> str:
        payload_b64 = _encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        return f"{payload_b64}.{self._sign(payload_b64)}"

    def _decode(self, token: Optional[str], expected_type: str) -> Optional[dict[str, Any]]:
        # Both segments are base64url; compare_digest rejects non-ASCII str
        if not token or not isinstance(token, str) or not token.isascii():
            return None
        parts = token.split(".")
        if len(parts) != 2:
            return None
        payload_b64, sig_b64 = parts
        if not hmac.compare_digest(self._sign(payload_b64), sig_b64):
            return None
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            return None
        if not isinstance(payload, dict) or payload.get("typ") != expected_type:
            return None
        exp = _as_int(payload.get("exp"))
        if exp is None or exp < self._now():
            return None
        return payload

    def issue_session(self, subject_id: int, role: str) -> str:
        return self._encode(
            {
                "typ": SESSION_TYPE,
                "uid": subject_id,
                "role": role,
                "exp": self._now() + self.session_ttl_seconds,
            }
        )

    def issue_pending(self, subject_id: int) -> str:
        now = self._now()
        return self._encode(
            {
                "typ": PENDING_TYPE,
                "uid": subject_id,
                "iat": now,
                "exp": now + self.pending_ttl_seconds,
            }
        )

    def parse_session(self, token: Optional[str]) -> Optional[SessionClaims]:
        payload = self._decode(token, SESSION_TYPE)
        if payload is None:
            return None
        uid = _as_int(payload.get("uid"))
        role = payload.get("role")
        if uid is None or not isinstance(role, str) or not role:
            return None
        return SessionClaims(subject_id=uid, role=role, expires_at=int(payload["exp"]))

    def parse_pending(self, token: Optional[str]) -> Optional[PendingClaims]:
        payload = self._decode(token, PENDING_TYPE)
        if payload is None:
            return None
        uid = _as_int(payload.get("uid"))
        issued_at = _as_int(payload.get("iat"))
        if uid is None or issued_at is None:
            return None
        return PendingClaims(
            subject_id=uid, issued_at=issued_at, expires_at=int(payload["exp"])
        )
