"""Pre-routing role gate for the section pages.

The filter only decodes the session cookie; it never touches the database.
The role inside a valid token is trusted until the token expires, so a role
change or deactivation is seen here only after expiry. Full handlers re-check
the account through ``AuthService.require_role``.
"""

from __future__ import annotations

from typing import Mapping, Optional
from urllib.parse import urlencode

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse

from uniportal.config import PROTECTED_PREFIXES, Settings, get_settings
from uniportal.logging import get_logger
from uniportal.service.tokens import TokenCodec

logger = get_logger(__name__)


def required_role(path: str, prefixes: Mapping[str, str] = PROTECTED_PREFIXES) -> Optional[str]:
    """Role guarding ``path``, matched on whole path segments."""
    for prefix, role in prefixes.items():
        if path == prefix or path.startswith(prefix + "/"):
            return role
    return None


class AccessFilter:
    def __init__(
        self,
        codec: TokenCodec,
        *,
        login_path: str = "/login",
        prefixes: Mapping[str, str] = PROTECTED_PREFIXES,
    ) -> None:
        self.codec = codec
        self.login_path = login_path
        self.prefixes = prefixes

    def decide(self, path: str, session_token: Optional[str]) -> Optional[str]:
        """Return the redirect target for a blocked request, or None to pass."""
        role = required_role(path, self.prefixes)
        if role is None:
            return None
        claims = self.codec.parse_session(session_token)
        if claims is None:
            return f"{self.login_path}?{urlencode({'next': path})}"
        if claims.role != role:
            return self.login_path
        return None


_filter_cache: tuple[Settings, AccessFilter] | None = None


def _filter_for(settings: Settings) -> AccessFilter:
    global _filter_cache
    if _filter_cache is None or _filter_cache[0] is not settings:
        codec = TokenCodec(
            settings.session_secret,
            session_ttl_seconds=settings.session_ttl_hours * 3600,
            pending_ttl_seconds=settings.mfa_pending_ttl_minutes * 60,
        )
        _filter_cache = (settings, AccessFilter(codec, login_path=settings.login_path))
    return _filter_cache[1]


def install_access_filter(app: FastAPI) -> None:
    """Register the access filter as an HTTP middleware on ``app``."""

    @app.middleware("http")
    async def enforce_section_roles(request: Request, call_next):
        path = request.url.path
        if required_role(path) is None:
            return await call_next(request)
        settings = get_settings()
        gate = _filter_for(settings)
        target = gate.decide(path, request.cookies.get(settings.session_cookie_name))
        if target is None:
            return await call_next(request)
        logger.info(
            "access_filter_redirect",
            path=path,
            reason="no_session" if "next=" in target else "role_mismatch",
        )
        return RedirectResponse(target, status_code=303)
