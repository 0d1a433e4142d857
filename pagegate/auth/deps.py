from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

from fastapi import Request

from pagegate.auth.config import AuthConfig, SESSION_ENV, missing_required
from pagegate.auth.cookies import SESSION_COOKIE, read_cookie
from pagegate.auth.models import SessionCredential
from pagegate.auth.session import decode_session
from pagegate.auth.tokens import signing_keys, verify_proxy_token
from pagegate.errors import AuthenticationError, ConfigurationError, ForbiddenError


def require_config(cfg: AuthConfig, names: Iterable[str]) -> None:
    missing = missing_required(cfg, names)
    if missing:
        raise ConfigurationError(missing)


def authenticate_request(cfg: AuthConfig, request: Request) -> Optional[SessionCredential]:
    """
    Return the session credential carried by the request, or None.

    Absent, tampered and expired cookies are indistinguishable here.
    """
    require_config(cfg, SESSION_ENV)
    return decode_session(cfg, read_cookie(request, SESSION_COOKIE))


def require_admin(cfg: AuthConfig, request: Request) -> Dict[str, Any]:
    """Validate `Authorization: Bearer <downstream token>` and require the admin role."""
    require_config(cfg, SESSION_ENV)
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError()
    keys = signing_keys(cfg)
    claims = verify_proxy_token(token.strip(), keys) if keys else None
    if claims is None:
        raise AuthenticationError()
    if claims.get("role") != "admin":
        raise ForbiddenError("Admin role required")
    return claims
