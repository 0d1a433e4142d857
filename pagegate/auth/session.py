from __future__ import annotations

from typing import Any, Dict, Optional

from pagegate.auth.config import AuthConfig
from pagegate.auth.cookies import OAUTH_STATE_COOKIE, SESSION_COOKIE, cookie_kwargs
from pagegate.auth.models import SessionCredential
from pagegate.auth.tokens import SESSION_SALT, signing_keys, sign, verify
from pagegate.auth.util import epoch_now

OAUTH_STATE_TTL_SECONDS = 10 * 60


def issue_session(
    cfg: AuthConfig,
    *,
    subject_id: str,
    display_name: Optional[str],
    email: Optional[str],
    now: Optional[float] = None,
) -> SessionCredential:
    iat = epoch_now(now)
    return SessionCredential(
        subject_id=subject_id,
        issued_at=iat,
        expires_at=iat + cfg.session_ttl_seconds,
        display_name=display_name,
        email=email,
    )


def encode_session(cfg: AuthConfig, credential: SessionCredential) -> Optional[str]:
    keys = signing_keys(cfg)
    if keys is None:
        return None
    # Keep cookie small and non-sensitive (no provider access tokens).
    return sign(credential.to_claims(), keys, salt=SESSION_SALT)


def decode_session(cfg: AuthConfig, value: Optional[str], *, now: Optional[float] = None) -> Optional[SessionCredential]:
    if not value:
        return None
    keys = signing_keys(cfg)
    if keys is None:
        return None
    claims = verify(value, keys, salt=SESSION_SALT, now=now)
    if claims is None:
        return None
    return SessionCredential.from_claims(claims)


def session_cookie_kwargs(cfg: AuthConfig, value: str) -> Dict[str, Any]:
    return cookie_kwargs(
        SESSION_COOKIE,
        value,
        secure=cfg.cookie_secure,
        same_site="Lax",
        max_age=cfg.session_ttl_seconds,
    )


def clear_session_cookie_kwargs(cfg: AuthConfig) -> Dict[str, Any]:
    return cookie_kwargs(SESSION_COOKIE, "", secure=cfg.cookie_secure, same_site="Lax", max_age=0)


def state_cookie_kwargs(cfg: AuthConfig, state: str) -> Dict[str, Any]:
    return cookie_kwargs(
        OAUTH_STATE_COOKIE,
        state,
        secure=cfg.cookie_secure,
        same_site="Lax",
        max_age=OAUTH_STATE_TTL_SECONDS,
    )


def clear_state_cookie_kwargs(cfg: AuthConfig) -> Dict[str, Any]:
    return cookie_kwargs(OAUTH_STATE_COOKIE, "", secure=cfg.cookie_secure, same_site="Lax", max_age=0)
