from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, List, Optional, Tuple

NAVER_AUTHORIZE_URL = "https://nid.naver.com/oauth2.0/authorize"
NAVER_TOKEN_URL = "https://nid.naver.com/oauth2.0/token"
NAVER_PROFILE_URL = "https://openapi.naver.com/v1/nid/me"

# Env names, in the order they are reported when missing.
ENV_CLIENT_ID = "NAVER_CLIENT_ID"
ENV_CLIENT_SECRET = "NAVER_CLIENT_SECRET"
ENV_BASE_URL = "AUTH_BASE_URL"
ENV_COOKIE_SECRET = "AUTH_COOKIE_SECRET"

AUTHORIZE_ENV = (ENV_CLIENT_ID, ENV_BASE_URL)
CALLBACK_ENV = (ENV_CLIENT_ID, ENV_CLIENT_SECRET, ENV_BASE_URL, ENV_COOKIE_SECRET)
SESSION_ENV = (ENV_COOKIE_SECRET,)


@dataclass(frozen=True)
class AuthConfig:
    # Identity provider (Naver)
    naver_client_id: Optional[str]
    naver_client_secret: Optional[str]
    naver_authorize_url: str
    naver_token_url: str
    naver_profile_url: str

    # Session configuration
    base_url: Optional[str]  # Required for the OAuth callback URL
    cookie_secret: Optional[str]  # Required for session + downstream token signing
    previous_cookie_secrets: Tuple[str, ...]  # Verification-only keys during rotation
    cookie_secure: bool
    session_ttl_seconds: int
    proxy_token_ttl_seconds: int

    http_timeout_seconds: float

    @property
    def callback_url(self) -> str:
        return f"{(self.base_url or '').rstrip('/')}/api/auth/callback/naver"

    @property
    def home_url(self) -> str:
        return f"{(self.base_url or '').rstrip('/')}/"


def _env_value(cfg: AuthConfig, name: str) -> Optional[str]:
    return {
        ENV_CLIENT_ID: cfg.naver_client_id,
        ENV_CLIENT_SECRET: cfg.naver_client_secret,
        ENV_BASE_URL: cfg.base_url,
        ENV_COOKIE_SECRET: cfg.cookie_secret,
    }.get(name)


def missing_required(cfg: AuthConfig, names: Iterable[str]) -> List[str]:
    """Return the env names (in the given order) whose values are not configured."""
    return [n for n in names if not _env_value(cfg, n)]


def _parse_csv(value: str) -> Tuple[str, ...]:
    items = [x.strip() for x in (value or "").split(",")]
    return tuple(x for x in items if x)


def _env_seconds(name: str, default: int, floor: int = 60) -> int:
    raw = (os.getenv(name, "") or "").strip()
    try:
        value = int(float(raw)) if raw else default
    except ValueError:
        value = default
    return max(value, floor)


@lru_cache(maxsize=1)
def load_auth_config() -> AuthConfig:
    """
    Load authentication configuration from environment variables.

    Secrets have no defaults: a missing value is reported by `missing_required` and
    surfaced by the endpoint that needs it.
    """
    cookie_secure_env = (os.getenv("AUTH_COOKIE_SECURE", "") or "").strip().lower()
    # Secure unless explicitly disabled (local http development).
    cookie_secure = cookie_secure_env not in ("0", "false", "no", "off")

    timeout_raw = (os.getenv("AUTH_HTTP_TIMEOUT_SECONDS", "") or "").strip()
    try:
        timeout = float(timeout_raw) if timeout_raw else 10.0
    except ValueError:
        timeout = 10.0
    if timeout <= 0:
        timeout = 10.0

    return AuthConfig(
        naver_client_id=(os.getenv(ENV_CLIENT_ID, "") or "").strip() or None,
        naver_client_secret=(os.getenv(ENV_CLIENT_SECRET, "") or "").strip() or None,
        naver_authorize_url=(os.getenv("NAVER_AUTHORIZE_URL", "") or "").strip() or NAVER_AUTHORIZE_URL,
        naver_token_url=(os.getenv("NAVER_TOKEN_URL", "") or "").strip() or NAVER_TOKEN_URL,
        naver_profile_url=(os.getenv("NAVER_PROFILE_URL", "") or "").strip() or NAVER_PROFILE_URL,
        base_url=(os.getenv(ENV_BASE_URL, "") or "").strip().rstrip("/") or None,
        cookie_secret=(os.getenv(ENV_COOKIE_SECRET, "") or "").strip() or None,
        previous_cookie_secrets=_parse_csv(os.getenv("AUTH_COOKIE_SECRET_PREVIOUS", "")),
        cookie_secure=cookie_secure,
        session_ttl_seconds=_env_seconds("AUTH_SESSION_TTL_SECONDS", 7 * 24 * 60 * 60),
        proxy_token_ttl_seconds=_env_seconds("AUTH_PROXY_TOKEN_TTL_SECONDS", 24 * 60 * 60),
        http_timeout_seconds=timeout,
    )
