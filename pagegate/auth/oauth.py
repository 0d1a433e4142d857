from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import requests

from pagegate.auth.config import AuthConfig
from pagegate.auth.models import NAVER_SUBJECT_PREFIX
from pagegate.errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderProfile:
    provider_id: str
    name: Optional[str] = None
    nickname: Optional[str] = None
    email: Optional[str] = None

    @property
    def subject_id(self) -> str:
        return f"{NAVER_SUBJECT_PREFIX}{self.provider_id}"

    @property
    def display_name(self) -> Optional[str]:
        return self.name or self.nickname


def build_authorize_url(cfg: AuthConfig, *, state: str) -> str:
    """Build the Naver authorization URL for the fixed callback."""
    if not cfg.naver_client_id:
        raise ValueError("NAVER_CLIENT_ID not configured")
    params = {
        "response_type": "code",
        "client_id": cfg.naver_client_id,
        "redirect_uri": cfg.callback_url,
        "state": state,
    }
    return f"{cfg.naver_authorize_url}?{urlencode(params)}"


def _json_or_none(r: requests.Response) -> Any:
    try:
        return r.json()
    except ValueError:
        return None


def exchange_code_for_token(cfg: AuthConfig, *, code: str, state: str) -> str:
    """
    Exchange an authorization code for a provider access token (server-to-server).

    Raises ProviderError when the provider is unreachable or returns no usable token.
    """
    params = {
        "grant_type": "authorization_code",
        "client_id": cfg.naver_client_id,
        "client_secret": cfg.naver_client_secret,
        "code": code,
        "state": state,
        "redirect_uri": cfg.callback_url,
    }
    try:
        r = requests.get(cfg.naver_token_url, params=params, timeout=cfg.http_timeout_seconds)
    except requests.RequestException as e:
        logger.warning("Token exchange request failed: %s", type(e).__name__)
        raise ProviderError("Failed to get access token", str(e)) from e

    data = _json_or_none(r)
    access_token = data.get("access_token") if isinstance(data, dict) else None
    if r.status_code >= 400 or not isinstance(access_token, str) or not access_token:
        # Never echo the client secret; the provider body only carries error codes.
        detail = {k: data.get(k) for k in ("error", "error_description")} if isinstance(data, dict) else None
        logger.info("Token exchange rejected (status=%s)", r.status_code)
        raise ProviderError("Failed to get access token", detail)
    return access_token


def fetch_profile(cfg: AuthConfig, *, access_token: str) -> ProviderProfile:
    """Fetch the provider profile; a stable subject id is mandatory."""
    try:
        r = requests.get(
            cfg.naver_profile_url,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=cfg.http_timeout_seconds,
        )
    except requests.RequestException as e:
        logger.warning("Profile request failed: %s", type(e).__name__)
        raise ProviderError("Failed to get profile", str(e)) from e

    data = _json_or_none(r)
    profile: Dict[str, Any] = {}
    if isinstance(data, dict) and isinstance(data.get("response"), dict):
        profile = data["response"]
    provider_id = str(profile.get("id") or "").strip()
    if r.status_code >= 400 or not provider_id:
        detail = {k: data.get(k) for k in ("resultcode", "message")} if isinstance(data, dict) else None
        logger.info("Profile fetch rejected (status=%s)", r.status_code)
        raise ProviderError("Failed to get profile", detail)

    return ProviderProfile(
        provider_id=provider_id,
        name=str(profile.get("name") or "").strip() or None,
        nickname=str(profile.get("nickname") or "").strip() or None,
        email=str(profile.get("email") or "").strip() or None,
    )
