"""
Signed, self-contained tokens.

A token is `<base64url(compact json)>.<base64url(hmac-sha256)>`, produced by
itsdangerous. Claims always carry integer `iat` and `exp` (epoch seconds). Each token
family signs with its own salt so a downstream token can never pass as a session
credential and vice versa.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from itsdangerous import BadData, URLSafeSerializer

from pagegate.auth.config import AuthConfig
from pagegate.auth.util import epoch_now

SESSION_SALT = "pagegate-session-v1"
PROXY_TOKEN_SALT = "pagegate-proxy-token-v1"


@dataclass(frozen=True)
class SigningKeys:
    """
    Process-wide signing secret plus any still-accepted previous secrets.

    Signing always uses `current`; verification accepts every active key, so a secret can
    be rotated by moving the old value into `previous` until issued tokens expire.
    """

    current: str
    previous: Tuple[str, ...] = ()

    def active(self) -> List[str]:
        # itsdangerous signs with the last key and verifies against all of them.
        return [*self.previous, self.current]


def signing_keys(cfg: AuthConfig) -> Optional[SigningKeys]:
    if not cfg.cookie_secret:
        return None
    return SigningKeys(current=cfg.cookie_secret, previous=cfg.previous_cookie_secrets)


def _serializer(keys: SigningKeys, salt: str) -> URLSafeSerializer:
    return URLSafeSerializer(
        secret_key=keys.active(),
        salt=salt,
        signer_kwargs={"digest_method": hashlib.sha256},
    )


def _is_epoch(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _has_valid_window(claims: Dict[str, Any]) -> bool:
    iat = claims.get("iat")
    exp = claims.get("exp")
    return _is_epoch(iat) and _is_epoch(exp) and exp > iat


def sign(claims: Dict[str, Any], keys: SigningKeys, *, salt: str = SESSION_SALT) -> str:
    if not _has_valid_window(claims):
        raise ValueError("claims require integer iat/exp with exp > iat")
    return _serializer(keys, salt).dumps(claims)


def verify(
    token: Optional[str],
    keys: SigningKeys,
    *,
    salt: str = SESSION_SALT,
    now: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    """
    Return the claims of a valid token, or None.

    None covers every failure (absent, unparseable, wrong key, altered signature,
    malformed iat/exp, expired); callers must not distinguish between them.
    """
    if not token or not isinstance(token, str):
        return None
    try:
        claims = _serializer(keys, salt).loads(token)
    except BadData:
        return None
    if not isinstance(claims, dict) or not _has_valid_window(claims):
        return None
    if epoch_now(now) > claims["exp"]:
        return None
    return claims


def mint_proxy_token(
    keys: SigningKeys,
    *,
    user_id: str,
    username: str,
    role: Optional[str],
    page_id: Optional[str],
    wedding_date: Optional[str],
    ttl_seconds: int,
    now: Optional[float] = None,
) -> str:
    """Downstream token consumed by the page collaborator services."""
    iat = epoch_now(now)
    claims = {
        "userId": user_id,
        "username": username,
        "role": role or "user",
        "page_id": page_id,
        "wedding_date": wedding_date,
        "iat": iat,
        "exp": iat + ttl_seconds,
    }
    return sign(claims, keys, salt=PROXY_TOKEN_SALT)


def verify_proxy_token(
    token: Optional[str], keys: SigningKeys, *, now: Optional[float] = None
) -> Optional[Dict[str, Any]]:
    claims = verify(token, keys, salt=PROXY_TOKEN_SALT, now=now)
    if claims is None or not claims.get("userId"):
        return None
    return claims
