"""
One-time code redemption and account provisioning.

Order matters: the code is claimed with a single conditional write before anything is
provisioned, so at most one identity ever gets past step 4 for a given code, and an
identity that already holds a claimed code is refused by the same write. Steps after the
claim are idempotent upserts and can be replayed with `reprovision`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pagegate.auth.config import AuthConfig
from pagegate.auth.models import NAVER_SUBJECT_PREFIX, SessionCredential
from pagegate.auth.tokens import SigningKeys, mint_proxy_token
from pagegate.errors import (
    AlreadyRedeemedError,
    AuthenticationError,
    ClientProtocolError,
    InvalidCodeError,
    NotFoundError,
)
from pagegate.ledger.models import ProfileFields, ServiceAccount
from pagegate.ledger.store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RedeemResult:
    page_id: str
    proxy_token: str
    user: ServiceAccount

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "state": "ready",
            "pageId": self.page_id,
            "page_id": self.page_id,
            "proxy_token": self.proxy_token,
            "user": self.user.public_dict(),
        }


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def mint_for_account(keys: SigningKeys, cfg: AuthConfig, account: ServiceAccount, *, now: datetime) -> str:
    return mint_proxy_token(
        keys,
        user_id=account.id,
        username=account.username,
        role=account.role,
        page_id=account.page_id,
        wedding_date=account.wedding_date,
        ttl_seconds=cfg.proxy_token_ttl_seconds,
        now=now.timestamp(),
    )


def _provision(
    store: LedgerStore,
    *,
    identity_id: str,
    page_id: str,
    profile: ProfileFields,
    now: datetime,
) -> ServiceAccount:
    account = store.upsert_service_account(
        identity_id,
        username=f"{NAVER_SUBJECT_PREFIX}{identity_id}",
        page_id=page_id,
        profile=profile,
        now=now,
    )
    store.upsert_page_settings(page_id, profile=profile, now=now)
    store.upsert_identity_account(identity_id, page_id=page_id, profile=profile, now=now)
    return account


def redeem(
    store: LedgerStore,
    keys: SigningKeys,
    cfg: AuthConfig,
    session: Optional[SessionCredential],
    code: Any,
    profile: ProfileFields,
    *,
    now: Optional[datetime] = None,
) -> RedeemResult:
    if session is None:
        raise AuthenticationError()
    if not isinstance(code, str) or not code.strip():
        raise ClientProtocolError("code is required")
    code = code.strip()
    now = now or _utcnow()
    identity_id = session.identity_id

    # A fully provisioned identity never consumes a second code. This early exit only
    # spares the code lookup; `claim_code` enforces one claim per identity atomically.
    existing = store.get_identity_account(identity_id)
    if existing is not None and existing.page_id:
        service = store.get_service_account(identity_id)
        if service is not None and service.page_id == existing.page_id:
            raise AlreadyRedeemedError(existing.page_id)

    row = store.get_code(code)
    if row is None or not row.is_redeemable(now):
        logger.info("Rejected redeem attempt for identity %s", identity_id)
        raise InvalidCodeError()

    page_id = store.claim_code(code, identity_id=identity_id, profile=profile, now=now)
    if page_id is None:
        logger.info("Lost claim race for identity %s", identity_id)
        raise InvalidCodeError()
    logger.info("Code claimed: identity=%s page_id=%s", identity_id, page_id)

    try:
        account = _provision(store, identity_id=identity_id, page_id=page_id, profile=profile, now=now)
    except Exception:
        # The code stays consumed; `reprovision` finishes the job from the claim snapshot.
        logger.error("Provisioning failed after claim: identity=%s page_id=%s", identity_id, page_id)
        raise

    return RedeemResult(page_id=page_id, proxy_token=mint_for_account(keys, cfg, account, now=now), user=account)


def reprovision(store: LedgerStore, code: str, *, now: Optional[datetime] = None) -> ServiceAccount:
    """
    Re-run provisioning for an already claimed code.

    Uses the identity and profile snapshot stored with the claim; safe to run repeatedly.
    """
    code = (code or "").strip()
    row = store.get_code(code) if code else None
    if row is None:
        raise NotFoundError("Code not found")
    if not row.page_id or row.used_at is None or not row.used_by_identity_id:
        raise InvalidCodeError()
    now = now or _utcnow()
    profile = ProfileFields.from_mapping(row.claim_profile)
    account = _provision(
        store,
        identity_id=row.used_by_identity_id,
        page_id=row.page_id,
        profile=profile,
        now=now,
    )
    logger.info("Reprovisioned identity=%s page_id=%s", row.used_by_identity_id, row.page_id)
    return account
