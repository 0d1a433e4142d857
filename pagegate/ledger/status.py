from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pagegate.auth.config import AuthConfig
from pagegate.auth.models import SessionCredential
from pagegate.auth.tokens import SigningKeys
from pagegate.ledger.models import ServiceAccount
from pagegate.ledger.redeem import mint_for_account
from pagegate.ledger.store import LedgerStore

logger = logging.getLogger(__name__)

UNAUTHENTICATED = "unauthenticated"
NEEDS_CODE = "needs_code"
READY = "ready"


@dataclass(frozen=True)
class StatusResult:
    state: str
    page_id: Optional[str] = None
    proxy_token: Optional[str] = None
    user: Optional[ServiceAccount] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.state == UNAUTHENTICATED:
            return {"authenticated": False, "state": self.state}
        body: Dict[str, Any] = {"authenticated": True, "state": self.state}
        if self.state == READY and self.user is not None:
            body.update(
                {
                    "pageId": self.page_id,
                    "page_id": self.page_id,
                    "proxy_token": self.proxy_token,
                    "user": self.user.public_dict(),
                }
            )
        return body


def status(
    store: LedgerStore,
    keys: SigningKeys,
    cfg: AuthConfig,
    session: Optional[SessionCredential],
    *,
    now: Optional[datetime] = None,
) -> StatusResult:
    """
    Report where the identity is in the redeem lifecycle.

    The identity account is created on first contact (insert-if-absent), so repeated or
    concurrent calls leave exactly one row. A fresh downstream token is minted on every
    `ready` reply.
    """
    if session is None:
        return StatusResult(state=UNAUTHENTICATED)
    now = now or datetime.now(timezone.utc)
    identity_id = session.identity_id

    account = store.ensure_identity_account(identity_id, now=now)
    if not account.page_id:
        return StatusResult(state=NEEDS_CODE)

    service = store.get_service_account(identity_id)
    if service is None or service.page_id != account.page_id:
        logger.warning("Identity %s has page %s but no matching service account", identity_id, account.page_id)
        return StatusResult(state=NEEDS_CODE)

    return StatusResult(
        state=READY,
        page_id=service.page_id,
        proxy_token=mint_for_account(keys, cfg, service, now=now),
        user=service,
    )
