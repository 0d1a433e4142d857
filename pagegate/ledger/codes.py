"""Issuing side of the redeem ledger: batch generation and housekeeping of codes."""

from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple

from dateutil import parser as date_parser

from pagegate.errors import ClientProtocolError, NotFoundError
from pagegate.ledger.models import RedeemCode
from pagegate.ledger.store import LedgerStore

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
PAGE_ID_ALPHABET = string.ascii_lowercase + string.digits

DEFAULT_CODE_LENGTH = 12
DEFAULT_PAGE_ID_LENGTH = 10
MAX_GENERATE_COUNT = 50000
BATCH_SIZE = 100
MAX_BATCH_ROUNDS = 10
DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 1000


def random_string(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def parse_expires_at(value: Any) -> Optional[datetime]:
    """Parse an ISO-ish timestamp; naive values are taken as UTC. None/"" clears."""
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if not isinstance(value, str):
        raise ClientProtocolError("expiresAt must be a timestamp string")
    try:
        dt = date_parser.isoparse(value.strip())
    except ValueError:
        try:
            dt = date_parser.parse(value.strip())
        except (ValueError, OverflowError) as e:
            raise ClientProtocolError("Invalid expiresAt", {"detail": str(e)}) from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _bounded_int(value: Any, *, name: str, default: int, lo: int, hi: int) -> int:
    if value is None or value == "":
        return default
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ClientProtocolError(f"{name} must be an integer")
    if n < lo or n > hi:
        raise ClientProtocolError(f"{name} must be between {lo} and {hi}")
    return n


def generate_codes(
    store: LedgerStore,
    count: Any,
    *,
    code_length: Any = None,
    page_id_length: Any = None,
    expires_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> List[RedeemCode]:
    """
    Create `count` unique activated codes, each bound to a fresh page id.

    Collisions (on either the code or the page id) are skipped by the store and retried
    with new random values, up to MAX_BATCH_ROUNDS per batch.
    """
    total = _bounded_int(count, name="count", default=0, lo=1, hi=MAX_GENERATE_COUNT)
    clen = _bounded_int(code_length, name="codeLength", default=DEFAULT_CODE_LENGTH, lo=6, hi=64)
    plen = _bounded_int(page_id_length, name="pageIdLength", default=DEFAULT_PAGE_ID_LENGTH, lo=6, hi=64)
    now = now or datetime.now(timezone.utc)

    created: List[RedeemCode] = []
    while len(created) < total:
        want = min(BATCH_SIZE, total - len(created))
        got = 0
        for _ in range(MAX_BATCH_ROUNDS):
            seen: Set[str] = set()
            pairs: List[Tuple[str, str]] = []
            while len(pairs) < want - got:
                c = random_string(CODE_ALPHABET, clen)
                p = random_string(PAGE_ID_ALPHABET, plen)
                if c in seen or p in seen:
                    continue
                seen.update((c, p))
                pairs.append((c, p))
            inserted = store.insert_codes(pairs, expires_at=expires_at, now=now)
            created.extend(inserted)
            got += len(inserted)
            if got >= want:
                break
        if got < want:
            logger.error("Code generation stalled: %d of %d created", len(created), total)
            break

    logger.info("Generated %d redeem code(s)", len(created))
    return created


def list_codes(
    store: LedgerStore,
    *,
    search: Optional[str] = None,
    used: Optional[str] = None,
    page: Any = 1,
    limit: Any = DEFAULT_LIST_LIMIT,
) -> Dict[str, Any]:
    used_filter: Optional[bool] = None
    if used in ("true", "1"):
        used_filter = True
    elif used in ("false", "0"):
        used_filter = False
    page_n = _bounded_int(page, name="page", default=1, lo=1, hi=10**9)
    limit_n = _bounded_int(limit, name="limit", default=DEFAULT_LIST_LIMIT, lo=1, hi=MAX_LIST_LIMIT)

    rows = store.list_codes(search=search, used=used_filter, offset=(page_n - 1) * limit_n, limit=limit_n)
    total = store.count_codes()
    used_count = store.count_codes(used=True)
    return {
        "success": True,
        "data": [r.to_dict() for r in rows],
        "total": total,
        "used": used_count,
        "unused": total - used_count,
        "page": page_n,
        "limit": limit_n,
    }


def update_expiry(store: LedgerStore, code: Any, expires_at: Any) -> None:
    if not isinstance(code, str) or not code.strip():
        raise ClientProtocolError("code is required")
    when = parse_expires_at(expires_at)
    if not store.set_code_expiry(code.strip(), when):
        raise NotFoundError("Code not found")


def delete_code(store: LedgerStore, code: Any) -> None:
    if not isinstance(code, str) or not code.strip():
        raise ClientProtocolError("code is required")
    outcome = store.delete_unused_code(code.strip())
    if outcome == "not_found":
        raise NotFoundError("Code not found")
    if outcome == "used":
        raise ClientProtocolError("Used codes cannot be deleted")
