"""
Data-store access for the redeem ledger.

Every operation is bounded (one row or one page of rows) and idempotent or monotonic.
The only atomic primitive the ledger relies on is `claim_code`, a conditional update
that succeeds for exactly one caller per code and at most once per identity.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import fields
from datetime import datetime
from typing import Any, Iterator, List, Optional, Protocol, Sequence, Tuple

from pagegate.errors import AlreadyRedeemedError, StoreError
from pagegate.ledger.config import StoreConfig, build_postgres_dsn, load_store_config
from pagegate.ledger.models import IdentityAccount, ProfileFields, RedeemCode, ServiceAccount

logger = logging.getLogger(__name__)

PROFILE_COLUMNS: Tuple[str, ...] = tuple(f.name for f in fields(ProfileFields))

_CODE_COLUMNS = "code, page_id, expires_at, used_at, used_by_identity_id, created_at, claim_profile"
_ACCOUNT_COLUMNS = "identity_id, page_id, created_at, updated_at"
_SERVICE_COLUMNS = "id::text, identity_id, username, role, page_id, wedding_date"


class LedgerStore(Protocol):
    """Minimal store interface used by the redeem/status flows and code administration."""

    def get_code(self, code: str) -> Optional[RedeemCode]: ...

    def claim_code(self, code: str, *, identity_id: str, profile: ProfileFields, now: datetime) -> Optional[str]:
        """
        Mark an unused, activated code as used by `identity_id`.

        Returns the code's page_id when this call performed the transition, None when
        zero rows matched (unknown, inactive, or already used by anyone). Raises
        `AlreadyRedeemedError` when `identity_id` already holds a claimed code; the check
        is part of the same atomic write, so one identity never consumes two codes.
        """

    def ensure_identity_account(self, identity_id: str, *, now: datetime) -> IdentityAccount:
        """Insert-if-absent keyed by identity; touches last_login_at."""

    def get_identity_account(self, identity_id: str) -> Optional[IdentityAccount]: ...

    def upsert_identity_account(
        self, identity_id: str, *, page_id: str, profile: ProfileFields, now: datetime
    ) -> IdentityAccount: ...

    def get_service_account(self, identity_id: str) -> Optional[ServiceAccount]: ...

    def upsert_service_account(
        self, identity_id: str, *, username: str, page_id: str, profile: ProfileFields, now: datetime
    ) -> ServiceAccount: ...

    def upsert_page_settings(self, page_id: str, *, profile: ProfileFields, now: datetime) -> None: ...

    def insert_codes(
        self, pairs: Sequence[Tuple[str, str]], *, expires_at: Optional[datetime], now: datetime
    ) -> List[RedeemCode]:
        """Insert (code, page_id) pairs, skipping collisions. Returns the inserted rows."""

    def list_codes(
        self, *, search: Optional[str], used: Optional[bool], offset: int, limit: int
    ) -> List[RedeemCode]: ...

    def count_codes(self, *, used: Optional[bool] = None) -> int: ...

    def set_code_expiry(self, code: str, expires_at: Optional[datetime]) -> bool: ...

    def delete_unused_code(self, code: str) -> str:
        """Returns "deleted", "used" or "not_found"."""


def _code_from_row(r: Sequence[Any]) -> RedeemCode:
    return RedeemCode(
        code=str(r[0]),
        page_id=str(r[1]) if r[1] else None,
        expires_at=r[2],
        used_at=r[3],
        used_by_identity_id=str(r[4]) if r[4] else None,
        created_at=r[5],
        claim_profile=r[6] if isinstance(r[6], dict) else None,
    )


def _account_from_row(r: Sequence[Any]) -> IdentityAccount:
    return IdentityAccount(
        identity_id=str(r[0]),
        page_id=str(r[1]) if r[1] else None,
        created_at=r[2],
        updated_at=r[3],
    )


def _service_from_row(r: Sequence[Any]) -> ServiceAccount:
    return ServiceAccount(
        id=str(r[0]),
        identity_id=str(r[1]),
        username=str(r[2]),
        role=str(r[3]) if r[3] else None,
        page_id=str(r[4]) if r[4] else None,
        wedding_date=str(r[5]) if r[5] else None,
    )


def _used_condition(used: Optional[bool]) -> str:
    if used is True:
        return "used_at IS NOT NULL"
    if used is False:
        return "used_at IS NULL"
    return "TRUE"


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _connect(dsn: str, timeout: int):
    import psycopg

    return psycopg.connect(dsn, connect_timeout=timeout)


class PostgresStore:
    """LedgerStore backed by Postgres (psycopg 3); one short connection per operation."""

    def __init__(self, dsn: str, *, connect_timeout: int = 10):
        self._dsn = dsn
        self._connect_timeout = connect_timeout

    @contextmanager
    def _session(self) -> Iterator[Any]:
        import psycopg

        try:
            with _connect(self._dsn, self._connect_timeout) as conn:
                yield conn
        except psycopg.Error as e:
            logger.warning("Postgres operation failed: %s", type(e).__name__)
            raise StoreError("Database error", str(e)) from e

    def get_code(self, code: str) -> Optional[RedeemCode]:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_CODE_COLUMNS} FROM redeem_codes WHERE code = %s;",
                (code,),
            ).fetchone()
        return _code_from_row(row) if row else None

    def claim_code(self, code: str, *, identity_id: str, profile: ProfileFields, now: datetime) -> Optional[str]:
        from psycopg.errors import UniqueViolation
        from psycopg.types.json import Jsonb

        with self._session() as conn:
            # The predicate is evaluated by Postgres under the row lock: concurrent claims
            # serialize and only the first sees used_at IS NULL.
            try:
                row = conn.execute(
                    """
                    UPDATE redeem_codes
                    SET used_at = %s, used_by_identity_id = %s, claim_profile = %s
                    WHERE code = %s AND used_at IS NULL AND page_id IS NOT NULL
                    RETURNING page_id;
                    """,
                    (now, identity_id, Jsonb(profile.to_dict()), code),
                ).fetchone()
            except UniqueViolation:
                # redeem_codes_one_claim_per_identity: this identity already holds a code.
                conn.rollback()
                held = conn.execute(
                    "SELECT page_id FROM redeem_codes WHERE used_by_identity_id = %s AND used_at IS NOT NULL;",
                    (identity_id,),
                ).fetchone()
                raise AlreadyRedeemedError(str(held[0]) if held and held[0] else None, ready=False)
        return str(row[0]) if row and row[0] else None

    def ensure_identity_account(self, identity_id: str, *, now: datetime) -> IdentityAccount:
        with self._session() as conn:
            row = conn.execute(
                f"""
                INSERT INTO identity_accounts(identity_id, last_login_at, updated_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (identity_id) DO UPDATE
                  SET last_login_at = EXCLUDED.last_login_at, updated_at = EXCLUDED.updated_at
                RETURNING {_ACCOUNT_COLUMNS};
                """,
                (identity_id, now, now),
            ).fetchone()
        if not row:
            raise StoreError("Failed to create identity account")
        return _account_from_row(row)

    def get_identity_account(self, identity_id: str) -> Optional[IdentityAccount]:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM identity_accounts WHERE identity_id = %s;",
                (identity_id,),
            ).fetchone()
        return _account_from_row(row) if row else None

    def upsert_identity_account(
        self, identity_id: str, *, page_id: str, profile: ProfileFields, now: datetime
    ) -> IdentityAccount:
        cols = ", ".join(PROFILE_COLUMNS)
        placeholders = ", ".join(["%s"] * len(PROFILE_COLUMNS))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in PROFILE_COLUMNS)
        values = [getattr(profile, c) for c in PROFILE_COLUMNS]
        with self._session() as conn:
            row = conn.execute(
                f"""
                INSERT INTO identity_accounts(
                  identity_id, page_id, {cols}, code_redeemed_at, profile_submitted_at, updated_at
                )
                VALUES (%s, %s, {placeholders}, %s, %s, %s)
                ON CONFLICT (identity_id) DO UPDATE
                  SET page_id = EXCLUDED.page_id, {updates},
                      code_redeemed_at = EXCLUDED.code_redeemed_at,
                      profile_submitted_at = EXCLUDED.profile_submitted_at,
                      updated_at = EXCLUDED.updated_at
                RETURNING {_ACCOUNT_COLUMNS};
                """,
                (identity_id, page_id, *values, now, now, now),
            ).fetchone()
        if not row:
            raise StoreError("Failed to update identity account")
        return _account_from_row(row)

    def get_service_account(self, identity_id: str) -> Optional[ServiceAccount]:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_SERVICE_COLUMNS} FROM service_accounts WHERE identity_id = %s;",
                (identity_id,),
            ).fetchone()
        return _service_from_row(row) if row else None

    def upsert_service_account(
        self, identity_id: str, *, username: str, page_id: str, profile: ProfileFields, now: datetime
    ) -> ServiceAccount:
        with self._session() as conn:
            # Role and approval are preserved on update so an operator-promoted admin stays admin.
            row = conn.execute(
                f"""
                INSERT INTO service_accounts(
                  identity_id, username, role, page_id, wedding_date, groom_name_en, bride_name_en,
                  approval_status, is_active, last_login, updated_at
                )
                VALUES (%s, %s, 'user', %s, %s, %s, %s, 'approved', TRUE, %s, %s)
                ON CONFLICT (identity_id) DO UPDATE
                  SET page_id = EXCLUDED.page_id,
                      wedding_date = EXCLUDED.wedding_date,
                      groom_name_en = EXCLUDED.groom_name_en,
                      bride_name_en = EXCLUDED.bride_name_en,
                      last_login = EXCLUDED.last_login,
                      updated_at = EXCLUDED.updated_at
                RETURNING {_SERVICE_COLUMNS};
                """,
                (
                    identity_id,
                    username,
                    page_id,
                    profile.wedding_date,
                    profile.groom_name_en,
                    profile.bride_name_en,
                    now,
                    now,
                ),
            ).fetchone()
        if not row:
            raise StoreError("Failed to provision service account")
        return _service_from_row(row)

    def upsert_page_settings(self, page_id: str, *, profile: ProfileFields, now: datetime) -> None:
        cols = ", ".join(PROFILE_COLUMNS)
        placeholders = ", ".join(["%s"] * len(PROFILE_COLUMNS))
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in PROFILE_COLUMNS)
        values = [getattr(profile, c) for c in PROFILE_COLUMNS]
        with self._session() as conn:
            conn.execute(
                f"""
                INSERT INTO page_settings(page_id, {cols}, groom_name, bride_name, updated_at)
                VALUES (%s, {placeholders}, %s, %s, %s)
                ON CONFLICT (page_id) DO UPDATE
                  SET {updates},
                      groom_name = EXCLUDED.groom_name,
                      bride_name = EXCLUDED.bride_name,
                      updated_at = EXCLUDED.updated_at;
                """,
                (page_id, *values, profile.groom_name, profile.bride_name, now),
            )

    def insert_codes(
        self, pairs: Sequence[Tuple[str, str]], *, expires_at: Optional[datetime], now: datetime
    ) -> List[RedeemCode]:
        if not pairs:
            return []
        codes = [c for c, _ in pairs]
        page_ids = [p for _, p in pairs]
        with self._session() as conn:
            rows = conn.execute(
                f"""
                INSERT INTO redeem_codes(code, page_id, expires_at, created_at)
                SELECT c, p, %s, %s FROM unnest(%s::text[], %s::text[]) AS t(c, p)
                ON CONFLICT DO NOTHING
                RETURNING {_CODE_COLUMNS};
                """,
                (expires_at, now, codes, page_ids),
            ).fetchall()
        return [_code_from_row(r) for r in rows or []]

    def list_codes(
        self, *, search: Optional[str], used: Optional[bool], offset: int, limit: int
    ) -> List[RedeemCode]:
        conditions = [_used_condition(used)]
        params: List[Any] = []
        q = (search or "").strip()
        if q:
            pattern = f"%{_escape_like(q)}%"
            conditions.append("(code ILIKE %s ESCAPE '\\' OR page_id ILIKE %s ESCAPE '\\')")
            params.extend([pattern, pattern])
        params.extend([limit, offset])
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT {_CODE_COLUMNS}
                FROM redeem_codes
                WHERE {" AND ".join(conditions)}
                ORDER BY created_at DESC, code
                LIMIT %s OFFSET %s;
                """,
                params,
            ).fetchall()
        return [_code_from_row(r) for r in rows or []]

    def count_codes(self, *, used: Optional[bool] = None) -> int:
        with self._session() as conn:
            row = conn.execute(f"SELECT COUNT(*) FROM redeem_codes WHERE {_used_condition(used)};").fetchone()
        return int(row[0]) if row else 0

    def set_code_expiry(self, code: str, expires_at: Optional[datetime]) -> bool:
        with self._session() as conn:
            cur = conn.execute("UPDATE redeem_codes SET expires_at = %s WHERE code = %s;", (expires_at, code))
            return cur.rowcount > 0

    def delete_unused_code(self, code: str) -> str:
        with self._session() as conn:
            row = conn.execute(
                "DELETE FROM redeem_codes WHERE code = %s AND used_at IS NULL RETURNING code;",
                (code,),
            ).fetchone()
            if row:
                return "deleted"
            exists = conn.execute("SELECT 1 FROM redeem_codes WHERE code = %s;", (code,)).fetchone()
        return "used" if exists else "not_found"


def build_store(cfg: Optional[StoreConfig] = None) -> Optional[PostgresStore]:
    """Return a Postgres-backed store, or None when Postgres is not configured."""
    cfg = cfg or load_store_config()
    dsn = build_postgres_dsn(cfg)
    if not dsn:
        return None
    return PostgresStore(dsn, connect_timeout=cfg.connect_timeout_seconds)
