from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

import psycopg
import pytest
from psycopg.errors import UniqueViolation

from pagegate.errors import AlreadyRedeemedError, StoreError
from pagegate.ledger.config import load_store_config
from pagegate.ledger.models import ProfileFields
from pagegate.ledger.store import PostgresStore, build_store

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class _Conn:
    def __init__(self, rows: Optional[List[Any]] = None) -> None:
        self.calls: List[Tuple[str, Any]] = []
        self._rows = list(rows or [])
        self.rowcount = 0

    def execute(self, sql: str, params=None):  # type: ignore[no-untyped-def]
        self.calls.append((sql, params))
        return self

    def fetchone(self):  # type: ignore[no-untyped-def]
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):  # type: ignore[no-untyped-def]
        return self._rows.pop(0) if self._rows else []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):  # type: ignore[no-untyped-def]
        return False


def _store(monkeypatch, conn: _Conn) -> PostgresStore:
    monkeypatch.setattr("pagegate.ledger.store._connect", lambda _dsn, _timeout: conn)
    return PostgresStore("dsn")


def test_claim_code_is_a_single_conditional_update(monkeypatch) -> None:
    conn = _Conn(rows=[("p1",)])
    store = _store(monkeypatch, conn)
    profile = ProfileFields(wedding_date="2026-05-09")

    assert store.claim_code("ABCXYZ", identity_id="abc123", profile=profile, now=NOW) == "p1"
    assert len(conn.calls) == 1
    sql, params = conn.calls[0]
    assert sql.strip().startswith("UPDATE redeem_codes")
    assert "used_at IS NULL" in sql
    assert "page_id IS NOT NULL" in sql
    assert "RETURNING page_id" in sql
    assert params[0] == NOW
    assert params[1] == "abc123"
    assert params[2].obj["wedding_date"] == "2026-05-09"
    assert params[3] == "ABCXYZ"


def test_claim_code_zero_rows_is_none(monkeypatch) -> None:
    store = _store(monkeypatch, _Conn(rows=[]))
    assert store.claim_code("USED", identity_id="x", profile=ProfileFields(), now=NOW) is None


class _ClaimHeldConn(_Conn):
    """Raises the per-identity unique violation on the claim UPDATE."""

    def __init__(self, rows: Optional[List[Any]] = None) -> None:
        super().__init__(rows)
        self.rolled_back = False

    def execute(self, sql: str, params=None):  # type: ignore[no-untyped-def]
        if sql.strip().startswith("UPDATE redeem_codes"):
            self.calls.append((sql, params))
            raise UniqueViolation("redeem_codes_one_claim_per_identity")
        return super().execute(sql, params)

    def rollback(self) -> None:
        self.rolled_back = True


def test_claim_code_for_identity_holding_a_code_is_already_redeemed(monkeypatch) -> None:
    conn = _ClaimHeldConn(rows=[("p-held",)])
    store = _store(monkeypatch, conn)
    with pytest.raises(AlreadyRedeemedError) as ei:
        store.claim_code("SECOND", identity_id="abc123", profile=ProfileFields(), now=NOW)
    assert ei.value.status_code == 409
    assert ei.value.page_id == "p-held"
    assert conn.rolled_back is True
    lookup_sql, lookup_params = conn.calls[-1]
    assert "used_by_identity_id = %s" in lookup_sql
    assert lookup_params == ("abc123",)


def test_ensure_identity_account_is_insert_if_absent(monkeypatch) -> None:
    conn = _Conn(rows=[("abc123", None, NOW, NOW)])
    store = _store(monkeypatch, conn)
    acct = store.ensure_identity_account("abc123", now=NOW)
    assert acct.identity_id == "abc123"
    assert acct.page_id is None
    assert "ON CONFLICT (identity_id) DO UPDATE" in conn.calls[0][0]


def test_service_account_upsert_keeps_role(monkeypatch) -> None:
    conn = _Conn(rows=[("uuid-1", "abc123", "naver:abc123", "admin", "p1", None)])
    store = _store(monkeypatch, conn)
    acct = store.upsert_service_account(
        "abc123", username="naver:abc123", page_id="p1", profile=ProfileFields(), now=NOW
    )
    assert acct.role == "admin"
    sql = conn.calls[0][0]
    update_clause = sql.split("DO UPDATE", 1)[1].split("RETURNING", 1)[0]
    assert "role" not in update_clause


def test_page_settings_upsert_by_page(monkeypatch) -> None:
    conn = _Conn()
    store = _store(monkeypatch, conn)
    profile = ProfileFields(last_groom_name_kr="김", groom_name_kr="철수")
    store.upsert_page_settings("p1", profile=profile, now=NOW)
    sql, params = conn.calls[0]
    assert "ON CONFLICT (page_id) DO UPDATE" in sql
    assert params[0] == "p1"
    assert "김철수" in params


def test_delete_unused_code_outcomes(monkeypatch) -> None:
    assert _store(monkeypatch, _Conn(rows=[("C",)])).delete_unused_code("C") == "deleted"
    assert _store(monkeypatch, _Conn(rows=[None, (1,)])).delete_unused_code("C") == "used"
    assert _store(monkeypatch, _Conn(rows=[])).delete_unused_code("C") == "not_found"


def test_list_codes_builds_filters(monkeypatch) -> None:
    conn = _Conn(rows=[[("CODE", "p1", None, None, None, NOW, None)]])
    store = _store(monkeypatch, conn)
    rows = store.list_codes(search="co", used=False, offset=50, limit=50)
    assert [r.code for r in rows] == ["CODE"]
    sql, params = conn.calls[0]
    assert "used_at IS NULL" in sql
    assert "ILIKE" in sql
    assert params == ["%co%", "%co%", 50, 50]


def test_list_codes_search_matches_wildcards_literally(monkeypatch) -> None:
    conn = _Conn(rows=[[]])
    store = _store(monkeypatch, conn)
    store.list_codes(search="50%_off\\", used=None, offset=0, limit=10)
    sql, params = conn.calls[0]
    assert "ESCAPE" in sql
    assert params[0] == "%50\\%\\_off\\\\%"
    assert params[0] == params[1]


def test_psycopg_errors_become_store_errors(monkeypatch) -> None:
    @contextmanager
    def _broken(_dsn, _timeout):  # type: ignore[no-untyped-def]
        raise psycopg.OperationalError("connection refused")
        yield  # pragma: no cover

    monkeypatch.setattr("pagegate.ledger.store._connect", _broken)
    with pytest.raises(StoreError) as ei:
        PostgresStore("dsn").get_code("X")
    assert ei.value.status_code == 500
    assert ei.value.to_dict()["error"] == "Database error"


def test_build_store_requires_dsn(monkeypatch) -> None:
    assert build_store(load_store_config()) is None
    monkeypatch.setenv("POSTGRES_DSN", "postgresql://u:p@localhost/db")
    assert isinstance(build_store(load_store_config()), PostgresStore)
