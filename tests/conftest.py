"""
Pytest config.

Local imports like `import pagegate` rely on the repo root being on sys.path. In some
environments (e.g. when invoking a global `pytest` entrypoint) that doesn't happen
reliably during collection, so we pin it here.

Also provides an in-memory ledger store whose conditional claim is atomic under a lock,
mirroring the single-row conditional UPDATE and the one-claim-per-identity index the
Postgres store relies on.
"""

from __future__ import annotations

import sys
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from pagegate.auth.config import load_auth_config  # noqa: E402
from pagegate.errors import AlreadyRedeemedError  # noqa: E402
from pagegate.ledger.models import IdentityAccount, ProfileFields, RedeemCode, ServiceAccount  # noqa: E402

TEST_COOKIE_SECRET = "test-cookie-secret-for-testing-purposes-only"
TEST_BASE_URL = "https://pages.example.test"

_MANAGED_ENV = (
    "NAVER_CLIENT_ID",
    "NAVER_CLIENT_SECRET",
    "AUTH_BASE_URL",
    "AUTH_COOKIE_SECRET",
    "AUTH_COOKIE_SECRET_PREVIOUS",
    "AUTH_COOKIE_SECURE",
    "AUTH_SESSION_TTL_SECONDS",
    "AUTH_PROXY_TOKEN_TTL_SECONDS",
    "NAVER_AUTHORIZE_URL",
    "NAVER_TOKEN_URL",
    "NAVER_PROFILE_URL",
    "POSTGRES_DSN",
    "POSTGRES_HOST",
    "DB_AUTO_MIGRATE",
)


class InMemoryStore:
    """Test double for `LedgerStore`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.codes: Dict[str, RedeemCode] = {}
        self.identities: Dict[str, IdentityAccount] = {}
        self.identity_profiles: Dict[str, ProfileFields] = {}
        self.services: Dict[str, ServiceAccount] = {}
        self.page_settings: Dict[str, Dict[str, Optional[str]]] = {}
        self.page_settings_writes = 0

    def add_code(
        self,
        code: str,
        page_id: Optional[str],
        *,
        expires_at: Optional[datetime] = None,
        created_at: Optional[datetime] = None,
    ) -> None:
        self.codes[code] = RedeemCode(
            code=code,
            page_id=page_id,
            expires_at=expires_at,
            used_at=None,
            used_by_identity_id=None,
            created_at=created_at,
        )

    def get_code(self, code: str) -> Optional[RedeemCode]:
        return self.codes.get(code)

    def claim_code(self, code: str, *, identity_id: str, profile: ProfileFields, now: datetime) -> Optional[str]:
        with self._lock:
            row = self.codes.get(code)
            if row is None or row.used_at is not None or not row.page_id:
                return None
            held = [c for c in self.codes.values() if c.used_by_identity_id == identity_id and c.used_at is not None]
            if held:
                raise AlreadyRedeemedError(held[0].page_id, ready=False)
            self.codes[code] = replace(
                row, used_at=now, used_by_identity_id=identity_id, claim_profile=profile.to_dict()
            )
            return row.page_id

    def ensure_identity_account(self, identity_id: str, *, now: datetime) -> IdentityAccount:
        with self._lock:
            acct = self.identities.get(identity_id)
            if acct is None:
                acct = IdentityAccount(identity_id=identity_id, page_id=None, created_at=now, updated_at=now)
                self.identities[identity_id] = acct
            return acct

    def get_identity_account(self, identity_id: str) -> Optional[IdentityAccount]:
        return self.identities.get(identity_id)

    def upsert_identity_account(
        self, identity_id: str, *, page_id: str, profile: ProfileFields, now: datetime
    ) -> IdentityAccount:
        with self._lock:
            prev = self.identities.get(identity_id)
            acct = IdentityAccount(
                identity_id=identity_id,
                page_id=page_id,
                created_at=prev.created_at if prev else now,
                updated_at=now,
            )
            self.identities[identity_id] = acct
            self.identity_profiles[identity_id] = profile
            return acct

    def get_service_account(self, identity_id: str) -> Optional[ServiceAccount]:
        return self.services.get(identity_id)

    def upsert_service_account(
        self, identity_id: str, *, username: str, page_id: str, profile: ProfileFields, now: datetime
    ) -> ServiceAccount:
        with self._lock:
            prev = self.services.get(identity_id)
            acct = ServiceAccount(
                id=prev.id if prev else str(uuid.uuid4()),
                identity_id=identity_id,
                username=prev.username if prev else username,
                role=prev.role if prev else "user",
                page_id=page_id,
                wedding_date=profile.wedding_date,
            )
            self.services[identity_id] = acct
            return acct

    def upsert_page_settings(self, page_id: str, *, profile: ProfileFields, now: datetime) -> None:
        with self._lock:
            row = profile.to_dict()
            row.update({"groom_name": profile.groom_name, "bride_name": profile.bride_name})
            self.page_settings[page_id] = row
            self.page_settings_writes += 1

    def insert_codes(
        self, pairs: Sequence[Tuple[str, str]], *, expires_at: Optional[datetime], now: datetime
    ) -> List[RedeemCode]:
        out: List[RedeemCode] = []
        with self._lock:
            taken_pages = {c.page_id for c in self.codes.values()}
            for code, page_id in pairs:
                if code in self.codes or page_id in taken_pages:
                    continue
                row = RedeemCode(
                    code=code,
                    page_id=page_id,
                    expires_at=expires_at,
                    used_at=None,
                    used_by_identity_id=None,
                    created_at=now,
                )
                self.codes[code] = row
                taken_pages.add(page_id)
                out.append(row)
        return out

    def _filtered(self, used: Optional[bool]) -> List[RedeemCode]:
        rows = list(self.codes.values())
        if used is True:
            rows = [r for r in rows if r.used_at is not None]
        elif used is False:
            rows = [r for r in rows if r.used_at is None]
        return rows

    def list_codes(
        self, *, search: Optional[str], used: Optional[bool], offset: int, limit: int
    ) -> List[RedeemCode]:
        rows = self._filtered(used)
        q = (search or "").strip().lower()
        if q:
            rows = [r for r in rows if q in r.code.lower() or q in (r.page_id or "").lower()]
        rows.sort(key=lambda r: r.code)
        rows.sort(key=lambda r: r.created_at.timestamp() if r.created_at else 0.0, reverse=True)
        return rows[offset : offset + limit]

    def count_codes(self, *, used: Optional[bool] = None) -> int:
        return len(self._filtered(used))

    def set_code_expiry(self, code: str, expires_at: Optional[datetime]) -> bool:
        with self._lock:
            row = self.codes.get(code)
            if row is None:
                return False
            self.codes[code] = replace(row, expires_at=expires_at)
            return True

    def delete_unused_code(self, code: str) -> str:
        with self._lock:
            row = self.codes.get(code)
            if row is None:
                return "not_found"
            if row.used_at is not None:
                return "used"
            del self.codes[code]
            return "deleted"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch):
    """Start every test from a clean auth/DB environment and a fresh config cache."""
    for name in _MANAGED_ENV:
        monkeypatch.delenv(name, raising=False)
    load_auth_config.cache_clear()
    yield
    load_auth_config.cache_clear()


@pytest.fixture
def auth_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("NAVER_CLIENT_ID", "test-client-id")
    monkeypatch.setenv("NAVER_CLIENT_SECRET", "test-client-secret")
    monkeypatch.setenv("AUTH_BASE_URL", TEST_BASE_URL)
    monkeypatch.setenv("AUTH_COOKIE_SECRET", TEST_COOKIE_SECRET)
    load_auth_config.cache_clear()


@pytest.fixture
def store(monkeypatch: pytest.MonkeyPatch) -> InMemoryStore:
    s = InMemoryStore()
    monkeypatch.setattr("pagegate.api.server.get_store", lambda: s)
    return s


@pytest.fixture
def session_cookie(auth_env) -> Callable[..., Dict[str, str]]:
    """Return a function building a `Cookie` header carrying a valid session for a subject."""
    from pagegate.auth.session import encode_session, issue_session

    def _make(subject_id: str = "naver:abc123", name: Optional[str] = "Kim") -> Dict[str, str]:
        cfg = load_auth_config()
        cred = issue_session(cfg, subject_id=subject_id, display_name=name, email=None)
        return {"cookie": f"my_session={encode_session(cfg, cred)}"}

    return _make
