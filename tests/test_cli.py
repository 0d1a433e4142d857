from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import patch

import main
from pagegate.ledger.models import ProfileFields


def test_no_command_prints_help(capsys) -> None:
    assert main.main([]) == 2
    assert "generate-codes" in capsys.readouterr().out


def test_store_commands_need_postgres(capsys) -> None:
    assert main.main(["reprovision", "ABC"]) == 2
    assert main.main(["generate-codes", "3"]) == 2
    assert "Postgres not configured" in capsys.readouterr().err


def test_migrate_needs_postgres() -> None:
    assert main.main(["migrate"]) == 2


def test_generate_codes_prints_pairs(store, capsys) -> None:
    with patch("pagegate.ledger.store.build_store", return_value=store):
        assert main.main(["generate-codes", "3", "--expires-at", "2026-12-31"]) == 0
    lines = capsys.readouterr().out.strip().splitlines()
    assert len(lines) == 3
    for line in lines:
        code, page_id = line.split("\t")
        assert store.codes[code].page_id == page_id
        assert store.codes[code].expires_at == datetime(2026, 12, 31, tzinfo=timezone.utc)


def test_reprovision_command(store, capsys) -> None:
    now = datetime.now(timezone.utc)
    store.add_code("CLAIMED", "p1")
    store.claim_code("CLAIMED", identity_id="abc123", profile=ProfileFields(wedding_date="2026-05-09"), now=now)
    with patch("pagegate.ledger.store.build_store", return_value=store):
        assert main.main(["reprovision", "CLAIMED"]) == 0
        assert main.main(["reprovision", "MISSING"]) == 1
    assert store.services["abc123"].page_id == "p1"
    assert '"page_id": "p1"' in capsys.readouterr().out
