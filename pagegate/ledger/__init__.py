"""Redeem ledger: one-time codes, identity/service accounts and page settings.

Postgres drivers are imported lazily inside functions so the auth endpoints can run
without DB access.
"""

from __future__ import annotations
