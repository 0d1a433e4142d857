#!/usr/bin/env python3
"""
pagegate - Naver login, one-time redeem codes and page provisioning.

Operator entry point: run the HTTP server, apply migrations, repair a partially
provisioned redemption, or mint a batch of redeem codes.
"""

import argparse
import json
import logging
import sys
from typing import List, Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", stream=sys.stderr
)

#
# NOTE: Keep pagegate imports lazy (inside functions) so `--help` works without the
# server or DB dependencies installed.
#

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2


def _require_store():
    from pagegate.ledger.store import build_store

    store = build_store()
    if store is None:
        print("Postgres not configured (set POSTGRES_DSN or POSTGRES_* env vars).", file=sys.stderr)
    return store


def cmd_serve(args: argparse.Namespace) -> int:
    from pagegate.api.server import run

    run(host=args.host, port=args.port)
    return EXIT_OK


def cmd_migrate(args: argparse.Namespace) -> int:
    from pagegate.ledger.migrate import migrate

    migrations = migrate(dry_run=args.dry_run)
    for m in migrations:
        print(m.label)
    verb = "Pending" if args.dry_run else "Applied"
    print(f"{verb}: {len(migrations)} migration(s)", file=sys.stderr)
    return EXIT_OK


def cmd_reprovision(args: argparse.Namespace) -> int:
    """Finish provisioning for a code that was claimed but not fully provisioned."""
    from pagegate.ledger.redeem import reprovision

    store = _require_store()
    if store is None:
        return EXIT_CONFIG
    account = reprovision(store, args.code)
    print(json.dumps({"ok": True, "user": account.public_dict()}, indent=2))
    return EXIT_OK


def cmd_generate_codes(args: argparse.Namespace) -> int:
    from pagegate.ledger.codes import generate_codes, parse_expires_at

    store = _require_store()
    if store is None:
        return EXIT_CONFIG
    created = generate_codes(
        store,
        args.count,
        code_length=args.code_length,
        page_id_length=args.page_id_length,
        expires_at=parse_expires_at(args.expires_at),
    )
    for c in created:
        print(f"{c.code}\t{c.page_id}")
    print(f"{len(created)} redeem code(s) created", file=sys.stderr)
    return EXIT_OK if len(created) == args.count else EXIT_FAILURE


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="pagegate: Naver login + redeem-code provisioning service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Run the HTTP server
  python main.py serve --port 8080

  # Apply pending Postgres migrations (or only list them)
  python main.py migrate
  python main.py migrate --dry-run

  # Re-run provisioning for a claimed code
  python main.py reprovision ABCD1234EFGH

  # Create 500 codes that expire at the end of the year
  python main.py generate-codes 500 --expires-at 2026-12-31T23:59:59Z
        """,
    )
    sub = parser.add_subparsers(dest="command")

    p_serve = sub.add_parser("serve", help="Run the HTTP server")
    p_serve.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    p_serve.add_argument("--port", type=int, default=8080, help="Listen port (default: 8080)")
    p_serve.set_defaults(func=cmd_serve)

    p_migrate = sub.add_parser("migrate", help="Apply pending DB migrations")
    p_migrate.add_argument("--dry-run", action="store_true", help="List pending migrations without applying them")
    p_migrate.set_defaults(func=cmd_migrate)

    p_repro = sub.add_parser("reprovision", help="Re-run provisioning for an already claimed code")
    p_repro.add_argument("code", help="Redeem code")
    p_repro.set_defaults(func=cmd_reprovision)

    p_gen = sub.add_parser("generate-codes", help="Create activated redeem codes, one page id each")
    p_gen.add_argument("count", type=int, help="Number of codes (1..50000)")
    p_gen.add_argument("--code-length", type=int, default=None, help="Code length (default: 12)")
    p_gen.add_argument("--page-id-length", type=int, default=None, help="Page id length (default: 10)")
    p_gen.add_argument("--expires-at", default=None, help="Expiry timestamp (ISO 8601)")
    p_gen.set_defaults(func=cmd_generate_codes)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return EXIT_CONFIG

    from pagegate.errors import ConfigurationError, PageGateError

    try:
        return args.func(args)
    except ConfigurationError as e:
        print(f"Configuration error: missing {', '.join(e.missing)}", file=sys.stderr)
        return EXIT_CONFIG
    except PageGateError as e:
        print(f"Error: {json.dumps(e.to_dict(), default=str)}", file=sys.stderr)
        return EXIT_FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
