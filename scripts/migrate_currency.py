#!/usr/bin/env python3
"""Run the multi-currency data migration against a database without the web app.

    python scripts/migrate_currency.py status instance/finance_tracker.sqlite
    python scripts/migrate_currency.py migrate instance/finance_tracker.sqlite --rollback-file rollback.json
    python scripts/migrate_currency.py rollback instance/finance_tracker.sqlite --rollback-file rollback.json
"""

import argparse
import json
import logging
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from finance_tracker.currency_migration import (
    DEFAULT_CURRENCY,
    get_migration_status,
    migrate_to_multi_currency,
    read_rollback_file,
    rollback_migration,
    save_rollback_file,
)
from finance_tracker.db import connect_db, parse_database_config
from finance_tracker.db_migrations import apply_migrations
from finance_tracker.rates import DEFAULT_RATE_API_URL, DEFAULT_RATE_TIMEOUT_SECONDS, ExchangeRateApiProvider
from finance_tracker.records import StoreUnavailable, TransactionStore


def build_parser():
    parser = argparse.ArgumentParser(description="Multi-currency migration for finance tracker transactions")
    parser.add_argument("command", choices=("status", "migrate", "rollback"))
    parser.add_argument("db_path", nargs="?", default="instance/finance_tracker.sqlite", help="Path to SQLite DB (ignored when DATABASE_URL is postgres)")
    parser.add_argument("--rollback-file", default="currency_rollback.json", help="Rollback data file: migrate adds its entries, rollback reads them")
    parser.add_argument("--home-currency", default=None, help="Convert amounts into this currency while migrating")
    parser.add_argument("--default-currency", default=DEFAULT_CURRENCY, help="Currency assumed for rows with no currency")
    parser.add_argument("--rate-api-url", default=DEFAULT_RATE_API_URL)
    parser.add_argument("--rate-timeout", type=float, default=DEFAULT_RATE_TIMEOUT_SECONDS)
    parser.add_argument("--workers", type=int, default=1)
    parser.add_argument("--verbose", action="store_true")
    return parser


def run(args):
    config = parse_database_config(args.db_path)
    apply_migrations(config)
    conn = connect_db(config)
    try:
        store = TransactionStore(conn)
        if args.command == "status":
            try:
                print(json.dumps(get_migration_status(store).to_dict(), indent=2))
            except StoreUnavailable as exc:
                print(f"Unable to read migration status: {exc}", file=sys.stderr)
                return 1
            return 0

        if args.command == "migrate":
            try:
                existing = read_rollback_file(args.rollback_file, missing_ok=True)
            except ValueError as exc:
                print(f"{exc}; refusing to overwrite it", file=sys.stderr)
                return 1
            provider = None
            if args.home_currency:
                provider = ExchangeRateApiProvider(base_url=args.rate_api_url, timeout=args.rate_timeout)
            try:
                result = migrate_to_multi_currency(
                    store,
                    rate_provider=provider,
                    home_currency=args.home_currency,
                    default_currency=args.default_currency,
                    workers=args.workers,
                    rate_timeout=args.rate_timeout,
                )
            finally:
                if provider is not None:
                    provider.close()
            payload = result.to_dict()
            if result.success:
                save_rollback_file(args.rollback_file, payload["rollbackData"], existing=existing)
                payload["rollbackData"] = args.rollback_file
            print(json.dumps(payload, indent=2))
            return 0 if result.success else 1

        try:
            entries = read_rollback_file(args.rollback_file)
        except ValueError as exc:
            print(exc, file=sys.stderr)
            return 1
        result = rollback_migration(store, entries)
        print(json.dumps(result.to_dict(), indent=2))
        return 0 if result.success else 1
    finally:
        conn.close()


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return run(args)


if __name__ == "__main__":
    sys.exit(main())
