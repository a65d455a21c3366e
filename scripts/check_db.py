#!/usr/bin/env python3
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from finance_tracker.currency_migration import get_migration_status
from finance_tracker.db import connect_db, parse_database_config
from finance_tracker.db_migrations import apply_migrations, get_db_health
from finance_tracker.records import TransactionStore


def main():
    parser = argparse.ArgumentParser(description="Check and print DB schema health and currency migration status")
    parser.add_argument("db_path", nargs="?", default="instance/finance_tracker.sqlite", help="Path to SQLite DB (ignored when DATABASE_URL is postgres)")
    parser.add_argument("--migrate", action="store_true", help="Apply schema migrations before checking")
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    report = get_db_health(config)
    if report["ok"]:
        conn = connect_db(config)
        try:
            report["currency_migration"] = get_migration_status(TransactionStore(conn)).to_dict()
        finally:
            conn.close()

    print(json.dumps(report, indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
