import argparse
import json
from datetime import datetime, timezone

from .db import open_db


REQUIRED_TABLES = {
    "transactions": {
        "columns": {
            "id",
            "user_id",
            "date",
            "amount",
            "currency",
            "vendor",
            "description",
            "category",
            "type",
            "original_amount",
            "original_currency",
            "conversion_rate",
            "updated_at",
        },
        "indexes": {
            "idx_transactions_date",
            "idx_transactions_original_currency",
        },
    },
}


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ?",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def column_exists(conn, table, column):
    return table_exists(conn, table) and column in get_table_columns(conn, table)


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def add_column_if_missing(conn, table, col_def_sql):
    column = col_def_sql.split()[0]
    if backend_name(conn) == "postgres":
        conn.execute(f"ALTER TABLE {table} ADD COLUMN IF NOT EXISTS {col_def_sql}")
    elif not column_exists(conn, table, column):
        conn.execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def migration_001(conn):
    # Single-currency transactions table as the legacy application created it.
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            date TEXT NOT NULL,
            amount REAL NOT NULL,
            currency TEXT,
            vendor TEXT,
            description TEXT,
            category TEXT,
            type TEXT NOT NULL DEFAULT 'expense',
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT
        )
        """,
    )
    for col_def in [
        "user_id INTEGER",
        "currency TEXT",
        "vendor TEXT",
        "description TEXT",
        "category TEXT",
        "type TEXT DEFAULT 'expense'",
        "updated_at TEXT",
    ]:
        add_column_if_missing(conn, "transactions", col_def)

    create_index_if_missing(
        conn,
        "idx_transactions_date",
        "CREATE INDEX idx_transactions_date ON transactions(date)",
    )


def migration_002(conn):
    # Multi-currency columns stay NULL until the data migration back-fills them.
    for col_def in [
        "original_amount REAL",
        "original_currency TEXT",
        "conversion_rate REAL",
    ]:
        add_column_if_missing(conn, "transactions", col_def)

    create_index_if_missing(
        conn,
        "idx_transactions_original_currency",
        "CREATE INDEX idx_transactions_original_currency ON transactions(original_currency)",
    )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    conn, owned = open_db(db_or_config_or_path)
    try:
        _run_migrations(conn)
    finally:
        if owned:
            conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        missing_columns[table_name] = sorted(col for col in table_spec["columns"] if col not in table_cols)

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    conn, owned = open_db(db_config_or_path)
    try:
        return inspect_db_health(conn)
    finally:
        if owned:
            conn.close()


def main():
    parser = argparse.ArgumentParser(description="Check finance tracker DB schema health")
    parser.add_argument("db_path", help="Path to SQLite DB file")
    args = parser.parse_args()
    print(json.dumps(get_db_health(args.db_path), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
