import pytest

from finance_tracker.db import connect_db, parse_database_config
from finance_tracker.db_migrations import apply_migrations


@pytest.fixture(autouse=True)
def sqlite_only(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("HOME_CURRENCY", raising=False)


@pytest.fixture()
def db_path(tmp_path):
    path = tmp_path / "finance.sqlite"
    apply_migrations(str(path))
    return path


@pytest.fixture()
def conn(db_path):
    conn = connect_db(parse_database_config(str(db_path)))
    yield conn
    conn.close()


def insert_transaction(conn, record_id, amount, currency, **extra):
    row = {
        "id": record_id,
        "user_id": 1,
        "date": "2025-03-01",
        "amount": amount,
        "currency": currency,
        "vendor": "Vendor",
        "description": f"Transaction {record_id}",
        "category": "Food",
        "type": "expense",
    }
    row.update(extra)
    columns = ", ".join(row)
    placeholders = ", ".join(["?"] * len(row))
    conn.execute(f"INSERT INTO transactions ({columns}) VALUES ({placeholders})", tuple(row.values()))
    conn.commit()


def fetch_transaction(conn, record_id):
    row = conn.execute(
        "SELECT id, amount, currency, original_amount, original_currency, conversion_rate, vendor, description, category, type, date FROM transactions WHERE id = ?",
        (record_id,),
    ).fetchone()
    return dict(zip(row.keys(), row)) if row is not None else None


@pytest.fixture()
def scenario_rows(conn):
    insert_transaction(conn, 1, 100, "USD")
    insert_transaction(conn, 2, 50, "EUR")
    insert_transaction(conn, 3, 0, "JPY")
    return conn


def add_write_failure_trigger(conn, record_id):
    conn.execute(
        f"""
        CREATE TRIGGER fail_update_{record_id} BEFORE UPDATE ON transactions
        WHEN OLD.id = {record_id}
        BEGIN
            SELECT RAISE(ABORT, 'write conflict');
        END
        """
    )
    conn.commit()

