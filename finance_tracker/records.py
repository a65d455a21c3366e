import logging
from datetime import datetime, timezone

from .classifier import LEGACY_ROW_SQL
from .db import DB_ERRORS, row_to_dict


logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 500

CURRENCY_FIELDS = (
    "amount",
    "currency",
    "original_amount",
    "original_currency",
    "conversion_rate",
)

RECORD_COLUMNS = (
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
)


class StoreUnavailable(RuntimeError):
    """Raised when the transactions table cannot be read at all."""


def utc_now_text():
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class TransactionStore:
    """Record store over the ``transactions`` table.

    Reads that back batch-level decisions raise ``StoreUnavailable``; single
    row reads and writes let driver errors through so callers can account
    for them per row.
    """

    def __init__(self, conn, page_size=DEFAULT_PAGE_SIZE):
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self.conn = conn
        self.page_size = page_size

    def _select_sql(self, where):
        return f"SELECT {', '.join(RECORD_COLUMNS)} FROM transactions WHERE {where}"

    def ping(self):
        try:
            self.conn.execute("SELECT 1 FROM transactions LIMIT 1").fetchone()
        except DB_ERRORS as exc:
            raise StoreUnavailable(f"transactions table is unreachable: {exc}") from exc

    def fetch_legacy(self):
        """Return every legacy-shape row, read in id-ordered pages."""
        records = []
        last_id = None
        first_page_sql = self._select_sql(LEGACY_ROW_SQL) + " ORDER BY id LIMIT ?"
        next_page_sql = self._select_sql(f"{LEGACY_ROW_SQL} AND id > ?") + " ORDER BY id LIMIT ?"
        try:
            while True:
                if last_id is None:
                    rows = self.conn.execute(first_page_sql, (self.page_size,)).fetchall()
                else:
                    rows = self.conn.execute(next_page_sql, (last_id, self.page_size)).fetchall()
                records.extend(row_to_dict(row) for row in rows)
                if len(rows) < self.page_size:
                    break
                last_id = rows[-1]["id"]
        except DB_ERRORS as exc:
            raise StoreUnavailable(f"Unable to read legacy transactions: {exc}") from exc
        logger.debug("Loaded %s legacy transactions in pages of %s", len(records), self.page_size)
        return records

    def get(self, record_id):
        row = self.conn.execute(self._select_sql("id = ?"), (record_id,)).fetchone()
        return row_to_dict(row)

    def update_currency_fields(self, record_id, values, only_if_legacy=False):
        """Write the currency fields of one row in its own transaction.

        Returns the number of rows changed (0 or 1). With ``only_if_legacy``
        a row that is no longer legacy-shaped is left alone.
        """
        unknown = set(values) - set(CURRENCY_FIELDS)
        if unknown:
            raise ValueError(f"Not a currency field: {sorted(unknown)}")

        columns = [field for field in CURRENCY_FIELDS if field in values]
        assignments = ", ".join(f"{column} = ?" for column in columns)
        sql = f"UPDATE transactions SET {assignments}, updated_at = ? WHERE id = ?"
        if only_if_legacy:
            sql += f" AND {LEGACY_ROW_SQL}"
        params = [values[column] for column in columns] + [utc_now_text(), record_id]

        try:
            cursor = self.conn.execute(sql, params)
            self.conn.commit()
        except DB_ERRORS:
            self.conn.rollback()
            raise
        return cursor.rowcount

    def count_all(self):
        return self._count("1 = 1")

    def count_legacy(self):
        return self._count(LEGACY_ROW_SQL)

    def _count(self, where):
        try:
            row = self.conn.execute(f"SELECT COUNT(*) FROM transactions WHERE {where}").fetchone()
        except DB_ERRORS as exc:
            raise StoreUnavailable(f"Unable to count transactions: {exc}") from exc
        return int(row[0] or 0)
