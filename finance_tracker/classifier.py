"""Schema-shape classification for stored transactions.

A transaction is in the multi-currency ("current") shape exactly when it
carries a non-blank ``original_currency``. There is no separate version
column: this one field is the compatibility marker, so both the Python
predicate and its SQL twin live here and nowhere else.
"""

import enum


class RecordShape(enum.Enum):
    LEGACY = "legacy"
    CURRENT = "current"


# Must select exactly the rows for which is_migrated() is False.
LEGACY_ROW_SQL = "(original_currency IS NULL OR TRIM(original_currency) = '')"
MIGRATED_ROW_SQL = f"NOT {LEGACY_ROW_SQL}"


def _field(record, name):
    if isinstance(record, dict):
        return record.get(name)
    try:
        return record[name]
    except (KeyError, IndexError, TypeError):
        return getattr(record, name, None)


def is_migrated(record):
    value = _field(record, "original_currency")
    if value is None:
        return False
    return bool(str(value).strip())


def classify(record):
    return RecordShape.CURRENT if is_migrated(record) else RecordShape.LEGACY
