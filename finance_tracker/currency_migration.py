"""Multi-currency data migration for stored transactions.

``migrate_to_multi_currency`` back-fills ``original_amount``,
``original_currency`` and ``conversion_rate`` on every legacy row and hands
back one ``RollbackEntry`` per committed row. ``rollback_migration`` replays
those entries to restore the pre-migration values. Both fold per-row
outcomes into a ``MigrationResult``; a single row failing never stops the
batch. The engine keeps no state between calls: the rollback payload is
owned by the caller.
"""

import json
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import List, Optional

from .classifier import is_migrated
from .db import DB_ERRORS
from .rates import DEFAULT_RATE_TIMEOUT_SECONDS, RateLookupError, normalize_currency, to_rate
from .records import StoreUnavailable


logger = logging.getLogger(__name__)

AMOUNT_QUANTUM = Decimal("0.0001")
DEFAULT_CURRENCY = "USD"
DEFAULT_MAX_REPORTED_ERRORS = 100


def to_decimal(value):
    if value is None:
        raise ValueError("amount is missing")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"amount {value!r} is not a number") from exc


def round_amount(value):
    return to_decimal(value).quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class RollbackEntry:
    """Pre-migration values of one row, plus the marker the forward run wrote."""

    id: int
    amount: object
    currency: Optional[str]
    original_amount: object = None
    original_currency: Optional[str] = None
    conversion_rate: object = None
    migrated_currency: Optional[str] = None

    @classmethod
    def capture(cls, record, migrated_currency=None):
        return cls(
            id=record["id"],
            amount=record.get("amount"),
            currency=record.get("currency"),
            original_amount=record.get("original_amount"),
            original_currency=record.get("original_currency"),
            conversion_rate=record.get("conversion_rate"),
            migrated_currency=migrated_currency,
        )

    def pre_image(self):
        return {
            "amount": self.amount,
            "currency": self.currency,
            "original_amount": self.original_amount,
            "original_currency": self.original_currency,
            "conversion_rate": self.conversion_rate,
        }

    def to_dict(self):
        return {
            "id": self.id,
            "amount": self.amount,
            "currency": self.currency,
            "originalAmount": self.original_amount,
            "originalCurrency": self.original_currency,
            "conversionRate": self.conversion_rate,
            "migratedCurrency": self.migrated_currency,
        }

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ValueError(f"rollback entry must be an object, got {type(data).__name__}")
        record_id = data.get("id")
        if isinstance(record_id, bool) or not isinstance(record_id, int):
            raise ValueError(f"rollback entry has no valid id: {record_id!r}")
        if "amount" not in data or data["amount"] is None:
            raise ValueError(f"rollback entry for transaction {record_id} has no amount")
        return cls(
            id=record_id,
            amount=data["amount"],
            currency=data.get("currency"),
            original_amount=data.get("originalAmount"),
            original_currency=data.get("originalCurrency"),
            conversion_rate=data.get("conversionRate"),
            migrated_currency=data.get("migratedCurrency"),
        )


@dataclass(frozen=True)
class MigrationStatus:
    total_transactions: int
    migrated_transactions: int
    legacy_transactions: int

    @property
    def needs_migration(self):
        return self.legacy_transactions > 0

    def to_dict(self):
        return {
            "needsMigration": self.needs_migration,
            "totalTransactions": self.total_transactions,
            "migratedTransactions": self.migrated_transactions,
            "legacyTransactions": self.legacy_transactions,
        }


@dataclass
class MigrationResult:
    success: bool
    migrated_count: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)
    rollback_data: Optional[List[RollbackEntry]] = None

    def to_dict(self):
        payload = {
            "success": self.success,
            "migratedCount": self.migrated_count,
            "errorCount": self.error_count,
            "errors": list(self.errors),
        }
        if self.rollback_data is not None:
            payload["rollbackData"] = [entry.to_dict() for entry in self.rollback_data]
        return payload


# Per-row outcomes; a batch result is a fold over a list of these.
@dataclass(frozen=True)
class Migrated:
    entry: RollbackEntry


@dataclass(frozen=True)
class Restored:
    record_id: int
    warning: Optional[str] = None


@dataclass(frozen=True)
class Failed:
    record_id: Optional[int]
    message: str


@dataclass(frozen=True)
class _RowPlan:
    record_id: int
    values: dict
    entry: RollbackEntry


def bound_errors(messages, max_errors=DEFAULT_MAX_REPORTED_ERRORS):
    if max_errors is None or len(messages) <= max_errors:
        return list(messages)
    hidden = len(messages) - max_errors
    return list(messages[:max_errors]) + [f"... {hidden} more message(s) not shown"]


def summarize_outcomes(outcomes, collect_rollback=False, max_errors=DEFAULT_MAX_REPORTED_ERRORS):
    result = MigrationResult(success=True, rollback_data=[] if collect_rollback else None)
    messages = []
    for outcome in outcomes:
        if isinstance(outcome, Migrated):
            result.migrated_count += 1
            result.rollback_data.append(outcome.entry)
        elif isinstance(outcome, Restored):
            result.migrated_count += 1
            if outcome.warning:
                messages.append(outcome.warning)
        else:
            result.error_count += 1
            messages.append(outcome.message)
    result.errors = bound_errors(messages, max_errors)
    return result


class RateLookup:
    """Calls a rate provider with a hard per-call timeout.

    Every lookup gets its own daemon thread, so a provider call that never
    returns only costs the record that made it.
    """

    def __init__(self, provider, timeout=DEFAULT_RATE_TIMEOUT_SECONDS):
        self.provider = provider
        self.timeout = timeout

    def _run(self, future, from_currency, to_currency, as_of):
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(self.provider.rate(from_currency, to_currency, as_of))
        except Exception as exc:
            future.set_exception(exc)

    def __call__(self, from_currency, to_currency, as_of=None):
        if self.provider is None:
            raise RateLookupError(f"No rate provider configured for {from_currency} -> {to_currency}")
        future = Future()
        threading.Thread(
            target=self._run,
            args=(future, from_currency, to_currency, as_of),
            name=f"rate-lookup-{from_currency}-{to_currency}",
            daemon=True,
        ).start()
        try:
            return to_rate(future.result(timeout=self.timeout))
        except FutureTimeoutError as exc:
            raise RateLookupError(
                f"rate lookup {from_currency} -> {to_currency} timed out after {self.timeout}s"
            ) from exc


def plan_row(record, home_currency=None, default_currency=DEFAULT_CURRENCY, lookup_rate=None):
    """Compute the multi-currency values for one legacy row."""
    amount = record.get("amount")
    amount_value = to_decimal(amount)
    currency = record.get("currency")
    if not normalize_currency(currency):
        currency = normalize_currency(default_currency)
    if not currency:
        raise ValueError("currency is missing and no default currency is configured")
    # Stored codes are written back as-is; only lookups use the normalized form.
    code = normalize_currency(currency)

    values = {
        "amount": amount,
        "currency": currency,
        "original_amount": amount,
        "original_currency": currency,
        "conversion_rate": 1.0,
    }

    if home_currency and code != home_currency:
        if lookup_rate is None:
            raise RateLookupError(f"No rate provider configured for {code} -> {home_currency}")
        rate = lookup_rate(code, home_currency, record.get("date"))
        values["amount"] = float(round_amount(amount_value * rate))
        values["currency"] = home_currency
        values["conversion_rate"] = float(rate)

    entry = RollbackEntry.capture(record, migrated_currency=currency)
    return _RowPlan(record_id=record["id"], values=values, entry=entry)


def _migration_failure(record_id, reason):
    message = f"Failed to migrate transaction {record_id}: {reason}"
    logger.warning(message)
    return Failed(record_id, message)


def _plan_or_fail(record, home_currency, default_currency, lookup_rate):
    try:
        return plan_row(record, home_currency, default_currency, lookup_rate)
    except (RateLookupError, OSError, ValueError, ArithmeticError) as exc:
        return _migration_failure(record.get("id"), exc)


def _iter_plans(records, plan, workers):
    if workers <= 1:
        for record in records:
            yield plan(record)
        return

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="migration-plan") as pool:
        futures = [pool.submit(plan, record) for record in records]
        for future in futures:
            yield future.result()


def _apply_plan(store, row_plan):
    try:
        updated = store.update_currency_fields(row_plan.record_id, row_plan.values, only_if_legacy=True)
    except DB_ERRORS as exc:
        return _migration_failure(row_plan.record_id, exc)
    if not updated:
        return _migration_failure(row_plan.record_id, "record no longer exists or was already migrated")

    logger.debug(
        "Transaction %s migrated: original_amount=%s original_currency=%s conversion_rate=%s",
        row_plan.record_id,
        row_plan.values["original_amount"],
        row_plan.values["original_currency"],
        row_plan.values["conversion_rate"],
    )
    return Migrated(row_plan.entry)


def migrate_to_multi_currency(
    store,
    rate_provider=None,
    home_currency=None,
    default_currency=DEFAULT_CURRENCY,
    workers=1,
    rate_timeout=DEFAULT_RATE_TIMEOUT_SECONDS,
    max_errors=DEFAULT_MAX_REPORTED_ERRORS,
):
    logger.info("Starting multi-currency migration")
    try:
        records = store.fetch_legacy()
    except StoreUnavailable as exc:
        logger.error("Migration failed before any write: %s", exc)
        return MigrationResult(success=False, errors=[f"Migration failed: {exc}"], rollback_data=[])

    logger.info("Found %s legacy transactions", len(records))
    home = normalize_currency(home_currency) or None
    lookup_rate = RateLookup(rate_provider, timeout=rate_timeout) if home else None

    def plan(record):
        return _plan_or_fail(record, home, default_currency, lookup_rate)

    outcomes = []
    for planned in _iter_plans(records, plan, workers):
        if isinstance(planned, Failed):
            outcomes.append(planned)
        else:
            outcomes.append(_apply_plan(store, planned))

    result = summarize_outcomes(outcomes, collect_rollback=True, max_errors=max_errors)
    logger.info(
        "Migration completed: migrated=%s errors=%s",
        result.migrated_count,
        result.error_count,
    )
    return result


def _rollback_failure(record_id, reason):
    if record_id is None:
        message = f"Failed to rollback entry: {reason}"
    else:
        message = f"Failed to rollback transaction {record_id}: {reason}"
    logger.warning(message)
    return Failed(record_id, message)


def divergence_warning(entry, current):
    """Best-effort check that the row still carries what the forward run wrote."""
    if not entry.migrated_currency:
        return None
    expected = normalize_currency(entry.migrated_currency)
    actual = current.get("original_currency")
    if is_migrated(current) and normalize_currency(actual) == expected:
        return None
    return (
        f"Warning: transaction {entry.id} has original_currency {actual!r}, "
        f"expected {expected!r} from the migration; restoring pre-migration values anyway"
    )


def restore_entry(store, raw_entry):
    if isinstance(raw_entry, RollbackEntry):
        entry = raw_entry
    else:
        try:
            entry = RollbackEntry.from_dict(raw_entry)
        except ValueError as exc:
            return _rollback_failure(None, exc)

    try:
        current = store.get(entry.id)
        if current is None:
            return _rollback_failure(entry.id, "record no longer exists")
        warning = divergence_warning(entry, current)
        updated = store.update_currency_fields(entry.id, entry.pre_image())
    except DB_ERRORS as exc:
        return _rollback_failure(entry.id, exc)
    if not updated:
        return _rollback_failure(entry.id, "record no longer exists")

    if warning:
        logger.warning(warning)
    logger.debug("Transaction %s rolled back", entry.id)
    return Restored(entry.id, warning)


def rollback_migration(store, entries, max_errors=DEFAULT_MAX_REPORTED_ERRORS):
    if not isinstance(entries, (list, tuple)):
        return MigrationResult(success=False, errors=["Rollback failed: rollback data must be a list"])

    logger.info("Starting migration rollback for %s entries", len(entries))
    try:
        store.ping()
    except StoreUnavailable as exc:
        logger.error("Rollback failed before any write: %s", exc)
        return MigrationResult(success=False, errors=[f"Rollback failed: {exc}"])

    outcomes = [restore_entry(store, raw_entry) for raw_entry in entries]
    result = summarize_outcomes(outcomes, max_errors=max_errors)
    logger.info(
        "Rollback completed: restored=%s errors=%s",
        result.migrated_count,
        result.error_count,
    )
    return result


def get_migration_status(store):
    total = store.count_all()
    legacy = store.count_legacy()
    return MigrationStatus(
        total_transactions=total,
        migrated_transactions=total - legacy,
        legacy_transactions=legacy,
    )


def read_rollback_file(path, missing_ok=False):
    """Load a saved rollback payload. Raises ValueError when it cannot be used."""
    path = Path(path)
    if missing_ok and not path.exists():
        return []
    try:
        entries = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ValueError(f"Cannot read rollback file {path}: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Rollback file {path} is not valid JSON: {exc}") from exc
    if not isinstance(entries, list):
        raise ValueError(f"Rollback file {path} must contain a JSON list")
    return entries


def merge_rollback_entries(existing, new_entries):
    """Add this run's entries to an earlier payload; a re-migrated id keeps its newest entry."""
    new_ids = {entry["id"] for entry in new_entries}
    kept = [entry for entry in existing if not (isinstance(entry, dict) and entry.get("id") in new_ids)]
    return kept + list(new_entries)


def save_rollback_file(path, new_entries, existing=None):
    """Write ``new_entries`` without dropping entries an earlier run saved to ``path``."""
    if existing is None:
        existing = read_rollback_file(path, missing_ok=True)
    entries = merge_rollback_entries(existing, new_entries)
    Path(path).write_text(json.dumps(entries, indent=2), encoding="utf-8")
    return entries
