import json
import os
import threading
from contextlib import contextmanager

import click
from flask import Flask, g, jsonify, request

from .currency_migration import (
    DEFAULT_CURRENCY,
    DEFAULT_MAX_REPORTED_ERRORS,
    MigrationResult,
    get_migration_status,
    migrate_to_multi_currency,
    read_rollback_file,
    rollback_migration,
    save_rollback_file,
)
from .db import DB_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .rates import DEFAULT_RATE_API_URL, DEFAULT_RATE_TIMEOUT_SECONDS, ExchangeRateApiProvider
from .records import DEFAULT_PAGE_SIZE, StoreUnavailable, TransactionStore


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be opened or brought up to the current schema."""


class MigrationInProgress(RuntimeError):
    """Raised when a migration or rollback is requested while another one runs."""


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY="dev",
        DATABASE=os.path.join(app.instance_path, "finance_tracker.sqlite"),
        HOME_CURRENCY=os.environ.get("HOME_CURRENCY") or None,
        DEFAULT_CURRENCY=DEFAULT_CURRENCY,
        RATE_API_URL=DEFAULT_RATE_API_URL,
        RATE_TIMEOUT_SECONDS=DEFAULT_RATE_TIMEOUT_SECONDS,
        RATE_PROVIDER=None,
        MIGRATION_WORKERS=1,
        MIGRATION_PAGE_SIZE=DEFAULT_PAGE_SIZE,
        MAX_REPORTED_ERRORS=DEFAULT_MAX_REPORTED_ERRORS,
    )

    if test_config is not None:
        app.config.update(test_config)

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    # Only one migration or rollback may touch the store at a time.
    migration_lock = threading.Lock()

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def db_config():
        return parse_database_config(app.config["DATABASE"])

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(db_config())
            except (*DB_ERRORS, OSError, RuntimeError) as exc:
                message = f"Unable to open database {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(db_config())
            app.config["DB_INIT_ERROR"] = None
        except (*DB_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    def get_store():
        return TransactionStore(get_db(), page_size=app.config["MIGRATION_PAGE_SIZE"])

    @contextmanager
    def exclusive_run():
        if not migration_lock.acquire(blocking=False):
            raise MigrationInProgress("A migration or rollback is already running.")
        try:
            yield
        finally:
            migration_lock.release()

    @contextmanager
    def rate_provider():
        provider = app.config.get("RATE_PROVIDER")
        if provider is not None or not app.config.get("HOME_CURRENCY"):
            yield provider
            return
        provider = ExchangeRateApiProvider(
            base_url=app.config["RATE_API_URL"],
            timeout=app.config["RATE_TIMEOUT_SECONDS"],
        )
        try:
            yield provider
        finally:
            provider.close()

    def run_migration():
        with exclusive_run():
            try:
                store = get_store()
            except DatabaseInitError as exc:
                return MigrationResult(success=False, errors=[f"Migration failed: {exc}"], rollback_data=[])
            with rate_provider() as provider:
                return migrate_to_multi_currency(
                    store,
                    rate_provider=provider,
                    home_currency=app.config.get("HOME_CURRENCY"),
                    default_currency=app.config["DEFAULT_CURRENCY"],
                    workers=app.config["MIGRATION_WORKERS"],
                    rate_timeout=app.config["RATE_TIMEOUT_SECONDS"],
                    max_errors=app.config["MAX_REPORTED_ERRORS"],
                )

    def run_rollback(entries):
        with exclusive_run():
            try:
                store = get_store()
            except DatabaseInitError as exc:
                return MigrationResult(success=False, errors=[f"Rollback failed: {exc}"])
            return rollback_migration(store, entries, max_errors=app.config["MAX_REPORTED_ERRORS"])

    def current_status():
        try:
            return get_migration_status(get_store())
        except DatabaseInitError as exc:
            raise StoreUnavailable(str(exc)) from exc

    def rollback_payload():
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return None
        entries = body.get("rollbackData")
        return entries if isinstance(entries, list) else None

    def in_progress_response(exc):
        app.logger.warning("Rejected overlapping migration request: %s", exc)
        return jsonify({"success": False, "error": str(exc)}), 409

    def rollback_summary(result):
        payload = result.to_dict()
        payload.pop("rollbackData", None)
        return payload

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("migration-status")
    def migration_status_command():
        try:
            status = current_status()
        except StoreUnavailable as exc:
            raise click.ClickException(str(exc)) from exc
        print(json.dumps(status.to_dict(), indent=2))

    @app.cli.command("migrate-currency")
    @click.option("--output", "output_path", type=click.Path(dir_okay=False), help="Add rollback data to this JSON file")
    def migrate_currency_command(output_path):
        existing = None
        if output_path:
            try:
                existing = read_rollback_file(output_path, missing_ok=True)
            except ValueError as exc:
                raise click.ClickException(f"{exc}; refusing to overwrite it") from exc
        try:
            result = run_migration()
        except MigrationInProgress as exc:
            raise click.ClickException(str(exc)) from exc
        payload = result.to_dict()
        if output_path and result.success:
            save_rollback_file(output_path, payload["rollbackData"], existing=existing)
            payload["rollbackData"] = output_path
        print(json.dumps(payload, indent=2))
        if not result.success:
            raise SystemExit(1)

    @app.cli.command("rollback-currency")
    @click.argument("rollback_path", type=click.Path(exists=True, dir_okay=False))
    def rollback_currency_command(rollback_path):
        try:
            entries = read_rollback_file(rollback_path)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
        try:
            result = run_rollback(entries)
        except MigrationInProgress as exc:
            raise click.ClickException(str(exc)) from exc
        print(json.dumps(rollback_summary(result), indent=2))
        if not result.success:
            raise SystemExit(1)

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(db_config()))
        except DB_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    @app.get("/migration/status")
    def migration_status():
        try:
            status = current_status()
        except StoreUnavailable as exc:
            app.logger.error("Failed to get migration status: %s", exc)
            return jsonify({"error": "Failed to get migration status"}), 500
        return jsonify(status.to_dict())

    @app.post("/migration/migrate")
    def migrate():
        app.logger.info("Starting migration via API")
        try:
            result = run_migration()
        except MigrationInProgress as exc:
            return in_progress_response(exc)
        return jsonify(result.to_dict()), 200 if result.success else 500

    @app.post("/migration/rollback")
    def rollback():
        entries = rollback_payload()
        if entries is None:
            return jsonify({"success": False, "error": "rollbackData must be a list"}), 400

        app.logger.info("Starting rollback via API for %s entries", len(entries))
        try:
            result = run_rollback(entries)
        except MigrationInProgress as exc:
            return in_progress_response(exc)
        return jsonify(rollback_summary(result)), 200 if result.success else 500

    @app.route("/api/migration", methods=("GET", "POST"))
    def migration_api():
        if request.method == "GET":
            try:
                status = current_status()
            except StoreUnavailable as exc:
                app.logger.error("Failed to get migration status: %s", exc)
                return jsonify({"success": False, "error": "Failed to get migration status"}), 500
            return jsonify({"success": True, "data": status.to_dict()})

        body = request.get_json(silent=True) or {}
        action = body.get("action") if isinstance(body, dict) else None
        try:
            if action == "migrate":
                result = run_migration()
                payload = result.to_dict()
                return jsonify({
                    "success": result.success,
                    "data": {
                        "migratedCount": payload["migratedCount"],
                        "errorCount": payload["errorCount"],
                        "errors": payload["errors"],
                        "rollbackData": payload["rollbackData"],
                    },
                })
            entries = rollback_payload()
            if action == "rollback" and entries is not None:
                result = run_rollback(entries)
                return jsonify({
                    "success": result.success,
                    "data": {
                        "rollbackCount": result.migrated_count,
                        "errorCount": result.error_count,
                        "errors": result.errors,
                    },
                })
        except MigrationInProgress as exc:
            return in_progress_response(exc)

        return jsonify({"success": False, "error": "Invalid action or missing rollback data"}), 400

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    app.get_db = get_db
    app.init_db = init_db
    app.run_migration = run_migration
    app.run_rollback = run_rollback
    app.migration_lock = migration_lock
    return app
