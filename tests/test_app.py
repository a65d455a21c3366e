import json
from pathlib import Path

import pytest

from conftest import insert_transaction
from finance_tracker import create_app
from finance_tracker.rates import StaticRateProvider


@pytest.fixture()
def app(tmp_path: Path):
    db_path = tmp_path / "test.sqlite"
    app = create_app({"TESTING": True, "SECRET_KEY": "test", "DATABASE": str(db_path)})

    with app.app_context():
        app.init_db()

    yield app


@pytest.fixture()
def client(app):
    return app.test_client()


def seed_scenario(app):
    with app.app_context():
        db = app.get_db()
        insert_transaction(db, 1, 100, "USD")
        insert_transaction(db, 2, 50, "EUR")
        insert_transaction(db, 3, 0, "JPY")


def read_row(app, record_id):
    with app.app_context():
        row = app.get_db().execute(
            "SELECT amount, currency, original_amount, original_currency, conversion_rate FROM transactions WHERE id = ?",
            (record_id,),
        ).fetchone()
    return tuple(row)


def test_health_endpoint_reports_current_schema(client):
    response = client.get("/health/db")

    assert response.status_code == 200
    assert response.get_json()["ok"] is True
    assert response.get_json()["schema_version"] == 2


def test_status_migrate_rollback_round_trip(app, client):
    seed_scenario(app)

    status = client.get("/migration/status").get_json()
    assert status == {
        "needsMigration": True,
        "totalTransactions": 3,
        "migratedTransactions": 0,
        "legacyTransactions": 3,
    }

    response = client.post("/migration/migrate")
    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["migratedCount"] == 3
    assert body["errorCount"] == 0
    assert body["errors"] == []
    assert len(body["rollbackData"]) == 3
    assert read_row(app, 2) == (50, "EUR", 50, "EUR", 1)

    status = client.get("/migration/status").get_json()
    assert status["needsMigration"] is False
    assert status["migratedTransactions"] == 3

    response = client.post("/migration/rollback", json={"rollbackData": body["rollbackData"]})
    assert response.status_code == 200
    rollback_body = response.get_json()
    assert rollback_body == {"success": True, "migratedCount": 3, "errorCount": 0, "errors": []}
    assert read_row(app, 2) == (50, "EUR", None, None, None)
    assert client.get("/migration/status").get_json()["legacyTransactions"] == 3


def test_migrate_twice_reports_nothing_to_do(app, client):
    seed_scenario(app)
    client.post("/migration/migrate")

    body = client.post("/migration/migrate").get_json()

    assert body["success"] is True
    assert body["migratedCount"] == 0
    assert body["rollbackData"] == []


def test_rollback_requires_a_list(client):
    for payload in ({}, {"rollbackData": "abc"}, {"rollbackData": {"id": 1}}):
        response = client.post("/migration/rollback", json=payload)
        assert response.status_code == 400
        assert response.get_json()["success"] is False

    response = client.post("/migration/rollback", data="not json", content_type="text/plain")
    assert response.status_code == 400


def test_overlapping_run_is_rejected(app, client):
    seed_scenario(app)

    with app.migration_lock:
        response = client.post("/migration/migrate")
        rollback_response = client.post("/migration/rollback", json={"rollbackData": []})

    assert response.status_code == 409
    assert rollback_response.status_code == 409
    assert client.get("/migration/status").get_json()["legacyTransactions"] == 3


def test_home_currency_conversion_through_app(tmp_path):
    app = create_app({
        "TESTING": True,
        "DATABASE": str(tmp_path / "home.sqlite"),
        "HOME_CURRENCY": "USD",
        "RATE_PROVIDER": StaticRateProvider({("EUR", "USD"): "1.1"}),
    })
    seed_scenario(app)

    body = app.test_client().post("/migration/migrate").get_json()

    assert body["migratedCount"] == 2
    assert body["errorCount"] == 1
    assert body["errors"][0].startswith("Failed to migrate transaction 3:")
    amount, currency, original_amount, original_currency, rate = read_row(app, 2)
    assert (currency, original_amount, original_currency) == ("USD", 50, "EUR")
    assert amount == pytest.approx(55.0)
    assert rate == pytest.approx(1.1)


def test_action_style_endpoint(app, client):
    seed_scenario(app)

    status = client.get("/api/migration").get_json()
    assert status["success"] is True
    assert status["data"]["legacyTransactions"] == 3

    migrated = client.post("/api/migration", json={"action": "migrate"}).get_json()
    assert migrated["success"] is True
    assert migrated["data"]["migratedCount"] == 3
    rollback_data = migrated["data"]["rollbackData"]

    restored = client.post("/api/migration", json={"action": "rollback", "rollbackData": rollback_data}).get_json()
    assert restored["success"] is True
    assert restored["data"] == {"rollbackCount": 3, "errorCount": 0, "errors": []}

    response = client.post("/api/migration", json={"action": "rollback"})
    assert response.status_code == 400
    assert response.get_json() == {"success": False, "error": "Invalid action or missing rollback data"}

    response = client.post("/api/migration", json={"action": "explode"})
    assert response.status_code == 400


def test_status_reports_store_errors(app, client):
    with app.app_context():
        db = app.get_db()
        db.execute("DROP TABLE transactions")
        db.commit()

    response = client.get("/migration/status")
    assert response.status_code == 500
    assert response.get_json() == {"error": "Failed to get migration status"}

    response = client.post("/migration/migrate")
    assert response.status_code == 500
    body = response.get_json()
    assert body["success"] is False
    assert body["migratedCount"] == 0
    assert body["errors"][0].startswith("Migration failed:")


def test_cli_migrate_and_rollback(app, tmp_path):
    seed_scenario(app)
    runner = app.test_cli_runner()
    rollback_file = tmp_path / "rollback.json"

    result = runner.invoke(args=["migration-status"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["legacyTransactions"] == 3

    result = runner.invoke(args=["migrate-currency", "--output", str(rollback_file)])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["migratedCount"] == 3
    assert len(json.loads(rollback_file.read_text())) == 3

    result = runner.invoke(args=["rollback-currency", str(rollback_file)])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"success": True, "migratedCount": 3, "errorCount": 0, "errors": []}
    assert read_row(app, 1) == (100, "USD", None, None, None)


def test_cli_migrate_adds_to_existing_rollback_file(app, tmp_path):
    seed_scenario(app)
    runner = app.test_cli_runner()
    rollback_file = tmp_path / "rollback.json"
    earlier = [{"id": 9, "amount": 5, "currency": "USD", "originalAmount": None, "originalCurrency": None,
                "conversionRate": None, "migratedCurrency": "USD"}]
    rollback_file.write_text(json.dumps(earlier))

    result = runner.invoke(args=["migrate-currency", "--output", str(rollback_file)])
    assert result.exit_code == 0
    saved = json.loads(rollback_file.read_text())
    assert [entry["id"] for entry in saved] == [9, 1, 2, 3]

    with app.app_context():
        db = app.get_db()
        db.execute("DROP TABLE transactions")
        db.commit()

    result = runner.invoke(args=["migrate-currency", "--output", str(rollback_file)])
    assert result.exit_code == 1
    assert json.loads(rollback_file.read_text()) == saved


def test_cli_rollback_rejects_malformed_file(app, tmp_path):
    runner = app.test_cli_runner()
    rollback_file = tmp_path / "rollback.json"
    rollback_file.write_text("{not json")

    result = runner.invoke(args=["rollback-currency", str(rollback_file)])
    assert result.exit_code == 1
    assert "not valid JSON" in result.output
    assert not isinstance(result.exception, json.JSONDecodeError)

    rollback_file.write_text(json.dumps({"rollbackData": []}))
    result = runner.invoke(args=["rollback-currency", str(rollback_file)])
    assert result.exit_code == 1
    assert "must contain a JSON list" in result.output
