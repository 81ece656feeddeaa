"""
Tests for health server

Liveness, readiness and detailed health endpoints over a real ledger
database, plus the security headers every response carries.
"""

import sqlite3

import pytest

from public_works_ledger import __version__, health_server
from public_works_ledger.health_server import app, initialize_health_server
from tests.helpers import project_data


@pytest.fixture
def client():
    """Flask test client"""
    app.config["TESTING"] = True
    with app.test_client() as client:
        yield client
    health_server._db_path = None


@pytest.fixture
def populated_db(engine, temp_db):
    """Ledger with one project, one expense and two active alerts"""
    project = engine.create_project(project_data(), "admin-1")
    line = engine.add_line(project.project_id, "Única", "100", "admin-1")
    engine.record_expense(line.line_id, "100", "Pago", "2025-03-01", "admin-1")
    initialize_health_server(temp_db)
    return temp_db


def test_initialize_sets_db_path(temp_db) -> None:
    initialize_health_server(temp_db)
    try:
        assert health_server._db_path == temp_db
    finally:
        health_server._db_path = None


def test_liveness_always_ok(client) -> None:
    response = client.get("/health/live")

    assert response.status_code == 200
    assert response.get_json() == {"status": "alive", "service": "public-works-ledger"}


def test_readiness_without_initialization(client) -> None:
    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.get_json()["reason"] == "database_path_not_initialized"


def test_readiness_missing_file(client, tmp_path) -> None:
    initialize_health_server(tmp_path / "absent.db")

    response = client.get("/health/ready")

    assert response.status_code == 503
    assert response.get_json()["reason"] == "database_file_not_found"


def test_readiness_missing_schema(client, tmp_path) -> None:
    db_path = tmp_path / "foreign.db"
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE projects (project_id TEXT PRIMARY KEY)")
    conn.commit()
    conn.close()
    initialize_health_server(db_path)

    response = client.get("/health/ready")

    assert response.status_code == 503
    data = response.get_json()
    assert data["reason"] == "schema_missing"
    assert "expenses" in data["missing"]
    assert "projects" not in data["missing"]


def test_readiness_ready(client, populated_db) -> None:
    response = client.get("/health/ready")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "ready"
    assert data["project_count"] == 1


def test_detailed_health_reports_contents(client, populated_db) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "healthy"
    assert data["version"] == __version__
    database = data["database"]
    assert database["project_count"] == 1
    assert database["projects_by_status"] == {"PLANNED": 1}
    assert database["expense_count"] == 1
    assert database["active_alert_count"] == 2
    assert database["size_mb"] >= 0


def test_detailed_health_degraded_without_database(client) -> None:
    response = client.get("/health")

    assert response.status_code == 503
    data = response.get_json()
    assert data["status"] == "degraded"
    assert data["database"] == {"status": "not_initialized"}


@pytest.mark.parametrize("path", ["/health/live", "/health/ready", "/health"])
def test_security_headers(client, path) -> None:
    response = client.get(path)

    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Cache-Control"] == "no-store"
    assert "default-src 'none'" in response.headers["Content-Security-Policy"]
