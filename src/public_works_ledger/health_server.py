"""
Health check HTTP server for liveness and readiness probes.

Reports whether the ledger database is reachable and, in detail, how much
it holds: projects, expenses, active alerts and file size.
"""

import sqlite3
from pathlib import Path
from typing import Any

from flask import Flask, Response, jsonify

from public_works_ledger import __version__
from public_works_ledger.kernel.logging import get_logger

logger = get_logger(__name__)

app = Flask(__name__)

SERVICE_NAME = "public-works-ledger"

# Tables that must exist for the ledger to serve requests
REQUIRED_TABLES = ("projects", "status_history", "budgets", "budget_lines", "expenses", "alerts")

# Global state - set by initialize_health_server()
_db_path: Path | None = None


def initialize_health_server(db_path: str | Path) -> None:
    """
    Point the health server at a ledger database.

    Args:
        db_path: Path to SQLite database
    """
    global _db_path
    _db_path = Path(db_path)
    logger.info("Health server initialized", db_path=str(_db_path))


@app.after_request
def add_security_headers(response: Response) -> Response:
    """Conservative headers on every response; the endpoints only serve JSON"""
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"
    return response


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[Response, int]:
    """
    Liveness probe - the process is running.

    Returns:
        JSON response with status and 200 OK
    """
    return jsonify({"status": "alive", "service": SERVICE_NAME}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[Response, int]:
    """
    Readiness probe - the ledger database can serve requests.

    Checks:
    - Database path configured and file present
    - Every ledger table exists and can be queried

    Returns:
        200 OK if ready, 503 if not
    """
    if _db_path is None:
        logger.error("Readiness check failed: DB path not initialized")
        return jsonify({"status": "not_ready", "reason": "database_path_not_initialized"}), 503

    if not _db_path.exists():
        logger.error("Readiness check failed: DB file does not exist", db_path=str(_db_path))
        return (
            jsonify(
                {
                    "status": "not_ready",
                    "reason": "database_file_not_found",
                    "db_path": str(_db_path),
                }
            ),
            503,
        )

    try:
        conn = sqlite3.connect(str(_db_path), timeout=1.0)
        try:
            rows = conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table'"
            ).fetchall()
            present = {row[0] for row in rows}
            missing = [table for table in REQUIRED_TABLES if table not in present]
            if missing:
                logger.error("Readiness check failed: ledger tables missing", missing=missing)
                return (
                    jsonify({"status": "not_ready", "reason": "schema_missing", "missing": missing}),
                    503,
                )
            project_count = conn.execute("SELECT COUNT(*) FROM projects").fetchone()[0]
        finally:
            conn.close()

        logger.debug("Readiness check passed", project_count=project_count)
        return (
            jsonify({"status": "ready", "database": "accessible", "project_count": project_count}),
            200,
        )

    except sqlite3.OperationalError as e:
        logger.error("Readiness check failed: DB operational error", error=str(e))
        return (
            jsonify(
                {
                    "status": "not_ready",
                    "reason": "database_operational_error",
                    "error": str(e),
                }
            ),
            503,
        )
    except Exception as e:
        logger.error("Readiness check failed: Unexpected error", error=str(e), exc_info=True)
        return (
            jsonify({"status": "not_ready", "reason": "unexpected_error", "error": str(e)}),
            503,
        )


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[Response, int]:
    """
    Detailed health check - ledger contents and database size.

    Returns:
        200 with details when healthy, 503 when degraded
    """
    health_data: dict[str, Any] = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": __version__,
    }

    if _db_path and _db_path.exists():
        try:
            conn = sqlite3.connect(str(_db_path), timeout=1.0)
            try:
                cursor = conn.cursor()
                project_count = cursor.execute("SELECT COUNT(*) FROM projects").fetchone()[0]
                expense_count = cursor.execute("SELECT COUNT(*) FROM expenses").fetchone()[0]
                active_alerts = cursor.execute(
                    "SELECT COUNT(*) FROM alerts WHERE state = 'ACTIVE'"
                ).fetchone()[0]
                projects_by_status = dict(
                    cursor.execute(
                        "SELECT status, COUNT(*) FROM projects GROUP BY status"
                    ).fetchall()
                )
                page_count = cursor.execute("PRAGMA page_count").fetchone()[0]
                page_size = cursor.execute("PRAGMA page_size").fetchone()[0]
            finally:
                conn.close()

            health_data["database"] = {
                "status": "healthy",
                "path": str(_db_path),
                "project_count": project_count,
                "projects_by_status": projects_by_status,
                "expense_count": expense_count,
                "active_alert_count": active_alerts,
                "size_mb": round((page_count * page_size) / (1024 * 1024), 2),
            }

        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            health_data["database"] = {"status": "unhealthy", "error": str(e)}
            health_data["status"] = "degraded"
    else:
        health_data["database"] = {"status": "not_initialized"}
        health_data["status"] = "degraded"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return jsonify(health_data), status_code


def run_health_server(port: int = 8080, debug: bool = False) -> None:
    """
    Run the health check server.

    Args:
        port: Port to listen on (default: 8080)
        debug: Enable Flask debug mode (default: False)
    """
    logger.info("Starting health check server", port=port)
    app.run(host="0.0.0.0", port=port, debug=debug)
