"""
Health check HTTP server for Kubernetes liveness and readiness probes.

Provides endpoints for monitoring the ledger store and the records that
need staff follow-up.
"""

from pathlib import Path
from typing import Any

from flask import Flask, jsonify

from campus_ledger import __version__
from campus_ledger.kernel.errors import CampusLedgerError
from campus_ledger.kernel.logging import get_logger
from campus_ledger.ledger_app import CampusLedger

logger = get_logger(__name__)

app = Flask(__name__)

# Global state - will be set by initialize_health_server()
_db_path: Path | None = None
_ledger: CampusLedger | None = None


def initialize_health_server(db_path: str | Path, ledger: CampusLedger | None = None) -> None:
    """
    Initialize the health server with a ledger instance and database path.

    Args:
        db_path: Path to SQLite database
        ledger: Ledger instance; opened over db_path if None
    """
    global _db_path, _ledger
    _db_path = Path(db_path)
    _ledger = ledger or CampusLedger(_db_path, watch=False)
    logger.info("Health server initialized", db_path=str(_db_path))


def reset_health_server() -> None:
    global _db_path, _ledger
    _db_path = None
    _ledger = None


@app.route("/health/live", methods=["GET"])
def liveness() -> tuple[Any, int]:
    """
    Liveness probe - checks if the process is running.

    Returns:
        JSON response with status and 200 OK
    """
    return jsonify({"status": "alive", "service": "campus-ledger"}), 200


@app.route("/health/ready", methods=["GET"])
def readiness() -> tuple[Any, int]:
    """
    Readiness probe - checks if the document store answers.

    Returns:
        JSON response with status and 200 OK if ready, 503 if not ready
    """
    if _ledger is None or _db_path is None:
        logger.error("Readiness check failed: ledger not initialized")
        return jsonify({"status": "not_ready", "reason": "ledger_not_initialized"}), 503

    if not _ledger.store.ping():
        logger.error("Readiness check failed: store unavailable", db_path=str(_db_path))
        return (
            jsonify({"status": "not_ready", "reason": "store_unavailable", "db_path": str(_db_path)}),
            503,
        )

    document_count = _ledger.store.count()
    logger.debug("Readiness check passed", document_count=document_count)
    return jsonify({"status": "ready", "database": "accessible", "document_count": document_count}), 200


@app.route("/health/attention", methods=["GET"])
def attention() -> tuple[Any, int]:
    """Records awaiting staff follow-up"""
    if _ledger is None:
        return jsonify({"status": "not_ready", "reason": "ledger_not_initialized"}), 503
    try:
        return jsonify(_ledger.attention()), 200
    except CampusLedgerError as e:
        logger.error("Attention query failed", error=str(e))
        return jsonify({"status": "unavailable", "error": str(e)}), 503


@app.route("/health", methods=["GET"])
def detailed_health() -> tuple[Any, int]:
    """
    Detailed health check - store figures plus budget utilization.

    Returns:
        JSON response with detailed health information
    """
    health_data: dict[str, Any] = {
        "status": "healthy",
        "service": "campus-ledger",
        "version": __version__,
    }

    if _ledger is None:
        health_data["database"] = {"status": "not_initialized"}
        health_data["status"] = "degraded"
        return jsonify(health_data), 503

    try:
        summary = _ledger.health()
        health_data["database"] = {
            "status": "healthy" if summary["store"] == "ok" else "unhealthy",
            "path": str(_db_path),
            "document_count": summary["documents"],
        }
        budgets = summary["budgets"]
        health_data["budgets"] = {
            "accounts": budgets["accounts"],
            "utilization": round(budgets["utilization"], 3),
            "over_budget": budgets["over_budget"],
            "high_utilization": budgets["high_utilization"],
        }
        health_data["attention_total"] = _ledger.attention()["total"]
        if summary["store"] != "ok":
            health_data["status"] = "degraded"
    except CampusLedgerError as e:
        logger.error("Database health check failed", error=str(e))
        health_data["database"] = {"status": "unhealthy", "error": str(e)}
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


if __name__ == "__main__":
    initialize_health_server("campus-ledger.db")
    run_health_server(port=8080, debug=True)
