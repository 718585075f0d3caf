# backend/rentflow/routes/system.py
"""
System health endpoint.

Reports database connectivity and whether a payment processor is
configured, with per-check latency.
"""

import time

from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from rentflow.time_utils import to_utc_z, utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_processor_config() -> dict:
    processor = current_app.extensions.get("payment_processor")
    if processor is None:
        return {"status": "unhealthy", "error": "No payment processor configured"}
    return {"status": "healthy", "processor": type(processor).__name__}


@system_bp.get("/health")
def health():
    """
    Returns:
        200: All checks healthy
        503: At least one check unhealthy
    """
    checks = {
        "database": check_database_health(),
        "processor": check_processor_config(),
    }
    healthy = all(check["status"] == "healthy" for check in checks.values())
    return jsonify({
        "status": "healthy" if healthy else "unhealthy",
        "timestamp": to_utc_z(utcnow()),
        "checks": checks,
    }), 200 if healthy else 503
