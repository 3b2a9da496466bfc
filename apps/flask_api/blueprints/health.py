"""Health and metadata endpoints Blueprint."""

from __future__ import annotations

from typing import Any

from flask import Blueprint, current_app, jsonify

from apps.backend.db import db_conn, fetch_one_dict_conn
from apps.flask_api.utils import _ok
from version import ENGINE_NAME, ENGINE_VERSION, SCHEMA_VERSION

health_bp = Blueprint("health", __name__)


@health_bp.route("/health", methods=["GET"])
def health() -> Any:
    """Basic health check endpoint."""
    return jsonify({"ok": True})


@health_bp.route("/api/health/db", methods=["GET"])
def api_health_db() -> Any:
    """Database health check endpoint."""
    with db_conn() as conn:
        row = fetch_one_dict_conn(conn, "SELECT 1 AS ok")
    return _ok({"db": bool(row and row.get("ok") == 1)})


@health_bp.route("/api/version", methods=["GET"])
def api_version() -> Any:
    """Engine and API version metadata."""
    return _ok(
        {
            "engine": ENGINE_NAME,
            "engineVersion": ENGINE_VERSION,
            "schemaVersion": SCHEMA_VERSION,
            "apiVersion": current_app.config.get("API_VERSION", "v1"),
        }
    )
