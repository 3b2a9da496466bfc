"""flask_app.py

HTTP API for the remediation engine.

Postgres is the source of truth for incidents, lawbooks and runs; the API only
triggers playbooks and reads their results.

Env
---
- DB_URL (required by the default executor)
- API_BEARER_TOKEN (optional; when set, /api/* requires ``Authorization: Bearer``)
- API_DEBUG_ERRORS=1 adds exception detail to 500 responses

Run
---
flask --app apps.flask_api.flask_app:create_app run --host=0.0.0.0 --port=5000
"""

from __future__ import annotations

import hmac
import logging
import threading
import time
from pathlib import Path
from typing import Any

from flask import Flask, Response, abort, request

from apps.flask_api.blueprints import health_bp, remediations_bp
from apps.flask_api.blueprints.remediations import EXECUTOR_EXTENSION
from apps.flask_api.utils import _err, _internal_error, set_debug_mode
from infra.config import Settings, get_settings
from infra.logging_config import clear_request_context, set_request_context
from services.remediation.executor import RemediationExecutor

logger = logging.getLogger(__name__)

# Paths that never require auth or the schema gate.
_PUBLIC_API_PATHS = frozenset({"/api/health/db"})


def _schema_migrations_dir() -> Path:
    """Return the repository-local migrations directory used by schema gate."""
    return Path(__file__).resolve().parents[2] / "migrations"


class _SchemaGate:
    """Run the DB schema check once per process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._checked = False

    def ensure(self) -> None:
        if self._checked:
            return
        with self._lock:
            if self._checked:
                return
            from apps.backend.db_migrate import ensure_schema_current

            ensure_schema_current(migrations_dir=_schema_migrations_dir())
            self._checked = True


def create_app(
    settings: Settings | None = None,
    *,
    executor: RemediationExecutor | None = None,
    check_schema: bool | None = None,
) -> Flask:
    """Build the Flask app.

    ``executor`` defaults to the Postgres-backed executor from
    ``apps.backend.remediation_engine``; the DB schema gate is on by default
    only in that case.
    """
    settings = settings or get_settings()
    if executor is None:
        from apps.backend.remediation_engine import build_executor

        executor = build_executor(settings)
        check_schema = True if check_schema is None else check_schema

    app = Flask(__name__)
    app.config["API_VERSION"] = settings.api.version
    app.extensions[EXECUTOR_EXTENSION] = executor
    set_debug_mode(settings.api.debug_errors)

    bearer_token = settings.api.bearer_token.strip()
    schema_gate = _SchemaGate() if check_schema else None

    @app.before_request
    def _start_request() -> None:
        clear_request_context()
        request.environ["_remediation_t0"] = time.monotonic()
        set_request_context(method=request.method, path=request.path)

    @app.before_request
    def _enforce_api_auth() -> None:
        """Require ``Authorization: Bearer`` on /api/* when a token is configured."""
        path = request.path or ""
        if not bearer_token or not path.startswith("/api/") or path in _PUBLIC_API_PATHS:
            return
        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer "):
            abort(401)
        token = auth[len("Bearer ") :].strip()
        if not hmac.compare_digest(token, bearer_token):
            abort(403)

    @app.before_request
    def _enforce_schema_gate() -> Any:
        """Return 503 if the DB schema is behind local code migrations."""
        path = request.path or ""
        if schema_gate is None or not path.startswith("/api/") or path in _PUBLIC_API_PATHS:
            return None
        try:
            schema_gate.ensure()
        except RuntimeError as exc:
            logger.error("schema_gate_failed", extra={"detail": str(exc)})
            return _err("schema_mismatch", str(exc), status=503)
        return None

    @app.after_request
    def _log_request(resp: Response) -> Response:
        t0 = float(request.environ.get("_remediation_t0") or 0.0)
        ms = int(max(0.0, (time.monotonic() - t0) * 1000.0)) if t0 else None
        logger.info("http_request", extra={"status": int(resp.status_code or 0), "duration_ms": ms})
        if (request.path or "").startswith("/api/"):
            resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
        return resp

    @app.errorhandler(401)
    def _err_401(_: Exception) -> Any:
        return _err("unauthorized", "missing bearer token", status=401)

    @app.errorhandler(403)
    def _err_403(_: Exception) -> Any:
        return _err("forbidden", "invalid bearer token", status=403)

    @app.errorhandler(404)
    def _err_404(_: Exception) -> Any:
        return _err("not_found", "not found", status=404)

    @app.errorhandler(500)
    def _err_500(exc: Exception) -> Any:
        logger.error("unhandled_exception", extra={"detail": str(exc)})
        return _internal_error(exc)

    app.register_blueprint(health_bp)
    app.register_blueprint(remediations_bp)
    return app


if __name__ == "__main__":
    from infra.logging_config import setup_logging

    setup_logging()
    _settings = get_settings()
    create_app(_settings).run(host=_settings.api.host, port=_settings.api.port)
