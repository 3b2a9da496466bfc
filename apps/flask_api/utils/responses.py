"""Response helpers for Flask API.

Provides standardized HTTP response formatting for consistent API responses.
"""

from __future__ import annotations

import traceback
from typing import Any

from flask import jsonify

# Configuration - set by create_app()
_API_DEBUG_ERRORS: bool = False


def set_debug_mode(enabled: bool) -> None:
    """Set debug mode for error responses."""
    global _API_DEBUG_ERRORS
    _API_DEBUG_ERRORS = bool(enabled)


def _ok(data: dict[str, Any] | None = None, *, status: int = 200) -> Any:
    """Create a successful JSON response.

    Args:
        data: Optional dictionary to include in the response
        status: HTTP status code (default 200)

    Returns:
        Flask response tuple (json, status)
    """
    payload: dict[str, Any] = {"ok": True}
    if data:
        payload.update(data)
    return jsonify(payload), status


def _err(
    code: str,
    message: str,
    *,
    status: int,
    extra: dict[str, Any] | None = None,
) -> Any:
    """Create an error JSON response.

    Args:
        code: Error code (e.g., 'bad_request', 'not_found')
        message: Human-readable error message
        status: HTTP status code
        extra: Optional additional data to include

    Returns:
        Flask response tuple (json, status)
    """
    payload: dict[str, Any] = {"ok": False, "error": code, "message": message}
    if extra:
        payload.update(extra)
    return jsonify(payload), status


def _internal_error(exc: Exception) -> Any:
    """Generic 500 response; detail and traceback only in debug mode."""
    extra = None
    if _API_DEBUG_ERRORS:
        extra = {"detail": str(exc), "traceback": traceback.format_exc()}
    return _err("internal_error", "internal error", status=500, extra=extra)
