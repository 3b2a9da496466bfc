"""Request body parsing helpers for Flask API."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from flask import request


def _json_body() -> dict[str, Any]:
    """Return the JSON object body, or an empty dict when the body is empty.

    Raises:
        ValueError: If the body is present but not a JSON object
    """
    if not request.get_data(cache=True):
        return {}
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValueError("Request body must be a JSON object")
    return payload


def _inputs_from_payload(payload: Mapping[str, Any]) -> dict[str, Any]:
    """Extract the ``inputs`` object from a request payload.

    Raises:
        ValueError: If ``inputs`` is present but not an object
    """
    inputs = payload.get("inputs")
    if inputs is None:
        return {}
    if not isinstance(inputs, Mapping):
        raise ValueError("'inputs' must be a JSON object")
    return dict(inputs)
