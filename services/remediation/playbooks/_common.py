"""Shared helpers for built-in playbook step executors."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from botocore.exceptions import ClientError  # type: ignore[import-untyped]

from contracts.canonical import canonical_hash, canonical_json
from contracts.remediation import StepContext, StepResult, step_output_key

_ENV_ALIASES = {
    "prod": "prod",
    "production": "prod",
    "stage": "stage",
    "staging": "stage",
    "dev": "dev",
    "development": "dev",
}


def normalize_environment(value: Any) -> str:
    """Map an environment alias to its canonical name (prod/stage/dev)."""
    text = str(value or "").strip().lower()
    env = _ENV_ALIASES.get(text)
    if env is None:
        raise ValueError(f"unknown environment {value!r}")
    return env


def require_service(ctx: StepContext, name: str) -> tuple[Any | None, StepResult | None]:
    """Resolve an injected client or return a deterministic error result."""
    client = ctx.services.get(name)
    if client is None:
        return None, StepResult.fail(
            "SERVICE_UNAVAILABLE",
            f"{name} client is required in StepContext.services['{name}']",
        )
    return client, None


def step_output(ctx: StepContext, step_id: str) -> Mapping[str, Any] | None:
    """Return the chained output of an earlier step, if present."""
    value = ctx.inputs.get(step_output_key(step_id))
    return value if isinstance(value, Mapping) else None


def ref_value(ctx: StepContext, kinds: tuple[str, ...], *names: str) -> Any:
    """First non-empty ``ref`` field of matching evidence, else the same-named input."""
    evidence = ctx.find_evidence(*kinds)
    ref = evidence.ref if evidence is not None else {}
    for name in names:
        value = ref.get(name)
        if value not in (None, ""):
            return value
    for name in names:
        value = ctx.inputs.get(name)
        if value not in (None, ""):
            return value
    return None


def details(**values: Any) -> str:
    return canonical_json(values)


def params_hash(**values: Any) -> str:
    return canonical_hash(values)


def client_error_result(exc: ClientError, operation: str) -> StepResult:
    """Map a botocore ClientError to a structured step failure."""
    error = exc.response.get("Error") or {}
    code = str(error.get("Code") or "unknown_error")
    message = str(error.get("Message") or exc)
    return StepResult.fail(
        "AWS_" + code.upper().replace(".", "_"),
        f"{operation} failed: {message}",
        details(operation=operation, awsErrorCode=code),
    )
