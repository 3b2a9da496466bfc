"""Remediations Blueprint.

Provides remediation playbook endpoints:
- list / show playbooks
- execute a playbook against an incident
- preview the guardrail gates for an incident + playbook
- read runs (by id, by incident)

Status mapping for execution: SUCCEEDED and SKIPPED are 200, FAILED is 422
(with step detail), unknown incident or playbook is 404, and any other
remediation error (configuration) is 500.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from flask import Blueprint, current_app

from apps.flask_api.utils import _err, _inputs_from_payload, _internal_error, _json_body, _ok
from contracts.remediation import (
    RUN_STATUS_FAILED,
    RUN_STATUS_SKIPPED,
    ExecutePlaybookRequest,
    PlaybookDefinition,
)
from services.remediation.errors import IncidentNotFoundError, PlaybookNotFoundError, RemediationError
from services.remediation.evidence import check_evidence_predicates
from services.remediation.executor import PLAYBOOK_RESTRICTED_ACTIONS, RemediationExecutor
from services.remediation.gates import (
    ActionGateParams,
    PlaybookGateParams,
    gate_action_allowed,
    gate_playbook_allowed,
)

logger = logging.getLogger(__name__)

remediations_bp = Blueprint("remediations", __name__)

EXECUTOR_EXTENSION = "remediation_executor"


class _RequestError(ValueError):
    """Structured API error for remediation endpoints."""

    def __init__(self, *, code: str, message: str, status: int) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status = status


def _executor() -> RemediationExecutor:
    executor = current_app.extensions.get(EXECUTOR_EXTENSION)
    if executor is None:
        raise RuntimeError("remediation executor is not configured")
    return executor


def _playbook(executor: RemediationExecutor, playbook_id: str) -> PlaybookDefinition:
    registry = executor.registry
    entry = registry.get(playbook_id) if registry is not None else None
    if entry is None:
        raise _RequestError(code="not_found", message=f"Playbook not found: {playbook_id}", status=404)
    return entry.definition


def _serialize_playbook(definition: PlaybookDefinition) -> dict[str, Any]:
    return definition.model_dump(mode="json", by_alias=True)


def _execution_status(status: str) -> int:
    return 422 if status == RUN_STATUS_FAILED else 200


def _gate_preview(
    executor: RemediationExecutor,
    incident_id: str,
    playbook: PlaybookDefinition,
    *,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Evaluate every gate the executor would apply, plus run-count/cooldown limits."""
    incident = executor.incidents.get_incident(incident_id)
    if incident is None:
        raise _RequestError(code="not_found", message=f"Incident not found: {incident_id}", status=404)
    evidence = list(executor.incidents.get_evidence(incident_id))
    lawbook = executor.load_policy()

    prior_runs = [
        r
        for r in executor.store.list_runs_for_incident(incident_id)
        if r.playbook_id == playbook.id and r.status != RUN_STATUS_SKIPPED
    ]
    last_run_at = prior_runs[0].created_at if prior_runs else None

    playbook_verdict = gate_playbook_allowed(
        PlaybookGateParams(
            playbook_id=playbook.id,
            incident_category=incident.category,
            evidence_kinds=[e.kind for e in evidence],
            current_run_count=len(prior_runs),
            last_run_timestamp=last_run_at,
        ),
        lawbook,
        now=now,
    )
    actions = []
    for step in playbook.steps:
        owner = PLAYBOOK_RESTRICTED_ACTIONS.get(step.action_type)
        verdict = gate_action_allowed(ActionGateParams(action_type=step.action_type), lawbook, now=now)
        actions.append(
            {
                "stepId": step.step_id,
                "actionType": step.action_type,
                "restrictedTo": owner,
                "allowed": verdict.allowed and (owner is None or owner == playbook.id),
                "verdict": verdict.to_dict(),
            }
        )
    check = check_evidence_predicates(playbook.required_evidence, evidence)
    return {
        "incidentId": incident_id,
        "playbookId": playbook.id,
        "lawbookVersion": lawbook.lawbook_version if lawbook is not None else None,
        "playbook": playbook_verdict.to_dict(),
        "actions": actions,
        "evidence": {
            "satisfied": check.satisfied,
            "missing": [p.model_dump(mode="json", by_alias=True) for p in check.missing],
        },
        "runCount": len(prior_runs),
        "lastRunAt": last_run_at.isoformat() if last_run_at is not None else None,
        "allowed": playbook_verdict.allowed and check.satisfied and all(a["allowed"] for a in actions),
    }


@remediations_bp.route("/api/v1/playbooks", methods=["GET"])
def api_list_playbooks() -> Any:
    executor = _executor()
    registry = executor.registry
    definitions = registry.definitions() if registry is not None else []
    return _ok({"items": [_serialize_playbook(d) for d in definitions]})


@remediations_bp.route("/api/v1/playbooks/<playbook_id>", methods=["GET"])
def api_get_playbook(playbook_id: str) -> Any:
    try:
        definition = _playbook(_executor(), playbook_id)
    except _RequestError as exc:
        return _err(exc.code, exc.message, status=exc.status)
    return _ok({"playbook": _serialize_playbook(definition)})


@remediations_bp.route("/api/v1/incidents/<incident_id>/remediation/<playbook_id>", methods=["POST"])
def api_execute_playbook(incident_id: str, playbook_id: str) -> Any:
    """Execute a playbook against an incident.

    Body: ``{"inputs": {...}}`` (optional).
    """
    try:
        inputs = _inputs_from_payload(_json_body())
    except ValueError as exc:
        return _err("bad_request", str(exc), status=400)

    executor = _executor()
    try:
        playbook = _playbook(executor, playbook_id)
        response = executor.execute_playbook(
            ExecutePlaybookRequest(incident_id=incident_id, inputs=inputs),
            playbook,
        )
    except _RequestError as exc:
        return _err(exc.code, exc.message, status=exc.status)
    except (IncidentNotFoundError, PlaybookNotFoundError) as exc:
        return _err("not_found", str(exc), status=404)
    except RemediationError as exc:
        logger.error(
            "Remediation configuration error",
            extra={"incident_id": incident_id, "playbook_id": playbook_id, "error": str(exc)},
        )
        return _err("remediation_error", str(exc), status=500, extra={"errorType": type(exc).__name__})
    except Exception as exc:
        logger.exception("Remediation execution crashed", extra={"incident_id": incident_id})
        return _internal_error(exc)

    status = _execution_status(response.status)
    data = {"result": response.to_dict()}
    if status == 200:
        return _ok(data, status=status)
    return _err("remediation_failed", "Remediation run failed", status=status, extra=data)


@remediations_bp.route("/api/v1/incidents/<incident_id>/remediation/<playbook_id>/gate", methods=["GET"])
def api_gate_preview(incident_id: str, playbook_id: str) -> Any:
    executor = _executor()
    try:
        playbook = _playbook(executor, playbook_id)
        preview = _gate_preview(executor, incident_id, playbook)
    except _RequestError as exc:
        return _err(exc.code, exc.message, status=exc.status)
    return _ok({"preview": preview})


@remediations_bp.route("/api/v1/incidents/<incident_id>/remediation/runs", methods=["GET"])
def api_list_incident_runs(incident_id: str) -> Any:
    runs = _executor().store.list_runs_for_incident(incident_id)
    return _ok({"items": [r.to_dict() for r in runs]})


@remediations_bp.route("/api/v1/remediation/runs/<run_id>", methods=["GET"])
def api_get_run(run_id: str) -> Any:
    store = _executor().store
    run = store.get_run(run_id)
    if run is None:
        return _err("not_found", f"Run not found: {run_id}", status=404)
    return _ok({"run": run.to_dict(), "steps": [s.to_dict() for s in store.get_steps_for_run(run_id)]})
