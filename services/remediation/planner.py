"""Deterministic planning of a remediation run."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from contracts.remediation import (
    Incident,
    PlannedRun,
    PlannedStep,
    PlaybookDefinition,
    compute_inputs_hash,
)


def plan_remediation_run(
    playbook: PlaybookDefinition,
    incident: Incident,
    inputs: Mapping[str, Any] | None,
    lawbook_version: str,
) -> PlannedRun:
    """Turn a playbook + incident + caller inputs into a planned run.

    Pure: no clock, randomness or I/O. ``inputs_hash`` covers caller inputs
    only; each step's resolved inputs additionally carry the incident id/key.
    """
    caller_inputs = dict(inputs or {})
    steps = tuple(
        PlannedStep(
            step_id=step.step_id,
            action_type=step.action_type,
            resolved_inputs={
                **caller_inputs,
                "incidentId": incident.id,
                "incidentKey": incident.incident_key,
            },
        )
        for step in playbook.steps
    )
    return PlannedRun(
        playbook_id=playbook.id,
        playbook_version=playbook.version,
        steps=steps,
        lawbook_version=lawbook_version,
        inputs_hash=compute_inputs_hash(caller_inputs),
    )
