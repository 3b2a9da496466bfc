"""In-memory collaborators for tests and local runs.

``InMemoryIncidentProvider`` holds incidents and evidence (and implements the
incident writer used by ``rerun-post-deploy-verification``).
``InMemoryRemediationStore`` mirrors the Postgres store: upsert-by-run_key is
atomic under a lock, and the first writer for a key wins.
"""

from __future__ import annotations

import itertools
import threading
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any

from contracts.remediation import (
    Evidence,
    Incident,
    RemediationRun,
    RemediationRunInput,
    RemediationStep,
    RemediationStepInput,
)

_RUN_PATCH_FIELDS = frozenset({"planned_json", "result_json"})
_STEP_PATCH_FIELDS = frozenset({"output_json", "error_json", "started_at", "finished_at"})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_patch(patch: Mapping[str, Any], allowed: frozenset[str], kind: str) -> dict[str, Any]:
    unknown = sorted(set(patch) - allowed)
    if unknown:
        raise ValueError(f"unsupported {kind} patch fields: {', '.join(unknown)}")
    return dict(patch)


class InMemoryIncidentProvider:
    """Incidents and evidence kept in dicts."""

    def __init__(
        self,
        incidents: Iterable[Incident] = (),
        evidence: Mapping[str, Sequence[Evidence]] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._incidents: dict[str, Incident] = {i.id: i for i in incidents}
        self._evidence: dict[str, list[Evidence]] = {k: list(v) for k, v in (evidence or {}).items()}

    def add_incident(self, incident: Incident, evidence: Sequence[Evidence] = ()) -> None:
        with self._lock:
            self._incidents[incident.id] = incident
            self._evidence.setdefault(incident.id, []).extend(evidence)

    def get_incident(self, incident_id: str) -> Incident | None:
        with self._lock:
            return self._incidents.get(incident_id)

    def get_evidence(self, incident_id: str) -> list[Evidence]:
        with self._lock:
            return list(self._evidence.get(incident_id, ()))

    def update_incident_status(self, incident_id: str, status: str) -> None:
        with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None:
                raise KeyError(incident_id)
            self._incidents[incident_id] = replace(incident, status=status)

    def add_evidence(self, incident_id: str, evidence: Sequence[Evidence]) -> None:
        with self._lock:
            self._evidence.setdefault(incident_id, []).extend(evidence)


class InMemoryRemediationStore:
    """Thread-safe run/step store keyed by run_key."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._seq = itertools.count()
        self._runs: dict[str, RemediationRun] = {}
        self._run_ids_by_key: dict[str, str] = {}
        self._run_order: dict[str, int] = {}
        self._steps: dict[str, RemediationStep] = {}
        self._step_ids_by_run: dict[str, list[str]] = {}

    def upsert_run_by_key(self, run_input: RemediationRunInput) -> RemediationRun:
        with self._lock:
            existing_id = self._run_ids_by_key.get(run_input.run_key)
            if existing_id is not None:
                return self._runs[existing_id]
            now = _utcnow()
            run = RemediationRun(
                id=run_input.run_id or str(uuid.uuid4()),
                run_key=run_input.run_key,
                incident_id=run_input.incident_id,
                playbook_id=run_input.playbook_id,
                playbook_version=run_input.playbook_version,
                status=run_input.status,
                lawbook_version=run_input.lawbook_version,
                inputs_hash=run_input.inputs_hash,
                planned_json=run_input.planned_json,
                result_json=run_input.result_json,
                created_at=now,
                updated_at=now,
            )
            self._runs[run.id] = run
            self._run_ids_by_key[run.run_key] = run.id
            self._run_order[run.id] = next(self._seq)
            return run

    def get_run_by_key(self, run_key: str) -> RemediationRun | None:
        with self._lock:
            run_id = self._run_ids_by_key.get(run_key)
            return self._runs.get(run_id) if run_id is not None else None

    def get_run(self, run_id: str) -> RemediationRun | None:
        with self._lock:
            return self._runs.get(run_id)

    def create_step(self, step_input: RemediationStepInput) -> RemediationStep:
        with self._lock:
            if step_input.remediation_run_id not in self._runs:
                raise KeyError(step_input.remediation_run_id)
            step = RemediationStep(
                id=str(uuid.uuid4()),
                remediation_run_id=step_input.remediation_run_id,
                step_id=step_input.step_id,
                action_type=step_input.action_type,
                status=step_input.status,
                idempotency_key=step_input.idempotency_key,
                input_json=step_input.input_json,
            )
            self._steps[step.id] = step
            self._step_ids_by_run.setdefault(step.remediation_run_id, []).append(step.id)
            return step

    def update_step_status(
        self,
        step_row_id: str,
        status: str,
        patch: Mapping[str, Any] | None = None,
    ) -> RemediationStep:
        changes = _check_patch(patch or {}, _STEP_PATCH_FIELDS, "step")
        with self._lock:
            step = replace(self._steps[step_row_id], status=status, **changes)
            self._steps[step_row_id] = step
            return step

    def update_run_status(
        self,
        run_id: str,
        status: str,
        patch: Mapping[str, Any] | None = None,
    ) -> RemediationRun:
        changes = _check_patch(patch or {}, _RUN_PATCH_FIELDS, "run")
        with self._lock:
            run = replace(self._runs[run_id], status=status, updated_at=_utcnow(), **changes)
            self._runs[run_id] = run
            return run

    def get_steps_for_run(self, run_id: str) -> list[RemediationStep]:
        with self._lock:
            return [self._steps[i] for i in self._step_ids_by_run.get(run_id, ())]

    def list_runs_for_incident(self, incident_id: str) -> list[RemediationRun]:
        with self._lock:
            runs = [r for r in self._runs.values() if r.incident_id == incident_id]
            return sorted(runs, key=lambda r: self._run_order[r.id], reverse=True)
