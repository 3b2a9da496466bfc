"""Data contracts for remediation playbooks, runs, steps and audit events.

Playbook definitions are pydantic models because they are loaded from and
rendered to JSON documents; everything produced at run time (verdicts, plans,
run/step rows, step context/results) is a frozen dataclass.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from contracts.canonical import canonical_hash, to_jsonable

# -----------------------------------------------------------------------------
# Vocabularies
# -----------------------------------------------------------------------------

RUN_STATUS_PLANNED = "PLANNED"
RUN_STATUS_RUNNING = "RUNNING"
RUN_STATUS_SUCCEEDED = "SUCCEEDED"
RUN_STATUS_FAILED = "FAILED"
RUN_STATUS_SKIPPED = "SKIPPED"

RUN_STATUSES = (
    RUN_STATUS_PLANNED,
    RUN_STATUS_RUNNING,
    RUN_STATUS_SUCCEEDED,
    RUN_STATUS_FAILED,
    RUN_STATUS_SKIPPED,
)
TERMINAL_RUN_STATUSES = frozenset({RUN_STATUS_SUCCEEDED, RUN_STATUS_FAILED, RUN_STATUS_SKIPPED})

STEP_STATUS_PLANNED = "PLANNED"
STEP_STATUS_RUNNING = "RUNNING"
STEP_STATUS_SUCCEEDED = "SUCCEEDED"
STEP_STATUS_FAILED = "FAILED"

STEP_STATUSES = (
    STEP_STATUS_PLANNED,
    STEP_STATUS_RUNNING,
    STEP_STATUS_SUCCEEDED,
    STEP_STATUS_FAILED,
)

ACTION_RESTART_SERVICE = "RESTART_SERVICE"
ACTION_ROLLBACK_DEPLOY = "ROLLBACK_DEPLOY"
ACTION_SCALE_UP = "SCALE_UP"
ACTION_SCALE_DOWN = "SCALE_DOWN"
ACTION_DRAIN_TASKS = "DRAIN_TASKS"
ACTION_NOTIFY_SLACK = "NOTIFY_SLACK"
ACTION_CREATE_ISSUE = "CREATE_ISSUE"
ACTION_RUN_VERIFICATION = "RUN_VERIFICATION"

ACTION_TYPES = (
    ACTION_RESTART_SERVICE,
    ACTION_ROLLBACK_DEPLOY,
    ACTION_SCALE_UP,
    ACTION_SCALE_DOWN,
    ACTION_DRAIN_TASKS,
    ACTION_NOTIFY_SLACK,
    ACTION_CREATE_ISSUE,
    ACTION_RUN_VERIFICATION,
)

AUDIT_PLANNED = "PLANNED"
AUDIT_STEP_STARTED = "STEP_STARTED"
AUDIT_STEP_FINISHED = "STEP_FINISHED"
AUDIT_STATUS_UPDATED = "STATUS_UPDATED"
AUDIT_COMPLETED = "COMPLETED"
AUDIT_FAILED = "FAILED"

AUDIT_EVENT_TYPES = (
    AUDIT_PLANNED,
    AUDIT_STEP_STARTED,
    AUDIT_STEP_FINISHED,
    AUDIT_STATUS_UPDATED,
    AUDIT_COMPLETED,
    AUDIT_FAILED,
)

SKIP_LAWBOOK_DENIED = "LAWBOOK_DENIED"
SKIP_EVIDENCE_MISSING = "EVIDENCE_MISSING"

ERROR_EXECUTION = "EXECUTION_ERROR"

NO_LAWBOOK_VERSION = "NONE"

_SEMVER_RE = re.compile(r"^\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.-]+)?$")


# -----------------------------------------------------------------------------
# Incident / evidence (owned elsewhere, consumed here)
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class Incident:
    """Incident as seen by the remediation engine."""

    id: str
    incident_key: str
    category: str | None = None
    severity: str = ""
    status: str = ""


@dataclass(frozen=True)
class Evidence:
    """One piece of evidence attached to an incident."""

    kind: str
    ref: Mapping[str, Any] = field(default_factory=dict)
    sha256: str | None = None

    def as_dict(self) -> dict[str, Any]:
        """Return a plain mapping used for field-path lookups and step context."""
        return {"kind": self.kind, "ref": dict(self.ref), "sha256": self.sha256}


# -----------------------------------------------------------------------------
# Playbook definitions
# -----------------------------------------------------------------------------


class EvidencePredicate(BaseModel):
    """Requirement that evidence of ``kind`` with populated fields exists."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    kind: str = Field(min_length=1)
    required_fields: tuple[str, ...] = Field(default=(), alias="requiredFields")


class StepDefinition(BaseModel):
    """One step of a playbook."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    step_id: str = Field(min_length=1, alias="stepId")
    action_type: str = Field(alias="actionType")
    description: str = ""

    @field_validator("action_type")
    @classmethod
    def _known_action_type(cls, value: str) -> str:
        if value not in ACTION_TYPES:
            raise ValueError(f"unknown action type {value!r}; expected one of: {', '.join(ACTION_TYPES)}")
        return value


class PlaybookDefinition(BaseModel):
    """Immutable, versioned remediation playbook definition."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    version: str
    title: str = ""
    applicable_categories: tuple[str, ...] = Field(default=(), alias="applicableCategories")
    required_evidence: tuple[EvidencePredicate, ...] = Field(default=(), alias="requiredEvidence")
    steps: tuple[StepDefinition, ...] = Field(min_length=1)

    @field_validator("version")
    @classmethod
    def _semver(cls, value: str) -> str:
        text = str(value or "").strip()
        if not _SEMVER_RE.match(text):
            raise ValueError(f"version must be semver (MAJOR.MINOR.PATCH), got {value!r}")
        return text

    @model_validator(mode="after")
    def _unique_step_ids(self) -> PlaybookDefinition:
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                raise ValueError(f"duplicate step_id {step.step_id!r}")
            seen.add(step.step_id)
        return self

    def step(self, step_id: str) -> StepDefinition | None:
        """Return the step definition for ``step_id`` (or None)."""
        for step in self.steps:
            if step.step_id == step_id:
                return step
        return None

    def action_types(self) -> tuple[str, ...]:
        """Return action types used by this playbook in step order."""
        return tuple(step.action_type for step in self.steps)


class PlaybookValidation(NamedTuple):
    """Result of validating a raw playbook document."""

    ok: bool
    definition: PlaybookDefinition | None = None
    error: str = ""


def validate_playbook_definition(data: Any) -> PlaybookValidation:
    """Validate a raw mapping as a :class:`PlaybookDefinition`."""
    try:
        return PlaybookValidation(ok=True, definition=PlaybookDefinition.model_validate(data))
    except ValidationError as exc:
        return PlaybookValidation(ok=False, error=str(exc))


# -----------------------------------------------------------------------------
# Gate verdicts
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class GateReason:
    """One reason attached to a gate verdict."""

    code: str
    message: str
    severity: str
    rule_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message, "severity": self.severity}
        if self.rule_id is not None:
            out["ruleId"] = self.rule_id
        return out


@dataclass(frozen=True)
class GateVerdict:
    """Deterministic ALLOW/DENY/HOLD decision with its reasons."""

    verdict: str
    reasons: tuple[GateReason, ...]
    lawbook_version: str | None
    inputs_hash: str
    generated_at: str

    @property
    def allowed(self) -> bool:
        return self.verdict == "ALLOW"

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict,
            "reasons": [r.to_dict() for r in self.reasons],
            "lawbookVersion": self.lawbook_version,
            "inputsHash": self.inputs_hash,
            "generatedAt": self.generated_at,
        }


# -----------------------------------------------------------------------------
# Planning
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PlannedStep:
    """A step with its deterministically resolved inputs."""

    step_id: str
    action_type: str
    resolved_inputs: Mapping[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "actionType": self.action_type,
            "resolvedInputs": to_jsonable(dict(self.resolved_inputs)),
        }


@dataclass(frozen=True)
class PlannedRun:
    """Deterministic plan for one execution attempt."""

    playbook_id: str
    playbook_version: str
    steps: tuple[PlannedStep, ...]
    lawbook_version: str
    inputs_hash: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "playbookId": self.playbook_id,
            "playbookVersion": self.playbook_version,
            "steps": [s.to_dict() for s in self.steps],
            "lawbookVersion": self.lawbook_version,
            "inputsHash": self.inputs_hash,
        }


# -----------------------------------------------------------------------------
# Persistence rows
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class RemediationRunInput:
    """Fields supplied when upserting a run by key."""

    run_key: str
    incident_id: str
    playbook_id: str
    playbook_version: str
    status: str
    lawbook_version: str
    inputs_hash: str
    planned_json: Mapping[str, Any] | None = None
    result_json: Mapping[str, Any] | None = None
    run_id: str | None = None


@dataclass(frozen=True)
class RemediationRun:
    """Persisted remediation run."""

    id: str
    run_key: str
    incident_id: str
    playbook_id: str
    playbook_version: str
    status: str
    lawbook_version: str
    inputs_hash: str
    planned_json: Mapping[str, Any] | None = None
    result_json: Mapping[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(
            {
                "id": self.id,
                "run_key": self.run_key,
                "incident_id": self.incident_id,
                "playbook_id": self.playbook_id,
                "playbook_version": self.playbook_version,
                "status": self.status,
                "lawbook_version": self.lawbook_version,
                "inputs_hash": self.inputs_hash,
                "planned_json": self.planned_json,
                "result_json": self.result_json,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            }
        )


@dataclass(frozen=True)
class RemediationStepInput:
    """Fields supplied when creating a step row."""

    remediation_run_id: str
    step_id: str
    action_type: str
    idempotency_key: str
    input_json: Mapping[str, Any]
    status: str = STEP_STATUS_PLANNED


@dataclass(frozen=True)
class RemediationStep:
    """Persisted remediation step."""

    id: str
    remediation_run_id: str
    step_id: str
    action_type: str
    status: str
    idempotency_key: str | None = None
    input_json: Mapping[str, Any] | None = None
    output_json: Mapping[str, Any] | None = None
    error_json: Mapping[str, Any] | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return to_jsonable(
            {
                "id": self.id,
                "remediation_run_id": self.remediation_run_id,
                "step_id": self.step_id,
                "action_type": self.action_type,
                "status": self.status,
                "idempotency_key": self.idempotency_key,
                "input_json": self.input_json,
                "output_json": self.output_json,
                "error_json": self.error_json,
                "started_at": self.started_at,
                "finished_at": self.finished_at,
            }
        )


@dataclass(frozen=True)
class AuditEventInput:
    """Append-only audit event for one run transition."""

    remediation_run_id: str
    incident_id: str
    event_type: str
    lawbook_version: str
    payload_json: Mapping[str, Any]
    payload_hash: str


# -----------------------------------------------------------------------------
# Step execution contract
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class StepError:
    """Structured step failure."""

    code: str
    message: str
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            out["details"] = self.details
        return out


@dataclass(frozen=True)
class StepResult:
    """Outcome returned by a step executor."""

    success: bool
    output: Mapping[str, Any] | None = None
    error: StepError | None = None

    @classmethod
    def ok(cls, output: Mapping[str, Any] | None = None) -> StepResult:
        return cls(success=True, output=output)

    @classmethod
    def fail(
        cls,
        code: str,
        message: str,
        details: str | None = None,
        output: Mapping[str, Any] | None = None,
    ) -> StepResult:
        return cls(success=False, output=output, error=StepError(code=code, message=message, details=details))


@dataclass(frozen=True)
class StepContext:
    """Runtime context handed to a step executor."""

    incident_id: str
    incident_key: str
    run_id: str
    lawbook_version: str
    evidence: tuple[Evidence, ...]
    inputs: Mapping[str, Any]
    services: Mapping[str, Any] = field(default_factory=dict)

    def find_evidence(self, *kinds: str) -> Evidence | None:
        """Return the first evidence item whose kind is one of ``kinds``."""
        for item in self.evidence:
            if item.kind in kinds:
                return item
        return None


StepExecutor = Callable[[StepContext], StepResult]
IdempotencyKeyFn = Callable[[StepContext], str]


# -----------------------------------------------------------------------------
# Entry point request/response
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutePlaybookRequest:
    """Request to execute one playbook against one incident."""

    incident_id: str
    inputs: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutePlaybookResponse:
    """Structured result of :meth:`RemediationExecutor.execute_playbook`."""

    run_id: str
    status: str
    skip_reason: str | None = None
    message: str | None = None
    planned: PlannedRun | None = None
    steps: tuple[RemediationStep, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"runId": self.run_id, "status": self.status}
        if self.skip_reason is not None:
            out["skipReason"] = self.skip_reason
        if self.message is not None:
            out["message"] = self.message
        if self.planned is not None:
            out["planned"] = self.planned.to_dict()
        if self.steps is not None:
            out["steps"] = [s.to_dict() for s in self.steps]
        return out


# -----------------------------------------------------------------------------
# Keys
# -----------------------------------------------------------------------------


def compute_inputs_hash(inputs: Mapping[str, Any] | None) -> str:
    """SHA-256 of the canonical JSON of caller inputs."""
    return canonical_hash(dict(inputs or {}))


def compute_run_key(incident_key: str, playbook_id: str, inputs_hash: str) -> str:
    """Build the run-level idempotency key ``<incident_key>:<playbook_id>:<inputs_hash>``."""
    return f"{incident_key}:{playbook_id}:{inputs_hash}"


def compute_payload_hash(payload: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON of an audit payload."""
    return canonical_hash(dict(payload))


def step_output_key(step_id: str) -> str:
    """Name under which a step's output is chained into later step inputs."""
    return f"{step_id}StepOutput"
