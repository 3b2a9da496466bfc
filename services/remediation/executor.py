"""Remediation playbook execution.

``RemediationExecutor.execute_playbook`` is the single entry point. It gates a
playbook against the active lawbook, checks evidence, plans the run, enforces
run-level idempotency by ``run_key`` and then executes steps strictly in order,
stopping at the first failure. Every transition is persisted through the
injected store and mirrored to the audit sink (best-effort).
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Mapping, Sequence
from datetime import datetime, timezone
from typing import Any

from contracts.canonical import canonical_hash, sanitize_redact
from contracts.interfaces import AuditSink, IncidentProvider, PolicyProvider, RemediationStore
from contracts.policy import PolicyDocument
from contracts.remediation import (
    ACTION_ROLLBACK_DEPLOY,
    AUDIT_COMPLETED,
    AUDIT_FAILED,
    AUDIT_PLANNED,
    AUDIT_STATUS_UPDATED,
    AUDIT_STEP_FINISHED,
    AUDIT_STEP_STARTED,
    ERROR_EXECUTION,
    NO_LAWBOOK_VERSION,
    RUN_STATUS_FAILED,
    RUN_STATUS_PLANNED,
    RUN_STATUS_RUNNING,
    RUN_STATUS_SKIPPED,
    RUN_STATUS_SUCCEEDED,
    SKIP_EVIDENCE_MISSING,
    SKIP_LAWBOOK_DENIED,
    STEP_STATUS_FAILED,
    STEP_STATUS_RUNNING,
    STEP_STATUS_SUCCEEDED,
    Evidence,
    ExecutePlaybookRequest,
    ExecutePlaybookResponse,
    IdempotencyKeyFn,
    Incident,
    PlannedRun,
    PlaybookDefinition,
    RemediationRun,
    RemediationRunInput,
    RemediationStepInput,
    StepContext,
    StepError,
    StepExecutor,
    StepResult,
    compute_inputs_hash,
    compute_run_key,
    step_output_key,
)
from infra.logging_config import request_context
from services.remediation.audit import AuditEmitter
from services.remediation.errors import (
    IncidentNotFoundError,
    InvalidIdempotencyKeyError,
    MissingStepExecutorError,
)
from services.remediation.evidence import check_evidence_predicates
from services.remediation.gates import (
    DEFAULT_KEY_MAX_LENGTH,
    ActionGateParams,
    IdempotencyKeyParams,
    PlaybookGateParams,
    gate_action_allowed,
    gate_idempotency_key_format,
    gate_playbook_allowed,
    primary_reason,
    verdict_message,
)
from services.remediation.planner import plan_remediation_run
from services.remediation.registry import PlaybookRegistry

logger = logging.getLogger(__name__)

IDEMPOTENT_MESSAGE = "Existing run returned (idempotent)"

# Action types restricted to a single playbook, narrower than the lawbook.
PLAYBOOK_RESTRICTED_ACTIONS: Mapping[str, str] = {ACTION_ROLLBACK_DEPLOY: "redeploy-lkg"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_idempotency_key(action_type: str, ctx: StepContext) -> str:
    """``<actionType>:<incidentKey>:<sha256(step inputs)>``."""
    return f"{action_type}:{ctx.incident_key}:{compute_inputs_hash(ctx.inputs)}"


def output_summary(output: Mapping[str, Any] | None) -> dict[str, Any]:
    return {
        "hasOutput": output is not None,
        "outputHash": canonical_hash(dict(output)) if output is not None else None,
    }


class RemediationExecutor:
    """Gate, plan and execute remediation playbooks with idempotency and auditing."""

    def __init__(
        self,
        *,
        incidents: IncidentProvider,
        policies: PolicyProvider,
        store: RemediationStore,
        audit_sink: AuditSink | None = None,
        registry: PlaybookRegistry | None = None,
        services: Mapping[str, Any] | None = None,
        key_max_length: int = DEFAULT_KEY_MAX_LENGTH,
    ) -> None:
        self._incidents = incidents
        self._policies = policies
        self._store = store
        self._audit = AuditEmitter(audit_sink)
        self._registry = registry
        self._services = dict(services or {})
        self._key_max_length = int(key_max_length)

    @property
    def registry(self) -> PlaybookRegistry | None:
        return self._registry

    @property
    def store(self) -> RemediationStore:
        return self._store

    @property
    def incidents(self) -> IncidentProvider:
        return self._incidents

    @property
    def dropped_audit_events(self) -> int:
        """Number of audit events the sink failed to record."""
        return self._audit.dropped_events

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def execute_playbook(
        self,
        request: ExecutePlaybookRequest,
        playbook: PlaybookDefinition,
        step_executors: Mapping[str, StepExecutor] | None = None,
        idempotency_key_fns: Mapping[str, IdempotencyKeyFn] | None = None,
    ) -> ExecutePlaybookResponse:
        """Execute one playbook against one incident.

        Returns SKIPPED for policy/evidence denials, the existing run for a
        repeated (incident, playbook, inputs) triple, else the finished run.

        Raises:
            IncidentNotFoundError: unknown incident id.
            MissingStepExecutorError: a step has no executor bound.
            InvalidIdempotencyKeyError: a run or step key fails validation.
        """
        with request_context(incident_id=request.incident_id, playbook_id=playbook.id):
            return self._execute(request, playbook, step_executors, idempotency_key_fns)

    async def execute_many(
        self,
        requests: Sequence[tuple[ExecutePlaybookRequest, PlaybookDefinition]],
        *,
        max_concurrency: int = 4,
    ) -> list[ExecutePlaybookResponse]:
        """Execute independent (request, playbook) pairs concurrently with stable ordering."""
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        semaphore = asyncio.Semaphore(max_concurrency)

        async def _run_one(request: ExecutePlaybookRequest, playbook: PlaybookDefinition) -> ExecutePlaybookResponse:
            async with semaphore:
                return await asyncio.to_thread(self.execute_playbook, request, playbook)

        tasks = [_run_one(request, playbook) for request, playbook in requests]
        return list(await asyncio.gather(*tasks))

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _execute(
        self,
        request: ExecutePlaybookRequest,
        playbook: PlaybookDefinition,
        step_executors: Mapping[str, StepExecutor] | None,
        idempotency_key_fns: Mapping[str, IdempotencyKeyFn] | None,
    ) -> ExecutePlaybookResponse:
        incident = self._incidents.get_incident(request.incident_id)
        if incident is None:
            raise IncidentNotFoundError(request.incident_id)
        evidence = tuple(self._incidents.get_evidence(request.incident_id))

        lawbook = self.load_policy()
        lawbook_version = lawbook.lawbook_version if lawbook is not None else NO_LAWBOOK_VERSION

        inputs = dict(request.inputs or {})
        inputs_hash = compute_inputs_hash(inputs)
        run_key = compute_run_key(incident.incident_key, playbook.id, inputs_hash)

        skip = self._gate(playbook, incident, evidence, lawbook)
        if skip is not None:
            return self._skip(run_key, incident, playbook, lawbook_version, inputs_hash, skip)

        executors, key_fns = self._resolve_executors(playbook, step_executors, idempotency_key_fns)

        planned = plan_remediation_run(playbook, incident, inputs, lawbook_version)
        self._validate_key(run_key)

        existing = self._store.get_run_by_key(run_key)
        if existing is not None:
            return self._existing(existing, planned)

        run_id = str(uuid.uuid4())
        run = self._store.upsert_run_by_key(
            RemediationRunInput(
                run_key=run_key,
                incident_id=incident.id,
                playbook_id=playbook.id,
                playbook_version=playbook.version,
                status=RUN_STATUS_PLANNED,
                lawbook_version=lawbook_version,
                inputs_hash=planned.inputs_hash,
                planned_json=planned.to_dict(),
                run_id=run_id,
            )
        )
        if run.id != run_id:
            # Lost the upsert race to a concurrent caller.
            return self._existing(run, planned)

        logger.info("Remediation run planned", extra={"run_id": run.id, "run_key": run_key})
        self._audit.emit(
            run_id=run.id,
            incident_id=incident.id,
            event_type=AUDIT_PLANNED,
            lawbook_version=lawbook_version,
            payload={
                "playbookId": playbook.id,
                "playbookVersion": playbook.version,
                "inputsHash": planned.inputs_hash,
                "stepsCount": len(planned.steps),
                "steps": [{"stepId": s.step_id, "actionType": s.action_type} for s in planned.steps],
            },
        )
        return self._run_steps(run, incident, evidence, planned, executors, key_fns)

    def load_policy(self) -> PolicyDocument | None:
        """Return the active lawbook, or None when absent or unreadable (fail-closed)."""
        try:
            return self._policies.get_active_policy()
        except Exception as exc:
            logger.warning("Failed to load active lawbook; denying by default", extra={"error": str(exc)})
            return None

    def _gate(
        self,
        playbook: PlaybookDefinition,
        incident: Incident,
        evidence: Sequence[Evidence],
        lawbook: PolicyDocument | None,
    ) -> dict[str, Any] | None:
        """Return the SKIPPED ``result_json`` when the run must not proceed."""
        verdict = gate_playbook_allowed(
            PlaybookGateParams(
                playbook_id=playbook.id,
                incident_category=incident.category,
                evidence_kinds=[e.kind for e in evidence],
            ),
            lawbook,
        )
        if not verdict.allowed:
            return {
                "skipReason": SKIP_LAWBOOK_DENIED,
                "message": verdict_message(verdict, "Playbook not allowed"),
                "gateVerdict": verdict.to_dict(),
            }

        for step in playbook.steps:
            owner = PLAYBOOK_RESTRICTED_ACTIONS.get(step.action_type)
            if owner is not None and owner != playbook.id:
                return {
                    "skipReason": SKIP_LAWBOOK_DENIED,
                    "message": f"Action type '{step.action_type}' is only allowed for {owner} playbook",
                }
            action_verdict = gate_action_allowed(ActionGateParams(action_type=step.action_type), lawbook)
            if not action_verdict.allowed:
                return {
                    "skipReason": SKIP_LAWBOOK_DENIED,
                    "message": verdict_message(action_verdict, "Action not allowed"),
                    "gateVerdict": action_verdict.to_dict(),
                }

        check = check_evidence_predicates(playbook.required_evidence, evidence)
        if not check.satisfied:
            kinds = ", ".join(p.kind for p in check.missing)
            return {
                "skipReason": SKIP_EVIDENCE_MISSING,
                "message": f"Required evidence not satisfied: {kinds}",
                "missingEvidence": [p.model_dump(mode="json", by_alias=True) for p in check.missing],
            }
        return None

    def _skip(
        self,
        run_key: str,
        incident: Incident,
        playbook: PlaybookDefinition,
        lawbook_version: str,
        inputs_hash: str,
        result_json: dict[str, Any],
    ) -> ExecutePlaybookResponse:
        run = self._store.upsert_run_by_key(
            RemediationRunInput(
                run_key=run_key,
                incident_id=incident.id,
                playbook_id=playbook.id,
                playbook_version=playbook.version,
                status=RUN_STATUS_SKIPPED,
                lawbook_version=lawbook_version,
                inputs_hash=inputs_hash,
                result_json=result_json,
            )
        )
        if run.status != RUN_STATUS_SKIPPED:
            # An earlier attempt already ran; terminal states are never revisited.
            return self._existing(run, None)
        logger.info(
            "Remediation run skipped",
            extra={"run_id": run.id, "skip_reason": result_json["skipReason"]},
        )
        return ExecutePlaybookResponse(
            run_id=run.id,
            status=RUN_STATUS_SKIPPED,
            skip_reason=str(result_json["skipReason"]),
            message=str(result_json["message"]),
        )

    def _existing(self, run: RemediationRun, planned: PlannedRun | None) -> ExecutePlaybookResponse:
        logger.info("Existing remediation run returned", extra={"run_id": run.id, "status": run.status})
        result = dict(run.result_json or {})
        skip_reason = result.get("skipReason") if run.status == RUN_STATUS_SKIPPED else None
        return ExecutePlaybookResponse(
            run_id=run.id,
            status=run.status,
            skip_reason=skip_reason,
            message=IDEMPOTENT_MESSAGE,
            planned=planned,
            steps=tuple(self._store.get_steps_for_run(run.id)),
        )

    def _resolve_executors(
        self,
        playbook: PlaybookDefinition,
        step_executors: Mapping[str, StepExecutor] | None,
        idempotency_key_fns: Mapping[str, IdempotencyKeyFn] | None,
    ) -> tuple[Mapping[str, StepExecutor], Mapping[str, IdempotencyKeyFn]]:
        entry = self._registry.get(playbook.id) if self._registry is not None else None
        if step_executors is None:
            step_executors = entry.executors if entry is not None else {}
            if idempotency_key_fns is None and entry is not None:
                idempotency_key_fns = entry.idempotency_key_fns
        for step in playbook.steps:
            if step.step_id not in step_executors:
                raise MissingStepExecutorError(playbook.id, step.step_id)
        return step_executors, dict(idempotency_key_fns or {})

    def _validate_key(self, key: str) -> None:
        verdict = gate_idempotency_key_format(IdempotencyKeyParams(key=key, max_length=self._key_max_length))
        if not verdict.allowed:
            reason = primary_reason(verdict)
            raise InvalidIdempotencyKeyError(key, reason.code if reason is not None else verdict.verdict)

    def _run_steps(
        self,
        run: RemediationRun,
        incident: Incident,
        evidence: tuple[Evidence, ...],
        planned: PlannedRun,
        executors: Mapping[str, StepExecutor],
        key_fns: Mapping[str, IdempotencyKeyFn],
    ) -> ExecutePlaybookResponse:
        started = time.monotonic()
        emit_kwargs = {
            "run_id": run.id,
            "incident_id": incident.id,
            "lawbook_version": planned.lawbook_version,
        }
        step_outputs: dict[str, Any] = {}
        success_count = 0
        failed_count = 0
        current_step_id: str | None = None

        try:
            self._store.update_run_status(run.id, RUN_STATUS_RUNNING)

            for planned_step in planned.steps:
                current_step_id = planned_step.step_id
                ctx = StepContext(
                    incident_id=incident.id,
                    incident_key=incident.incident_key,
                    run_id=run.id,
                    lawbook_version=planned.lawbook_version,
                    evidence=evidence,
                    inputs={**planned_step.resolved_inputs, **step_outputs},
                    services=self._services,
                )
                key_fn = key_fns.get(planned_step.step_id)
                key = key_fn(ctx) if key_fn is not None else default_idempotency_key(planned_step.action_type, ctx)
                self._validate_key(key)

                step = self._store.create_step(
                    RemediationStepInput(
                        remediation_run_id=run.id,
                        step_id=planned_step.step_id,
                        action_type=planned_step.action_type,
                        idempotency_key=key,
                        input_json=sanitize_redact(ctx.inputs),
                    )
                )
                self._audit.emit(
                    event_type=AUDIT_STEP_STARTED,
                    payload={
                        "stepId": planned_step.step_id,
                        "actionType": planned_step.action_type,
                        "idempotencyKey": key,
                        "inputsHash": compute_inputs_hash(ctx.inputs),
                    },
                    **emit_kwargs,
                )
                self._store.update_step_status(step.id, STEP_STATUS_RUNNING, {"started_at": _utcnow()})

                result = self._invoke(executors[planned_step.step_id], ctx)
                patch: dict[str, Any] = {"finished_at": _utcnow()}
                if result.output is not None:
                    patch["output_json"] = sanitize_redact(dict(result.output))

                if result.success:
                    self._store.update_step_status(step.id, STEP_STATUS_SUCCEEDED, patch)
                    self._audit.emit(
                        event_type=AUDIT_STEP_FINISHED,
                        payload={
                            "stepId": planned_step.step_id,
                            "actionType": planned_step.action_type,
                            "status": STEP_STATUS_SUCCEEDED,
                            "outputSummary": output_summary(result.output),
                        },
                        **emit_kwargs,
                    )
                    step_outputs[step_output_key(planned_step.step_id)] = result.output
                    success_count += 1
                    continue

                error = result.error or StepError(code=ERROR_EXECUTION, message="Step failed without error detail")
                patch["error_json"] = sanitize_redact(error.to_dict())
                self._store.update_step_status(step.id, STEP_STATUS_FAILED, patch)
                self._audit.emit(
                    event_type=AUDIT_STEP_FINISHED,
                    payload={
                        "stepId": planned_step.step_id,
                        "actionType": planned_step.action_type,
                        "status": STEP_STATUS_FAILED,
                        "error": {"code": error.code, "message": error.message},
                    },
                    **emit_kwargs,
                )
                logger.warning(
                    "Remediation step failed",
                    extra={"run_id": run.id, "step_id": planned_step.step_id, "error_code": error.code},
                )
                failed_count += 1
                break
        except Exception as exc:
            self._abort_run(run, current_step_id, exc, emit_kwargs)
            raise

        status = RUN_STATUS_FAILED if failed_count else RUN_STATUS_SUCCEEDED
        summary = {
            "status": status,
            "totalSteps": len(planned.steps),
            "successCount": success_count,
            "failedCount": failed_count,
            "durationMs": int((time.monotonic() - started) * 1000),
        }
        self._store.update_run_status(run.id, status, {"result_json": summary})
        self._audit.emit(event_type=AUDIT_STATUS_UPDATED, payload=summary, **emit_kwargs)
        self._audit.emit(
            event_type=AUDIT_COMPLETED if status == RUN_STATUS_SUCCEEDED else AUDIT_FAILED,
            payload=summary,
            **emit_kwargs,
        )
        logger.info("Remediation run finished", extra={"run_id": run.id, "status": status})

        return ExecutePlaybookResponse(
            run_id=run.id,
            status=status,
            planned=planned,
            steps=tuple(self._store.get_steps_for_run(run.id)),
        )

    def _abort_run(
        self,
        run: RemediationRun,
        step_id: str | None,
        exc: Exception,
        emit_kwargs: Mapping[str, Any],
    ) -> None:
        """Move a run that hit a fatal error to FAILED so it never stays RUNNING."""
        code = exc.reason if isinstance(exc, InvalidIdempotencyKeyError) else ERROR_EXECUTION
        error = {"code": code, "message": str(exc) or type(exc).__name__, "details": type(exc).__name__}
        if step_id is not None:
            error["stepId"] = step_id
        logger.error(
            "Remediation run aborted",
            extra={"run_id": run.id, "step_id": step_id, "error_code": code, "error_type": type(exc).__name__},
        )
        try:
            self._store.update_run_status(run.id, RUN_STATUS_FAILED, {"result_json": {"error": error}})
        except Exception:
            logger.exception("Failed to mark aborted run FAILED", extra={"run_id": run.id})
            return
        self._audit.emit(
            event_type=AUDIT_FAILED,
            payload={"status": RUN_STATUS_FAILED, "stepId": step_id, "error": code},
            **emit_kwargs,
        )

    @staticmethod
    def _invoke(executor: StepExecutor, ctx: StepContext) -> StepResult:
        try:
            result = executor(ctx)
        except Exception as exc:
            logger.exception("Step executor raised", extra={"run_id": ctx.run_id})
            return StepResult.fail(ERROR_EXECUTION, str(exc) or type(exc).__name__, type(exc).__name__)
        if not isinstance(result, StepResult):
            return StepResult.fail(
                ERROR_EXECUTION,
                f"Step executor returned {type(result).__name__}, expected StepResult",
            )
        return result
