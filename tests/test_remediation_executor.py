"""Tests for the remediation executor state machine."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from contracts.canonical import REDACTED
from contracts.remediation import (
    ACTION_ROLLBACK_DEPLOY,
    ACTION_RUN_VERIFICATION,
    EvidencePredicate,
    ExecutePlaybookRequest,
    StepContext,
    StepResult,
    compute_inputs_hash,
)
from services.remediation.audit import InMemoryAuditSink
from services.remediation.errors import (
    IncidentNotFoundError,
    InvalidIdempotencyKeyError,
    MissingStepExecutorError,
)
from services.remediation.executor import IDEMPOTENT_MESSAGE, RemediationExecutor
from tests.factories import (
    make_entry,
    make_evidence,
    make_executor,
    make_incident,
    make_playbook,
    make_policy,
    ok_step,
)


class _RecordingStep:
    """Step executor that records every context it receives."""

    def __init__(self, result: StepResult | None = None) -> None:
        self.calls: list[StepContext] = []
        self.result = result or StepResult.ok({"done": True})

    def __call__(self, ctx: StepContext) -> StepResult:
        self.calls.append(ctx)
        return self.result


class _FailingSink:
    """Audit sink that always raises."""

    def sink_name(self) -> str:
        return "failing"

    def create_audit_event(self, event: Any) -> None:
        raise RuntimeError("audit store down")


class _BrokenPolicyProvider:
    def get_active_policy(self):
        raise OSError("lawbook unreadable")


def _request(**inputs: Any) -> ExecutePlaybookRequest:
    return ExecutePlaybookRequest(incident_id="inc-1", inputs=inputs)


def test_successful_run_executes_steps_in_order() -> None:
    """All steps succeed: run SUCCEEDED with step rows in declaration order."""
    check, restart = _RecordingStep(), _RecordingStep()
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook, check=check, restart=restart)])

    response = executor.execute_playbook(_request(cluster="prod"), playbook)

    assert response.status == "SUCCEEDED"
    assert response.skip_reason is None
    assert [s.step_id for s in response.steps] == ["check", "restart"]
    assert [s.status for s in response.steps] == ["SUCCEEDED", "SUCCEEDED"]
    assert len(check.calls) == 1 and len(restart.calls) == 1
    assert all(s.started_at is not None and s.finished_at is not None for s in response.steps)

    run = executor.store.get_run(response.run_id)
    assert run.status == "SUCCEEDED"
    assert run.lawbook_version == "2026.01.0"
    assert run.planned_json["inputsHash"] == compute_inputs_hash({"cluster": "prod"})
    assert run.result_json["totalSteps"] == 2
    assert run.result_json["successCount"] == 2
    assert run.result_json["failedCount"] == 0


def test_audit_events_follow_run_lifecycle() -> None:
    """A successful run emits PLANNED, STEP_STARTED/FINISHED pairs, STATUS_UPDATED, COMPLETED."""
    sink = InMemoryAuditSink()
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook)], audit_sink=sink)

    response = executor.execute_playbook(_request(), playbook)

    assert sink.event_types(response.run_id) == [
        "PLANNED",
        "STEP_STARTED",
        "STEP_FINISHED",
        "STEP_STARTED",
        "STEP_FINISHED",
        "STATUS_UPDATED",
        "COMPLETED",
    ]
    planned = sink.events(response.run_id)[0]
    assert planned.payload_json["stepsCount"] == 2
    assert planned.lawbook_version == "2026.01.0"
    assert all(len(e.payload_hash) == 64 for e in sink.events(response.run_id))


def test_missing_lawbook_skips_with_lawbook_denied() -> None:
    """Without an active lawbook the run is persisted as SKIPPED and nothing executes."""
    step = _RecordingStep()
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook, check=step)], use_policy=False)

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "SKIPPED"
    assert response.skip_reason == "LAWBOOK_DENIED"
    assert response.message == "No active lawbook configuration found"
    assert step.calls == []
    run = executor.store.get_run(response.run_id)
    assert run.status == "SKIPPED"
    assert run.lawbook_version == "NONE"
    assert executor.store.get_steps_for_run(run.id) == []


def test_policy_provider_error_fails_closed() -> None:
    """A lawbook that cannot be loaded is treated as absent."""
    playbook = make_playbook()
    base = make_executor(entries=[make_entry(playbook)])
    executor = RemediationExecutor(
        incidents=base.incidents,
        policies=_BrokenPolicyProvider(),
        store=base.store,
        registry=base.registry,
    )

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "SKIPPED"
    assert response.skip_reason == "LAWBOOK_DENIED"


def test_playbook_not_allowlisted_is_skipped() -> None:
    """A playbook missing from allowedPlaybooks is denied."""
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook)], policy=make_policy(allowedPlaybooks=["other"]))

    response = executor.execute_playbook(_request(), playbook)

    assert response.skip_reason == "LAWBOOK_DENIED"
    assert "not in allowed list" in response.message
    result = executor.store.get_run(response.run_id).result_json
    assert result["gateVerdict"]["reasons"][0]["code"] == "PLAYBOOK_NOT_ALLOWED"


def test_action_not_allowlisted_is_skipped() -> None:
    """Any step whose action type is not allowlisted denies the whole run."""
    playbook = make_playbook()
    executor = make_executor(
        entries=[make_entry(playbook)],
        policy=make_policy(allowedActions=["RUN_VERIFICATION"]),
    )

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "SKIPPED"
    assert response.message == "Action type 'RESTART_SERVICE' is not in allowed list"


def test_rollback_deploy_is_restricted_to_redeploy_lkg() -> None:
    """ROLLBACK_DEPLOY is denied for any playbook other than redeploy-lkg."""
    playbook = make_playbook(steps=(("rollback", ACTION_ROLLBACK_DEPLOY),))
    executor = make_executor(entries=[make_entry(playbook)])

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "SKIPPED"
    assert response.skip_reason == "LAWBOOK_DENIED"
    assert response.message == "Action type 'ROLLBACK_DEPLOY' is only allowed for redeploy-lkg playbook"


def test_missing_evidence_is_skipped() -> None:
    """Unsatisfied evidence predicates skip with EVIDENCE_MISSING."""
    playbook = make_playbook(required_evidence=(EvidencePredicate(kind="alb", required_fields=("ref.arn",)),))
    executor = make_executor(entries=[make_entry(playbook)])

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "SKIPPED"
    assert response.skip_reason == "EVIDENCE_MISSING"
    assert response.message == "Required evidence not satisfied: alb"
    result = executor.store.get_run(response.run_id).result_json
    assert result["missingEvidence"] == [{"kind": "alb", "requiredFields": ["ref.arn"]}]


def test_repeated_request_returns_existing_run() -> None:
    """Same incident, playbook and inputs: one run, executors invoked once."""
    step = _RecordingStep()
    playbook = make_playbook(steps=(("check", ACTION_RUN_VERIFICATION),))
    executor = make_executor(entries=[make_entry(playbook, check=step)])

    first = executor.execute_playbook(_request(b=2, a=1), playbook)
    second = executor.execute_playbook(_request(a=1, b=2), playbook)

    assert second.run_id == first.run_id
    assert second.status == "SUCCEEDED"
    assert second.message == IDEMPOTENT_MESSAGE
    assert [s.step_id for s in second.steps] == ["check"]
    assert len(step.calls) == 1


def test_different_inputs_create_a_new_run() -> None:
    """Changing the inputs changes the run key."""
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook)])

    first = executor.execute_playbook(_request(cluster="a"), playbook)
    second = executor.execute_playbook(_request(cluster="b"), playbook)

    assert first.run_id != second.run_id
    assert len(executor.store.list_runs_for_incident("inc-1")) == 2


def test_repeated_skip_returns_same_run() -> None:
    """A denied request repeated returns the same SKIPPED run."""
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook)], use_policy=False)

    first = executor.execute_playbook(_request(), playbook)
    second = executor.execute_playbook(_request(), playbook)

    assert second.run_id == first.run_id
    assert second.status == "SKIPPED"
    assert second.skip_reason == "LAWBOOK_DENIED"


def test_failed_step_stops_the_run() -> None:
    """The first failing step marks the run FAILED and later steps never run."""
    failing = _RecordingStep(StepResult.fail("HEALTH_CHECK_FAILED", "targets unhealthy"))
    later = _RecordingStep()
    playbook = make_playbook()
    sink = InMemoryAuditSink()
    executor = make_executor(entries=[make_entry(playbook, check=failing, restart=later)], audit_sink=sink)

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "FAILED"
    assert later.calls == []
    assert [s.step_id for s in response.steps] == ["check"]
    assert response.steps[0].status == "FAILED"
    assert response.steps[0].error_json == {"code": "HEALTH_CHECK_FAILED", "message": "targets unhealthy"}
    run = executor.store.get_run(response.run_id)
    assert run.result_json["failedCount"] == 1
    assert run.result_json["successCount"] == 0
    assert sink.event_types(response.run_id)[-2:] == ["STATUS_UPDATED", "FAILED"]


def test_second_of_three_steps_failing_creates_two_step_rows() -> None:
    """Fail-fast: a failure in step 2 of 3 leaves exactly two step rows."""
    playbook = make_playbook(
        steps=(("a", ACTION_RUN_VERIFICATION), ("b", "RESTART_SERVICE"), ("c", ACTION_RUN_VERIFICATION))
    )
    third = _RecordingStep()
    executor = make_executor(
        entries=[make_entry(playbook, b=_RecordingStep(StepResult.fail("RESTART_FAILED", "no capacity")), c=third)]
    )

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "FAILED"
    assert [(s.step_id, s.status) for s in executor.store.get_steps_for_run(response.run_id)] == [
        ("a", "SUCCEEDED"),
        ("b", "FAILED"),
    ]
    assert third.calls == []
    run = executor.store.get_run(response.run_id)
    assert run.result_json["totalSteps"] == 3
    assert run.result_json["successCount"] == 1


def test_disabled_remediation_skips_without_step_rows() -> None:
    """``remediation.enabled=false`` yields SKIPPED/LAWBOOK_DENIED and no steps execute."""
    step = _RecordingStep()
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook, check=step)], policy=make_policy(enabled=False))

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "SKIPPED"
    assert response.skip_reason == "LAWBOOK_DENIED"
    assert step.calls == []
    assert executor.store.get_steps_for_run(response.run_id) == []


def test_raising_key_fn_fails_run_instead_of_leaving_it_running() -> None:
    """A key function error marks the run FAILED; a retry returns that terminal run."""

    def missing_input_key(ctx: StepContext) -> str:
        return ctx.inputs["ticket"]

    playbook = make_playbook()
    sink = InMemoryAuditSink()
    executor = make_executor(entries=[make_entry(playbook)], audit_sink=sink)
    kwargs: dict[str, Any] = {
        "step_executors": {"check": ok_step(), "restart": ok_step()},
        "idempotency_key_fns": {"check": missing_input_key},
    }

    with pytest.raises(KeyError):
        executor.execute_playbook(_request(), playbook, **kwargs)

    (run,) = executor.store.list_runs_for_incident("inc-1")
    assert run.status == "FAILED"
    assert run.result_json["error"] == {
        "code": "EXECUTION_ERROR",
        "message": "'ticket'",
        "details": "KeyError",
        "stepId": "check",
    }
    assert sink.event_types(run.id)[-1] == "FAILED"

    again = executor.execute_playbook(_request(), playbook, **kwargs)
    assert again.run_id == run.id
    assert again.status == "FAILED"
    assert again.message == IDEMPOTENT_MESSAGE


def test_store_error_mid_run_fails_run_and_propagates(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    """Persistence errors inside the step loop finalize the run before re-raising."""
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook)])

    def _broken_create_step(step_input: Any) -> Any:
        raise RuntimeError("step table unavailable")

    monkeypatch.setattr(executor.store, "create_step", _broken_create_step)

    with pytest.raises(RuntimeError, match="step table unavailable"):
        executor.execute_playbook(_request(), playbook)

    (run,) = executor.store.list_runs_for_incident("inc-1")
    assert run.status == "FAILED"
    assert run.result_json["error"]["details"] == "RuntimeError"


def test_raising_executor_becomes_execution_error() -> None:
    """Exceptions from a step are captured as EXECUTION_ERROR, not raised."""

    def boom(ctx: StepContext) -> StepResult:
        raise RuntimeError("kaboom")

    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook, check=boom)])

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "FAILED"
    assert response.steps[0].error_json == {
        "code": "EXECUTION_ERROR",
        "message": "kaboom",
        "details": "RuntimeError",
    }


def test_non_step_result_return_is_execution_error() -> None:
    """Returning anything but a StepResult fails the step."""
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook, check=lambda ctx: {"ok": True})])

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "FAILED"
    assert response.steps[0].error_json["code"] == "EXECUTION_ERROR"


def test_step_outputs_are_chained_into_later_steps() -> None:
    """Later steps receive earlier outputs under ``<stepId>StepOutput``."""
    later = _RecordingStep()
    playbook = make_playbook()
    executor = make_executor(
        entries=[make_entry(playbook, check=ok_step({"taskDefinition": "api:7"}), restart=later)]
    )

    executor.execute_playbook(_request(cluster="prod"), playbook)

    ctx = later.calls[0]
    assert ctx.inputs["checkStepOutput"] == {"taskDefinition": "api:7"}
    assert ctx.inputs["cluster"] == "prod"
    assert ctx.inputs["incidentKey"] == "alb:prod:api"
    assert ctx.lawbook_version == "2026.01.0"
    assert [e.kind for e in ctx.evidence] == ["ecs"]


def test_secrets_are_redacted_in_persisted_step_rows() -> None:
    """Step input and output rows never store secret-looking values."""
    playbook = make_playbook(steps=(("check", ACTION_RUN_VERIFICATION),))
    executor = make_executor(
        entries=[make_entry(playbook, check=ok_step({"password": "hunter2", "status": "ok"}))]
    )

    response = executor.execute_playbook(_request(apiToken="abc", note="sk-live123"), playbook)

    step = response.steps[0]
    assert step.input_json["apiToken"] == REDACTED
    assert step.input_json["note"] == REDACTED
    assert step.output_json == {"password": REDACTED, "status": "ok"}


def test_default_step_idempotency_key() -> None:
    """Without a key function, step keys are ``actionType:incidentKey:hash(inputs)``."""
    playbook = make_playbook(steps=(("check", ACTION_RUN_VERIFICATION),))
    executor = make_executor(entries=[make_entry(playbook)])

    response = executor.execute_playbook(_request(), playbook)

    expected_inputs = {"incidentId": "inc-1", "incidentKey": "alb:prod:api"}
    assert response.steps[0].idempotency_key == (
        f"RUN_VERIFICATION:alb:prod:api:{compute_inputs_hash(expected_inputs)}"
    )


def test_missing_step_executor_raises() -> None:
    """Explicit executors that leave a step unbound raise before anything is persisted."""
    playbook = make_playbook()
    executor = make_executor()

    with pytest.raises(MissingStepExecutorError) as exc_info:
        executor.execute_playbook(_request(), playbook, step_executors={"check": ok_step()})

    assert exc_info.value.step_id == "restart"
    assert executor.store.list_runs_for_incident("inc-1") == []


def test_unknown_incident_raises() -> None:
    """Unknown incident ids are caller errors."""
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook)])

    with pytest.raises(IncidentNotFoundError):
        executor.execute_playbook(ExecutePlaybookRequest(incident_id="nope"), playbook)


def test_invalid_run_key_raises_without_persisting() -> None:
    """An incident key with invalid characters makes the run key invalid."""
    incident = make_incident(incident_key="alb prod api")
    playbook = make_playbook()
    executor = make_executor(
        incidents=[incident],
        evidence={"inc-1": [make_evidence()]},
        entries=[make_entry(playbook)],
    )

    with pytest.raises(InvalidIdempotencyKeyError) as exc_info:
        executor.execute_playbook(_request(), playbook)

    assert exc_info.value.reason == "KEY_INVALID_CHARS"
    assert executor.store.list_runs_for_incident("inc-1") == []


def test_invalid_step_key_fails_run_and_raises() -> None:
    """A bad step key marks the run FAILED before the error propagates."""
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook)])

    with pytest.raises(InvalidIdempotencyKeyError):
        executor.execute_playbook(
            _request(),
            playbook,
            step_executors={"check": ok_step(), "restart": ok_step()},
            idempotency_key_fns={"check": lambda ctx: "bad key/with slash"},
        )

    (run,) = executor.store.list_runs_for_incident("inc-1")
    assert run.status == "FAILED"
    assert run.result_json["error"]["code"] == "KEY_INVALID_CHARS"
    assert executor.store.get_steps_for_run(run.id) == []


def test_audit_sink_failures_never_fail_the_run() -> None:
    """Dropped audit events are counted and the run still succeeds."""
    playbook = make_playbook()
    executor = make_executor(entries=[make_entry(playbook)], audit_sink=_FailingSink())

    response = executor.execute_playbook(_request(), playbook)

    assert response.status == "SUCCEEDED"
    assert executor.dropped_audit_events == 7


def test_execute_many_preserves_request_order() -> None:
    """Concurrent execution returns responses in request order."""
    incidents = [make_incident(id=f"inc-{i}", incident_key=f"alb:prod:svc-{i}") for i in range(5)]
    playbook = make_playbook()
    executor = make_executor(
        incidents=incidents,
        evidence={i.id: [make_evidence()] for i in incidents},
        entries=[make_entry(playbook)],
    )
    requests = [(ExecutePlaybookRequest(incident_id=i.id), playbook) for i in incidents]

    responses = asyncio.run(executor.execute_many(requests, max_concurrency=2))

    assert [executor.store.get_run(r.run_id).incident_id for r in responses] == [i.id for i in incidents]
    assert all(r.status == "SUCCEEDED" for r in responses)


def test_execute_many_rejects_zero_concurrency() -> None:
    """max_concurrency must be positive."""
    executor = make_executor()

    with pytest.raises(ValueError):
        asyncio.run(executor.execute_many([], max_concurrency=0))
