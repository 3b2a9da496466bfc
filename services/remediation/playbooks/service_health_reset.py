"""Service health reset: force a new ECS deployment and observe stability."""

from __future__ import annotations

import time
from collections.abc import Mapping
from typing import Any

from botocore.exceptions import ClientError  # type: ignore[import-untyped]

from contracts.interfaces import ECSClientProtocol
from contracts.remediation import (
    ACTION_RESTART_SERVICE,
    ACTION_RUN_VERIFICATION,
    EvidencePredicate,
    PlaybookDefinition,
    StepContext,
    StepDefinition,
    StepResult,
)
from services.remediation.playbooks._common import (
    client_error_result,
    details,
    normalize_environment,
    params_hash,
    ref_value,
    require_service,
    step_output,
)
from services.remediation.registry import PlaybookEntry

PLAYBOOK_ID = "service-health-reset"

_EVIDENCE_KINDS = ("ecs",)

_DEFAULT_OBSERVE_ATTEMPTS = 3
_DEFAULT_OBSERVE_INTERVAL_SECONDS = 10

DEFINITION = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version="1.0.0",
    title="Service Health Reset",
    applicable_categories=("ALB_TARGET_UNHEALTHY", "ECS_TASK_CRASHLOOP"),
    required_evidence=(EvidencePredicate(kind="ecs", required_fields=("ref.cluster", "ref.service")),),
    steps=(
        StepDefinition(
            step_id="snapshot-state",
            action_type=ACTION_RUN_VERIFICATION,
            description="Capture the current ECS service state",
        ),
        StepDefinition(
            step_id="apply-reset",
            action_type=ACTION_RESTART_SERVICE,
            description="Force a new deployment of the ECS service",
        ),
        StepDefinition(
            step_id="observe-stability",
            action_type=ACTION_RUN_VERIFICATION,
            description="Wait until running tasks match the desired count",
        ),
    ),
)


def _describe(ecs: ECSClientProtocol, cluster: str, service: str) -> Mapping[str, Any] | None:
    response = ecs.describe_services(cluster=cluster, services=[service])
    services = response.get("services") or []
    return services[0] if services else None


def _is_stable(info: Mapping[str, Any]) -> bool:
    deployments = info.get("deployments") or []
    return (
        len(deployments) == 1
        and info.get("runningCount") == info.get("desiredCount")
        and str(deployments[0].get("rolloutState") or "COMPLETED") != "FAILED"
    )


def snapshot_state(ctx: StepContext) -> StepResult:
    cluster = ref_value(ctx, _EVIDENCE_KINDS, "cluster")
    service = ref_value(ctx, _EVIDENCE_KINDS, "service", "serviceName")
    env = ref_value(ctx, _EVIDENCE_KINDS, "env", "environment")
    if not env:
        return StepResult.fail(
            "ENVIRONMENT_REQUIRED",
            "Environment is required for service health reset",
            details(cluster=cluster, service=service),
        )
    try:
        env = normalize_environment(env)
    except ValueError as exc:
        return StepResult.fail("INVALID_ENVIRONMENT", f"Invalid environment value: {exc}", details(env=env))
    if not cluster or not service:
        return StepResult.fail(
            "INVALID_EVIDENCE",
            "Missing required parameters: cluster and service",
            details(cluster=cluster, service=service, env=env),
        )

    client, err = require_service(ctx, "ecs")
    if err is not None:
        return err
    ecs: ECSClientProtocol = client
    try:
        info = _describe(ecs, cluster, service)
    except ClientError as exc:
        return client_error_result(exc, "describe_services")
    if info is None:
        return StepResult.fail(
            "SERVICE_NOT_FOUND",
            f"ECS service {service} not found in cluster {cluster}",
            details(cluster=cluster, service=service),
        )
    return StepResult.ok(
        {
            "cluster": cluster,
            "service": service,
            "env": env,
            "serviceArn": info.get("serviceArn"),
            "desiredCount": info.get("desiredCount"),
            "runningCount": info.get("runningCount"),
            "taskDefinition": info.get("taskDefinition"),
            "deploymentCount": len(info.get("deployments") or []),
        }
    )


def apply_reset(ctx: StepContext) -> StepResult:
    snapshot = step_output(ctx, "snapshot-state") or {}
    cluster = snapshot.get("cluster") or ctx.inputs.get("cluster")
    service = snapshot.get("service") or ctx.inputs.get("service")
    env = snapshot.get("env") or ctx.inputs.get("env")
    if not cluster or not service:
        return StepResult.fail(
            "INVALID_INPUT",
            "Missing cluster or service from snapshot step",
            details(cluster=cluster, service=service),
        )

    client, err = require_service(ctx, "ecs")
    if err is not None:
        return err
    ecs: ECSClientProtocol = client
    try:
        response = ecs.update_service(cluster=cluster, service=service, forceNewDeployment=True)
    except ClientError as exc:
        return client_error_result(exc, "update_service")

    info = response.get("service") or {}
    primary = next(
        (d for d in info.get("deployments") or [] if d.get("status") == "PRIMARY"),
        {},
    )
    return StepResult.ok(
        {
            "cluster": cluster,
            "service": service,
            "env": env,
            "serviceArn": info.get("serviceArn"),
            "deploymentId": primary.get("id"),
        }
    )


def observe_stability(ctx: StepContext) -> StepResult:
    reset = step_output(ctx, "apply-reset") or {}
    cluster = reset.get("cluster") or ctx.inputs.get("cluster")
    service = reset.get("service") or ctx.inputs.get("service")
    if not cluster or not service:
        return StepResult.fail(
            "INVALID_INPUT",
            "Missing cluster or service from reset step",
            details(cluster=cluster, service=service),
        )

    client, err = require_service(ctx, "ecs")
    if err is not None:
        return err
    ecs: ECSClientProtocol = client
    attempts = max(1, int(ctx.inputs.get("observeAttempts") or _DEFAULT_OBSERVE_ATTEMPTS))
    interval = ctx.inputs.get("observeIntervalSeconds")
    interval = _DEFAULT_OBSERVE_INTERVAL_SECONDS if interval is None else float(interval)
    sleep = ctx.services.get("sleep") or time.sleep

    info: Mapping[str, Any] | None = None
    for attempt in range(1, attempts + 1):
        try:
            info = _describe(ecs, cluster, service)
        except ClientError as exc:
            return client_error_result(exc, "describe_services")
        if info is not None and _is_stable(info):
            return StepResult.ok(
                {
                    "stable": True,
                    "attempts": attempt,
                    "runningCount": info.get("runningCount"),
                    "desiredCount": info.get("desiredCount"),
                }
            )
        if attempt < attempts:
            sleep(interval)

    final = info or {}
    return StepResult.fail(
        "SERVICE_NOT_STABLE",
        f"ECS service {service} did not stabilize after {attempts} checks",
        details(
            cluster=cluster,
            service=service,
            runningCount=final.get("runningCount"),
            desiredCount=final.get("desiredCount"),
        ),
        output={"stable": False, "attempts": attempts},
    )


def snapshot_idempotency_key(ctx: StepContext) -> str:
    cluster = ref_value(ctx, _EVIDENCE_KINDS, "cluster")
    service = ref_value(ctx, _EVIDENCE_KINDS, "service", "serviceName")
    return f"snapshot:{ctx.incident_key}:{params_hash(cluster=cluster, service=service)}"


def reset_idempotency_key(ctx: StepContext) -> str:
    snapshot = step_output(ctx, "snapshot-state") or {}
    target = params_hash(cluster=snapshot.get("cluster"), service=snapshot.get("service"), env=snapshot.get("env"))
    return f"health-reset:{ctx.incident_key}:{target}"


PLAYBOOK_ENTRY = PlaybookEntry(
    definition=DEFINITION,
    executors={
        "snapshot-state": snapshot_state,
        "apply-reset": apply_reset,
        "observe-stability": observe_stability,
    },
    idempotency_key_fns={
        "snapshot-state": snapshot_idempotency_key,
        "apply-reset": reset_idempotency_key,
    },
)
