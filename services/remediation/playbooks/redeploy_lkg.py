"""Redeploy the last known good (LKG) revision after a failed deploy.

The only built-in playbook allowed to use ``ROLLBACK_DEPLOY``. Dispatch keys
are bucketed per hour so a given incident redeploys at most once an hour.
"""

from __future__ import annotations

from datetime import datetime, timezone

from contracts.canonical import canonical_hash
from contracts.interfaces import DeployerProtocol, DeployHistoryProtocol, VerificationRunnerProtocol
from contracts.remediation import (
    ACTION_ROLLBACK_DEPLOY,
    ACTION_RUN_VERIFICATION,
    EvidencePredicate,
    PlaybookDefinition,
    StepContext,
    StepDefinition,
    StepResult,
)
from services.remediation.playbooks._common import (
    details,
    normalize_environment,
    params_hash,
    ref_value,
    require_service,
    step_output,
)
from services.remediation.registry import PlaybookEntry

PLAYBOOK_ID = "redeploy-lkg"

_EVIDENCE_KINDS = ("deploy_status", "verification")

_LKG_FIELDS = (
    "snapshotId",
    "env",
    "service",
    "version",
    "commitHash",
    "imageDigest",
    "observedAt",
    "verificationRunId",
    "verificationReportHash",
)

DEFINITION = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version="1.0.0",
    title="Redeploy Last Known Good",
    applicable_categories=("DEPLOY_VERIFICATION_FAILED", "ALB_TARGET_UNHEALTHY", "ECS_TASK_CRASHLOOP"),
    required_evidence=(
        EvidencePredicate(kind="deploy_status", required_fields=("ref.env",)),
        EvidencePredicate(kind="verification", required_fields=("ref.env",)),
    ),
    steps=(
        StepDefinition(
            step_id="select-lkg",
            action_type=ACTION_RUN_VERIFICATION,
            description="Find the last known good deployment for the environment",
        ),
        StepDefinition(
            step_id="dispatch-deploy",
            action_type=ACTION_ROLLBACK_DEPLOY,
            description="Dispatch a deploy of the LKG reference",
        ),
        StepDefinition(
            step_id="verify-deploy",
            action_type=ACTION_RUN_VERIFICATION,
            description="Run post-deploy verification on the redeployed LKG",
        ),
    ),
)


def select_lkg(ctx: StepContext) -> StepResult:
    env = ref_value(ctx, _EVIDENCE_KINDS, "env")
    service = ref_value(ctx, _EVIDENCE_KINDS, "service")
    if not env:
        return StepResult.fail(
            "INVALID_EVIDENCE",
            "Missing required parameter: env",
            details(env=env, service=service),
        )
    try:
        env = normalize_environment(env)
    except ValueError as exc:
        return StepResult.fail("INVALID_ENVIRONMENT", f"Invalid environment value: {exc}", details(env=env))

    client, err = require_service(ctx, "deploy_history")
    if err is not None:
        return err
    history: DeployHistoryProtocol = client
    lkg = history.last_known_good(env=env, service=service)
    if not lkg:
        scope = f"env={env}" + (f", service={service}" if service else "")
        return StepResult.fail(
            "NO_LKG_FOUND",
            f"No Last Known Good deployment found for {scope}",
            "LKG requires status=GREEN and a passing verification report",
        )
    if not lkg.get("commitHash") and not lkg.get("imageDigest"):
        return StepResult.fail(
            "NO_LKG_REFERENCE",
            "LKG found but missing deploy reference (commitHash or imageDigest)",
            details(snapshotId=lkg.get("snapshotId")),
        )
    return StepResult.ok({"lkg": {name: lkg.get(name) for name in _LKG_FIELDS}})


def dispatch_deploy(ctx: StepContext) -> StepResult:
    selected = step_output(ctx, "select-lkg")
    lkg = (selected or {}).get("lkg")
    if not lkg:
        return StepResult.fail("MISSING_LKG_OUTPUT", "No LKG output from previous step")

    client, err = require_service(ctx, "deployer")
    if err is not None:
        return err
    deployer: DeployerProtocol = client
    ref = lkg.get("commitHash") or lkg.get("imageDigest")
    dispatched = dict(deployer.dispatch_deploy(env=lkg.get("env"), ref=ref, service=lkg.get("service")))
    dispatch_id = dispatched.get("dispatchId")
    if not dispatch_id:
        return StepResult.fail(
            "DISPATCH_DEPLOY_ERROR",
            "Deployer returned no dispatchId",
            details(env=lkg.get("env"), ref=ref),
        )
    return StepResult.ok(
        {
            "dispatchId": dispatch_id,
            "lkgReference": {
                "commitHash": lkg.get("commitHash"),
                "imageDigest": lkg.get("imageDigest"),
                "version": lkg.get("version"),
            },
            "env": lkg.get("env"),
            "service": lkg.get("service"),
        }
    )


def verify_deploy(ctx: StepContext) -> StepResult:
    dispatched = step_output(ctx, "dispatch-deploy")
    if dispatched is None:
        return StepResult.fail("MISSING_DISPATCH_OUTPUT", "No dispatch output from previous step")

    client, err = require_service(ctx, "verification")
    if err is not None:
        return err
    runner: VerificationRunnerProtocol = client
    env = dispatched.get("env")
    report = dict(
        runner.run_verification(env=env, incident_key=ctx.incident_key, deploy_id=dispatched.get("dispatchId"))
    )
    status = str(report.get("status") or "").lower()
    output = {
        "playbookRunId": report.get("runId"),
        "status": status,
        "reportHash": canonical_hash(report),
        "env": env,
        "dispatchId": dispatched.get("dispatchId"),
    }
    if status != "success":
        return StepResult.fail(
            "VERIFICATION_FAILED",
            "Post-deploy verification failed for LKG redeploy",
            output=output,
        )
    return StepResult.ok(output)


def select_lkg_idempotency_key(ctx: StepContext) -> str:
    env = ref_value(ctx, _EVIDENCE_KINDS, "env")
    service = ref_value(ctx, _EVIDENCE_KINDS, "service")
    return f"select-lkg:{ctx.incident_key}:{params_hash(env=env, service=service)}"


def dispatch_deploy_idempotency_key(ctx: StepContext) -> str:
    hour = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H")
    return f"dispatch-deploy:{ctx.incident_key}:{hour}"


def verify_deploy_idempotency_key(ctx: StepContext) -> str:
    dispatched = step_output(ctx, "dispatch-deploy") or {}
    dispatch_id = dispatched.get("dispatchId") or "unknown"
    return f"verification:{ctx.incident_key}:{params_hash(dispatchId=dispatch_id)}"


PLAYBOOK_ENTRY = PlaybookEntry(
    definition=DEFINITION,
    executors={
        "select-lkg": select_lkg,
        "dispatch-deploy": dispatch_deploy,
        "verify-deploy": verify_deploy,
    },
    idempotency_key_fns={
        "select-lkg": select_lkg_idempotency_key,
        "dispatch-deploy": dispatch_deploy_idempotency_key,
        "verify-deploy": verify_deploy_idempotency_key,
    },
)
