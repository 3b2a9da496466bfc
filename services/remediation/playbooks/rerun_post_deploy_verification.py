"""Re-run post-deploy verification and mark the incident mitigated when it passes."""

from __future__ import annotations

from contracts.canonical import canonical_hash
from contracts.interfaces import IncidentWriterProtocol, VerificationRunnerProtocol
from contracts.remediation import (
    ACTION_RUN_VERIFICATION,
    Evidence,
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

PLAYBOOK_ID = "rerun-post-deploy-verification"

_EVIDENCE_KINDS = ("verification", "deploy_status")

DEFINITION = PlaybookDefinition(
    id=PLAYBOOK_ID,
    version="1.0.0",
    title="Re-run Post-Deploy Verification",
    applicable_categories=("DEPLOY_VERIFICATION_FAILED", "ALB_TARGET_UNHEALTHY"),
    required_evidence=(
        EvidencePredicate(kind="verification", required_fields=("ref.env",)),
        EvidencePredicate(kind="deploy_status", required_fields=("ref.env",)),
    ),
    steps=(
        StepDefinition(
            step_id="run-verification",
            action_type=ACTION_RUN_VERIFICATION,
            description="Run post-deploy verification for the affected environment",
        ),
        StepDefinition(
            step_id="ingest-incident-update",
            action_type=ACTION_RUN_VERIFICATION,
            description="Mark the incident MITIGATED when verification passed",
        ),
    ),
)


def run_verification(ctx: StepContext) -> StepResult:
    """Run verification against the environment named by the evidence."""
    env = ref_value(ctx, _EVIDENCE_KINDS, "env")
    deploy_id = ref_value(ctx, _EVIDENCE_KINDS, "deployId")
    if not env:
        return StepResult.fail(
            "INVALID_EVIDENCE",
            "Missing required verification parameter: env",
            details(env=env, deployId=deploy_id),
        )
    try:
        env = normalize_environment(env)
    except ValueError as exc:
        return StepResult.fail("INVALID_ENVIRONMENT", f"Invalid environment value: {exc}", details(env=env))

    client, err = require_service(ctx, "verification")
    if err is not None:
        return err
    runner: VerificationRunnerProtocol = client
    report = dict(runner.run_verification(env=env, incident_key=ctx.incident_key, deploy_id=deploy_id))
    status = str(report.get("status") or "").lower()
    output = {
        "playbookRunId": report.get("runId"),
        "status": status,
        "reportHash": canonical_hash(report),
        "env": env,
        "deployId": deploy_id,
    }
    if status != "success":
        return StepResult.fail("VERIFICATION_FAILED", "Post-deploy verification failed", output=output)
    return StepResult.ok(output)


def ingest_incident_update(ctx: StepContext) -> StepResult:
    """Resolve the incident when verification passed in the incident's environment."""
    verification = step_output(ctx, "run-verification")
    if verification is None:
        return StepResult.fail("MISSING_VERIFICATION_OUTPUT", "No verification output from previous step")

    if verification.get("status") != "success":
        return StepResult.ok(
            {
                "message": "Verification did not pass, skipping incident update",
                "incidentId": ctx.incident_id,
                "currentStatus": "unchanged",
            }
        )

    verification_env = verification.get("env")
    incident_env = ref_value(ctx, _EVIDENCE_KINDS, "env")
    try:
        incident_env = normalize_environment(incident_env) if incident_env else None
    except ValueError:
        incident_env = None

    if incident_env and incident_env != verification_env:
        return StepResult.ok(
            {
                "message": (
                    f"Verification passed for {verification_env} but incident is for "
                    f"{incident_env}, not marking MITIGATED"
                ),
                "incidentId": ctx.incident_id,
                "currentStatus": "unchanged",
                "envMismatch": True,
                "incidentEnv": incident_env,
                "verificationEnv": verification_env,
            }
        )

    client, err = require_service(ctx, "incidents")
    if err is not None:
        return err
    incidents: IncidentWriterProtocol = client
    incidents.update_incident_status(ctx.incident_id, "MITIGATED")
    incidents.add_evidence(
        ctx.incident_id,
        [
            Evidence(
                kind="verification",
                ref={
                    "playbookRunId": verification.get("playbookRunId"),
                    "reportHash": verification.get("reportHash"),
                    "env": verification_env,
                    "deployId": verification.get("deployId"),
                    "status": "success",
                },
                sha256=verification.get("reportHash"),
            )
        ],
    )
    return StepResult.ok(
        {
            "message": "Incident marked as MITIGATED",
            "incidentId": ctx.incident_id,
            "newStatus": "MITIGATED",
            "verificationRunId": verification.get("playbookRunId"),
            "env": verification_env,
        }
    )


def verification_idempotency_key(ctx: StepContext) -> str:
    env = ref_value(ctx, _EVIDENCE_KINDS, "env")
    deploy_id = ref_value(ctx, _EVIDENCE_KINDS, "deployId")
    return f"verification:{ctx.incident_key}:{params_hash(env=env, deployId=deploy_id)}"


def incident_update_idempotency_key(ctx: StepContext) -> str:
    return f"incident-update:{ctx.incident_key}"


PLAYBOOK_ENTRY = PlaybookEntry(
    definition=DEFINITION,
    executors={
        "run-verification": run_verification,
        "ingest-incident-update": ingest_incident_update,
    },
    idempotency_key_fns={
        "run-verification": verification_idempotency_key,
        "ingest-incident-update": incident_update_idempotency_key,
    },
)
