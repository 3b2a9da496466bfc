"""Guardrail gates: deterministic ALLOW/DENY/HOLD decisions over the lawbook.

Every gate is a pure function of its params and the lawbook:

- deny-by-default: no lawbook means DENY ``LAWBOOK_MISSING``
- ``inputs_hash`` is the SHA-256 of the canonical JSON of the params only;
  the lawbook is represented by its version string
- reasons are sorted by code
- no gate raises on well-formed params

``generated_at`` is the only clock-dependent field. ``now`` may be injected
for tests and is never part of the hashed inputs.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from contracts.canonical import canonical_hash, utc_iso
from contracts.policy import PolicyDocument
from contracts.remediation import GateReason, GateVerdict

ALLOW = "ALLOW"
DENY = "DENY"
HOLD = "HOLD"

SEVERITY_ERROR = "ERROR"
SEVERITY_WARNING = "WARNING"
SEVERITY_INFO = "INFO"

DEFAULT_KEY_MAX_LENGTH = 256

_KEY_RE = re.compile(r"[A-Za-z0-9_:-]+")


# -----------------------------------------------------------------------------
# Params
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PlaybookGateParams:
    playbook_id: str
    incident_category: str | None = None
    evidence_kinds: Sequence[str] | None = None
    current_run_count: int | None = None
    last_run_timestamp: datetime | str | None = None

    def hash_input(self) -> dict[str, Any]:
        return _compact(
            {
                "playbookId": self.playbook_id,
                "incidentCategory": self.incident_category,
                "evidenceKinds": list(self.evidence_kinds) if self.evidence_kinds is not None else None,
                "currentRunCount": self.current_run_count,
                "lastRunTimestamp": self.last_run_timestamp,
            }
        )


@dataclass(frozen=True)
class ActionGateParams:
    action_type: str

    def hash_input(self) -> dict[str, Any]:
        return {"actionType": self.action_type}


@dataclass(frozen=True)
class EvidenceGateParams:
    required_kinds: Sequence[str]
    present_kinds: Sequence[str]

    def hash_input(self) -> dict[str, Any]:
        return {"requiredKinds": list(self.required_kinds), "presentKinds": list(self.present_kinds)}


@dataclass(frozen=True)
class DeterminismGateParams:
    has_determinism_report: bool
    determinism_report_status: str | None = None

    def hash_input(self) -> dict[str, Any]:
        return _compact(
            {
                "hasDeterminismReport": self.has_determinism_report,
                "determinismReportStatus": self.determinism_report_status,
            }
        )


@dataclass(frozen=True)
class IdempotencyKeyParams:
    key: str
    max_length: int = DEFAULT_KEY_MAX_LENGTH

    def hash_input(self) -> dict[str, Any]:
        return {"key": self.key, "maxLength": self.max_length}


def _compact(values: dict[str, Any]) -> dict[str, Any]:
    """Drop unset optional params so that omitted and None hash identically."""
    return {k: v for k, v in values.items() if v is not None}


# -----------------------------------------------------------------------------
# Verdict helpers
# -----------------------------------------------------------------------------


def _now(now: datetime | None) -> datetime:
    return now if now is not None else datetime.now(timezone.utc)


def _verdict(
    verdict: str,
    reasons: list[GateReason],
    lawbook_version: str | None,
    inputs_hash: str,
    now: datetime | None,
) -> GateVerdict:
    return GateVerdict(
        verdict=verdict,
        reasons=tuple(sorted(reasons, key=lambda r: r.code)),
        lawbook_version=lawbook_version,
        inputs_hash=inputs_hash,
        generated_at=utc_iso(_now(now)),
    )


def _lawbook_missing(inputs_hash: str, now: datetime | None) -> GateVerdict:
    reason = GateReason(
        code="LAWBOOK_MISSING",
        message="No active lawbook configuration found",
        severity=SEVERITY_ERROR,
    )
    return _verdict(DENY, [reason], None, inputs_hash, now)


def _parse_timestamp(value: datetime | str) -> datetime | None:
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value or "").strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def primary_reason(verdict: GateVerdict) -> GateReason | None:
    """Return the first ERROR reason, else the first reason."""
    for reason in verdict.reasons:
        if reason.severity == SEVERITY_ERROR:
            return reason
    return verdict.reasons[0] if verdict.reasons else None


def verdict_message(verdict: GateVerdict, default: str = "Denied by lawbook") -> str:
    """Human-readable message for a non-ALLOW verdict."""
    reason = primary_reason(verdict)
    return reason.message if reason is not None else default


# -----------------------------------------------------------------------------
# Gates
# -----------------------------------------------------------------------------


def gate_playbook_allowed(
    params: PlaybookGateParams,
    lawbook: PolicyDocument | None,
    *,
    now: datetime | None = None,
) -> GateVerdict:
    """Decide whether a playbook may run under the lawbook.

    Checks, first failure wins: remediation enabled, playbook allowlisted,
    category-required evidence kinds present (only when both category and
    evidence kinds are supplied), run count below the cap, cooldown elapsed.
    """
    inputs_hash = canonical_hash(params.hash_input())
    if lawbook is None:
        return _lawbook_missing(inputs_hash, now)

    version = lawbook.lawbook_version
    policy = lawbook.remediation

    def deny(code: str, message: str, rule_id: str) -> GateVerdict:
        reason = GateReason(code=code, message=message, severity=SEVERITY_ERROR, rule_id=rule_id)
        return _verdict(DENY, [reason], version, inputs_hash, now)

    if not policy.enabled:
        return deny("REMEDIATION_DISABLED", "Remediation is disabled in lawbook", "remediation.enabled")

    if params.playbook_id not in policy.allowed_playbooks:
        return deny(
            "PLAYBOOK_NOT_ALLOWED",
            f"Playbook '{params.playbook_id}' is not in allowed list",
            "remediation.allowedPlaybooks",
        )

    if params.incident_category and params.evidence_kinds is not None:
        present = set(params.evidence_kinds)
        missing = [k for k in lawbook.required_kinds_for(params.incident_category) if k not in present]
        if missing:
            return deny(
                "EVIDENCE_MISSING",
                f"Missing required evidence kinds: {', '.join(missing)}",
                f"evidence.requiredKindsByCategory.{params.incident_category}",
            )

    if (
        params.current_run_count is not None
        and policy.max_runs_per_incident is not None
        and params.current_run_count >= policy.max_runs_per_incident
    ):
        return deny(
            "MAX_RUNS_EXCEEDED",
            f"Maximum runs per incident ({policy.max_runs_per_incident}) exceeded",
            "remediation.maxRunsPerIncident",
        )

    if params.last_run_timestamp and policy.cooldown_minutes is not None:
        last_run = _parse_timestamp(params.last_run_timestamp)
        if last_run is not None:
            elapsed = (_now(now) - last_run).total_seconds() / 60.0
            if elapsed < policy.cooldown_minutes:
                remaining = math.ceil(policy.cooldown_minutes - elapsed)
                return deny(
                    "COOLDOWN_ACTIVE",
                    f"Cooldown active. Wait {remaining} more minutes",
                    "remediation.cooldownMinutes",
                )

    allowed = GateReason(
        code="PLAYBOOK_ALLOWED",
        message=f"Playbook '{params.playbook_id}' is allowed",
        severity=SEVERITY_INFO,
    )
    return _verdict(ALLOW, [allowed], version, inputs_hash, now)


def gate_action_allowed(
    params: ActionGateParams,
    lawbook: PolicyDocument | None,
    *,
    now: datetime | None = None,
) -> GateVerdict:
    """Decide whether an action type is allowlisted."""
    inputs_hash = canonical_hash(params.hash_input())
    if lawbook is None:
        return _lawbook_missing(inputs_hash, now)

    version = lawbook.lawbook_version
    if params.action_type not in lawbook.remediation.allowed_actions:
        reason = GateReason(
            code="ACTION_NOT_ALLOWED",
            message=f"Action type '{params.action_type}' is not in allowed list",
            severity=SEVERITY_ERROR,
            rule_id="remediation.allowedActions",
        )
        return _verdict(DENY, [reason], version, inputs_hash, now)

    reason = GateReason(
        code="ACTION_ALLOWED",
        message=f"Action type '{params.action_type}' is allowed",
        severity=SEVERITY_INFO,
    )
    return _verdict(ALLOW, [reason], version, inputs_hash, now)


def gate_evidence(params: EvidenceGateParams, *, now: datetime | None = None) -> GateVerdict:
    """Decide whether every required evidence kind is present."""
    inputs_hash = canonical_hash(params.hash_input())
    present = set(params.present_kinds)
    missing = sorted({k for k in params.required_kinds if k not in present})
    if missing:
        reason = GateReason(
            code="EVIDENCE_MISSING",
            message=f"Missing required evidence kinds: {', '.join(missing)}",
            severity=SEVERITY_ERROR,
        )
        return _verdict(DENY, [reason], None, inputs_hash, now)

    reason = GateReason(
        code="EVIDENCE_SATISFIED",
        message="All required evidence kinds are present",
        severity=SEVERITY_INFO,
    )
    return _verdict(ALLOW, [reason], None, inputs_hash, now)


def gate_determinism_required(
    params: DeterminismGateParams,
    lawbook: PolicyDocument | None,
    *,
    now: datetime | None = None,
) -> GateVerdict:
    """Decide whether the determinism report requirement is met."""
    inputs_hash = canonical_hash(params.hash_input())
    if lawbook is None:
        return _lawbook_missing(inputs_hash, now)

    version = lawbook.lawbook_version
    rule_id = "determinism.requireDeterminismGate"

    if not lawbook.determinism.require_determinism_gate:
        reason = GateReason(
            code="DETERMINISM_NOT_REQUIRED",
            message="Determinism gate is not required by lawbook",
            severity=SEVERITY_INFO,
        )
        return _verdict(ALLOW, [reason], version, inputs_hash, now)

    if not params.has_determinism_report:
        reason = GateReason(
            code="DETERMINISM_REPORT_MISSING",
            message="Determinism gate required but no report found",
            severity=SEVERITY_ERROR,
            rule_id=rule_id,
        )
        return _verdict(HOLD, [reason], version, inputs_hash, now)

    status = params.determinism_report_status
    if status == "PENDING":
        reason = GateReason(
            code="DETERMINISM_REPORT_PENDING",
            message="Determinism report is pending",
            severity=SEVERITY_WARNING,
            rule_id=rule_id,
        )
        return _verdict(HOLD, [reason], version, inputs_hash, now)

    if status == "FAIL":
        reason = GateReason(
            code="DETERMINISM_REPORT_FAILED",
            message="Determinism report failed",
            severity=SEVERITY_ERROR,
            rule_id=rule_id,
        )
        return _verdict(DENY, [reason], version, inputs_hash, now)

    if status == "PASS":
        reason = GateReason(
            code="DETERMINISM_REPORT_PASSED",
            message="Determinism report passed",
            severity=SEVERITY_INFO,
        )
        return _verdict(ALLOW, [reason], version, inputs_hash, now)

    reason = GateReason(
        code="DETERMINISM_REPORT_UNKNOWN",
        message="Determinism report status is unknown",
        severity=SEVERITY_ERROR,
        rule_id=rule_id,
    )
    return _verdict(DENY, [reason], version, inputs_hash, now)


def gate_idempotency_key_format(params: IdempotencyKeyParams, *, now: datetime | None = None) -> GateVerdict:
    """Validate length and charset (``[A-Za-z0-9_:-]``) of an idempotency key."""
    inputs_hash = canonical_hash(params.hash_input())
    max_length = params.max_length or DEFAULT_KEY_MAX_LENGTH

    if len(params.key) > max_length:
        reason = GateReason(
            code="KEY_TOO_LONG",
            message=(
                f"Idempotency key exceeds max length of {max_length} characters "
                f"(actual: {len(params.key)})"
            ),
            severity=SEVERITY_ERROR,
        )
        return _verdict(DENY, [reason], None, inputs_hash, now)

    if not _KEY_RE.fullmatch(params.key):
        reason = GateReason(
            code="KEY_INVALID_CHARS",
            message=(
                "Idempotency key contains invalid characters "
                "(only alphanumeric, hyphen, underscore, colon allowed)"
            ),
            severity=SEVERITY_ERROR,
        )
        return _verdict(DENY, [reason], None, inputs_hash, now)

    reason = GateReason(
        code="KEY_FORMAT_VALID",
        message="Idempotency key format is valid",
        severity=SEVERITY_INFO,
    )
    return _verdict(ALLOW, [reason], None, inputs_hash, now)
