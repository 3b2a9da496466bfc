"""
Protocol definitions for dependency injection.

The remediation engine owns no I/O of its own. Everything it reads or writes
goes through one of the collaborators defined here:

- incidents and their evidence (IncidentProvider)
- the active lawbook (PolicyProvider)
- runs and steps (RemediationStore)
- audit events (AuditSink)
- cloud clients used by built-in playbooks (ECSClientProtocol, ...)

Usage:
    from contracts.interfaces import RemediationStore

    # In production, use apps.backend.remediation_store.PostgresRemediationStore
    # In tests, use services.remediation.memory_store.InMemoryRemediationStore
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol, runtime_checkable

from contracts.policy import PolicyDocument
from contracts.remediation import (
    AuditEventInput,
    Evidence,
    Incident,
    RemediationRun,
    RemediationRunInput,
    RemediationStep,
    RemediationStepInput,
)

# -----------------------------------------------------------------------------
# Engine collaborators
# -----------------------------------------------------------------------------

@runtime_checkable
class IncidentProvider(Protocol):
    """Read access to incidents and their evidence."""

    def get_incident(self, incident_id: str) -> Incident | None:
        """Return the incident or None when unknown."""
        ...

    def get_evidence(self, incident_id: str) -> Sequence[Evidence]:
        """Return evidence attached to an incident (possibly empty)."""
        ...


@runtime_checkable
class PolicyProvider(Protocol):
    """Source of the active lawbook."""

    def get_active_policy(self) -> PolicyDocument | None:
        """Return the active lawbook or None when none is configured."""
        ...


@runtime_checkable
class RemediationStore(Protocol):
    """Persistence for remediation runs and steps."""

    def upsert_run_by_key(self, run_input: RemediationRunInput) -> RemediationRun:
        """Atomically create a run, or return the existing row for its run_key."""
        ...

    def get_run_by_key(self, run_key: str) -> RemediationRun | None:
        """Return the run with this key, if any."""
        ...

    def get_run(self, run_id: str) -> RemediationRun | None:
        """Return the run with this id, if any."""
        ...

    def create_step(self, step_input: RemediationStepInput) -> RemediationStep:
        """Create one step row."""
        ...

    def update_step_status(
        self,
        step_row_id: str,
        status: str,
        patch: Mapping[str, Any] | None = None,
    ) -> RemediationStep:
        """Transition a step and merge optional fields (output_json, error_json, ...)."""
        ...

    def update_run_status(
        self,
        run_id: str,
        status: str,
        patch: Mapping[str, Any] | None = None,
    ) -> RemediationRun:
        """Transition a run and merge optional fields (result_json, ...)."""
        ...

    def get_steps_for_run(self, run_id: str) -> list[RemediationStep]:
        """Return steps of a run in creation order."""
        ...

    def list_runs_for_incident(self, incident_id: str) -> list[RemediationRun]:
        """Return runs of an incident, newest first."""
        ...


@runtime_checkable
class AuditSink(Protocol):
    """Append-only audit destination."""

    def create_audit_event(self, event: AuditEventInput) -> None:
        """Record one audit event."""
        ...


# -----------------------------------------------------------------------------
# AWS Service Protocols (built-in playbooks)
# -----------------------------------------------------------------------------

@runtime_checkable
class ECSClientProtocol(Protocol):
    """Subset of the boto3 ECS client used by service-health-reset."""

    def describe_services(self, *, cluster: str, services: list[str]) -> dict[str, Any]:
        """Describe ECS services."""
        ...

    def update_service(self, *, cluster: str, service: str, forceNewDeployment: bool) -> dict[str, Any]:
        """Update an ECS service."""
        ...


# -----------------------------------------------------------------------------
# Delivery pipeline collaborators (built-in playbooks)
# -----------------------------------------------------------------------------

class IncidentWriterProtocol(Protocol):
    """Write access to incidents used by playbooks that resolve an incident."""

    def update_incident_status(self, incident_id: str, status: str) -> None:
        """Set the incident status (e.g. ``MITIGATED``)."""
        ...

    def add_evidence(self, incident_id: str, evidence: Sequence[Evidence]) -> None:
        """Attach evidence to an incident."""
        ...


class VerificationRunnerProtocol(Protocol):
    """Runs post-deploy verification for an environment."""

    def run_verification(
        self,
        *,
        env: str,
        incident_key: str,
        deploy_id: str | None = None,
    ) -> Mapping[str, Any]:
        """Run verification and return a report with ``runId`` and ``status``."""
        ...


class DeployHistoryProtocol(Protocol):
    """Lookup of previously successful deployments."""

    def last_known_good(self, *, env: str, service: str | None = None) -> Mapping[str, Any] | None:
        """Return the last known good deploy (``commitHash``, ``imageDigest``, ...)."""
        ...


class DeployerProtocol(Protocol):
    """Dispatches a deployment of a specific revision."""

    def dispatch_deploy(self, *, env: str, ref: str, service: str | None = None) -> Mapping[str, Any]:
        """Dispatch a deploy of ``ref`` and return a reference (``dispatchId``, ...)."""
        ...

