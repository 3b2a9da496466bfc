"""Exceptions raised by the remediation engine.

Policy denials and step failures are never raised: they come back as SKIPPED
or FAILED results. Only caller/configuration errors surface as exceptions.
"""

from __future__ import annotations


class RemediationError(Exception):
    """Base class for remediation configuration and contract errors."""


class IncidentNotFoundError(RemediationError):
    """Raised when the requested incident does not exist."""

    def __init__(self, incident_id: str) -> None:
        super().__init__(f"Incident not found: {incident_id}")
        self.incident_id = incident_id


class InvalidIdempotencyKeyError(RemediationError):
    """Raised when a computed run or step key fails format validation."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Invalid idempotency key {key!r}: {reason}")
        self.key = key
        self.reason = reason


class MissingStepExecutorError(RemediationError):
    """Raised when a playbook step has no bound executor."""

    def __init__(self, playbook_id: str, step_id: str) -> None:
        super().__init__(f"No executor bound for step {step_id!r} of playbook {playbook_id!r}")
        self.playbook_id = playbook_id
        self.step_id = step_id


class PlaybookNotFoundError(RemediationError):
    """Raised when a playbook id is not registered."""

    def __init__(self, playbook_id: str) -> None:
        super().__init__(f"Unknown playbook: {playbook_id}")
        self.playbook_id = playbook_id


class PlaybookValidationError(RemediationError):
    """Raised when a playbook definition or registry entry is invalid."""
