"""Remediation playbook engine.

This package contains:
- guardrail gates (`gates.py`) and evidence predicates (`evidence.py`)
- the playbook registry/discovery (`registry.py`) and built-in playbooks (`playbooks/`)
- planning (`planner.py`) and execution (`executor.py`)
- audit emission (`audit.py`), policy providers and in-memory collaborators
"""

from services.remediation.audit import AuditEmitter, InMemoryAuditSink, NoopAuditSink
from services.remediation.errors import (
    IncidentNotFoundError,
    InvalidIdempotencyKeyError,
    MissingStepExecutorError,
    PlaybookNotFoundError,
    PlaybookValidationError,
    RemediationError,
)
from services.remediation.executor import RemediationExecutor
from services.remediation.memory_store import InMemoryIncidentProvider, InMemoryRemediationStore
from services.remediation.planner import plan_remediation_run
from services.remediation.policy_loader import FilePolicyProvider, StaticPolicyProvider
from services.remediation.registry import PlaybookEntry, PlaybookRegistry, build_default_registry

__all__ = [
    "AuditEmitter",
    "InMemoryAuditSink",
    "NoopAuditSink",
    "RemediationError",
    "IncidentNotFoundError",
    "InvalidIdempotencyKeyError",
    "MissingStepExecutorError",
    "PlaybookNotFoundError",
    "PlaybookValidationError",
    "RemediationExecutor",
    "InMemoryIncidentProvider",
    "InMemoryRemediationStore",
    "plan_remediation_run",
    "FilePolicyProvider",
    "StaticPolicyProvider",
    "PlaybookEntry",
    "PlaybookRegistry",
    "build_default_registry",
]
