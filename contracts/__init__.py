"""Contracts for the remediation engine.

The contracts package defines:
- canonical JSON / hashing / redaction shared by gates, planner and audit
- the remediation data model (playbooks, verdicts, runs, steps, audit events)
- the lawbook (policy document) model
- Protocol definitions for dependency injection

Main exports:
- PlaybookDefinition, StepDefinition, EvidencePredicate
- Incident, Evidence, GateVerdict, PlannedRun, RemediationRun, RemediationStep
- StepContext, StepResult, ExecutePlaybookRequest, ExecutePlaybookResponse
- PolicyDocument, parse_policy
"""

from contracts import canonical
from contracts import policy as policy_module
from contracts import remediation as remediation_module

# Explicit re-exports to satisfy ruff F401
__all__ = [
    "AuditEventInput",
    "Evidence",
    "EvidencePredicate",
    "ExecutePlaybookRequest",
    "ExecutePlaybookResponse",
    "GateReason",
    "GateVerdict",
    "Incident",
    "PlannedRun",
    "PlannedStep",
    "PlaybookDefinition",
    "PolicyDocument",
    "RemediationRun",
    "RemediationStep",
    "StepContext",
    "StepDefinition",
    "StepError",
    "StepResult",
    "canonical_hash",
    "canonical_json",
    "parse_policy",
    "sanitize_redact",
]

AuditEventInput = remediation_module.AuditEventInput
Evidence = remediation_module.Evidence
EvidencePredicate = remediation_module.EvidencePredicate
ExecutePlaybookRequest = remediation_module.ExecutePlaybookRequest
ExecutePlaybookResponse = remediation_module.ExecutePlaybookResponse
GateReason = remediation_module.GateReason
GateVerdict = remediation_module.GateVerdict
Incident = remediation_module.Incident
PlannedRun = remediation_module.PlannedRun
PlannedStep = remediation_module.PlannedStep
PlaybookDefinition = remediation_module.PlaybookDefinition
RemediationRun = remediation_module.RemediationRun
RemediationStep = remediation_module.RemediationStep
StepContext = remediation_module.StepContext
StepDefinition = remediation_module.StepDefinition
StepError = remediation_module.StepError
StepResult = remediation_module.StepResult

PolicyDocument = policy_module.PolicyDocument
parse_policy = policy_module.parse_policy

canonical_hash = canonical.canonical_hash
canonical_json = canonical.canonical_json
sanitize_redact = canonical.sanitize_redact
