"""Lawbook (policy document) model.

The lawbook is the versioned document governing which playbooks and action
types may run and which evidence kinds an incident category requires. Documents
are stored as camelCase JSON; attributes are exposed snake_case.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class RemediationPolicy(BaseModel):
    """Remediation section of the lawbook."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    enabled: bool = False
    allowed_playbooks: tuple[str, ...] = Field(default=(), alias="allowedPlaybooks")
    allowed_actions: tuple[str, ...] = Field(default=(), alias="allowedActions")
    max_runs_per_incident: int | None = Field(default=None, ge=0, alias="maxRunsPerIncident")
    cooldown_minutes: float | None = Field(default=None, ge=0, alias="cooldownMinutes")


class EvidencePolicy(BaseModel):
    """Evidence section of the lawbook."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    required_kinds_by_category: dict[str, tuple[str, ...]] = Field(
        default_factory=dict, alias="requiredKindsByCategory"
    )


class DeterminismPolicy(BaseModel):
    """Determinism section of the lawbook."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    require_determinism_gate: bool = Field(default=False, alias="requireDeterminismGate")


class PolicyDocument(BaseModel):
    """Active lawbook version."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    lawbook_id: str = Field(default="AFU9-LAWBOOK", alias="lawbookId")
    lawbook_version: str = Field(min_length=1, alias="lawbookVersion")
    remediation: RemediationPolicy = Field(default_factory=RemediationPolicy)
    evidence: EvidencePolicy = Field(default_factory=EvidencePolicy)
    determinism: DeterminismPolicy = Field(default_factory=DeterminismPolicy)

    @field_validator("lawbook_version")
    @classmethod
    def _strip_version(cls, value: str) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("lawbookVersion must be non-empty")
        return text

    def required_kinds_for(self, category: str | None) -> tuple[str, ...]:
        """Return evidence kinds the lawbook requires for an incident category."""
        if not category:
            return ()
        return tuple(self.evidence.required_kinds_by_category.get(category, ()))

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def parse_policy(data: Mapping[str, Any] | str | bytes) -> PolicyDocument:
    """Parse a lawbook from a mapping or JSON text.

    Raises:
        pydantic.ValidationError: if the document is structurally invalid.
        ValueError: if JSON text cannot be decoded.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid lawbook JSON: {exc}") from exc
    return PolicyDocument.model_validate(data)
