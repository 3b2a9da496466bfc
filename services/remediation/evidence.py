"""Evidence predicate matching for playbook prerequisites."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, NamedTuple

from contracts.remediation import Evidence, EvidencePredicate


class EvidenceCheck(NamedTuple):
    """Outcome of matching playbook predicates against incident evidence."""

    satisfied: bool
    missing: tuple[EvidencePredicate, ...]


def resolve_field_path(doc: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path (``ref.env``) against nested mappings; None if absent."""
    current: Any = doc
    for part in str(path).split("."):
        if not isinstance(current, Mapping) or part not in current:
            return None
        current = current[part]
    return current


def _matches(predicate: EvidencePredicate, item: Evidence) -> bool:
    if item.kind != predicate.kind:
        return False
    doc = item.as_dict()
    return all(resolve_field_path(doc, path) is not None for path in predicate.required_fields)


def check_evidence_predicates(
    required: Sequence[EvidencePredicate],
    present: Sequence[Evidence],
) -> EvidenceCheck:
    """Check every predicate has at least one matching evidence item.

    ``missing`` keeps declaration order.
    """
    missing = tuple(
        predicate for predicate in required if not any(_matches(predicate, item) for item in present)
    )
    return EvidenceCheck(satisfied=not missing, missing=missing)
