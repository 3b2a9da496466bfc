"""Tests for evidence predicate matching."""

from __future__ import annotations

from contracts.remediation import Evidence, EvidencePredicate
from services.remediation.evidence import check_evidence_predicates, resolve_field_path


def test_resolve_field_path_walks_nested_mappings() -> None:
    """Dotted paths resolve through nested dicts; absent parts resolve to None."""
    doc = {"ref": {"env": "prod", "nested": {"depth": 2}}}

    assert resolve_field_path(doc, "ref.env") == "prod"
    assert resolve_field_path(doc, "ref.nested.depth") == 2
    assert resolve_field_path(doc, "ref.missing") is None
    assert resolve_field_path(doc, "ref.env.deeper") is None


def test_predicate_requires_kind_and_non_null_fields() -> None:
    """A predicate matches evidence of its kind whose required fields are non-null."""
    predicate = EvidencePredicate(kind="ecs", required_fields=("ref.cluster", "ref.service"))
    complete = Evidence(kind="ecs", ref={"cluster": "c", "service": "s"})
    null_field = Evidence(kind="ecs", ref={"cluster": "c", "service": None})
    other_kind = Evidence(kind="alb", ref={"cluster": "c", "service": "s"})

    assert check_evidence_predicates([predicate], [complete]).satisfied
    assert not check_evidence_predicates([predicate], [null_field]).satisfied
    assert not check_evidence_predicates([predicate], [other_kind]).satisfied


def test_any_matching_item_satisfies_a_predicate() -> None:
    """One matching item among several is enough."""
    predicate = EvidencePredicate(kind="ecs", required_fields=("ref.cluster",))
    items = [Evidence(kind="ecs", ref={}), Evidence(kind="ecs", ref={"cluster": "prod"})]

    assert check_evidence_predicates([predicate], items).satisfied


def test_missing_predicates_keep_declaration_order() -> None:
    """Unsatisfied predicates are reported in the order the playbook declares them."""
    required = [
        EvidencePredicate(kind="logs"),
        EvidencePredicate(kind="ecs"),
        EvidencePredicate(kind="alb"),
    ]
    check = check_evidence_predicates(required, [Evidence(kind="ecs")])

    assert not check.satisfied
    assert [p.kind for p in check.missing] == ["logs", "alb"]


def test_no_predicates_is_always_satisfied() -> None:
    """A playbook without evidence requirements never blocks on evidence."""
    check = check_evidence_predicates([], [])

    assert check.satisfied
    assert check.missing == ()


def test_sha256_field_is_addressable() -> None:
    """Top-level evidence fields are available to predicates."""
    predicate = EvidencePredicate(kind="deploy", required_fields=("sha256",))

    assert check_evidence_predicates([predicate], [Evidence(kind="deploy", sha256="ab")]).satisfied
    assert not check_evidence_predicates([predicate], [Evidence(kind="deploy")]).satisfied
