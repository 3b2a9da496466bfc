"""Tests for the Postgres remediation store against a fake connection."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any

import pytest

from apps.backend.remediation_store import (
    PostgresAuditSink,
    PostgresIncidentProvider,
    PostgresLawbookProvider,
    PostgresRemediationStore,
)
from contracts.canonical import canonical_hash
from contracts.remediation import AuditEventInput, Evidence, RemediationRunInput
from tests.factories import make_policy


class _FakeCursor:
    def __init__(self, conn: _FakeConn) -> None:
        self._conn = conn
        self.description: list[tuple[str]] | None = None
        self.rowcount = 0
        self._rows: list[tuple[Any, ...]] = []

    def __enter__(self) -> _FakeCursor:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def execute(self, sql: str, params: Any = None) -> None:
        self._conn.executed.append((" ".join(sql.split()), tuple(params or ())))
        result = self._conn.results.pop(0) if self._conn.results else []
        if isinstance(result, int):
            self.rowcount = result
            self.description = None
            self._rows = []
            return
        rows = list(result)
        self.rowcount = len(rows)
        self.description = [(name,) for name in rows[0]] if rows else [("id",)]
        self._rows = [tuple(r.values()) for r in rows]

    def fetchone(self) -> tuple[Any, ...] | None:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> list[tuple[Any, ...]]:
        return list(self._rows)


class _FakeConn:
    """Connection that serves queued results (a list of row dicts, or a rowcount)."""

    def __init__(self, results: list[Any] | None = None) -> None:
        self.results = list(results or [])
        self.executed: list[tuple[str, tuple[Any, ...]]] = []

    def cursor(self) -> _FakeCursor:
        return _FakeCursor(self)


def _tx(conn: _FakeConn):
    @contextmanager
    def _factory():
        yield conn

    return _factory


def _run_row(**overrides: Any) -> dict[str, Any]:
    row = {
        "id": "run-1",
        "run_key": "alb:prod:api:p:h",
        "incident_id": "inc-1",
        "playbook_id": "p",
        "playbook_version": "1.0.0",
        "status": "PLANNED",
        "lawbook_version": "v1",
        "inputs_hash": "h",
        "planned_json": {"steps": []},
        "result_json": None,
        "created_at": None,
        "updated_at": None,
    }
    row.update(overrides)
    return row


def test_upsert_uses_on_conflict_run_key_and_returns_existing_row() -> None:
    """The upsert is one statement keyed on run_key; the returned row wins."""
    conn = _FakeConn([[_run_row(id="run-existing")]])
    store = PostgresRemediationStore(transaction=_tx(conn))

    run = store.upsert_run_by_key(
        RemediationRunInput(
            run_key="alb:prod:api:p:h",
            incident_id="inc-1",
            playbook_id="p",
            playbook_version="1.0.0",
            status="PLANNED",
            lawbook_version="v1",
            inputs_hash="h",
            planned_json={"steps": []},
            run_id="run-new",
        )
    )

    sql, params = conn.executed[0]
    assert "ON CONFLICT (run_key) DO UPDATE" in sql
    assert "RETURNING" in sql
    assert params[0] == "run-new"
    assert params[8] == '{"steps":[]}'
    assert params[9] is None
    assert run.id == "run-existing"


def test_update_run_status_casts_json_and_bumps_updated_at() -> None:
    """Patches become typed assignments and unknown rows raise KeyError."""
    conn = _FakeConn([[_run_row(status="SUCCEEDED", result_json={"ok": True})], []])
    store = PostgresRemediationStore(transaction=_tx(conn))

    run = store.update_run_status("run-1", "SUCCEEDED", {"result_json": {"ok": True}})

    sql, params = conn.executed[0]
    assert "status = %s, result_json = %s::jsonb, updated_at = now()" in sql
    assert params == ("SUCCEEDED", '{"ok":true}', "run-1")
    assert run.result_json == {"ok": True}

    with pytest.raises(KeyError):
        store.update_run_status("ghost", "FAILED")


def test_update_step_status_rejects_unknown_fields() -> None:
    """Only whitelisted step columns are patchable."""
    store = PostgresRemediationStore(transaction=_tx(_FakeConn()))

    with pytest.raises(ValueError, match="idempotency_key"):
        store.update_step_status("s-1", "FAILED", {"idempotency_key": "x"})


def test_get_run_by_key_missing_returns_none() -> None:
    """No row means no run."""
    store = PostgresRemediationStore(transaction=_tx(_FakeConn([[]])))

    assert store.get_run_by_key("nope") is None


def test_steps_are_ordered_by_creation() -> None:
    """Steps are read in creation order."""
    step = {
        "id": "s-1",
        "remediation_run_id": "run-1",
        "step_id": "check",
        "action_type": "RUN_VERIFICATION",
        "status": "SUCCEEDED",
        "idempotency_key": "k",
        "input_json": {},
        "output_json": None,
        "error_json": None,
        "started_at": None,
        "finished_at": None,
    }
    conn = _FakeConn([[step]])
    store = PostgresRemediationStore(transaction=_tx(conn))

    steps = store.get_steps_for_run("run-1")

    assert [s.step_id for s in steps] == ["check"]
    assert "ORDER BY created_at ASC, id ASC" in conn.executed[0][0]


def test_audit_sink_inserts_hashed_payload() -> None:
    """Audit rows carry the payload JSON and its hash."""
    conn = _FakeConn([1])
    sink = PostgresAuditSink(transaction=_tx(conn))
    payload = {"status": "SUCCEEDED"}

    sink.create_audit_event(
        AuditEventInput(
            remediation_run_id="run-1",
            incident_id="inc-1",
            event_type="COMPLETED",
            lawbook_version="v1",
            payload_json=payload,
            payload_hash=canonical_hash(payload),
        )
    )

    sql, params = conn.executed[0]
    assert sql.startswith("INSERT INTO remediation_audit_events")
    assert params[2] == "COMPLETED"
    assert params[5] == canonical_hash(payload)
    assert sink.sink_name() == "postgres"


def test_incident_provider_status_update_requires_existing_row() -> None:
    """Updating a missing incident raises KeyError."""
    provider = PostgresIncidentProvider(transaction=_tx(_FakeConn([0])))

    with pytest.raises(KeyError):
        provider.update_incident_status("missing", "MITIGATED")


def test_incident_provider_reads_incident_and_evidence() -> None:
    """Rows map onto Incident and Evidence values."""
    conn = _FakeConn(
        [
            [{"id": "inc-1", "incident_key": "k", "category": None, "severity": "RED", "status": "OPEN"}],
            [{"kind": "ecs", "ref": {"cluster": "c"}, "sha256": None}],
        ]
    )
    provider = PostgresIncidentProvider(transaction=_tx(conn))

    incident = provider.get_incident("inc-1")
    evidence = provider.get_evidence("inc-1")

    assert incident.incident_key == "k"
    assert incident.category is None
    assert evidence == [Evidence(kind="ecs", ref={"cluster": "c"})]


def test_incident_provider_add_evidence_inserts_each_item() -> None:
    conn = _FakeConn([1, 1])
    provider = PostgresIncidentProvider(transaction=_tx(conn))

    provider.add_evidence("inc-1", [Evidence(kind="a"), Evidence(kind="b", sha256="ff")])

    assert [params[1] for _, params in conn.executed] == ["a", "b"]


def test_lawbook_provider_returns_none_without_active_version() -> None:
    """No active lawbook row means deny-by-default."""
    provider = PostgresLawbookProvider(transaction=_tx(_FakeConn([[]])))

    assert provider.get_active_policy() is None


def test_lawbook_provider_parses_active_document() -> None:
    policy = make_policy()
    conn = _FakeConn([[{"lawbook_json": policy.to_dict()}]])

    loaded = PostgresLawbookProvider(transaction=_tx(conn)).get_active_policy()

    assert loaded == policy
    assert conn.executed[0][1] == ("AFU9-LAWBOOK",)


def test_lawbook_publish_is_content_addressed_and_activates() -> None:
    """Publishing hashes the document, inserts idempotently and activates the version."""
    policy = make_policy()
    conn = _FakeConn([[{"id": 7}], 1])

    lawbook_hash = PostgresLawbookProvider(transaction=_tx(conn)).publish(policy, created_by="ops")

    assert lawbook_hash == canonical_hash(policy.to_dict())
    insert_sql, insert_params = conn.executed[0]
    assert "ON CONFLICT (lawbook_hash)" in insert_sql
    assert insert_params[3] == lawbook_hash
    activate_sql, activate_params = conn.executed[1]
    assert activate_sql.startswith("INSERT INTO lawbook_active")
    assert activate_params == ("AFU9-LAWBOOK", 7)
