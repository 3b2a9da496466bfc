"""PostgreSQL persistence for remediation runs, steps, audit events and lawbooks.

Tables are created by ``migrations/001_remediation_playbooks.sql``.

Run creation is a single ``INSERT ... ON CONFLICT (run_key) DO UPDATE ...
RETURNING`` statement: concurrent callers with the same run_key all get the
row of whoever inserted first, and the no-op ``DO UPDATE`` makes the
existing row come back from ``RETURNING``.

Each public method runs in its own transaction obtained from ``transaction``
(defaults to ``apps.backend.db.db_transaction``) so tests can inject a fake
connection.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from contextlib import AbstractContextManager
from typing import Any

from apps.backend.db import db_transaction, execute_conn, fetch_all_dict_conn, fetch_one_dict_conn, to_jsonb
from contracts.canonical import canonical_hash
from contracts.policy import PolicyDocument, parse_policy
from contracts.remediation import (
    AuditEventInput,
    Evidence,
    Incident,
    RemediationRun,
    RemediationRunInput,
    RemediationStep,
    RemediationStepInput,
)

logger = logging.getLogger(__name__)

TransactionFactory = Callable[[], AbstractContextManager[Any]]

_RUN_COLUMNS = (
    "id, run_key, incident_id, playbook_id, playbook_version, status, lawbook_version, "
    "inputs_hash, planned_json, result_json, created_at, updated_at"
)
_STEP_COLUMNS = (
    "id, remediation_run_id, step_id, action_type, status, idempotency_key, "
    "input_json, output_json, error_json, started_at, finished_at"
)

_RUN_PATCH_COLUMNS = {"planned_json": "jsonb", "result_json": "jsonb"}
_STEP_PATCH_COLUMNS = {
    "output_json": "jsonb",
    "error_json": "jsonb",
    "started_at": "timestamptz",
    "finished_at": "timestamptz",
}


def _run_from_row(row: Mapping[str, Any]) -> RemediationRun:
    return RemediationRun(
        id=str(row["id"]),
        run_key=str(row["run_key"]),
        incident_id=str(row["incident_id"]),
        playbook_id=str(row["playbook_id"]),
        playbook_version=str(row["playbook_version"]),
        status=str(row["status"]),
        lawbook_version=str(row["lawbook_version"]),
        inputs_hash=str(row["inputs_hash"]),
        planned_json=row.get("planned_json"),
        result_json=row.get("result_json"),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
    )


def _step_from_row(row: Mapping[str, Any]) -> RemediationStep:
    return RemediationStep(
        id=str(row["id"]),
        remediation_run_id=str(row["remediation_run_id"]),
        step_id=str(row["step_id"]),
        action_type=str(row["action_type"]),
        status=str(row["status"]),
        idempotency_key=row.get("idempotency_key"),
        input_json=row.get("input_json"),
        output_json=row.get("output_json"),
        error_json=row.get("error_json"),
        started_at=row.get("started_at"),
        finished_at=row.get("finished_at"),
    )


def _set_clause(patch: Mapping[str, Any], columns: Mapping[str, str], kind: str) -> tuple[list[str], list[Any]]:
    """Translate a patch mapping into ``col = %s::type`` assignments."""
    unknown = sorted(set(patch) - set(columns))
    if unknown:
        raise ValueError(f"unsupported {kind} patch fields: {', '.join(unknown)}")
    assignments: list[str] = []
    params: list[Any] = []
    for name in sorted(patch):
        cast = columns[name]
        assignments.append(f"{name} = %s::{cast}")
        value = patch[name]
        params.append(to_jsonb(value) if cast == "jsonb" else value)
    return assignments, params


class PostgresRemediationStore:
    """``RemediationStore`` backed by ``remediation_runs`` / ``remediation_steps``."""

    def __init__(self, *, transaction: TransactionFactory = db_transaction) -> None:
        self._tx = transaction

    def upsert_run_by_key(self, run_input: RemediationRunInput) -> RemediationRun:
        with self._tx() as conn:
            row = fetch_one_dict_conn(
                conn,
                f"""
                INSERT INTO remediation_runs
                  (id, run_key, incident_id, playbook_id, playbook_version, status,
                   lawbook_version, inputs_hash, planned_json, result_json)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s::jsonb, %s::jsonb)
                ON CONFLICT (run_key) DO UPDATE SET updated_at = remediation_runs.updated_at
                RETURNING {_RUN_COLUMNS}
                """,
                (
                    run_input.run_id or str(uuid.uuid4()),
                    run_input.run_key,
                    run_input.incident_id,
                    run_input.playbook_id,
                    run_input.playbook_version,
                    run_input.status,
                    run_input.lawbook_version,
                    run_input.inputs_hash,
                    to_jsonb(run_input.planned_json),
                    to_jsonb(run_input.result_json),
                ),
            )
        if row is None:
            raise RuntimeError(f"upsert returned no row for run_key {run_input.run_key!r}")
        return _run_from_row(row)

    def get_run_by_key(self, run_key: str) -> RemediationRun | None:
        with self._tx() as conn:
            row = fetch_one_dict_conn(
                conn, f"SELECT {_RUN_COLUMNS} FROM remediation_runs WHERE run_key = %s", (run_key,)
            )
        return _run_from_row(row) if row is not None else None

    def get_run(self, run_id: str) -> RemediationRun | None:
        with self._tx() as conn:
            row = fetch_one_dict_conn(conn, f"SELECT {_RUN_COLUMNS} FROM remediation_runs WHERE id = %s", (run_id,))
        return _run_from_row(row) if row is not None else None

    def create_step(self, step_input: RemediationStepInput) -> RemediationStep:
        with self._tx() as conn:
            row = fetch_one_dict_conn(
                conn,
                f"""
                INSERT INTO remediation_steps
                  (id, remediation_run_id, step_id, action_type, status, idempotency_key, input_json)
                VALUES (%s, %s, %s, %s, %s, %s, %s::jsonb)
                RETURNING {_STEP_COLUMNS}
                """,
                (
                    str(uuid.uuid4()),
                    step_input.remediation_run_id,
                    step_input.step_id,
                    step_input.action_type,
                    step_input.status,
                    step_input.idempotency_key,
                    to_jsonb(step_input.input_json),
                ),
            )
        if row is None:
            raise RuntimeError(f"step insert returned no row for {step_input.step_id!r}")
        return _step_from_row(row)

    def update_step_status(
        self,
        step_row_id: str,
        status: str,
        patch: Mapping[str, Any] | None = None,
    ) -> RemediationStep:
        assignments, params = _set_clause(patch or {}, _STEP_PATCH_COLUMNS, "step")
        sets = ", ".join(["status = %s", *assignments])
        with self._tx() as conn:
            row = fetch_one_dict_conn(
                conn,
                f"UPDATE remediation_steps SET {sets} WHERE id = %s RETURNING {_STEP_COLUMNS}",
                (status, *params, step_row_id),
            )
        if row is None:
            raise KeyError(step_row_id)
        return _step_from_row(row)

    def update_run_status(
        self,
        run_id: str,
        status: str,
        patch: Mapping[str, Any] | None = None,
    ) -> RemediationRun:
        assignments, params = _set_clause(patch or {}, _RUN_PATCH_COLUMNS, "run")
        sets = ", ".join(["status = %s", *assignments, "updated_at = now()"])
        with self._tx() as conn:
            row = fetch_one_dict_conn(
                conn,
                f"UPDATE remediation_runs SET {sets} WHERE id = %s RETURNING {_RUN_COLUMNS}",
                (status, *params, run_id),
            )
        if row is None:
            raise KeyError(run_id)
        return _run_from_row(row)

    def get_steps_for_run(self, run_id: str) -> list[RemediationStep]:
        with self._tx() as conn:
            rows = fetch_all_dict_conn(
                conn,
                f"""
                SELECT {_STEP_COLUMNS}
                FROM remediation_steps
                WHERE remediation_run_id = %s
                ORDER BY created_at ASC, id ASC
                """,
                (run_id,),
            )
        return [_step_from_row(r) for r in rows]

    def list_runs_for_incident(self, incident_id: str) -> list[RemediationRun]:
        with self._tx() as conn:
            rows = fetch_all_dict_conn(
                conn,
                f"""
                SELECT {_RUN_COLUMNS}
                FROM remediation_runs
                WHERE incident_id = %s
                ORDER BY created_at DESC, id DESC
                """,
                (incident_id,),
            )
        return [_run_from_row(r) for r in rows]


class PostgresAuditSink:
    """Append-only ``remediation_audit_events`` sink."""

    def __init__(self, *, transaction: TransactionFactory = db_transaction) -> None:
        self._tx = transaction

    def sink_name(self) -> str:
        return "postgres"

    def create_audit_event(self, event: AuditEventInput) -> None:
        with self._tx() as conn:
            execute_conn(
                conn,
                """
                INSERT INTO remediation_audit_events
                  (remediation_run_id, incident_id, event_type, lawbook_version, payload_json, payload_hash)
                VALUES (%s, %s, %s, %s, %s::jsonb, %s)
                """,
                (
                    event.remediation_run_id,
                    event.incident_id,
                    event.event_type,
                    event.lawbook_version,
                    to_jsonb(event.payload_json),
                    event.payload_hash,
                ),
            )

    def list_events(self, run_id: str) -> list[dict[str, Any]]:
        """Return audit rows of one run in emission order."""
        with self._tx() as conn:
            return fetch_all_dict_conn(
                conn,
                """
                SELECT event_type, lawbook_version, payload_json, payload_hash, created_at
                FROM remediation_audit_events
                WHERE remediation_run_id = %s
                ORDER BY id ASC
                """,
                (run_id,),
            )


class PostgresIncidentProvider:
    """Incidents and evidence from ``incidents`` / ``incident_evidence``."""

    def __init__(self, *, transaction: TransactionFactory = db_transaction) -> None:
        self._tx = transaction

    def get_incident(self, incident_id: str) -> Incident | None:
        with self._tx() as conn:
            row = fetch_one_dict_conn(
                conn,
                "SELECT id, incident_key, category, severity, status FROM incidents WHERE id = %s",
                (incident_id,),
            )
        if row is None:
            return None
        return Incident(
            id=str(row["id"]),
            incident_key=str(row["incident_key"]),
            category=row.get("category"),
            severity=str(row.get("severity") or ""),
            status=str(row.get("status") or ""),
        )

    def get_evidence(self, incident_id: str) -> list[Evidence]:
        with self._tx() as conn:
            rows = fetch_all_dict_conn(
                conn,
                """
                SELECT kind, ref, sha256
                FROM incident_evidence
                WHERE incident_id = %s
                ORDER BY created_at DESC, id DESC
                """,
                (incident_id,),
            )
        return [Evidence(kind=str(r["kind"]), ref=dict(r.get("ref") or {}), sha256=r.get("sha256")) for r in rows]

    def update_incident_status(self, incident_id: str, status: str) -> None:
        with self._tx() as conn:
            updated = execute_conn(
                conn,
                "UPDATE incidents SET status = %s, updated_at = now() WHERE id = %s",
                (status, incident_id),
            )
        if updated != 1:
            raise KeyError(incident_id)

    def add_evidence(self, incident_id: str, evidence: Sequence[Evidence]) -> None:
        if not evidence:
            return
        with self._tx() as conn:
            for item in evidence:
                execute_conn(
                    conn,
                    "INSERT INTO incident_evidence (incident_id, kind, ref, sha256) VALUES (%s, %s, %s::jsonb, %s)",
                    (incident_id, item.kind, to_jsonb(dict(item.ref)), item.sha256),
                )


class PostgresLawbookProvider:
    """Active lawbook from ``lawbook_active`` joined to ``lawbook_versions``.

    No active row means no lawbook (deny-by-default).
    """

    def __init__(self, lawbook_id: str = "AFU9-LAWBOOK", *, transaction: TransactionFactory = db_transaction) -> None:
        self._lawbook_id = lawbook_id
        self._tx = transaction

    def get_active_policy(self) -> PolicyDocument | None:
        with self._tx() as conn:
            row = fetch_one_dict_conn(
                conn,
                """
                SELECT v.lawbook_json
                FROM lawbook_active a
                JOIN lawbook_versions v ON v.id = a.active_lawbook_version_id
                WHERE a.lawbook_id = %s
                LIMIT 1
                """,
                (self._lawbook_id,),
            )
        if row is None:
            logger.warning("No active lawbook configured", extra={"lawbook_id": self._lawbook_id})
            return None
        return parse_policy(row["lawbook_json"])

    def publish(self, policy: PolicyDocument, *, created_by: str = "system", activate: bool = True) -> str:
        """Store a lawbook version (idempotent by content hash) and optionally activate it.

        Returns the lawbook content hash.
        """
        document = policy.to_dict()
        lawbook_hash = canonical_hash(document)
        with self._tx() as conn:
            row = fetch_one_dict_conn(
                conn,
                """
                INSERT INTO lawbook_versions (lawbook_id, lawbook_version, lawbook_json, lawbook_hash, created_by)
                VALUES (%s, %s, %s::jsonb, %s, %s)
                ON CONFLICT (lawbook_hash) DO UPDATE SET lawbook_hash = EXCLUDED.lawbook_hash
                RETURNING id
                """,
                (policy.lawbook_id, policy.lawbook_version, to_jsonb(document), lawbook_hash, created_by),
            )
            if row is None:
                raise RuntimeError("lawbook insert returned no row")
            if activate:
                execute_conn(
                    conn,
                    """
                    INSERT INTO lawbook_active (lawbook_id, active_lawbook_version_id, updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (lawbook_id) DO UPDATE SET
                      active_lawbook_version_id = EXCLUDED.active_lawbook_version_id,
                      updated_at = now()
                    """,
                    (policy.lawbook_id, row["id"]),
                )
        logger.info(
            "Lawbook published",
            extra={"lawbook_id": policy.lawbook_id, "lawbook_version": policy.lawbook_version, "activated": activate},
        )
        return lawbook_hash
