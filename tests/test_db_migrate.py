"""Unit tests for db_migrate helpers."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from apps.backend import db_migrate

REPO_MIGRATIONS = Path(__file__).resolve().parents[1] / "migrations"


class _Cursor:
    def __init__(self, conn: _Conn) -> None:
        self._conn = conn

    def __enter__(self) -> _Cursor:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
        return False

    def execute(self, sql: str, params: Any = None) -> None:
        self._conn.executed.append((sql, params))

    def fetchall(self) -> list[tuple[str]]:
        return [(v,) for v in sorted(self._conn.applied)]


class _Conn:
    """Fake connection recording executed statements and commits."""

    def __init__(self, applied: set[str] | None = None) -> None:
        self.applied = set(applied or ())
        self.executed: list[tuple[str, Any]] = []
        self.commits = 0
        self.rollbacks = 0

    def cursor(self) -> _Cursor:
        return _Cursor(self)

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1


def test_split_sql_handles_single_quotes() -> None:
    sql = "INSERT INTO t VALUES ('a;b'); SELECT 1;"
    stmts = db_migrate._split_sql(sql)  # pylint: disable=protected-access
    assert len(stmts) == 2
    assert "INSERT INTO t" in stmts[0]
    assert "SELECT 1" in stmts[1]


def test_split_sql_handles_dollar_quoting() -> None:
    sql = """
    CREATE OR REPLACE FUNCTION foo() RETURNS void AS $$
    BEGIN
      PERFORM 1;
      PERFORM 2;
    END;
    $$ LANGUAGE plpgsql;
    CREATE TABLE t(x int);
    """
    stmts = db_migrate._split_sql(sql)  # pylint: disable=protected-access
    assert len(stmts) == 2
    assert "FUNCTION foo" in stmts[0]
    assert "CREATE TABLE t" in stmts[1]


def test_split_sql_handles_tagged_dollar_quoting() -> None:
    sql = """
    DO $tag$
    BEGIN
      PERFORM 1;
    END;
    $tag$;
    SELECT 1;
    """
    stmts = db_migrate._split_sql(sql)  # pylint: disable=protected-access
    assert len(stmts) == 2
    assert "DO $tag$" in stmts[0]
    assert "SELECT 1" in stmts[1]


def test_split_sql_ignores_semicolons_in_comments_and_blank_statements() -> None:
    sql = """
    -- leading comment; with a semicolon
    CREATE TABLE a(x int); /* block; comment */
    ;
    -- trailing comment only
    """
    stmts = db_migrate._split_sql(sql)  # pylint: disable=protected-access
    assert len(stmts) == 1
    assert "CREATE TABLE a" in stmts[0]


def test_repository_migration_splits_into_statements() -> None:
    """The shipped schema migration parses and creates every remediation table."""
    path = REPO_MIGRATIONS / "001_remediation_playbooks.sql"
    stmts = db_migrate._split_sql(path.read_text(encoding="utf-8"))  # pylint: disable=protected-access
    text = "\n".join(stmts)

    for table in (
        "incidents",
        "incident_evidence",
        "lawbook_versions",
        "lawbook_active",
        "remediation_runs",
        "remediation_steps",
        "remediation_audit_events",
    ):
        assert f"CREATE TABLE IF NOT EXISTS {table}" in text
    assert all(not s.endswith(";") for s in stmts)


def test_iter_migration_files_only_lists_sql(tmp_path: Path) -> None:
    (tmp_path / "002_b.sql").write_text("SELECT 2;", encoding="utf-8")
    (tmp_path / "001_a.sql").write_text("SELECT 1;", encoding="utf-8")
    (tmp_path / "notes.md").write_text("x", encoding="utf-8")

    files = db_migrate._iter_migration_files(tmp_path)  # pylint: disable=protected-access
    assert [p.name for p in files] == ["001_a.sql", "002_b.sql"]
    assert db_migrate._iter_migration_files(tmp_path / "missing") == []  # pylint: disable=protected-access


def test_pending_migration_versions_returns_only_pending(monkeypatch) -> None:
    monkeypatch.setattr(db_migrate, "_ensure_migrations_table", lambda _conn: None)
    monkeypatch.setattr(db_migrate, "_applied_versions", lambda _conn: {"001_init"})
    monkeypatch.setattr(
        db_migrate,
        "_iter_migration_files",
        lambda _migrations_dir: [Path("001_init.sql"), Path("002_next.sql")],
    )

    pending = db_migrate.pending_migration_versions(object(), migrations_dir=Path("migrations"))
    assert pending == ["002_next"]


def test_apply_sql_migration_records_version(tmp_path: Path) -> None:
    path = tmp_path / "001_init.sql"
    path.write_text("CREATE TABLE a(x int);\nCREATE TABLE b(y int);\n", encoding="utf-8")
    conn = _Conn()

    db_migrate._apply_sql_migration(conn, path)  # pylint: disable=protected-access

    assert [sql for sql, _ in conn.executed[:2]] == ["CREATE TABLE a(x int)", "CREATE TABLE b(y int)"]
    assert conn.executed[-1][1] == ("001_init",)
    assert conn.commits == 1


def test_run_migrations_applies_pending_in_order(monkeypatch, tmp_path: Path, capsys) -> None:
    (tmp_path / "001_a.sql").write_text("SELECT 1;", encoding="utf-8")
    (tmp_path / "002_b.sql").write_text("SELECT 2;", encoding="utf-8")
    conn = _Conn(applied={"001_a"})

    class _Ctx:
        def __enter__(self) -> _Conn:
            return conn

        def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
            return False

    monkeypatch.setattr(db_migrate, "db_conn", lambda: _Ctx())

    assert db_migrate.run_migrations(migrations_dir=tmp_path, dry_run=True) == ["002_b"]
    assert "PENDING: 002_b.sql" in capsys.readouterr().out

    applied = db_migrate.run_migrations(migrations_dir=tmp_path)
    assert applied == ["002_b"]
    assert ("SELECT 2", None) in conn.executed
    assert "Applied 002_b" in capsys.readouterr().out


def test_ensure_schema_current_raises_on_pending_migrations(monkeypatch) -> None:
    class _DummyCtx:
        def __enter__(self) -> object:
            return object()

        def __exit__(self, exc_type, exc, tb) -> bool:  # type: ignore[no-untyped-def]
            return False

    monkeypatch.setattr(db_migrate, "db_conn", lambda: _DummyCtx())
    monkeypatch.setattr(
        db_migrate,
        "pending_migration_versions",
        lambda _conn, migrations_dir: ["002_remediation_indexes"],
    )

    with pytest.raises(RuntimeError, match="002_remediation_indexes"):
        db_migrate.ensure_schema_current(migrations_dir=Path("migrations"))
