"""
Minimal migration runner for the remediation Postgres schema.

Usage:
  python -m apps.backend.db_migrate
  python -m apps.backend.db_migrate --dry-run
  python -m apps.backend.db_migrate --migrations-dir migrations
"""

from __future__ import annotations

import argparse
import logging
import re
from pathlib import Path
from typing import Any

from apps.backend.db import db_conn

logger = logging.getLogger(__name__)

# Comments, quoted literals and dollar-quoted bodies are skipped; bare ";" ends a statement.
_TOKEN_RE = re.compile(
    r"--[^\n]*"
    r"|/\*.*?\*/"
    r"|'(?:[^']|'')*'"
    r"|(?P<tag>\$(?:[A-Za-z_]\w*)?\$).*?(?P=tag)"
    r"|;",
    re.S,
)
_COMMENT_RE = re.compile(r"--[^\n]*|/\*.*?\*/", re.S)


def _ensure_migrations_table(conn: Any) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
              version TEXT PRIMARY KEY,
              applied_at TIMESTAMPTZ NOT NULL DEFAULT now()
            )
            """
        )
    conn.commit()


def _applied_versions(conn: Any) -> set[str]:
    with conn.cursor() as cur:
        cur.execute("SELECT version FROM schema_migrations")
        rows = cur.fetchall() or []
    return {str(r[0]) for r in rows if r and r[0]}


def _is_blank(stmt: str) -> bool:
    return not _COMMENT_RE.sub("", stmt).strip()


def _split_sql(sql: str) -> list[str]:
    """Split a SQL script into statements (comments and dollar-quoting aware)."""
    statements: list[str] = []
    start = 0
    for match in _TOKEN_RE.finditer(sql):
        if match.group(0) != ";":
            continue
        stmt = sql[start : match.start()].strip()
        if not _is_blank(stmt):
            statements.append(stmt)
        start = match.end()
    tail = sql[start:].strip()
    if not _is_blank(tail):
        statements.append(tail)
    return statements


def _iter_migration_files(migrations_dir: Path) -> list[Path]:
    """List .sql migration files in name order."""
    if not migrations_dir.exists():
        return []
    return sorted(
        (p for p in migrations_dir.iterdir() if p.is_file() and p.suffix == ".sql"),
        key=lambda p: p.name,
    )


def _apply_sql_migration(conn: Any, path: Path) -> None:
    """Apply every statement of one migration file in a single transaction."""
    with conn.cursor() as cur:
        for stmt in _split_sql(path.read_text(encoding="utf-8")):
            cur.execute(stmt)
        cur.execute("INSERT INTO schema_migrations (version) VALUES (%s)", (path.stem,))
    conn.commit()


def pending_migration_versions(conn: Any, *, migrations_dir: Path) -> list[str]:
    """Return pending migration versions for the provided connection."""
    _ensure_migrations_table(conn)
    applied = _applied_versions(conn)
    return [p.stem for p in _iter_migration_files(migrations_dir) if p.stem not in applied]


def ensure_schema_current(*, migrations_dir: Path) -> None:
    """Fail fast when database schema is behind local migrations."""
    with db_conn() as conn:
        pending = pending_migration_versions(conn, migrations_dir=migrations_dir)
    if pending:
        raise RuntimeError(
            f"Database schema is out of date. Pending migrations: {', '.join(pending)}. "
            "Run `python -m apps.backend.db_migrate` before starting the worker or API."
        )


def run_migrations(*, migrations_dir: Path, dry_run: bool = False) -> list[str]:
    """Apply pending migrations (or only list them in dry-run) and return their versions."""
    with db_conn() as conn:
        pending_versions = set(pending_migration_versions(conn, migrations_dir=migrations_dir))
        pending = [p for p in _iter_migration_files(migrations_dir) if p.stem in pending_versions]

        if dry_run:
            for path in pending:
                print(f"PENDING: {path.name}")
            if not pending:
                print("No pending migrations.")
            return [p.stem for p in pending]

        for path in pending:
            logger.info("migration_apply", extra={"version": path.stem})
            try:
                _apply_sql_migration(conn, path)
            except Exception:
                conn.rollback()
                logger.exception("migration_failed", extra={"version": path.stem})
                raise
            print(f"Applied {path.stem}")
        return [p.stem for p in pending]


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint."""
    parser = argparse.ArgumentParser(description="Apply remediation database migrations.")
    parser.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying.")
    parser.add_argument(
        "--migrations-dir",
        default=str(Path(__file__).resolve().parents[2] / "migrations"),
        help="Path to migrations directory (default: ./migrations).",
    )
    args = parser.parse_args(argv)
    run_migrations(migrations_dir=Path(args.migrations_dir), dry_run=bool(args.dry_run))


if __name__ == "__main__":
    main()
