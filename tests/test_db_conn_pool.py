"""Tests for pooled DB connection lifecycle behavior."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import pytest

import apps.backend.db as db_mod
from infra.config import Settings


class _FakeConn:
    """Minimal fake psycopg2 connection."""

    def __init__(self, *, rollback_raises: bool = False) -> None:
        self.rollback_calls = 0
        self.close_calls = 0
        self._rollback_raises = rollback_raises

    def rollback(self) -> None:
        """Record rollback and optionally raise."""
        self.rollback_calls += 1
        if self._rollback_raises:
            raise RuntimeError("rollback failed")

    def close(self) -> None:
        """Record close call."""
        self.close_calls += 1


class _FakePool:
    """Minimal fake pool exposing getconn/putconn."""

    def __init__(self, conn: _FakeConn, *, put_raises: bool = False) -> None:
        self._conn = conn
        self.put_calls = 0
        self._put_raises = put_raises

    def getconn(self) -> _FakeConn:
        """Return the managed fake connection."""
        return self._conn

    def putconn(self, conn: _FakeConn) -> None:
        """Record putconn call and optionally raise."""
        assert conn is self._conn
        self.put_calls += 1
        if self._put_raises:
            raise RuntimeError("putconn failed")


def test_db_conn_rolls_back_before_return(monkeypatch: Any) -> None:
    """db_conn should rollback before returning a connection to pool."""
    conn = _FakeConn()
    pool = _FakePool(conn)
    monkeypatch.setattr(db_mod, "_get_pool", lambda: pool)

    with db_mod.db_conn() as acquired:
        assert acquired is conn

    assert conn.rollback_calls == 1
    assert pool.put_calls == 1
    assert conn.close_calls == 0


def test_db_conn_still_returns_connection_when_rollback_fails(monkeypatch: Any) -> None:
    """Rollback failures should not prevent returning the connection to pool."""
    conn = _FakeConn(rollback_raises=True)
    pool = _FakePool(conn)
    monkeypatch.setattr(db_mod, "_get_pool", lambda: pool)

    with db_mod.db_conn():
        pass

    assert conn.rollback_calls == 1
    assert pool.put_calls == 1
    assert conn.close_calls == 0


def test_db_conn_closes_when_putconn_fails(monkeypatch: Any) -> None:
    """If putconn fails, db_conn should close the connection."""
    conn = _FakeConn()
    pool = _FakePool(conn, put_raises=True)
    monkeypatch.setattr(db_mod, "_get_pool", lambda: pool)

    with db_mod.db_conn():
        pass

    assert conn.rollback_calls == 1
    assert pool.put_calls == 1
    assert conn.close_calls == 1


class _TxConn(_FakeConn):
    """Fake connection that also records commits."""

    def __init__(self) -> None:
        super().__init__()
        self.commit_calls = 0

    def commit(self) -> None:
        """Record commit call."""
        self.commit_calls += 1


def test_db_transaction_commits_on_success(monkeypatch: Any) -> None:
    """db_transaction commits when the block completes."""
    conn = _TxConn()
    monkeypatch.setattr(db_mod, "_get_pool", lambda: _FakePool(conn))

    with db_mod.db_transaction() as acquired:
        assert acquired is conn

    assert conn.commit_calls == 1


def test_db_transaction_rolls_back_and_reraises(monkeypatch: Any) -> None:
    """Errors inside the block roll back and propagate."""
    conn = _TxConn()
    monkeypatch.setattr(db_mod, "_get_pool", lambda: _FakePool(conn))

    with pytest.raises(ValueError):
        with db_mod.db_transaction():
            raise ValueError("boom")

    assert conn.commit_calls == 0
    assert conn.rollback_calls == 2


def test_get_pool_requires_db_url(monkeypatch: Any) -> None:
    """Without DB_URL the pool cannot be created."""
    settings = Settings.from_env(env={}, env_file=".missing.env")
    monkeypatch.setattr(db_mod, "get_settings", lambda: settings)

    with pytest.raises(RuntimeError, match="DB_URL is not set"):
        db_mod._get_pool()


def test_to_jsonb_serializes_canonical_values() -> None:
    """to_jsonb keeps None as SQL NULL and renders datetimes as UTC strings."""
    assert db_mod.to_jsonb(None) is None
    assert db_mod.to_jsonb({"at": datetime(2026, 1, 1, tzinfo=timezone.utc)}) == '{"at":"2026-01-01T00:00:00.000Z"}'
