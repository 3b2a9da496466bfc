"""Lawbook (policy) providers.

``StaticPolicyProvider`` serves a fixed document (tests, local runs).
``FilePolicyProvider`` reads a JSON document from disk and re-parses it only
when the file's mtime changes. A missing file means no active lawbook, which
the gates treat as deny-by-default.

The Postgres-backed provider lives in ``apps.backend.remediation_store``.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock
from typing import Any

from contracts.policy import PolicyDocument, parse_policy

logger = logging.getLogger(__name__)


class StaticPolicyProvider:
    """Return the same lawbook (or None) on every call."""

    def __init__(self, policy: PolicyDocument | Mapping[str, Any] | None = None) -> None:
        if policy is not None and not isinstance(policy, PolicyDocument):
            policy = parse_policy(policy)
        self._policy = policy

    def get_active_policy(self) -> PolicyDocument | None:
        return self._policy


class FilePolicyProvider:
    """Load the lawbook from a JSON file, cached by modification time.

    Invalid JSON or schema errors raise ``ValueError`` / ``pydantic.ValidationError``
    so a broken lawbook surfaces loudly; the executor still treats any provider
    error as "no lawbook" and denies.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self._path = Path(path)
        self._lock = Lock()
        self._cached: PolicyDocument | None = None
        self._cached_mtime: float | None = None

    @property
    def path(self) -> Path:
        return self._path

    def get_active_policy(self) -> PolicyDocument | None:
        try:
            mtime = self._path.stat().st_mtime
        except FileNotFoundError:
            logger.warning("Lawbook file not found", extra={"policy_path": str(self._path)})
            with self._lock:
                self._cached = None
                self._cached_mtime = None
            return None

        with self._lock:
            if self._cached is not None and self._cached_mtime == mtime:
                return self._cached
            policy = parse_policy(self._path.read_bytes())
            self._cached = policy
            self._cached_mtime = mtime
            logger.info(
                "Lawbook loaded",
                extra={
                    "policy_path": str(self._path),
                    "lawbook_id": policy.lawbook_id,
                    "lawbook_version": policy.lawbook_version,
                },
            )
            return policy
