"""Audit sink primitives for remediation run events."""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any

from contracts.canonical import to_jsonable
from contracts.interfaces import AuditSink
from contracts.remediation import AuditEventInput, compute_payload_hash

logger = logging.getLogger(__name__)


class NoopAuditSink:
    """No-op sink used when no audit destination is configured."""

    def sink_name(self) -> str:
        """Return deterministic sink identifier."""
        return "noop"

    def create_audit_event(self, event: AuditEventInput) -> None:
        """Discard audit event."""
        _ = event


class InMemoryAuditSink:
    """In-memory audit sink for deterministic unit tests."""

    def __init__(self) -> None:
        self._events: list[AuditEventInput] = []
        self._lock = threading.Lock()

    def create_audit_event(self, event: AuditEventInput) -> None:
        """Store audit event in insertion order."""
        with self._lock:
            self._events.append(event)

    def sink_name(self) -> str:
        """Return deterministic sink identifier."""
        return "in_memory"

    def events(self, run_id: str | None = None) -> list[AuditEventInput]:
        """Return a copy of recorded events, optionally for one run."""
        with self._lock:
            events = list(self._events)
        if run_id is None:
            return events
        return [e for e in events if e.remediation_run_id == run_id]

    def event_types(self, run_id: str | None = None) -> list[str]:
        return [e.event_type for e in self.events(run_id)]


class AuditEmitter:
    """Fire-and-forget wrapper around an audit sink.

    Sink failures are logged and counted in ``dropped_events``; they never
    propagate into the run.
    """

    def __init__(self, sink: AuditSink | None = None) -> None:
        self._sink = sink or NoopAuditSink()
        self._dropped = 0
        self._lock = threading.Lock()

    @property
    def sink(self) -> AuditSink:
        return self._sink

    @property
    def dropped_events(self) -> int:
        with self._lock:
            return self._dropped

    def emit(
        self,
        *,
        run_id: str,
        incident_id: str,
        event_type: str,
        lawbook_version: str,
        payload: Mapping[str, Any],
    ) -> AuditEventInput | None:
        """Build, hash and record one event. Returns the event, or None if dropped."""
        payload_json = to_jsonable(dict(payload))
        event = AuditEventInput(
            remediation_run_id=run_id,
            incident_id=incident_id,
            event_type=event_type,
            lawbook_version=lawbook_version,
            payload_json=payload_json,
            payload_hash=compute_payload_hash(payload_json),
        )
        try:
            self._sink.create_audit_event(event)
        except Exception as exc:
            with self._lock:
                self._dropped += 1
            logger.warning(
                "Audit event dropped",
                extra={"run_id": run_id, "event_type": event_type, "error": str(exc)},
            )
            return None
        return event
