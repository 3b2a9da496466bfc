"""Production wiring of the remediation executor.

The worker and the API both build their executor here so that policy source,
persistence and injected clients are chosen from settings in one place.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from apps.backend.remediation_store import (
    PostgresAuditSink,
    PostgresIncidentProvider,
    PostgresLawbookProvider,
    PostgresRemediationStore,
)
from contracts.interfaces import PolicyProvider
from infra.aws_config import build_ecs_client
from infra.config import Settings, get_settings
from services.remediation.executor import RemediationExecutor
from services.remediation.policy_loader import FilePolicyProvider
from services.remediation.registry import PlaybookRegistry, build_default_registry

logger = logging.getLogger(__name__)


def build_policy_provider(settings: Settings) -> PolicyProvider:
    """Lawbook file when ``REMEDIATION_POLICY_PATH`` is set, else the active DB lawbook."""
    path = settings.remediation.policy_path
    if path:
        return FilePolicyProvider(path)
    return PostgresLawbookProvider(settings.remediation.lawbook_id)


def default_services(settings: Settings, incidents: PostgresIncidentProvider) -> dict[str, Any]:
    """Clients available to built-in playbooks without extra configuration.

    Verification runners and deployers are deployment-specific and must be
    passed in through ``extra_services``.
    """
    return {
        "ecs": build_ecs_client(settings.aws),
        "incidents": incidents,
    }


def build_executor(
    settings: Settings | None = None,
    *,
    registry: PlaybookRegistry | None = None,
    extra_services: Mapping[str, Any] | None = None,
) -> RemediationExecutor:
    """Build a Postgres-backed executor with the built-in playbook registry."""
    settings = settings or get_settings()
    incidents = PostgresIncidentProvider()
    services = {**default_services(settings, incidents), **dict(extra_services or {})}
    executor = RemediationExecutor(
        incidents=incidents,
        policies=build_policy_provider(settings),
        store=PostgresRemediationStore(),
        audit_sink=PostgresAuditSink(),
        registry=registry or build_default_registry(),
        services=services,
        key_max_length=settings.remediation.idempotency_key_max_length,
    )
    logger.debug("Remediation executor built", extra={"services": sorted(services)})
    return executor
