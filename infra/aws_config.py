"""AWS SDK configuration for built-in playbooks.

The worker and API import from this module to keep AWS/client tuning in one
place. Clients are only built when a playbook needs them.
"""

from __future__ import annotations

from typing import Any

import boto3
from botocore.config import Config

from infra.config import AWSConfig, get_settings
from version import ENGINE_NAME, ENGINE_VERSION


def sdk_config(aws: AWSConfig | None = None) -> Config:
    """Return botocore client config with retry and timeout settings."""
    cfg = aws or get_settings().aws
    return Config(
        region_name=cfg.region,
        retries={"max_attempts": int(cfg.max_retries), "mode": "adaptive"},
        user_agent_extra=f"{ENGINE_NAME}/{ENGINE_VERSION}",
        connect_timeout=int(cfg.connect_timeout),
        read_timeout=int(cfg.timeout),
    )


def build_ecs_client(aws: AWSConfig | None = None, *, session: Any | None = None) -> Any:
    """Build a boto3 ECS client (``session`` may be injected for tests)."""
    cfg = aws or get_settings().aws
    factory = session if session is not None else boto3.session.Session()
    return factory.client("ecs", config=sdk_config(cfg))
