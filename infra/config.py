"""Centralized application configuration with schema validation.

This module is intentionally compatibility-first:
- Supports flat environment names (for example ``DB_URL``).
- Supports nested names (for example ``DB__URL``) for consistency.
- Optionally reads a local ``.env`` file before process env values.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from threading import Lock

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _normalize_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


class DatabaseConfig(BaseModel):
    """Database connection settings."""

    model_config = ConfigDict(frozen=True)

    url: str | None = Field(default=None, description="Postgres connection URL")
    pool_maxconn: int = Field(default=10, ge=1, le=100)
    connect_timeout: int = Field(default=5, ge=1, le=60)


class AWSConfig(BaseModel):
    """AWS client defaults used by the built-in playbooks."""

    model_config = ConfigDict(frozen=True)

    region: str = Field(default="us-east-1")
    max_retries: int = Field(default=10, ge=1, le=25)
    timeout: int = Field(default=60, ge=1, le=300)
    connect_timeout: int = Field(default=5, ge=1, le=60)

    @field_validator("region")
    @classmethod
    def _normalize_region(cls, value: str) -> str:
        text = str(value or "").strip().lower()
        if not re.match(r"^[a-z]{2}(-[a-z]+)+-\d+$", text):
            raise ValueError(f"aws.region is not a valid region name: {value!r}")
        return text


class APIConfig(BaseModel):
    """Flask API runtime configuration."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=5000, ge=1, le=65535)
    version: str = Field(default="v1")
    debug_errors: bool = Field(default=False)
    bearer_token: str = Field(default="")

    @field_validator("version")
    @classmethod
    def _normalize_version(cls, value: str) -> str:
        text = str(value or "").strip().lower()
        if re.match(r"^v\d+$", text):
            return text
        return "v1"


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        text = str(value or "").strip().upper()
        if text in _LOG_LEVELS:
            return text
        return "INFO"


class DbMetricsConfig(BaseModel):
    """DB query instrumentation settings."""

    model_config = ConfigDict(frozen=True)

    metrics_enabled: bool = Field(default=True)
    slow_query_threshold_ms: float = Field(default=1000.0, ge=0.0)

    @field_validator("metrics_enabled", mode="before")
    @classmethod
    def _normalize_metrics_enabled(cls, value: object) -> bool:
        return _normalize_bool(value, True)

    @field_validator("slow_query_threshold_ms", mode="before")
    @classmethod
    def _normalize_threshold_ms(cls, value: object) -> float:
        if value is None:
            return 1000.0
        text = str(value).strip()
        if text == "":
            return 1000.0
        try:
            parsed = float(text)
        except (TypeError, ValueError):
            return 1000.0
        return max(0.0, parsed)


class RemediationConfig(BaseModel):
    """Remediation engine settings."""

    model_config = ConfigDict(frozen=True)

    policy_path: str | None = Field(default=None, description="Lawbook JSON file; DB lawbook when unset")
    lawbook_id: str = Field(default="AFU9-LAWBOOK", min_length=1)
    idempotency_key_max_length: int = Field(default=256, ge=16, le=4096)
    max_concurrency: int = Field(default=4, ge=1, le=64)

    @field_validator("policy_path", mode="before")
    @classmethod
    def _normalize_policy_path(cls, value: object) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class WorkerConfig(BaseModel):
    """Worker/CLI runtime defaults."""

    model_config = ConfigDict(frozen=True)

    fail_on_skip: bool = Field(default=False)
    json_output: bool = Field(default=True)

    @field_validator("fail_on_skip", mode="before")
    @classmethod
    def _normalize_fail_on_skip(cls, value: object) -> bool:
        return _normalize_bool(value, False)

    @field_validator("json_output", mode="before")
    @classmethod
    def _normalize_json_output(cls, value: object) -> bool:
        return _normalize_bool(value, True)


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    db: DatabaseConfig = Field(default_factory=DatabaseConfig)
    aws: AWSConfig = Field(default_factory=AWSConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    db_metrics: DbMetricsConfig = Field(default_factory=DbMetricsConfig)
    remediation: RemediationConfig = Field(default_factory=RemediationConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Build settings from `.env` then environment variables."""
        runtime_env = os.environ if env is None else env
        merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
        payload = _build_payload(merged_env)
        return cls.model_validate(payload)


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse a minimal `.env` file format."""
    if not path.exists() or not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key_clean = key.strip()
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key_clean:
            values[key_clean] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides `.env` values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    for key, value in runtime_env.items():
        merged[str(key)] = str(value)
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    db = {
        "url": _first_non_empty(env, "DB__URL", "DB_URL", "DATABASE_URL"),
        "pool_maxconn": _first_non_empty(env, "DB__POOL_MAXCONN", "DB_POOL_MAXCONN"),
        "connect_timeout": _first_non_empty(env, "DB__CONNECT_TIMEOUT", "DB_CONNECT_TIMEOUT"),
    }
    aws = {
        "region": _first_non_empty(env, "AWS__REGION", "AWS_REGION", "AWS_DEFAULT_REGION"),
        "max_retries": _first_non_empty(env, "AWS__MAX_RETRIES", "AWS_MAX_RETRIES"),
        "timeout": _first_non_empty(env, "AWS__TIMEOUT", "AWS_TIMEOUT"),
        "connect_timeout": _first_non_empty(env, "AWS__CONNECT_TIMEOUT", "AWS_CONNECT_TIMEOUT"),
    }
    api = {
        "host": _first_non_empty(env, "API__HOST", "API_HOST", "HOST"),
        "port": _first_non_empty(env, "API__PORT", "API_PORT", "PORT"),
        "version": _first_non_empty(env, "API__VERSION", "API_VERSION"),
        "debug_errors": _first_non_empty(env, "API__DEBUG_ERRORS", "API_DEBUG_ERRORS"),
        "bearer_token": _first_non_empty(env, "API__BEARER_TOKEN", "API_BEARER_TOKEN"),
    }
    logging_settings = {
        "level": _first_non_empty(env, "LOGGING__LEVEL", "REMEDIATION_LOG_LEVEL"),
        "json_logs": _first_non_empty(env, "LOGGING__JSON_LOGS", "REMEDIATION_LOG_JSON"),
        "override_root_handlers": _first_non_empty(
            env, "LOGGING__OVERRIDE_ROOT_HANDLERS", "REMEDIATION_LOG_OVERRIDE"
        ),
    }
    db_metrics = {
        "metrics_enabled": _first_non_empty(env, "DB_METRICS__ENABLED", "DB_QUERY_METRICS_ENABLED"),
        "slow_query_threshold_ms": _first_non_empty(
            env, "DB_METRICS__SLOW_QUERY_THRESHOLD_MS", "DB_SLOW_QUERY_THRESHOLD_MS"
        ),
    }
    remediation = {
        "policy_path": _first_non_empty(env, "REMEDIATION__POLICY_PATH", "REMEDIATION_POLICY_PATH"),
        "lawbook_id": _first_non_empty(env, "REMEDIATION__LAWBOOK_ID", "LAWBOOK_ID"),
        "idempotency_key_max_length": _first_non_empty(
            env, "REMEDIATION__IDEMPOTENCY_KEY_MAX_LENGTH", "IDEMPOTENCY_KEY_MAX_LENGTH"
        ),
        "max_concurrency": _first_non_empty(
            env, "REMEDIATION__MAX_CONCURRENCY", "REMEDIATION_MAX_CONCURRENCY"
        ),
    }
    worker = {
        "fail_on_skip": _first_non_empty(env, "WORKER__FAIL_ON_SKIP", "WORKER_FAIL_ON_SKIP"),
        "json_output": _first_non_empty(env, "WORKER__JSON_OUTPUT", "WORKER_JSON_OUTPUT"),
    }
    return {
        "db": {k: v for k, v in db.items() if v is not None},
        "aws": {k: v for k, v in aws.items() if v is not None},
        "api": {k: v for k, v in api.items() if v is not None},
        "logging": {k: v for k, v in logging_settings.items() if v is not None},
        "db_metrics": {k: v for k, v in db_metrics.items() if v is not None},
        "remediation": {k: v for k, v in remediation.items() if v is not None},
        "worker": {k: v for k, v in worker.items() if v is not None},
    }


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings cache."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "APIConfig",
    "AWSConfig",
    "DatabaseConfig",
    "DbMetricsConfig",
    "LoggingSettings",
    "RemediationConfig",
    "Settings",
    "WorkerConfig",
    "get_settings",
    "clear_settings_cache",
    "ValidationError",
]
