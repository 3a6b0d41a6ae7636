# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration dataclasses and loader for the delivery pipeline.

Provides a nested configuration structure:
- config.worker.concurrency
- config.retention.store_content
- config.providers.dispatch_timeout

Settings come from an INI file (default: ``delivery.ini``) with ``NDP_*``
environment variables as fallbacks.

Environment variables:
    NDP_CONFIG - Path to the INI file (default: delivery.ini)
    NDP_LOG_LEVEL - Logging level (default: INFO)
    NDP_DB_PATH - Database path (default: /data/delivery_pipeline.db)
    NDP_HOST, NDP_PORT - API bind address (default: 0.0.0.0:8000)
    NDP_API_TOKEN - API authentication token
    NDP_WORKER_CONCURRENCY - Consumer tasks per worker (default: 4)
    NDP_WORKER_TOPIC - Queue topic to consume (default: workflow)
    NDP_QUEUE_MAX_ATTEMPTS - Transport attempts per job (default: 3)
    NDP_STORE_CONTENT - Persist compiled content (default: true)
    NDP_MESSAGE_RETENTION_DAYS - Message TTL in days (default: 30)
    NDP_DEFAULT_FROM - Fallback sender address
    NDP_DISPATCH_TIMEOUT - Provider call timeout in seconds (default: 30)
    NDP_LOG_DELIVERY_ACTIVITY - Verbose per-message logging (default: false)

Config file sections/keys:
    [storage] db_path
    [server] host, port, api_token
    [worker] concurrency, topic, max_attempts, retry_delays
    [retention] store_content, message_retention_days, in_app_retention_days
    [providers] default_from, dispatch_timeout, smtp_pool_ttl
    [execution_log] queue_size, put_timeout
    [logging] delivery_activity
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path

WORKFLOW_TOPIC = "workflow"


@dataclass
class WorkerConfig:
    """Queue consumer settings."""

    concurrency: int = 4
    """Number of consumer tasks processing jobs in parallel."""

    topic: str = WORKFLOW_TOPIC
    """Queue topic the workflow worker consumes."""

    max_attempts: int = 3
    """Transport-level attempts per job before the job is rejected."""

    retry_delays: tuple[float, ...] = (1.0, 5.0, 30.0)
    """Delays in seconds before each transport-level redelivery."""


@dataclass
class RetentionConfig:
    """Content and record retention settings."""

    store_content: bool = True
    """Persist compiled content and full payloads in audit entries."""

    message_retention_days: int = 30
    """Message TTL for every channel except in-app."""

    in_app_retention_days: int = 365
    """Message TTL for in-app messages."""


@dataclass
class ProviderConfig:
    """Provider dispatch settings."""

    default_from: str = "no-reply@localhost"
    """Sender used when the integration has no ``from`` credential."""

    dispatch_timeout: float = 30.0
    """Timeout in seconds for a single provider call."""

    smtp_pool_ttl: int = 300
    """Time-to-live in seconds for pooled SMTP connections."""


@dataclass
class ExecutionLogConfig:
    """Audit writer settings."""

    queue_size: int = 10000
    """Maximum number of entries buffered before callers wait."""

    put_timeout: float = 5.0
    """Timeout in seconds for buffering a single entry."""


@dataclass
class PipelineConfig:
    """Main configuration container for the delivery pipeline.

    Example:
        config = PipelineConfig(
            db_path="/data/delivery.db",
            worker=WorkerConfig(concurrency=8),
        )
    """

    db_path: str = "/data/delivery_pipeline.db"
    host: str = "0.0.0.0"
    port: int = 8000
    api_token: str | None = None
    log_delivery_activity: bool = False
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    retention: RetentionConfig = field(default_factory=RetentionConfig)
    providers: ProviderConfig = field(default_factory=ProviderConfig)
    execution_log: ExecutionLogConfig = field(default_factory=ExecutionLogConfig)


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_delays(value: str | None, default: tuple[float, ...]) -> tuple[float, ...]:
    if not value:
        return default
    return tuple(float(part) for part in value.split(",") if part.strip())


def load_settings(config_path: str | Path | None = None) -> PipelineConfig:
    """Load configuration from an INI file with environment fallbacks.

    File values win over environment variables, which win over the
    dataclass defaults.

    Args:
        config_path: INI path. Defaults to ``NDP_CONFIG`` or ``delivery.ini``.

    Returns:
        A fully populated :class:`PipelineConfig`.
    """
    path = Path(config_path or os.getenv("NDP_CONFIG", "delivery.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env: str) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env)

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        return default if value is None else int(value)

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        return default if value is None else float(value)

    defaults = PipelineConfig()
    return PipelineConfig(
        db_path=get("storage", "db_path", "NDP_DB_PATH") or defaults.db_path,
        host=get("server", "host", "NDP_HOST") or defaults.host,
        port=get_int("server", "port", "NDP_PORT", defaults.port),
        api_token=get("server", "api_token", "NDP_API_TOKEN") or None,
        log_delivery_activity=_parse_bool(
            get("logging", "delivery_activity", "NDP_LOG_DELIVERY_ACTIVITY"), False
        ),
        worker=WorkerConfig(
            concurrency=max(1, get_int("worker", "concurrency", "NDP_WORKER_CONCURRENCY", 4)),
            topic=get("worker", "topic", "NDP_WORKER_TOPIC") or WORKFLOW_TOPIC,
            max_attempts=max(1, get_int("worker", "max_attempts", "NDP_QUEUE_MAX_ATTEMPTS", 3)),
            retry_delays=_parse_delays(
                get("worker", "retry_delays", "NDP_QUEUE_RETRY_DELAYS"),
                defaults.worker.retry_delays,
            ),
        ),
        retention=RetentionConfig(
            store_content=_parse_bool(get("retention", "store_content", "NDP_STORE_CONTENT"), True),
            message_retention_days=get_int(
                "retention", "message_retention_days", "NDP_MESSAGE_RETENTION_DAYS", 30
            ),
            in_app_retention_days=get_int(
                "retention", "in_app_retention_days", "NDP_IN_APP_RETENTION_DAYS", 365
            ),
        ),
        providers=ProviderConfig(
            default_from=get("providers", "default_from", "NDP_DEFAULT_FROM")
            or defaults.providers.default_from,
            dispatch_timeout=get_float("providers", "dispatch_timeout", "NDP_DISPATCH_TIMEOUT", 30.0),
            smtp_pool_ttl=get_int("providers", "smtp_pool_ttl", "NDP_SMTP_POOL_TTL", 300),
        ),
        execution_log=ExecutionLogConfig(
            queue_size=get_int("execution_log", "queue_size", "NDP_EXECUTION_LOG_QUEUE_SIZE", 10000),
            put_timeout=get_float("execution_log", "put_timeout", "NDP_EXECUTION_LOG_PUT_TIMEOUT", 5.0),
        ),
    )


__all__ = [
    "ExecutionLogConfig",
    "PipelineConfig",
    "ProviderConfig",
    "RetentionConfig",
    "WORKFLOW_TOPIC",
    "WorkerConfig",
    "load_settings",
]
