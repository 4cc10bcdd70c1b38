from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_ACTION_TIMEOUT_SECONDS,
    DEFAULT_EVENT_TOPIC,
    DEFAULT_LOCK_RETRY_INTERVAL_SECONDS,
    DEFAULT_LOCK_TTL_SECONDS,
    DEFAULT_LOCK_WAIT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_SNAPSHOT_EVENT_THRESHOLD,
    DEFAULT_SNAPSHOT_INTERVAL_SECONDS,
    DEFAULT_SNAPSHOTS_KEPT,
)


class RedisConfig(BaseModel):
    """Connection settings for Redis-backed locks and transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport used for queued event processing."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    topic: str = DEFAULT_EVENT_TOPIC
    redis: RedisConfig = RedisConfig()


class LockConfig(BaseModel):
    """Lease lock backend and timing."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS
    wait_seconds: float = DEFAULT_LOCK_WAIT_SECONDS
    retry_interval_seconds: float = DEFAULT_LOCK_RETRY_INTERVAL_SECONDS
    redis: RedisConfig = RedisConfig()


class SnapshotConfig(BaseModel):
    """When to materialize execution snapshots."""

    event_threshold: int = DEFAULT_SNAPSHOT_EVENT_THRESHOLD
    interval_seconds: float = DEFAULT_SNAPSHOT_INTERVAL_SECONDS
    keep: int = DEFAULT_SNAPSHOTS_KEPT


class RetryConfig(BaseModel):
    """Backoff settings for transient action failures."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    jitter: bool = True


class WorkerConfig(BaseModel):
    """Worker pool sizing and polling."""

    worker_count: int = 2
    poll_interval_seconds: float = 1.0
    batch_size: int = 10
    concurrency_limit: int = 5
    health_check_interval_seconds: float = 30.0
    action_timeout_seconds: float = DEFAULT_ACTION_TIMEOUT_SECONDS


class FlowcoreConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    transport: TransportConfig = TransportConfig()
    locks: LockConfig = LockConfig()
    snapshots: SnapshotConfig = SnapshotConfig()
    retry: RetryConfig = RetryConfig()
    worker: WorkerConfig = WorkerConfig()


def load_config(path: Optional[str] = None) -> FlowcoreConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWCORE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWCORE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowcoreConfig(**data)
    else:
        config = FlowcoreConfig()

    env_db_url = os.getenv("FLOWCORE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
