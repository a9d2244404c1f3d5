from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Connection settings for Redis."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class KafkaConfig(BaseModel):
    """Connection settings for Kafka."""

    bootstrap_servers: str = "localhost:9092"
    client_id: str = "sagaflow"


class EngineConfig(BaseModel):
    """Engine-wide defaults applied when ``WorkflowOptions`` leaves a field unset."""

    default_timeout_seconds: float = 300
    lock_timeout_seconds: int = 60
    max_retries: int = 3


class LockConfig(BaseModel):
    """Distributed lock store settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EventsConfig(BaseModel):
    """Durable sink and broadcast channel settings."""

    backend: Literal["inmemory", "redis", "kafka"] = "inmemory"
    durable_topic: str = "workflow-events"
    broadcast_topic: str = "/topic/workflows"
    redis: RedisConfig = RedisConfig()
    kafka: KafkaConfig = KafkaConfig()


class MaintenanceConfig(BaseModel):
    stale_step_threshold_minutes: int = 30
    retry_window_minutes: int = 60
    interval_seconds: float = 60


class SagaflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    locks: LockConfig = LockConfig()
    events: EventsConfig = EventsConfig()
    maintenance: MaintenanceConfig = MaintenanceConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> SagaflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SAGAFLOW_CONFIG env
            variable or 'sagaflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("SAGAFLOW_CONFIG", "sagaflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SagaflowConfig(**data)
    else:
        config = SagaflowConfig()

    env_db_url = os.getenv("SAGAFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    lock_backend = os.getenv("SAGAFLOW_LOCK_BACKEND")
    if lock_backend:
        config.locks.backend = lock_backend  # type: ignore[assignment]
    events_backend = os.getenv("SAGAFLOW_EVENTS_BACKEND")
    if events_backend:
        config.events.backend = events_backend  # type: ignore[assignment]
    return config
