from __future__ import annotations

import os
from typing import Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_OUTCOME_TOPIC,
    DEFAULT_PERSISTENCE_ATTEMPTS,
    DEFAULT_STEP_TIMEOUT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Execution engine tuning."""

    max_retry_delay: float = DEFAULT_MAX_RETRY_DELAY
    default_step_timeout: float = DEFAULT_STEP_TIMEOUT
    persistence_attempts: int = Field(default=DEFAULT_PERSISTENCE_ATTEMPTS, ge=1)
    outcome_topic: str = DEFAULT_OUTCOME_TOPIC
    publish_outcomes: bool = True


class ServiceEndpoint(BaseModel):
    """HTTP location of a domain service."""

    base_url: str
    headers: Dict[str, str] = Field(default_factory=dict)


class TriggerBinding(BaseModel):
    """Binds an inbound bus topic to a workflow definition."""

    topic: str
    definition: str
    version: Optional[int] = None


class SagalineConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    services: Dict[str, ServiceEndpoint] = Field(default_factory=dict)
    triggers: List[TriggerBinding] = Field(default_factory=list)
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> SagalineConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SAGALINE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("SAGALINE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = SagalineConfig(**data)
    else:
        config = SagalineConfig()

    env_db_url = os.getenv("SAGALINE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("SAGALINE_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    return config
