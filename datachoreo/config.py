from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_APPROVAL_WINDOW_HOURS,
    DEFAULT_IDEMPOTENCY_RETENTION_HOURS,
    DEFAULT_LOCK_TTL_SECONDS,
    DEFAULT_MAX_RUN_RETRIES,
    DEFAULT_STEP_TIMEOUT_SECONDS,
    MAX_STEP_TIMEOUT_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis-backed components."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Run notification transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Timeouts and limits used by the execution engine and sweeps."""

    lock_ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS
    approval_window_hours: float = DEFAULT_APPROVAL_WINDOW_HOURS
    idempotency_retention_hours: float = DEFAULT_IDEMPOTENCY_RETENTION_HOURS
    max_run_retries: int = DEFAULT_MAX_RUN_RETRIES
    default_step_timeout_seconds: float = DEFAULT_STEP_TIMEOUT_SECONDS
    max_step_timeout_seconds: float = MAX_STEP_TIMEOUT_SECONDS
    backoff_base: float = 1.5
    backoff_jitter: float = 0.5
    backoff_cap_seconds: float = 10.0
    poll_interval_seconds: float = 1.0
    batch_size: int = 10
    sweep_interval_seconds: float = 30.0


class VaultConfig(BaseModel):
    """Credential vault settings.

    ``master_key`` is any secret string; the Fernet key is derived from it.
    When it is missing a random key is generated per process, which is only
    suitable for tests.
    """

    backend: Literal["inmemory", "redis"] = "inmemory"
    master_key: Optional[str] = None
    redis: RedisConfig = RedisConfig()


class ComplianceConfig(BaseModel):
    """Compliance chain settings."""

    anchor_secret: str = Field(default="", description="Server secret for anchor HMACs")


class DatachoreoConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    transport: TransportConfig = TransportConfig()
    engine: EngineConfig = EngineConfig()
    vault: VaultConfig = VaultConfig()
    compliance: ComplianceConfig = ComplianceConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> DatachoreoConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DATACHOREO_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DATACHOREO_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DatachoreoConfig(**data)
    else:
        config = DatachoreoConfig()

    env_db_url = os.getenv("DATACHOREO_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("DATACHOREO_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()  # type: ignore[assignment]
    env_master_key = os.getenv("DATACHOREO_VAULT_MASTER_KEY")
    if env_master_key:
        config.vault.master_key = env_master_key
    env_anchor_secret = os.getenv("DATACHOREO_ANCHOR_SECRET")
    if env_anchor_secret:
        config.compliance.anchor_secret = env_anchor_secret
    return config
