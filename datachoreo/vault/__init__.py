"""Credential vault and its secret backends."""

from __future__ import annotations

from typing import Optional

from ..config import VaultConfig
from .backends import InMemorySecretBackend, RedisSecretBackend, SecretBackend
from .vault import CREDENTIAL_PROVIDERS, REQUIRED_FIELDS, CredentialVault


def get_secret_backend(config: Optional[VaultConfig] = None) -> SecretBackend:
    """Factory function to get the configured secret backend."""

    config = config or VaultConfig()
    if config.backend == "inmemory":
        return InMemorySecretBackend()
    elif config.backend == "redis":
        redis_conf = config.redis
        return RedisSecretBackend(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
    else:
        raise ValueError(f"Unsupported vault backend: {config.backend}")


__all__ = [
    "CREDENTIAL_PROVIDERS",
    "CredentialVault",
    "InMemorySecretBackend",
    "REQUIRED_FIELDS",
    "RedisSecretBackend",
    "SecretBackend",
    "get_secret_backend",
]
