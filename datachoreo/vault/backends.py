"""Secret storage backends used by the credential vault."""

from __future__ import annotations

import abc
import asyncio
from typing import Any, Dict, Optional

import redis.asyncio as redis


class SecretBackend(metaclass=abc.ABCMeta):
    """Opaque string storage addressed by secret name."""

    async def connect(self) -> None:
        """Open connection to the backend (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backend (no-op by default)."""
        pass

    @abc.abstractmethod
    async def get(self, name: str) -> Optional[str]:
        raise NotImplementedError

    @abc.abstractmethod
    async def set(self, name: str, value: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def delete(self, name: str) -> bool:
        raise NotImplementedError


class InMemorySecretBackend(SecretBackend):
    """Process-local secret storage for tests and single-worker setups."""

    def __init__(self) -> None:
        self._secrets: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def get(self, name: str) -> Optional[str]:
        return self._secrets.get(name)

    async def set(self, name: str, value: str) -> None:
        async with self._lock:
            self._secrets[name] = value

    async def delete(self, name: str) -> bool:
        async with self._lock:
            return self._secrets.pop(name, None) is not None


class RedisSecretBackend(SecretBackend):
    """Redis-based secret storage shared between workers."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        prefix: str = "datachoreo:vault:",
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.prefix = prefix
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    async def get(self, name: str) -> Optional[str]:
        client = await self._client()
        return await client.get(self.prefix + name)

    async def set(self, name: str, value: str) -> None:
        client = await self._client()
        await client.set(self.prefix + name, value)

    async def delete(self, name: str) -> bool:
        client = await self._client()
        return bool(await client.delete(self.prefix + name))
