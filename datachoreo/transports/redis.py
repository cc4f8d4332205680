"""Redis transport for cross-process run notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError

from ..contracts import RunNotice
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[str]):
    """Redis list used as a queue of run notices."""

    prefix = "datachoreo:"

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
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

    async def publish(self, topic: str, notice: RunNotice) -> None:
        if not self._redis:
            await self.connect()
        await self._redis.lpush(self.prefix + topic, notice.to_json())

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[str, RunNotice]]:
        if not self._redis:
            await self.connect()

        queue_name = self.prefix + topic
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            result = await self._redis.brpop(queue_name, timeout=1)
            if not result:
                continue
            _, message_json = result
            try:
                notice = RunNotice.from_json(message_json)
            except PydanticValidationError as exc:
                logger.warning(f"Discarding malformed run notice on {queue_name}: {exc}")
                continue
            yield message_json, notice

    async def ack(self, raw_message: str) -> None:
        """No-op acknowledgment (BRPOP already removed the message)."""
        pass
