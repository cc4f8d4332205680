"""In-memory transport for tests and single-process deployments."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from typing import AsyncIterator, Deque, Dict, Optional, Tuple

from ..contracts import RunNotice
from .base import BaseTransport


class InMemoryTransport(BaseTransport[Tuple[str, RunNotice]]):
    """Simple in-process queue per topic."""

    def __init__(self, poll_interval: float = 0.05) -> None:
        self._queues: Dict[str, Deque[Tuple[str, RunNotice]]] = defaultdict(deque)
        self._lock = asyncio.Lock()
        self.poll_interval = poll_interval

    async def publish(self, topic: str, notice: RunNotice) -> None:
        raw = (notice.to_json(), notice)
        async with self._lock:
            self._queues[topic].append(raw)

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[Tuple[str, RunNotice], RunNotice]]:
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while True:
            if lifespan is not None and loop.time() - start_time >= lifespan:
                break

            async with self._lock:
                raw_message = self._queues[topic].popleft() if self._queues[topic] else None
            if raw_message is not None:
                yield raw_message, raw_message[1]
                continue

            await asyncio.sleep(self.poll_interval)

    async def ack(self, raw_message: Tuple[str, RunNotice]) -> None:
        """No-op acknowledgment for in-memory transport."""
        pass

    def pending(self, topic: str) -> int:
        return len(self._queues[topic])
