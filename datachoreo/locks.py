"""Lease-based run lock shared by independent workers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import AsyncIterator, Optional

from .constants import DEFAULT_LOCK_TTL_SECONDS
from .persistence.models import utcnow
from .persistence.repository import ExecutionStore

logger = logging.getLogger(__name__)


class RunLock:
    """Acquire, extend and release the lock fields of a run row."""

    def __init__(self, store: ExecutionStore, ttl_seconds: float = DEFAULT_LOCK_TTL_SECONDS) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def acquire(self, run_id: str, worker_id: str, ttl: Optional[float] = None) -> bool:
        now = utcnow()
        until = now + timedelta(seconds=ttl or self.ttl_seconds)
        acquired = await self.store.acquire_lock(run_id, worker_id, until, now)
        if acquired:
            logger.debug(f"Worker {worker_id} acquired lock on run_id={run_id}")
        return acquired

    async def release(self, run_id: str, worker_id: str) -> bool:
        released = await self.store.release_lock(run_id, worker_id)
        if not released:
            logger.warning(f"Worker {worker_id} no longer holds lock on run_id={run_id}")
        return released

    async def extend(self, run_id: str, worker_id: str, ttl: Optional[float] = None) -> bool:
        until = utcnow() + timedelta(seconds=ttl or self.ttl_seconds)
        return await self.store.extend_lock(run_id, worker_id, until)

    async def is_locked(self, run_id: str) -> bool:
        run = await self.store.get_run(run_id)
        return bool(run and run.locked_until and run.locked_until >= utcnow())

    async def sweep_expired(self) -> int:
        cleared = await self.store.clear_expired_locks(utcnow())
        if cleared:
            logger.info(f"Cleared {cleared} expired run locks")
        return cleared

    @contextlib.asynccontextmanager
    async def heartbeat(
        self, run_id: str, worker_id: str, ttl: Optional[float] = None
    ) -> AsyncIterator[None]:
        """Extend the lease every ``ttl / 3`` seconds while the body runs."""
        ttl = ttl or self.ttl_seconds
        interval = ttl / 3

        async def _beat() -> None:
            while True:
                await asyncio.sleep(interval)
                if not await self.extend(run_id, worker_id, ttl):
                    logger.warning(f"Lost lock on run_id={run_id} while executing")
                    return

        task = asyncio.create_task(_beat())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
