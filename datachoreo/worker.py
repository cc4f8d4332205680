"""Polling worker that drives runnable runs and housekeeping sweeps."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from pydantic import BaseModel

from .approvals import ApprovalGate
from .config import EngineConfig
from .contracts import StepOutcome
from .dispatch import RUN_TOPIC
from .execute import StepExecutor
from .idempotency import IdempotencyLedger
from .locks import RunLock
from .persistence.models import RunStatus, utcnow
from .persistence.repository import ExecutionStore
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    locks_cleared: int = 0
    approvals_expired: int = 0
    idempotency_purged: int = 0


class Worker:
    """Claims pending runs one step at a time.

    Workers share nothing but the store. Any number of them may run against
    the same database; the run lock keeps each step on a single worker.
    """

    def __init__(
        self,
        store: ExecutionStore,
        executor: StepExecutor,
        approvals: ApprovalGate,
        ledger: IdempotencyLedger,
        lock: RunLock,
        transport: Optional[BaseTransport] = None,
        engine: Optional[EngineConfig] = None,
    ) -> None:
        self.store = store
        self.executor = executor
        self.approvals = approvals
        self.ledger = ledger
        self.lock = lock
        self.transport = transport
        self.engine = engine or EngineConfig()
        self._wake = asyncio.Event()

    @property
    def worker_id(self) -> str:
        return self.executor.worker_id

    async def run_once(self) -> list[StepOutcome]:
        """Advance every currently runnable run by one step."""
        runnable = await self.store.list_runnable(utcnow(), self.engine.batch_size)
        outcomes: list[StepOutcome] = []
        for run in runnable:
            try:
                outcome = await self.executor.process_next_step(run.id, self.worker_id)
            except Exception:
                logger.exception(f"Worker {self.worker_id} failed to process run_id={run.id}")
                continue
            outcomes.append(outcome)
        return outcomes

    async def sweep(self) -> SweepReport:
        report = SweepReport(
            locks_cleared=await self.lock.sweep_expired(),
            approvals_expired=len(await self.approvals.expire_overdue()),
            idempotency_purged=await self.ledger.purge_expired(),
        )
        logger.debug(f"Sweep by {self.worker_id}: {report.model_dump()}")
        return report

    async def _listen(self) -> None:
        async for raw_message, notice in self.transport.subscribe(RUN_TOPIC):
            logger.debug(f"Run notice {notice.reason} for run_id={notice.run_id}")
            self._wake.set()
            await self.transport.ack(raw_message)

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll until ``lifespan`` seconds have passed (forever when ``None``).

        Transport notices cut the idle wait short. Sweeps run every
        ``sweep_interval_seconds``.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        last_sweep: Optional[float] = None
        listener = asyncio.create_task(self._listen()) if self.transport is not None else None
        logger.info(f"Worker {self.worker_id} started")
        try:
            while lifespan is None or loop.time() - started < lifespan:
                if last_sweep is None or loop.time() - last_sweep >= self.engine.sweep_interval_seconds:
                    await self.sweep()
                    last_sweep = loop.time()

                self._wake.clear()
                outcomes = await self.run_once()
                if any(o.status == RunStatus.PENDING and not o.locked for o in outcomes):
                    continue

                timeout = self.engine.poll_interval_seconds
                if lifespan is not None:
                    timeout = max(0.0, min(timeout, lifespan - (loop.time() - started)))
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._wake.wait(), timeout=timeout)
        finally:
            if listener is not None:
                listener.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await listener
            logger.info(f"Worker {self.worker_id} stopped")
