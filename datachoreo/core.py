"""Wiring of the execution core from configuration."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from .approvals import ApprovalGate
from .compliance import ComplianceChain
from .config import DatachoreoConfig, load_config
from .contracts import (
    ApprovalDecision,
    CancelResult,
    ChainVerification,
    RetryResult,
    StepOutcome,
    TriggerResult,
)
from .dispatch import RunDispatcher
from .execute import StepExecutor
from .idempotency import IdempotencyLedger
from .locks import RunLock
from .persistence import get_store
from .persistence.models import ComplianceAnchor, ComplianceEvent, Run
from .persistence.repository import ExecutionStore
from .providers import register_builtin_actions
from .registry import REGISTRY, ActionRegistry
from .transports import BaseTransport, get_transport
from .vault import CredentialVault, SecretBackend, get_secret_backend
from .worker import Worker

logger = logging.getLogger(__name__)


class Core:
    """One object holding every component, sharing a single store.

    Anything not passed in is built from ``config`` (or ``load_config()``).
    """

    def __init__(
        self,
        config: Optional[DatachoreoConfig] = None,
        store: Optional[ExecutionStore] = None,
        transport: Optional[BaseTransport] = None,
        secret_backend: Optional[SecretBackend] = None,
        registry: ActionRegistry = REGISTRY,
        worker_id: Optional[str] = None,
    ) -> None:
        self.config = config or load_config()
        engine = self.config.engine
        if registry is not REGISTRY:
            register_builtin_actions(registry)

        self.store = store or get_store(config=self.config)
        self.transport = transport or get_transport(config=self.config)
        self.registry = registry
        self.ledger = IdempotencyLedger(self.store, engine.idempotency_retention_hours)
        self.lock = RunLock(self.store, engine.lock_ttl_seconds)
        self.chain = ComplianceChain(self.store, self.config.compliance.anchor_secret)
        self.vault = CredentialVault(
            self.store,
            backend=secret_backend or get_secret_backend(self.config.vault),
            master_key=self.config.vault.master_key,
            ledger=self.ledger,
            chain=self.chain,
        )
        self.executor = StepExecutor(
            self.store,
            self.chain,
            self.vault,
            self.ledger,
            self.lock,
            registry=registry,
            engine=engine,
            worker_id=worker_id,
        )
        self.dispatcher = RunDispatcher(
            self.store,
            self.chain,
            self.ledger,
            self.executor,
            transport=self.transport,
            registry=registry,
            engine=engine,
        )
        self.approvals = ApprovalGate(self.store, self.chain, notify=self.dispatcher.notify)

    def worker(self) -> Worker:
        return Worker(
            self.store,
            self.executor,
            self.approvals,
            self.ledger,
            self.lock,
            transport=self.transport,
            engine=self.config.engine,
        )

    async def close(self) -> None:
        await self.transport.disconnect()
        await self.vault.backend.disconnect()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

    # ------------------------------------------------------------------
    async def trigger(
        self,
        tenant_id: str,
        workflow_id: str,
        trigger_payload: Optional[dict[str, Any]],
        idempotency_key: str,
        trigger_type: str = "manual",
        actor: str = "system",
    ) -> TriggerResult:
        return await self.dispatcher.trigger(
            tenant_id, workflow_id, trigger_payload, idempotency_key, trigger_type, actor
        )

    async def process_next_step(self, run_id: str, worker_id: Optional[str] = None) -> StepOutcome:
        return await self.executor.process_next_step(run_id, worker_id)

    async def cancel_run(
        self,
        tenant_id: str,
        run_id: str,
        reason: str,
        rollback: bool = False,
        actor: str = "system",
    ) -> CancelResult:
        return await self.dispatcher.cancel_run(tenant_id, run_id, reason, rollback, actor)

    async def retry_run(
        self,
        tenant_id: str,
        run_id: str,
        mode: str = "from_failure",
        reset_context: bool = False,
        idempotency_key: Optional[str] = None,
    ) -> RetryResult:
        return await self.dispatcher.retry_run(
            tenant_id, run_id, mode, reset_context, idempotency_key
        )

    async def get_run(self, tenant_id: str, run_id: str) -> Run:
        return await self.dispatcher.get_run(tenant_id, run_id)

    async def decide_approval(
        self,
        tenant_id: str,
        approval_id: str,
        approver_id: str,
        decision: str,
        comment: Optional[str] = None,
        roles: Iterable[str] = (),
    ) -> ApprovalDecision:
        return await self.approvals.decide(
            approval_id, approver_id, decision, comment, roles, tenant_id=tenant_id
        )

    async def append_compliance_event(
        self,
        tenant_id: str,
        category: str,
        event_type: str,
        actor: str,
        payload: Optional[dict[str, Any]] = None,
        ref_type: Optional[str] = None,
        ref_id: Optional[str] = None,
        actor_type: str = "system",
    ) -> ComplianceEvent:
        return await self.chain.append(
            tenant_id, category, event_type, actor, payload, ref_type, ref_id, actor_type
        )

    async def verify_chain(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> ChainVerification:
        return await self.chain.verify_chain(tenant_id, start, end)

    async def compute_anchor(self, tenant_id: str, period: str) -> Optional[ComplianceAnchor]:
        return await self.chain.compute_anchor(tenant_id, period)
