"""Run dispatcher: workflow definitions, triggers, cancellation and retries."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Union

from .compliance import ComplianceChain
from .config import EngineConfig
from .contracts import CancelResult, RetryResult, RunNotice, TriggerResult
from .errors import ConflictError, NotFoundError, RetryLimitExceeded, ValidationError
from .execute import StepExecutor
from .idempotency import IdempotencyLedger
from .persistence.models import (
    CANCELLABLE_STATUSES,
    ApprovalState,
    Run,
    RunStatus,
    Step,
    Workflow,
    utcnow,
)
from .persistence.repository import ExecutionStore
from .registry import REGISTRY, ActionRegistry
from .transports import BaseTransport

logger = logging.getLogger(__name__)

RUN_TOPIC = "runs"
RETRY_MODES = ("from_failure", "from_beginning")
TRIGGER_TYPES = ("manual", "webhook", "schedule")

StepLike = Union[Step, dict]


class RunDispatcher:
    """Service responsible for creating, cancelling and retrying runs."""

    def __init__(
        self,
        store: ExecutionStore,
        chain: ComplianceChain,
        ledger: IdempotencyLedger,
        executor: StepExecutor,
        transport: Optional[BaseTransport] = None,
        registry: ActionRegistry = REGISTRY,
        engine: Optional[EngineConfig] = None,
    ) -> None:
        self.store = store
        self.chain = chain
        self.ledger = ledger
        self.executor = executor
        self.transport = transport
        self.registry = registry
        self.engine = engine or EngineConfig()

    async def notify(self, run: Run, reason: str) -> None:
        """Publish a wake-up notice for ``run`` if a transport is configured."""
        if self.transport is None:
            return
        notice = RunNotice(run_id=run.id, tenant_id=run.tenant_id, reason=reason)
        try:
            await self.transport.publish(RUN_TOPIC, notice)
        except Exception:
            # Workers still find the run by polling.
            logger.exception(f"Failed to publish run notice for run_id={run.id}")

    # ------------------------------------------------------------------
    # Workflow definitions
    # ------------------------------------------------------------------
    def _build_steps(
        self, tenant_id: str, workflow_id: str, version: int, steps: Iterable[StepLike]
    ) -> list[Step]:
        built: list[Step] = []
        for raw in steps:
            if isinstance(raw, Step):
                data = raw.model_dump(exclude_unset=True)
            else:
                data = {k: v for k, v in dict(raw).items() if v is not None}
            data.setdefault("timeout_seconds", self.engine.default_step_timeout_seconds)
            data.update(tenant_id=tenant_id, workflow_id=workflow_id, workflow_version=version)
            data.pop("id", None)
            try:
                step = Step.model_validate(data)
            except ValueError as exc:
                raise ValidationError(f"Invalid step definition: {exc}") from exc
            if step.requires_approval and not step.approvers:
                raise ValidationError(
                    f"Step {step.name} requires approval but names no approvers"
                )
            built.append(step)

        built.sort(key=lambda s: s.step_order)
        orders = [s.step_order for s in built]
        if orders != list(range(len(built))):
            raise ValidationError(f"Step orders must be contiguous from 0, got {orders}")
        for step in built:
            if not self.registry.has(step.provider, step.action):
                raise ValidationError(f"Unknown action {step.provider}.{step.action}")
            if step.rollback_action and not self.registry.has(step.provider, step.rollback_action):
                raise ValidationError(
                    f"Unknown rollback action {step.provider}.{step.rollback_action}"
                )
        return built

    async def _workflow(self, tenant_id: str, workflow_id: str) -> Workflow:
        workflow = await self.store.get_workflow(workflow_id)
        if workflow is None or workflow.tenant_id != tenant_id:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def create_workflow(
        self,
        tenant_id: str,
        name: str,
        steps: Iterable[StepLike],
        trigger_type: str = "manual",
        trigger_config: Optional[dict[str, Any]] = None,
        enabled: bool = True,
        simulation_mode: bool = False,
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> Workflow:
        if not name or not name.strip():
            raise ValidationError("Workflow name is required")
        if trigger_type not in TRIGGER_TYPES:
            raise ValidationError(f"Unknown trigger type: {trigger_type}")
        workflow = Workflow(
            tenant_id=tenant_id,
            name=name,
            trigger_type=trigger_type,
            trigger_config=trigger_config or {},
            enabled=enabled,
            simulation_mode=simulation_mode,
        )
        built = self._build_steps(tenant_id, workflow.id, workflow.version, steps)

        async def _create() -> Workflow:
            await self.store.create_workflow(workflow, built)
            await self.chain.log_config_change(
                tenant_id,
                actor,
                "workflow",
                None,
                {"name": name, "version": workflow.version, "steps": len(built)},
                reason="created",
                ref_id=workflow.id,
            )
            logger.info(f"Created workflow {workflow.id} for tenant_id={tenant_id}")
            return workflow

        if not idempotency_key:
            return await _create()
        response, _ = await self.ledger.run(tenant_id, "entity:workflow", idempotency_key, _create)
        return Workflow.model_validate(response)

    async def set_enabled(
        self, tenant_id: str, workflow_id: str, enabled: bool, actor: str = "system"
    ) -> Workflow:
        workflow = await self._workflow(tenant_id, workflow_id)
        if enabled and workflow.status == "archived":
            raise ValidationError(f"Workflow {workflow_id} is archived")
        if workflow.enabled == enabled:
            return workflow
        updated = await self.store.update_workflow(workflow_id, enabled=enabled)
        await self.chain.log_config_change(
            tenant_id,
            actor,
            "workflow",
            {"enabled": workflow.enabled},
            {"enabled": enabled},
            ref_id=workflow_id,
        )
        return updated

    async def bump_version(
        self,
        tenant_id: str,
        workflow_id: str,
        steps: Iterable[StepLike],
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> Workflow:
        """Publish a new step list as the next version; older runs keep theirs."""
        workflow = await self._workflow(tenant_id, workflow_id)
        if workflow.status == "archived":
            raise ValidationError(f"Workflow {workflow_id} is archived")
        version = workflow.version + 1
        built = self._build_steps(tenant_id, workflow_id, version, steps)

        async def _bump() -> Workflow:
            await self.store.save_steps(workflow_id, version, built)
            updated = await self.store.update_workflow(workflow_id, version=version)
            await self.chain.log_config_change(
                tenant_id,
                actor,
                "workflow",
                {"version": workflow.version},
                {"version": version, "steps": len(built)},
                ref_id=workflow_id,
            )
            logger.info(f"Workflow {workflow_id} bumped to version {version}")
            return updated

        if not idempotency_key:
            return await _bump()
        response, _ = await self.ledger.run(tenant_id, "entity:workflow", idempotency_key, _bump)
        return Workflow.model_validate(response)

    async def archive(self, tenant_id: str, workflow_id: str, actor: str = "system") -> Workflow:
        workflow = await self._workflow(tenant_id, workflow_id)
        if workflow.status == "archived":
            return workflow
        updated = await self.store.update_workflow(workflow_id, status="archived", enabled=False)
        await self.chain.log_config_change(
            tenant_id,
            actor,
            "workflow",
            {"status": workflow.status, "enabled": workflow.enabled},
            {"status": "archived", "enabled": False},
            ref_id=workflow_id,
        )
        return updated

    # ------------------------------------------------------------------
    # Runs
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
        """Create a run, or return the existing one for a repeated key."""
        if not idempotency_key:
            raise ValidationError("Idempotency key is required")
        workflow = await self._workflow(tenant_id, workflow_id)
        if workflow.status == "archived":
            raise ValidationError(f"Workflow {workflow_id} is archived")
        if not workflow.enabled:
            raise ValidationError(f"Workflow {workflow_id} is disabled")

        payload = dict(trigger_payload or {})
        run, created = await self.store.create_run(
            Run(
                tenant_id=tenant_id,
                workflow_id=workflow_id,
                workflow_version=workflow.version,
                idempotency_key=idempotency_key,
                trigger_type=trigger_type,
                trigger_payload=payload,
                context={"trigger": payload},
                is_simulation=workflow.simulation_mode,
            )
        )
        if not created:
            logger.info(f"Duplicate trigger key for workflow {workflow_id}; returning run_id={run.id}")
            return TriggerResult(
                run_id=run.id, status=run.status, correlation_id=run.correlation_id, duplicate=True
            )

        await self.chain.append(
            tenant_id,
            "user_action" if actor != "system" else "system",
            "run_triggered",
            actor,
            payload={
                "run_id": run.id,
                "workflow_id": workflow_id,
                "workflow_version": run.workflow_version,
                "trigger_type": trigger_type,
                "simulation": run.is_simulation,
            },
            ref_type="run",
            ref_id=run.id,
            actor_type="user" if actor != "system" else "system",
        )
        logger.info(
            f"Triggered run_id={run.id} correlation_id={run.correlation_id} "
            f"workflow={workflow_id} tenant_id={tenant_id}"
        )
        await self.notify(run, "triggered")
        return TriggerResult(run_id=run.id, status=run.status, correlation_id=run.correlation_id)

    async def get_run(self, tenant_id: str, run_id: str) -> Run:
        run = await self.store.get_run(run_id)
        if run is None or run.tenant_id != tenant_id:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    async def list_runs(
        self, tenant_id: str, status: Optional[RunStatus] = None, workflow_id: Optional[str] = None
    ) -> list[Run]:
        return await self.store.list_runs(tenant_id=tenant_id, status=status, workflow_id=workflow_id)

    async def cancel_run(
        self,
        tenant_id: str,
        run_id: str,
        reason: str,
        rollback: bool = False,
        actor: str = "system",
    ) -> CancelResult:
        if not reason or not reason.strip():
            raise ValidationError("Cancellation reason is required")
        run = await self.get_run(tenant_id, run_id)
        if run.status.is_terminal:
            raise ConflictError(f"Run {run_id} is already {run.status.value}")

        finished = utcnow()
        cancelled = await self.store.update_run(
            run_id,
            expected_status=list(CANCELLABLE_STATUSES),
            status=RunStatus.CANCELLED,
            error_message=f"Cancelled: {reason}",
            finished_at=finished,
            duration_ms=int((finished - run.started_at).total_seconds() * 1000),
        )
        if cancelled is None:
            current = await self.get_run(tenant_id, run_id)
            raise ConflictError(f"Run {run_id} is already {current.status.value}")

        for approval in await self.store.list_approvals(
            tenant_id=tenant_id, state=ApprovalState.PENDING
        ):
            if approval.run_id == run_id:
                await self.store.transition_approval(
                    approval.id,
                    ApprovalState.PENDING,
                    ApprovalState.EXPIRED,
                    responded_at=finished,
                    comment="Run cancelled",
                )

        results = await self.executor.rollback(cancelled) if rollback else []
        await self.chain.append(
            tenant_id,
            "user_action" if actor != "system" else "system",
            "run_cancelled",
            actor,
            payload={
                "run_id": run_id,
                "reason": reason,
                "previous_status": run.status.value,
                "rollback": rollback,
                "rollback_failures": [r.step_order for r in results if not r.ok],
            },
            ref_type="run",
            ref_id=run_id,
            actor_type="user" if actor != "system" else "system",
        )
        logger.info(f"Cancelled run_id={run_id} tenant_id={tenant_id}: {reason}")
        return CancelResult(
            run_id=run_id, status=cancelled.status, reason=reason, rollback_results=results
        )

    async def retry_run(
        self,
        tenant_id: str,
        run_id: str,
        mode: str = "from_failure",
        reset_context: bool = False,
        idempotency_key: Optional[str] = None,
        actor: str = "system",
    ) -> RetryResult:
        """Create a follow-up run in the same lineage, keeping the correlation id."""
        if mode not in RETRY_MODES:
            raise ValidationError(f"Unknown retry mode: {mode}")
        parent = await self.get_run(tenant_id, run_id)
        if parent.status not in (RunStatus.FAILED, RunStatus.CANCELLED):
            raise ConflictError(f"Run {run_id} is {parent.status.value}; only failed or cancelled runs can be retried")

        async def _retry() -> RetryResult:
            root_id = parent.lineage_id
            retries = await self.store.count_lineage(root_id)
            if retries >= self.engine.max_run_retries:
                raise RetryLimitExceeded(root_id, self.engine.max_run_retries)

            retry_count = retries + 1
            context = (
                {"trigger": dict(parent.trigger_payload)} if reset_context else dict(parent.context)
            )
            from_failure = mode == "from_failure"
            new_run, created = await self.store.create_run(
                Run(
                    tenant_id=tenant_id,
                    workflow_id=parent.workflow_id,
                    workflow_version=parent.workflow_version,
                    idempotency_key=f"{root_id}:retry:{retry_count}",
                    correlation_id=parent.correlation_id,
                    parent_run_id=parent.id,
                    root_run_id=root_id,
                    retry_count=retry_count,
                    trigger_type=parent.trigger_type,
                    trigger_payload=dict(parent.trigger_payload),
                    current_step_order=parent.current_step_order if from_failure else 0,
                    completed_steps=list(parent.completed_steps) if from_failure else [],
                    actions_count=parent.actions_count if from_failure else 0,
                    context=context,
                    is_simulation=parent.is_simulation,
                )
            )
            if not created:
                raise ConflictError(f"Retry {retry_count} of run {root_id} is already being created")

            await self.chain.append(
                tenant_id,
                "user_action" if actor != "system" else "system",
                "run_retried",
                actor,
                payload={
                    "run_id": new_run.id,
                    "parent_run_id": parent.id,
                    "root_run_id": root_id,
                    "retry_count": retry_count,
                    "mode": mode,
                    "reset_context": reset_context,
                },
                ref_type="run",
                ref_id=new_run.id,
                actor_type="user" if actor != "system" else "system",
            )
            logger.info(
                f"Retry {retry_count}/{self.engine.max_run_retries} of run {root_id}: "
                f"run_id={new_run.id} correlation_id={new_run.correlation_id} mode={mode}"
            )
            await self.notify(new_run, "retried")
            return RetryResult(
                new_run_id=new_run.id, parent_run_id=parent.id, retry_count=retry_count
            )

        if not idempotency_key:
            return await _retry()
        response, is_new = await self.ledger.run(tenant_id, f"retry:{run_id}", idempotency_key, _retry)
        result = RetryResult.model_validate(response)
        if not is_new:
            result.duplicate = True
        return result
