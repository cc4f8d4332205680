"""Step execution engine for workflow runs."""

from __future__ import annotations

import asyncio
import logging
import socket
import time
import uuid
from datetime import timedelta
from typing import Any, Optional

from .compliance import ComplianceChain
from .config import EngineConfig
from .context import resolve_mapping
from .contracts import RollbackResult, StepOutcome
from .errors import ActionFailed, NotFoundError, ValidationError
from .idempotency import IdempotencyLedger
from .locks import RunLock
from .persistence.models import Approval, ApprovalState, Run, RunStatus, Step, utcnow
from .persistence.repository import ExecutionStore
from .registry import REGISTRY, ActionRegistry, ProviderAction
from .utils.retry import schedule_retry
from .utils.serialization import to_jsonable
from .vault import CredentialVault

logger = logging.getLogger(__name__)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


def _duration_ms(run: Run) -> int:
    return int((utcnow() - run.started_at).total_seconds() * 1000)


class StepExecutor:
    """Advances a run by exactly one step per ``process_next_step`` call.

    The executor is poll-driven: it holds no per-run state between calls.
    Each call claims the run lock, moves the run ``pending -> running``,
    performs one transition and releases the lock.
    """

    def __init__(
        self,
        store: ExecutionStore,
        chain: ComplianceChain,
        vault: CredentialVault,
        ledger: IdempotencyLedger,
        lock: RunLock,
        registry: ActionRegistry = REGISTRY,
        engine: Optional[EngineConfig] = None,
        worker_id: Optional[str] = None,
    ) -> None:
        self.store = store
        self.chain = chain
        self.vault = vault
        self.ledger = ledger
        self.lock = lock
        self.registry = registry
        self.engine = engine or EngineConfig()
        self.worker_id = worker_id or default_worker_id()

    async def process_next_step(self, run_id: str, worker_id: Optional[str] = None) -> StepOutcome:
        worker_id = worker_id or self.worker_id
        run = await self.store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        if run.status != RunStatus.PENDING:
            return StepOutcome(
                run_id=run.id,
                status=run.status,
                next_step_order=run.current_step_order,
                message=f"Run is {run.status.value}",
            )

        if not await self.lock.acquire(run_id, worker_id, self.engine.lock_ttl_seconds):
            logger.debug(f"Run run_id={run_id} is locked by another worker")
            return StepOutcome(
                run_id=run.id,
                status=run.status,
                next_step_order=run.current_step_order,
                message="Run is locked by another worker",
                locked=True,
            )
        try:
            return await self._advance(run_id, worker_id)
        finally:
            await self.lock.release(run_id, worker_id)

    async def _advance(self, run_id: str, worker_id: str) -> StepOutcome:
        claimed = await self.store.update_run(
            run_id, expected_status=[RunStatus.PENDING], status=RunStatus.RUNNING
        )
        if claimed is None:
            current = await self.store.get_run(run_id)
            status = current.status if current else RunStatus.CANCELLED
            return StepOutcome(run_id=run_id, status=status, message="Run is no longer pending")

        try:
            return await self._execute_step(claimed, worker_id)
        except BaseException:
            logger.exception(f"Fatal error executing run_id={run_id}; returning it to pending")
            try:
                await self.store.update_run(
                    run_id, expected_status=[RunStatus.RUNNING], status=RunStatus.PENDING
                )
            except Exception:
                logger.exception(f"Could not return run_id={run_id} to pending")
            raise

    # ------------------------------------------------------------------
    async def _execute_step(self, run: Run, worker_id: str) -> StepOutcome:
        steps = await self.store.list_steps(run.workflow_id, run.workflow_version)
        step = next((s for s in steps if s.step_order == run.current_step_order), None)
        if step is None:
            return await self._complete(run, result=None)

        if step.requires_approval:
            approval = await self.store.find_approval(run.id, step.step_order)
            if approval is None or approval.state != ApprovalState.APPROVED:
                return await self._await_approval(run, step, approval)

        inputs = resolve_mapping(step.input_mapping, run.context)
        if inputs.missing:
            logger.warning(
                f"Unresolved input paths {inputs.missing} for run_id={run.id} step={step.name}"
            )
            if step.strict_inputs:
                return await self._fail(
                    run, step, f"Unresolved input paths: {', '.join(inputs.missing)}"
                )

        started = time.monotonic()
        if run.is_simulation:
            result: Any = {
                "simulated": True,
                "provider": step.provider,
                "action": step.action,
                "params": inputs.params,
            }
            await self.chain.log_provider_call(
                run.tenant_id,
                step.provider,
                step.action,
                params=inputs.params,
                duration_ms=0,
                run_id=run.id,
                step_order=step.step_order,
                simulated=True,
                missing_inputs=inputs.missing,
                actor=worker_id,
            )
        else:
            try:
                impl = self.registry.get(step.provider, step.action)
                credentials = await self._credentials(run, step)
                result = await self._invoke(run, step, impl, inputs.params, credentials, worker_id)
            except (ActionFailed, ValidationError, NotFoundError) as exc:
                await self.chain.log_provider_call(
                    run.tenant_id,
                    step.provider,
                    step.action,
                    params=inputs.params,
                    error=str(exc),
                    duration_ms=int((time.monotonic() - started) * 1000),
                    run_id=run.id,
                    step_order=step.step_order,
                    missing_inputs=inputs.missing,
                    actor=worker_id,
                )
                return await self._fail(run, step, str(exc))
            await self.chain.log_provider_call(
                run.tenant_id,
                step.provider,
                step.action,
                params=inputs.params,
                duration_ms=int((time.monotonic() - started) * 1000),
                run_id=run.id,
                step_order=step.step_order,
                missing_inputs=inputs.missing,
                actor=worker_id,
            )

        return await self._record_success(run, step, steps, result)

    async def _credentials(self, run: Run, step: Step) -> dict[str, Any]:
        if not step.connection_id:
            return {}
        return await self.vault.fetch(run.tenant_id, step.connection_id)

    async def _invoke(
        self,
        run: Run,
        step: Step,
        impl: ProviderAction,
        params: dict[str, Any],
        credentials: dict[str, Any],
        worker_id: str,
    ) -> Any:
        """Invoke once per (run, step) under the idempotency ledger.

        A completed reservation replays its stored result. An in-progress one
        belongs to a worker whose lease has expired, so the call is repeated.
        """
        scope = f"step:{run.id}:{step.step_order}"
        reservation = await self.ledger.check_or_reserve(run.tenant_id, scope, run.correlation_id)
        if not reservation.is_new and not reservation.in_progress:
            logger.info(f"Replaying recorded result for run_id={run.id} step={step.name}")
            return reservation.cached_response
        if reservation.in_progress:
            logger.warning(f"Re-executing step {step.name} of run_id={run.id} after lease loss")

        try:
            async with self.lock.heartbeat(run.id, worker_id, self.engine.lock_ttl_seconds):
                result = to_jsonable(await self._call_with_retries(run, step, impl, params, credentials))
        except BaseException:
            await self.ledger.release(run.tenant_id, scope, run.correlation_id)
            raise
        await self.ledger.complete(run.tenant_id, scope, run.correlation_id, result)
        return result

    async def _call_with_retries(
        self,
        run: Run,
        step: Step,
        impl: ProviderAction,
        params: dict[str, Any],
        credentials: dict[str, Any],
    ) -> Any:
        timeout = min(step.timeout_seconds, self.engine.max_step_timeout_seconds)
        attempts = step.attempts
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(impl.invoke(params, credentials), timeout=timeout)
            except asyncio.TimeoutError:
                error = ActionFailed(f"{step.provider}.{step.action} timed out after {timeout}s")
            except ActionFailed as exc:
                error = exc
            except ValidationError as exc:
                error = ActionFailed(str(exc), retryable=False)
            except Exception as exc:
                error = ActionFailed(f"{step.provider}.{step.action} raised {type(exc).__name__}: {exc}")

            if not error.retryable or attempt >= attempts:
                raise error
            logger.warning(
                f"Attempt {attempt}/{attempts} of {step.provider}.{step.action} failed "
                f"for run_id={run.id}: {error}"
            )
            await schedule_retry(
                attempt,
                base=self.engine.backoff_base,
                jitter=self.engine.backoff_jitter,
                cap=self.engine.backoff_cap_seconds,
            )
        raise ActionFailed(f"{step.provider}.{step.action} exhausted {attempts} attempts")

    # ------------------------------------------------------------------
    async def _await_approval(
        self, run: Run, step: Step, existing: Optional[Approval]
    ) -> StepOutcome:
        if existing is not None and existing.state == ApprovalState.PENDING:
            approval = existing
        else:
            now = utcnow()
            approval = Approval(
                tenant_id=run.tenant_id,
                run_id=run.id,
                step_order=step.step_order,
                required_approvers=list(step.approvers),
                requested_at=now,
                expires_at=now + timedelta(hours=self.engine.approval_window_hours),
                context={
                    "step": step.name,
                    "action": f"{step.provider}.{step.action}",
                    "mapping": step.input_mapping,
                    "risk_level": step.risk_level.value,
                },
            )
            await self.store.create_approval(approval)

        updated = await self.store.update_run(
            run.id, expected_status=[RunStatus.RUNNING], status=RunStatus.AWAITING_APPROVAL
        )
        status = updated.status if updated else RunStatus.CANCELLED
        if updated is not None:
            status = await self._settle_early_decision(run, approval.id, status)
        await self.chain.append(
            run.tenant_id,
            "approval",
            "approval_requested",
            "system",
            payload={
                "approval_id": approval.id,
                "run_id": run.id,
                "step_order": step.step_order,
                "risk_level": step.risk_level.value,
                "approvers": list(step.approvers),
            },
            ref_type="approval",
            ref_id=approval.id,
        )
        logger.info(f"Run run_id={run.id} awaiting approval {approval.id} for step {step.name}")
        return StepOutcome(
            run_id=run.id,
            status=status,
            next_step_order=step.step_order,
            approval_id=approval.id,
            message="Awaiting approval",
        )

    async def _settle_early_decision(
        self, run: Run, approval_id: str, status: RunStatus
    ) -> RunStatus:
        """Apply a decision that landed before the run reached awaiting_approval.

        The gate's own run update expects ``awaiting_approval`` and misses a
        run that is still ``running``, so the decision is re-applied here.
        """
        current = await self.store.get_approval(approval_id)
        if current is None or current.state == ApprovalState.PENDING:
            return status
        fields: dict[str, Any] = {}
        if current.state == ApprovalState.APPROVED:
            target = RunStatus.PENDING
        else:
            target = RunStatus.CANCELLED
            fields = {
                "error_message": f"Approval {approval_id} {current.state.value}",
                "finished_at": utcnow(),
                "duration_ms": _duration_ms(run),
            }
        settled = await self.store.update_run(
            run.id, expected_status=[RunStatus.AWAITING_APPROVAL], status=target, **fields
        )
        if settled is None:
            return status
        logger.info(
            f"Approval {approval_id} was {current.state.value} before run_id={run.id} parked; "
            f"run is now {target.value}"
        )
        return settled.status

    async def _record_success(
        self, run: Run, step: Step, steps: list[Step], result: Any
    ) -> StepOutcome:
        context = dict(run.context)
        context[step.result_key] = result
        is_last = step.step_order >= max(s.step_order for s in steps)
        fields: dict[str, Any] = {
            "context": context,
            "current_step_order": step.step_order + 1,
            "completed_steps": [*run.completed_steps, step.step_order],
            "actions_count": run.actions_count + 1,
        }
        if is_last:
            fields.update(
                status=RunStatus.COMPLETED,
                finished_at=utcnow(),
                duration_ms=_duration_ms(run),
            )
        else:
            fields["status"] = RunStatus.PENDING

        updated = await self.store.update_run(run.id, expected_status=[RunStatus.RUNNING], **fields)
        if updated is None:
            current = await self.store.get_run(run.id)
            status = current.status if current else RunStatus.CANCELLED
            logger.warning(f"Run run_id={run.id} changed to {status} while step {step.name} ran")
            return StepOutcome(run_id=run.id, status=status, result=result, message="Run changed concurrently")

        if is_last:
            await self._log_transition(updated, "run_completed")
            logger.info(f"Run run_id={run.id} completed in {updated.duration_ms}ms")
        return StepOutcome(
            run_id=run.id,
            status=updated.status,
            next_step_order=None if is_last else updated.current_step_order,
            result=result,
        )

    async def _complete(self, run: Run, result: Any) -> StepOutcome:
        updated = await self.store.update_run(
            run.id,
            expected_status=[RunStatus.RUNNING],
            status=RunStatus.COMPLETED,
            finished_at=utcnow(),
            duration_ms=_duration_ms(run),
        )
        status = updated.status if updated else RunStatus.CANCELLED
        if updated is not None:
            await self._log_transition(updated, "run_completed")
        return StepOutcome(run_id=run.id, status=status, result=result)

    async def _fail(self, run: Run, step: Step, message: str) -> StepOutcome:
        updated = await self.store.update_run(
            run.id,
            expected_status=[RunStatus.RUNNING],
            status=RunStatus.FAILED,
            error_message=message,
            finished_at=utcnow(),
            duration_ms=_duration_ms(run),
        )
        status = updated.status if updated else RunStatus.CANCELLED
        if updated is not None:
            await self._log_transition(updated, "run_failed", error=message, step_order=step.step_order)
        logger.error(f"Run run_id={run.id} failed at step {step.name}: {message}")
        return StepOutcome(
            run_id=run.id,
            status=status,
            next_step_order=step.step_order,
            message=message,
        )

    async def _log_transition(self, run: Run, event_type: str, **extra: Any) -> None:
        await self.chain.append(
            run.tenant_id,
            "system",
            event_type,
            "system",
            payload={
                "run_id": run.id,
                "workflow_id": run.workflow_id,
                "correlation_id": run.correlation_id,
                "status": run.status.value,
                "duration_ms": run.duration_ms,
                **extra,
            },
            ref_type="run",
            ref_id=run.id,
        )

    # ------------------------------------------------------------------
    async def rollback(self, run: Run) -> list[RollbackResult]:
        """Invoke each completed step's rollback action in reverse order.

        Failures are logged and reported, never raised.
        """
        steps = {
            s.step_order: s
            for s in await self.store.list_steps(run.workflow_id, run.workflow_version)
        }
        results: list[RollbackResult] = []
        for order in reversed(run.completed_steps):
            step = steps.get(order)
            if step is None or not step.rollback_action:
                continue
            params = resolve_mapping(step.input_mapping, run.context).params
            params["result"] = run.context.get(step.result_key)
            try:
                if not run.is_simulation:
                    impl = self.registry.get(step.provider, step.rollback_action)
                    credentials = await self._credentials(run, step)
                    timeout = min(step.timeout_seconds, self.engine.max_step_timeout_seconds)
                    await asyncio.wait_for(impl.invoke(params, credentials), timeout=timeout)
            except Exception as exc:
                logger.error(
                    f"Rollback {step.provider}.{step.rollback_action} failed for run_id={run.id} "
                    f"step {step.name}: {exc}"
                )
                results.append(
                    RollbackResult(step_order=order, action=step.rollback_action, ok=False, error=str(exc))
                )
                await self.chain.log_provider_call(
                    run.tenant_id,
                    step.provider,
                    step.rollback_action,
                    params=params,
                    error=str(exc),
                    run_id=run.id,
                    step_order=order,
                    simulated=run.is_simulation,
                )
                continue
            results.append(RollbackResult(step_order=order, action=step.rollback_action, ok=True))
            await self.chain.log_provider_call(
                run.tenant_id,
                step.provider,
                step.rollback_action,
                params=params,
                run_id=run.id,
                step_order=order,
                simulated=run.is_simulation,
            )
        return results
