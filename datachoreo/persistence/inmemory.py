"""In-memory implementation of the execution store."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from .models import (
    Approval,
    ApprovalState,
    ComplianceAnchor,
    ComplianceEvent,
    CredentialMetadata,
    IdempotencyRecord,
    Run,
    RunStatus,
    Step,
    Workflow,
    utcnow,
)
from .repository import EventBuilder, ExecutionStore


class InMemoryExecutionStore(ExecutionStore):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. A single ``asyncio.Lock`` stands in
    for the database's atomic conditional write.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._steps: Dict[tuple[str, int], list[Step]] = {}
        self._runs: Dict[str, Run] = {}
        self._approvals: Dict[str, Approval] = {}
        self._idempotency: Dict[tuple[str, str, str], IdempotencyRecord] = {}
        self._events: Dict[str, list[ComplianceEvent]] = defaultdict(list)
        self._anchors: Dict[tuple[str, str], ComplianceAnchor] = {}
        self._credentials: Dict[tuple[str, str], CredentialMetadata] = {}
        self._lock = asyncio.Lock()
        self._chain_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow, steps: list[Step]) -> None:
        async with self._lock:
            self._workflows[workflow.id] = workflow.model_copy(deep=True)
            self._steps[(workflow.id, workflow.version)] = [
                s.model_copy(deep=True) for s in steps
            ]

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def update_workflow(self, workflow_id: str, **fields: Any) -> Workflow | None:
        async with self._lock:
            wf = self._workflows.get(workflow_id)
            if not wf:
                return None
            updated = wf.model_copy(update={**fields, "updated_at": utcnow()})
            self._workflows[workflow_id] = updated
            return updated.model_copy(deep=True)

    async def save_steps(self, workflow_id: str, version: int, steps: list[Step]) -> None:
        async with self._lock:
            self._steps[(workflow_id, version)] = [s.model_copy(deep=True) for s in steps]

    async def list_steps(self, workflow_id: str, version: int) -> list[Step]:
        steps = self._steps.get((workflow_id, version), [])
        return sorted((s.model_copy(deep=True) for s in steps), key=lambda s: s.step_order)

    # ------------------------------------------------------------------
    async def create_run(self, run: Run) -> tuple[Run, bool]:
        async with self._lock:
            for existing in self._runs.values():
                if (
                    existing.tenant_id == run.tenant_id
                    and existing.workflow_id == run.workflow_id
                    and existing.idempotency_key == run.idempotency_key
                ):
                    return existing.model_copy(deep=True), False
            self._runs[run.id] = run.model_copy(deep=True)
            return run.model_copy(deep=True), True

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def update_run(
        self,
        run_id: str,
        expected_status: Optional[Iterable[RunStatus]] = None,
        **fields: Any,
    ) -> Run | None:
        async with self._lock:
            run = self._runs.get(run_id)
            if not run:
                return None
            if expected_status is not None and run.status not in tuple(expected_status):
                return None
            updated = run.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
            self._runs[run_id] = updated
            return updated.model_copy(deep=True)

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[Run]:
        runs = [
            r
            for r in self._runs.values()
            if (tenant_id is None or r.tenant_id == tenant_id)
            and (status is None or r.status == status)
            and (workflow_id is None or r.workflow_id == workflow_id)
        ]
        runs.sort(key=lambda r: r.started_at)
        return [r.model_copy(deep=True) for r in runs]

    async def list_runnable(self, now: datetime, limit: int) -> list[Run]:
        runs = [
            r
            for r in self._runs.values()
            if r.status == RunStatus.PENDING
            and (r.locked_until is None or r.locked_until < now)
        ]
        runs.sort(key=lambda r: r.started_at)
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def count_lineage(self, root_run_id: str) -> int:
        return sum(1 for r in self._runs.values() if r.root_run_id == root_run_id)

    async def acquire_lock(
        self, run_id: str, worker_id: str, until: datetime, now: datetime
    ) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if not run:
                return False
            if run.locked_until is not None and run.locked_until >= now:
                return False
            run.locked_by = worker_id
            run.locked_until = until
            return True

    async def release_lock(self, run_id: str, worker_id: str) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if not run or run.locked_by != worker_id:
                return False
            run.locked_by = None
            run.locked_until = None
            return True

    async def extend_lock(self, run_id: str, worker_id: str, until: datetime) -> bool:
        async with self._lock:
            run = self._runs.get(run_id)
            if not run or run.locked_by != worker_id:
                return False
            run.locked_until = until
            return True

    async def clear_expired_locks(self, now: datetime) -> int:
        async with self._lock:
            cleared = 0
            for run in self._runs.values():
                if run.locked_until is not None and run.locked_until < now:
                    run.locked_by = None
                    run.locked_until = None
                    if run.status == RunStatus.RUNNING:
                        run.status = RunStatus.PENDING
                        run.updated_at = now
                    cleared += 1
            return cleared

    # ------------------------------------------------------------------
    async def create_approval(self, approval: Approval) -> None:
        async with self._lock:
            self._approvals[approval.id] = approval.model_copy(deep=True)

    async def get_approval(self, approval_id: str) -> Approval | None:
        approval = self._approvals.get(approval_id)
        return approval.model_copy(deep=True) if approval else None

    async def find_approval(self, run_id: str, step_order: int) -> Approval | None:
        matches = [
            a
            for a in self._approvals.values()
            if a.run_id == run_id and a.step_order == step_order
        ]
        if not matches:
            return None
        latest = max(matches, key=lambda a: a.requested_at)
        return latest.model_copy(deep=True)

    async def transition_approval(
        self,
        approval_id: str,
        from_state: ApprovalState,
        to_state: ApprovalState,
        **fields: Any,
    ) -> Approval | None:
        async with self._lock:
            approval = self._approvals.get(approval_id)
            if not approval or approval.state != from_state:
                return None
            updated = approval.model_copy(update={**fields, "state": to_state}, deep=True)
            self._approvals[approval_id] = updated
            return updated.model_copy(deep=True)

    async def list_approvals(
        self,
        tenant_id: Optional[str] = None,
        state: Optional[ApprovalState] = None,
        expires_before: Optional[datetime] = None,
    ) -> list[Approval]:
        approvals = [
            a
            for a in self._approvals.values()
            if (tenant_id is None or a.tenant_id == tenant_id)
            and (state is None or a.state == state)
            and (expires_before is None or a.expires_at < expires_before)
        ]
        approvals.sort(key=lambda a: a.requested_at)
        return [a.model_copy(deep=True) for a in approvals]

    # ------------------------------------------------------------------
    async def reserve_idempotency(self, record: IdempotencyRecord) -> IdempotencyRecord | None:
        key = (record.tenant_id, record.scope, record.key)
        async with self._lock:
            existing = self._idempotency.get(key)
            if existing and not existing.is_expired(record.created_at):
                return existing.model_copy(deep=True)
            self._idempotency[key] = record.model_copy(deep=True)
            return None

    async def complete_idempotency(
        self, tenant_id: str, scope: str, key: str, response: Any
    ) -> None:
        async with self._lock:
            record = self._idempotency.get((tenant_id, scope, key))
            if record:
                record.state = "completed"
                record.response = response

    async def delete_idempotency(self, tenant_id: str, scope: str, key: str) -> None:
        async with self._lock:
            self._idempotency.pop((tenant_id, scope, key), None)

    async def purge_idempotency(self, now: datetime) -> int:
        async with self._lock:
            expired = [k for k, r in self._idempotency.items() if r.is_expired(now)]
            for k in expired:
                del self._idempotency[k]
            return len(expired)

    # ------------------------------------------------------------------
    async def append_event(self, tenant_id: str, build: EventBuilder) -> ComplianceEvent:
        async with self._chain_locks[tenant_id]:
            chain = self._events[tenant_id]
            prev_digest = chain[-1].digest if chain else ""
            sequence = chain[-1].sequence + 1 if chain else 1
            event = build(prev_digest, sequence)
            chain.append(event.model_copy(deep=True))
            return event

    async def list_events(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ComplianceEvent]:
        return [
            e.model_copy(deep=True)
            for e in self._events.get(tenant_id, [])
            if (start is None or e.timestamp >= start) and (end is None or e.timestamp <= end)
        ]

    async def save_anchor(self, anchor: ComplianceAnchor) -> ComplianceAnchor:
        key = (anchor.tenant_id, anchor.period)
        async with self._lock:
            existing = self._anchors.get(key)
            if existing:
                return existing.model_copy(deep=True)
            self._anchors[key] = anchor.model_copy(deep=True)
            return anchor

    async def get_anchor(self, tenant_id: str, period: str) -> ComplianceAnchor | None:
        anchor = self._anchors.get((tenant_id, period))
        return anchor.model_copy(deep=True) if anchor else None

    async def list_anchors(self, tenant_id: str) -> list[ComplianceAnchor]:
        anchors = [a for (t, _), a in self._anchors.items() if t == tenant_id]
        anchors.sort(key=lambda a: a.period)
        return [a.model_copy(deep=True) for a in anchors]

    # ------------------------------------------------------------------
    async def save_credential(self, metadata: CredentialMetadata) -> None:
        async with self._lock:
            self._credentials[(metadata.tenant_id, metadata.id)] = metadata.model_copy(deep=True)

    async def get_credential(self, tenant_id: str, connection_id: str) -> CredentialMetadata | None:
        meta = self._credentials.get((tenant_id, connection_id))
        return meta.model_copy(deep=True) if meta else None

    async def update_credential(
        self, tenant_id: str, connection_id: str, **fields: Any
    ) -> CredentialMetadata | None:
        async with self._lock:
            meta = self._credentials.get((tenant_id, connection_id))
            if not meta:
                return None
            updated = meta.model_copy(update=fields)
            self._credentials[(tenant_id, connection_id)] = updated
            return updated.model_copy(deep=True)
