"""Store abstraction for execution and compliance state.

Every mutation that other workers may race on is expressed as a single
conditional write so it can be implemented with a compare-and-swap in the
backing database. No in-process lock is relied upon for correctness across
workers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Iterable, Optional, Protocol

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
)

EventBuilder = Callable[[str, int], ComplianceEvent]
"""Callable receiving ``(prev_digest, sequence)`` and returning the sealed event."""


class ExecutionStore(Protocol):
    """Protocol for persistence backends."""

    # -- workflows -----------------------------------------------------
    async def create_workflow(self, workflow: Workflow, steps: list[Step]) -> None:
        """Persist a workflow definition and its steps for ``workflow.version``."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Return the workflow by id."""

    async def update_workflow(self, workflow_id: str, **fields: Any) -> Workflow | None:
        """Update workflow attributes (enabled, status, version...)."""

    async def save_steps(self, workflow_id: str, version: int, steps: list[Step]) -> None:
        """Persist the step list for a workflow version."""

    async def list_steps(self, workflow_id: str, version: int) -> list[Step]:
        """Return steps of a workflow version ordered by ``step_order``."""

    # -- runs ----------------------------------------------------------
    async def create_run(self, run: Run) -> tuple[Run, bool]:
        """Insert ``run`` unless one exists for (tenant, workflow, idempotency key).

        Returns the stored run and ``True`` when it was newly created.
        """

    async def get_run(self, run_id: str) -> Run | None:
        """Return the run by id."""

    async def update_run(
        self,
        run_id: str,
        expected_status: Optional[Iterable[RunStatus]] = None,
        **fields: Any,
    ) -> Run | None:
        """Conditionally update a run.

        The update only applies when the current status is one of
        ``expected_status`` (if given). Returns the updated run, or ``None``
        when the run does not exist or the condition failed.
        """

    async def list_runs(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
        workflow_id: Optional[str] = None,
    ) -> list[Run]:
        """Return runs matching the filters ordered by ``started_at``."""

    async def list_runnable(self, now: datetime, limit: int) -> list[Run]:
        """Return pending runs whose lock is free or expired, oldest first."""

    async def count_lineage(self, root_run_id: str) -> int:
        """Return how many retries were created for a lineage root."""

    async def acquire_lock(
        self, run_id: str, worker_id: str, until: datetime, now: datetime
    ) -> bool:
        """Claim the run lock if it is free or expired."""

    async def release_lock(self, run_id: str, worker_id: str) -> bool:
        """Release the run lock if ``worker_id`` still holds it."""

    async def extend_lock(self, run_id: str, worker_id: str, until: datetime) -> bool:
        """Push the lock expiry if ``worker_id`` still holds it."""

    async def clear_expired_locks(self, now: datetime) -> int:
        """Clear expired locks, returning how many were cleared."""

    # -- approvals -----------------------------------------------------
    async def create_approval(self, approval: Approval) -> None:
        """Persist a new approval."""

    async def get_approval(self, approval_id: str) -> Approval | None:
        """Return the approval by id."""

    async def find_approval(self, run_id: str, step_order: int) -> Approval | None:
        """Return the most recent approval for a run step."""

    async def transition_approval(
        self,
        approval_id: str,
        from_state: ApprovalState,
        to_state: ApprovalState,
        **fields: Any,
    ) -> Approval | None:
        """Move an approval from ``from_state`` to ``to_state`` atomically."""

    async def list_approvals(
        self,
        tenant_id: Optional[str] = None,
        state: Optional[ApprovalState] = None,
        expires_before: Optional[datetime] = None,
    ) -> list[Approval]:
        """Return approvals matching the filters ordered by ``requested_at``."""

    # -- idempotency ---------------------------------------------------
    async def reserve_idempotency(self, record: IdempotencyRecord) -> IdempotencyRecord | None:
        """Atomically reserve a key.

        Returns ``None`` when the reservation was made, or the live existing
        record otherwise. Expired records are replaced.
        """

    async def complete_idempotency(
        self, tenant_id: str, scope: str, key: str, response: Any
    ) -> None:
        """Store the response of a reserved operation."""

    async def delete_idempotency(self, tenant_id: str, scope: str, key: str) -> None:
        """Drop a reservation."""

    async def purge_idempotency(self, now: datetime) -> int:
        """Delete expired records."""

    # -- compliance ----------------------------------------------------
    async def append_event(self, tenant_id: str, build: EventBuilder) -> ComplianceEvent:
        """Append an event inside the tenant's chain critical section.

        ``build`` is called with the previous digest and the next sequence
        number while the tenant's chain head is held exclusively.
        """

    async def list_events(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ComplianceEvent]:
        """Return tenant events in chain order, optionally bounded by timestamp."""

    async def save_anchor(self, anchor: ComplianceAnchor) -> ComplianceAnchor:
        """Persist an anchor; an existing anchor for the period is returned unchanged."""

    async def get_anchor(self, tenant_id: str, period: str) -> ComplianceAnchor | None:
        """Return the anchor for a period."""

    async def list_anchors(self, tenant_id: str) -> list[ComplianceAnchor]:
        """Return anchors ordered by period."""

    # -- credential metadata ------------------------------------------
    async def save_credential(self, metadata: CredentialMetadata) -> None:
        """Insert or replace credential metadata."""

    async def get_credential(self, tenant_id: str, connection_id: str) -> CredentialMetadata | None:
        """Return credential metadata."""

    async def update_credential(
        self, tenant_id: str, connection_id: str, **fields: Any
    ) -> CredentialMetadata | None:
        """Update credential metadata fields."""
