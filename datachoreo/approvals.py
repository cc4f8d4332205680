"""Human approval gate for approval-required steps."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, Optional

from .compliance import ComplianceChain
from .contracts import ApprovalDecision
from .errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from .persistence.models import Approval, ApprovalState, Run, RunStatus, utcnow
from .persistence.repository import ExecutionStore

logger = logging.getLogger(__name__)

RunNotifier = Callable[[Run, str], Awaitable[None]]

APPROVE_WORDS = ("approve", "approved")
REJECT_WORDS = ("reject", "rejected")


def _duration_ms(run: Run, finished: datetime) -> int:
    return int((finished - run.started_at).total_seconds() * 1000)


def can_decide(approval: Approval, approver_id: str, roles: Iterable[str] = ()) -> bool:
    """True when the caller is a named approver or holds a named role.

    An empty approver set authorizes nobody.
    """
    required = set(approval.required_approvers)
    return approver_id in required or bool(required.intersection(roles))


class ApprovalGate:
    """Approve, reject and expire pending approvals.

    Every transition is a conditional ``pending -> <state>`` update, so a
    concurrent decision and expiry sweep can never both win.
    """

    def __init__(
        self,
        store: ExecutionStore,
        chain: ComplianceChain,
        notify: Optional[RunNotifier] = None,
    ) -> None:
        self.store = store
        self.chain = chain
        self.notify = notify

    async def _load(self, approval_id: str, tenant_id: Optional[str]) -> Approval:
        approval = await self.store.get_approval(approval_id)
        if approval is None or (tenant_id is not None and approval.tenant_id != tenant_id):
            raise NotFoundError(f"Approval {approval_id} not found")
        return approval

    async def _check_decidable(
        self, approval: Approval, approver_id: str, roles: Iterable[str]
    ) -> None:
        if approval.state != ApprovalState.PENDING:
            raise ConflictError(f"Approval {approval.id} already {approval.state.value}")
        if utcnow() > approval.expires_at:
            await self._expire(approval)
            raise ConflictError(f"Approval {approval.id} expired")
        if not can_decide(approval, approver_id, roles):
            raise AuthorizationError(
                f"{approver_id} is not an authorized approver for approval {approval.id}"
            )

    async def _cancel_run(self, approval: Approval, message: str) -> Optional[RunStatus]:
        run = await self.store.get_run(approval.run_id)
        if run is None:
            return None
        finished = utcnow()
        updated = await self.store.update_run(
            run.id,
            expected_status=[RunStatus.AWAITING_APPROVAL, RunStatus.PENDING],
            status=RunStatus.CANCELLED,
            error_message=message,
            finished_at=finished,
            duration_ms=_duration_ms(run, finished),
        )
        if updated is None:
            current = await self.store.get_run(run.id)
            return current.status if current else None
        return updated.status

    async def approve(
        self,
        approval_id: str,
        approver_id: str,
        comment: Optional[str] = None,
        roles: Iterable[str] = (),
        tenant_id: Optional[str] = None,
    ) -> ApprovalDecision:
        roles = tuple(roles)
        approval = await self._load(approval_id, tenant_id)
        await self._check_decidable(approval, approver_id, roles)

        decided = await self.store.transition_approval(
            approval.id,
            ApprovalState.PENDING,
            ApprovalState.APPROVED,
            responded_by=approver_id,
            responded_at=utcnow(),
            comment=comment,
        )
        if decided is None:
            raise ConflictError(f"Approval {approval.id} was decided concurrently")

        run = await self.store.update_run(
            approval.run_id,
            expected_status=[RunStatus.AWAITING_APPROVAL],
            status=RunStatus.PENDING,
        )
        if run is None:
            current = await self.store.get_run(approval.run_id)
            run_status = current.status if current else None
            logger.warning(
                f"Approval {approval.id} approved but run_id={approval.run_id} is {run_status}"
            )
        else:
            run_status = run.status

        await self.chain.log_approval(
            approval.tenant_id,
            approval.id,
            approver_id,
            "approved",
            comment=comment,
            run_id=approval.run_id,
        )
        logger.info(f"Approval {approval.id} approved by {approver_id} for run_id={approval.run_id}")
        if run is not None and self.notify is not None:
            await self.notify(run, "approved")
        return ApprovalDecision(
            approval_id=approval.id,
            run_id=approval.run_id,
            state=ApprovalState.APPROVED,
            run_status=run_status,
            reason=comment,
        )

    async def reject(
        self,
        approval_id: str,
        approver_id: str,
        reason: str,
        roles: Iterable[str] = (),
        tenant_id: Optional[str] = None,
    ) -> ApprovalDecision:
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")
        roles = tuple(roles)
        approval = await self._load(approval_id, tenant_id)
        await self._check_decidable(approval, approver_id, roles)

        decided = await self.store.transition_approval(
            approval.id,
            ApprovalState.PENDING,
            ApprovalState.REJECTED,
            responded_by=approver_id,
            responded_at=utcnow(),
            comment=reason,
        )
        if decided is None:
            raise ConflictError(f"Approval {approval.id} was decided concurrently")

        run_status = await self._cancel_run(approval, f"Rejected by approver: {reason}")
        await self.chain.log_approval(
            approval.tenant_id,
            approval.id,
            approver_id,
            "rejected",
            comment=reason,
            run_id=approval.run_id,
        )
        logger.info(f"Approval {approval.id} rejected by {approver_id} for run_id={approval.run_id}")
        return ApprovalDecision(
            approval_id=approval.id,
            run_id=approval.run_id,
            state=ApprovalState.REJECTED,
            run_status=run_status,
            reason=reason,
        )

    async def decide(
        self,
        approval_id: str,
        approver_id: str,
        decision: str,
        comment: Optional[str] = None,
        roles: Iterable[str] = (),
        tenant_id: Optional[str] = None,
    ) -> ApprovalDecision:
        normalized = (decision or "").strip().lower()
        if normalized in APPROVE_WORDS:
            return await self.approve(approval_id, approver_id, comment, roles, tenant_id)
        if normalized in REJECT_WORDS:
            return await self.reject(approval_id, approver_id, comment or "", roles, tenant_id)
        raise ValidationError(f"Unknown decision: {decision}")

    async def _expire(self, approval: Approval) -> Optional[ApprovalDecision]:
        expired = await self.store.transition_approval(
            approval.id,
            ApprovalState.PENDING,
            ApprovalState.EXPIRED,
            responded_at=utcnow(),
        )
        if expired is None:
            return None
        run_status = await self._cancel_run(approval, "Approval expired")
        await self.chain.log_approval(
            approval.tenant_id,
            approval.id,
            "system",
            "expired",
            run_id=approval.run_id,
            actor_type="system",
        )
        logger.info(f"Approval {approval.id} expired; run_id={approval.run_id} cancelled")
        return ApprovalDecision(
            approval_id=approval.id,
            run_id=approval.run_id,
            state=ApprovalState.EXPIRED,
            run_status=run_status,
            reason="Approval expired",
        )

    async def expire_overdue(self, now: Optional[datetime] = None) -> list[ApprovalDecision]:
        now = now or utcnow()
        overdue = await self.store.list_approvals(
            state=ApprovalState.PENDING, expires_before=now
        )
        decisions = []
        for approval in overdue:
            decision = await self._expire(approval)
            if decision is not None:
                decisions.append(decision)
        return decisions

    async def list_pending(
        self,
        tenant_id: str,
        approver_id: Optional[str] = None,
        roles: Iterable[str] = (),
    ) -> list[Approval]:
        roles = tuple(roles)
        pending = await self.store.list_approvals(tenant_id=tenant_id, state=ApprovalState.PENDING)
        if approver_id is None:
            return pending
        return [a for a in pending if can_decide(a, approver_id, roles)]
