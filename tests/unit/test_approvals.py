"""Tests for the approval gate."""

from datetime import timedelta

import pytest

from conftest import TENANT, echo_step
from datachoreo.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from datachoreo.approvals import can_decide
from datachoreo.persistence.models import Approval, ApprovalState, RunStatus, utcnow


async def _awaiting(core, approvers=("bob",)):
    wf = await core.dispatcher.create_workflow(
        TENANT,
        "Refunds",
        [echo_step(0, "refund", requires_approval=True, approvers=list(approvers), risk_level="high")],
    )
    run = await core.trigger(TENANT, wf.id, {"order": 1}, "key-1")
    outcome = await core.process_next_step(run.run_id)
    assert outcome.status == RunStatus.AWAITING_APPROVAL
    return run.run_id, outcome.approval_id


@pytest.mark.asyncio
async def test_approval_created_with_context(core):
    run_id, approval_id = await _awaiting(core, approvers=["alice"])
    approval = await core.store.get_approval(approval_id)
    assert approval.state == ApprovalState.PENDING
    assert approval.run_id == run_id
    assert approval.required_approvers == ["alice"]
    assert approval.context["action"] == "core.echo"
    assert approval.context["risk_level"] == "high"
    assert timedelta(hours=23) < approval.expires_at - approval.requested_at <= timedelta(hours=24)


@pytest.mark.asyncio
async def test_approve_resumes_run(core):
    run_id, approval_id = await _awaiting(core)
    decision = await core.approvals.approve(approval_id, "bob", comment="fine")
    assert decision.state == ApprovalState.APPROVED
    assert decision.run_status == RunStatus.PENDING
    approval = await core.store.get_approval(approval_id)
    assert approval.responded_by == "bob"
    assert approval.responded_at is not None


@pytest.mark.asyncio
async def test_approver_must_be_in_required_set(core):
    _, approval_id = await _awaiting(core, approvers=["alice", "finance"])
    with pytest.raises(AuthorizationError):
        await core.approvals.approve(approval_id, "mallory")
    decision = await core.approvals.approve(approval_id, "carol", roles=["finance"])
    assert decision.state == ApprovalState.APPROVED


@pytest.mark.asyncio
async def test_reject_requires_reason_and_cancels_run(core):
    run_id, approval_id = await _awaiting(core)
    with pytest.raises(ValidationError):
        await core.approvals.reject(approval_id, "bob", "  ")
    assert (await core.store.get_approval(approval_id)).state == ApprovalState.PENDING

    decision = await core.approvals.reject(approval_id, "bob", "wrong amount")
    assert decision.state == ApprovalState.REJECTED
    assert decision.reason == "wrong amount"
    run = await core.get_run(TENANT, run_id)
    assert run.status == RunStatus.CANCELLED
    assert run.error_message == "Rejected by approver: wrong amount"
    assert run.finished_at is not None


@pytest.mark.asyncio
async def test_second_decision_conflicts(core):
    _, approval_id = await _awaiting(core)
    await core.approvals.approve(approval_id, "bob")
    with pytest.raises(ConflictError):
        await core.approvals.reject(approval_id, "eve", "too late")


@pytest.mark.asyncio
async def test_expired_approval_cannot_be_decided(core):
    run_id, approval_id = await _awaiting(core)
    approval = await core.store.get_approval(approval_id)
    core.store._approvals[approval_id] = approval.model_copy(
        update={"expires_at": utcnow() - timedelta(minutes=1)}
    )
    with pytest.raises(ConflictError):
        await core.approvals.approve(approval_id, "bob")
    assert (await core.store.get_approval(approval_id)).state == ApprovalState.EXPIRED
    assert (await core.get_run(TENANT, run_id)).error_message == "Approval expired"


@pytest.mark.asyncio
async def test_expire_overdue_sweep(core):
    run_id, approval_id = await _awaiting(core)
    assert await core.approvals.expire_overdue(utcnow()) == []

    decisions = await core.approvals.expire_overdue(utcnow() + timedelta(hours=25))
    assert [d.approval_id for d in decisions] == [approval_id]
    run = await core.get_run(TENANT, run_id)
    assert run.status == RunStatus.CANCELLED
    assert run.error_message == "Approval expired"

    # A late approval loses against the sweep.
    with pytest.raises(ConflictError):
        await core.approvals.approve(approval_id, "bob")


@pytest.mark.asyncio
async def test_decide_and_tenant_scope(core):
    _, approval_id = await _awaiting(core)
    with pytest.raises(NotFoundError):
        await core.decide_approval("tenant-b", approval_id, "bob", "approve")
    with pytest.raises(ValidationError):
        await core.decide_approval(TENANT, approval_id, "bob", "maybe")
    decision = await core.decide_approval(TENANT, approval_id, "bob", "Approve")
    assert decision.state == ApprovalState.APPROVED


@pytest.mark.asyncio
async def test_list_pending_filters_by_approver(core):
    _, approval_id = await _awaiting(core, approvers=["alice"])
    assert [a.id for a in await core.approvals.list_pending(TENANT)] == [approval_id]
    assert [a.id for a in await core.approvals.list_pending(TENANT, "alice")] == [approval_id]
    assert await core.approvals.list_pending(TENANT, "bob") == []


@pytest.mark.asyncio
async def test_decisions_are_audited(core):
    _, approval_id = await _awaiting(core)
    await core.approvals.approve(approval_id, "bob")
    types = [e.event_type for e in await core.store.list_events(TENANT)]
    assert "approval_requested" in types
    assert "approval_approved" in types
    assert (await core.verify_chain(TENANT)).valid


@pytest.mark.asyncio
async def test_empty_approver_set_authorizes_nobody(core):
    approval = Approval(
        tenant_id=TENANT,
        run_id="run-1",
        step_order=0,
        expires_at=utcnow() + timedelta(hours=1),
    )
    await core.store.create_approval(approval)
    assert not can_decide(approval, "random-stranger", roles=["admin"])
    with pytest.raises(AuthorizationError):
        await core.approvals.approve(approval.id, "random-stranger")
    assert (await core.store.get_approval(approval.id)).state == ApprovalState.PENDING
    assert await core.approvals.list_pending(TENANT, "random-stranger") == []


async def _decide_on_insert(core, monkeypatch, decide):
    wf = await core.dispatcher.create_workflow(
        TENANT, "Refunds", [echo_step(0, "refund", requires_approval=True, approvers=["alice"])]
    )
    run = await core.trigger(TENANT, wf.id, {}, "key-1")
    insert = core.store.create_approval

    async def insert_then_decide(approval):
        await insert(approval)
        await decide(approval.id)

    monkeypatch.setattr(core.store, "create_approval", insert_then_decide)
    return run.run_id, await core.process_next_step(run.run_id)


@pytest.mark.asyncio
async def test_approval_decided_before_run_parks_resumes_run(core, monkeypatch):
    run_id, outcome = await _decide_on_insert(
        core, monkeypatch, lambda approval_id: core.approvals.approve(approval_id, "alice")
    )
    assert outcome.status == RunStatus.PENDING
    assert (await core.get_run(TENANT, run_id)).status == RunStatus.PENDING

    done = await core.process_next_step(run_id)
    assert done.status == RunStatus.COMPLETED
    assert len(await core.store.list_approvals(tenant_id=TENANT)) == 1


@pytest.mark.asyncio
async def test_rejection_before_run_parks_cancels_run(core, monkeypatch):
    run_id, outcome = await _decide_on_insert(
        core, monkeypatch, lambda approval_id: core.approvals.reject(approval_id, "alice", "no")
    )
    assert outcome.status == RunStatus.CANCELLED
    run = await core.get_run(TENANT, run_id)
    assert run.status == RunStatus.CANCELLED
    assert run.finished_at is not None
