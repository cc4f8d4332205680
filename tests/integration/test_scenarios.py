"""End-to-end runs against a SQLite-backed core."""

import asyncio
import sqlite3

import pytest
import pytest_asyncio

from conftest import TENANT, echo_step, make_core
from datachoreo.errors import (
    CredentialGoneError,
    NotFoundError,
    RetryLimitExceeded,
    ValidationError,
)
from datachoreo.persistence import SQLiteExecutionStore
from datachoreo.persistence.models import ApprovalState, RunStatus
from datachoreo.providers import register_builtin_actions
from datachoreo.registry import ActionRegistry


class RecordingAction:
    def __init__(self):
        self.calls = []

    async def invoke(self, params, credentials):
        self.calls.append(params)
        return {"ok": True, "params": params}


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "scenarios.db"


@pytest_asyncio.fixture
async def sqlite_core(db_path):
    core = make_core(store=SQLiteExecutionStore(db_path))
    yield core
    await core.close()


@pytest.mark.asyncio
async def test_idempotent_trigger_runs_once(sqlite_core):
    wf = await sqlite_core.dispatcher.create_workflow(
        TENANT, "W", [echo_step(0, "a"), echo_step(1, "b")]
    )
    first = await sqlite_core.trigger(TENANT, wf.id, {"id": 1}, "K1")
    second = await sqlite_core.trigger(TENANT, wf.id, {"id": 1}, "K1")
    assert first.run_id == second.run_id
    assert len(await sqlite_core.store.list_runs(tenant_id=TENANT)) == 1

    orders = []
    for _ in range(2):
        outcome = await sqlite_core.process_next_step(first.run_id)
        orders.append((await sqlite_core.get_run(TENANT, first.run_id)).current_step_order)
    assert orders == [1, 2]
    assert outcome.status == RunStatus.COMPLETED

    run = await sqlite_core.get_run(TENANT, first.run_id)
    assert run.completed_steps == [0, 1]
    assert run.finished_at is not None and run.duration_ms >= 0
    assert (await sqlite_core.verify_chain(TENANT)).valid


@pytest.mark.asyncio
async def test_approval_blocks_until_approved(db_path):
    action = RecordingAction()
    registry = register_builtin_actions(ActionRegistry())
    registry.register("shop", "refund", action)
    core = make_core(store=SQLiteExecutionStore(db_path), registry=registry)
    try:
        wf = await core.dispatcher.create_workflow(
            TENANT,
            "W2",
            [
                {
                    "step_order": 0,
                    "name": "refund",
                    "provider": "shop",
                    "action": "refund",
                    "requires_approval": True,
                    "approvers": ["alice"],
                    "input_mapping": {"amount": "{{trigger.amount}}"},
                }
            ],
        )
        result = await core.trigger(TENANT, wf.id, {"amount": 40}, "K1")

        outcome = await core.process_next_step(result.run_id)
        assert outcome.status == RunStatus.AWAITING_APPROVAL
        again = await core.process_next_step(result.run_id)
        assert again.status == RunStatus.AWAITING_APPROVAL
        assert action.calls == []
        assert len(await core.store.list_approvals(tenant_id=TENANT)) == 1

        decision = await core.decide_approval(TENANT, outcome.approval_id, "alice", "approve")
        assert decision.run_status == RunStatus.PENDING

        done = await core.process_next_step(result.run_id)
        assert done.status == RunStatus.COMPLETED
        assert action.calls == [{"amount": 40}]
    finally:
        await core.close()


@pytest.mark.asyncio
async def test_concurrent_lock_has_one_winner(sqlite_core):
    wf = await sqlite_core.dispatcher.create_workflow(TENANT, "W", [echo_step(0, "a")])
    result = await sqlite_core.trigger(TENANT, wf.id, {}, "K1")

    outcomes = await asyncio.gather(
        sqlite_core.lock.acquire(result.run_id, "A"),
        sqlite_core.lock.acquire(result.run_id, "B"),
    )
    assert sorted(outcomes) == [False, True]


@pytest.mark.asyncio
async def test_tampered_digest_cascades(sqlite_core, db_path):
    for i in range(5):
        await sqlite_core.append_compliance_event(TENANT, "system", f"event_{i}", "system", {"i": i})

    conn = sqlite3.connect(db_path)
    with conn:
        conn.execute(
            "UPDATE compliance_events SET digest = ? WHERE tenant_id = ? AND sequence = 3",
            ("f" * 64, TENANT),
        )
    conn.close()

    result = await sqlite_core.verify_chain(TENANT)
    assert not result.valid
    assert min(v.sequence for v in result.violations) == 3
    assert ("digest_mismatch", 3) in [(v.type, v.sequence) for v in result.violations]
    prev_failures = {v.sequence for v in result.violations if v.type == "prev_digest_mismatch"}
    assert prev_failures == {4, 5}


@pytest.mark.asyncio
async def test_reject_without_reason_changes_nothing(sqlite_core):
    wf = await sqlite_core.dispatcher.create_workflow(
        TENANT, "W2", [echo_step(0, "a", requires_approval=True, approvers=["bob"])]
    )
    result = await sqlite_core.trigger(TENANT, wf.id, {}, "K1")
    outcome = await sqlite_core.process_next_step(result.run_id)
    events_before = len(await sqlite_core.store.list_events(TENANT))

    with pytest.raises(ValidationError):
        await sqlite_core.decide_approval(TENANT, outcome.approval_id, "bob", "reject", comment="")

    approval = await sqlite_core.store.get_approval(outcome.approval_id)
    assert approval.state == ApprovalState.PENDING
    assert (await sqlite_core.get_run(TENANT, result.run_id)).status == RunStatus.AWAITING_APPROVAL
    assert len(await sqlite_core.store.list_events(TENANT)) == events_before


@pytest.mark.asyncio
async def test_sixth_retry_is_refused(sqlite_core):
    wf = await sqlite_core.dispatcher.create_workflow(
        TENANT,
        "W",
        [
            {
                "step_order": 0,
                "name": "boom",
                "provider": "core",
                "action": "fail",
                "input_mapping": {"retryable": False},
            }
        ],
    )
    result = await sqlite_core.trigger(TENANT, wf.id, {}, "K1")
    assert (await sqlite_core.process_next_step(result.run_id)).status == RunStatus.FAILED

    for n in range(1, 6):
        retry = await sqlite_core.retry_run(TENANT, result.run_id)
        assert retry.retry_count == n
    with pytest.raises(RetryLimitExceeded):
        await sqlite_core.retry_run(TENANT, result.run_id)
    assert await sqlite_core.store.count_lineage(result.run_id) == 5


@pytest.mark.asyncio
async def test_crypto_shred_is_final(sqlite_core):
    await sqlite_core.vault.store(TENANT, "conn-1", "stripe", {"secret_key": "sk_live_x"})
    assert await sqlite_core.vault.fetch(TENANT, "conn-1") == {"secret_key": "sk_live_x"}

    await sqlite_core.vault.delete(TENANT, "conn-1")
    with pytest.raises((CredentialGoneError, NotFoundError)):
        await sqlite_core.vault.fetch(TENANT, "conn-1")
    with pytest.raises(CredentialGoneError):
        await sqlite_core.vault.store(TENANT, "conn-1", "stripe", {"secret_key": "sk_live_y"})
