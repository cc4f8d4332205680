"""Tests for the step execution engine."""

from datetime import timedelta

import pytest

from conftest import TENANT, echo_step, make_core
from datachoreo.errors import ActionFailed
from datachoreo.persistence.models import RunStatus, utcnow
from datachoreo.providers import register_builtin_actions
from datachoreo.registry import ActionRegistry


class CountingAction:
    """Fails ``failures`` times, then returns the params it was given."""

    def __init__(self, failures=0, retryable=True):
        self.failures = failures
        self.retryable = retryable
        self.calls = []

    async def invoke(self, params, credentials):
        self.calls.append((params, credentials))
        if len(self.calls) <= self.failures:
            raise ActionFailed(f"failure {len(self.calls)}", retryable=self.retryable)
        return {"seen": params}


def _core_with(action, **engine):
    registry = register_builtin_actions(ActionRegistry())
    registry.register("shop", "sync", action)
    return make_core(registry=registry, **engine)


def _shop_step(order=0, **extra):
    step = {
        "step_order": order,
        "name": "sync",
        "provider": "shop",
        "action": "sync",
        "input_mapping": {"order_ref": "{{trigger.order_ref}}"},
    }
    step.update(extra)
    return step


async def _start(core, steps, payload=None, key="k1", **workflow):
    wf = await core.dispatcher.create_workflow(TENANT, "wf", steps, **workflow)
    result = await core.trigger(TENANT, wf.id, payload or {}, key)
    return result.run_id


@pytest.mark.asyncio
async def test_one_step_per_call_in_order(core):
    run_id = await _start(
        core,
        [
            echo_step(0, "first", input_mapping={"ref": "{{trigger.ref}}"}),
            echo_step(1, "second", output_key="out", input_mapping={"prev": "{{first.ref}}"}),
        ],
        payload={"ref": "A-1"},
    )

    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.PENDING
    assert outcome.next_step_order == 1
    run = await core.get_run(TENANT, run_id)
    assert run.context["first"] == {"ref": "A-1"}
    assert run.completed_steps == [0]
    assert run.locked_by is None

    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.COMPLETED
    run = await core.get_run(TENANT, run_id)
    assert run.context["out"] == {"prev": "A-1"}
    assert run.completed_steps == [0, 1]
    assert run.actions_count == 2
    assert run.finished_at is not None and run.duration_ms is not None

    events = await core.store.list_events(TENANT)
    assert [e.event_type for e in events if e.category == "provider_call"] == ["core_echo", "core_echo"]
    assert events[-1].event_type == "run_completed"


@pytest.mark.asyncio
async def test_terminal_run_is_a_no_op(core):
    run_id = await _start(core, [echo_step(0, "only")])
    await core.process_next_step(run_id)
    before = await core.store.list_events(TENANT)
    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.COMPLETED
    assert await core.store.list_events(TENANT) == before


@pytest.mark.asyncio
async def test_workflow_without_steps_completes(core):
    run_id = await _start(core, [])
    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_locked_run_is_not_touched(core):
    run_id = await _start(core, [echo_step(0, "only")])
    assert await core.lock.acquire(run_id, "someone-else")
    outcome = await core.process_next_step(run_id)
    assert outcome.locked
    run = await core.get_run(TENANT, run_id)
    assert run.status == RunStatus.PENDING
    assert run.completed_steps == []
    assert run.locked_by == "someone-else"


@pytest.mark.asyncio
async def test_retryable_failures_use_bounded_attempts():
    action = CountingAction(failures=2)
    core = _core_with(action)
    run_id = await _start(core, [_shop_step(retry_on_failure=True, max_attempts=3)])
    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.COMPLETED
    assert len(action.calls) == 3


@pytest.mark.asyncio
async def test_failure_after_last_attempt_fails_run():
    action = CountingAction(failures=5)
    core = _core_with(action)
    run_id = await _start(core, [_shop_step(retry_on_failure=True, max_attempts=2)])
    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.FAILED
    assert len(action.calls) == 2
    run = await core.get_run(TENANT, run_id)
    assert run.error_message == "failure 2"
    assert run.finished_at is not None
    failed = [e for e in await core.store.list_events(TENANT) if e.event_type == "run_failed"]
    assert failed and failed[0].payload["error"] == "failure 2"


@pytest.mark.asyncio
async def test_without_retry_flag_only_one_attempt():
    action = CountingAction(failures=1)
    core = _core_with(action)
    run_id = await _start(core, [_shop_step(max_attempts=3)])
    assert (await core.process_next_step(run_id)).status == RunStatus.FAILED
    assert len(action.calls) == 1


@pytest.mark.asyncio
async def test_non_retryable_failure_stops_early():
    action = CountingAction(failures=5, retryable=False)
    core = _core_with(action)
    run_id = await _start(core, [_shop_step(retry_on_failure=True, max_attempts=3)])
    assert (await core.process_next_step(run_id)).status == RunStatus.FAILED
    assert len(action.calls) == 1


@pytest.mark.asyncio
async def test_step_timeout_fails_run(core):
    run_id = await _start(
        core,
        [
            {
                "step_order": 0,
                "name": "nap",
                "provider": "core",
                "action": "sleep",
                "input_mapping": {"seconds": 2},
                "timeout_seconds": 0.05,
            }
        ],
    )
    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.FAILED
    assert "timed out" in outcome.message


@pytest.mark.asyncio
async def test_credentials_are_fetched_and_never_audited():
    action = CountingAction()
    core = _core_with(action)
    await core.vault.store(TENANT, "conn-1", "shopify", {"shop_domain": "s", "access_token": "shpat_secret"})
    run_id = await _start(core, [_shop_step(connection_id="conn-1")], payload={"order_ref": "R-9"})

    assert (await core.process_next_step(run_id)).status == RunStatus.COMPLETED
    params, credentials = action.calls[0]
    assert params == {"order_ref": "R-9"}
    assert credentials["access_token"] == "shpat_secret"
    assert "shpat_secret" not in str([e.model_dump() for e in await core.store.list_events(TENANT)])


@pytest.mark.asyncio
async def test_missing_credential_fails_run():
    core = _core_with(CountingAction())
    run_id = await _start(core, [_shop_step(connection_id="absent")])
    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.FAILED
    assert "absent" in outcome.message


@pytest.mark.asyncio
async def test_simulation_skips_vault_and_provider():
    action = CountingAction()
    core = _core_with(action)
    run_id = await _start(
        core,
        [_shop_step(connection_id="absent")],
        payload={"order_ref": "R-1"},
        simulation_mode=True,
    )
    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.COMPLETED
    assert action.calls == []
    run = await core.get_run(TENANT, run_id)
    assert run.is_simulation
    assert run.context["sync"] == {
        "simulated": True,
        "provider": "shop",
        "action": "sync",
        "params": {"order_ref": "R-1"},
    }


@pytest.mark.asyncio
async def test_missing_inputs_are_recorded_or_fail_when_strict():
    action = CountingAction()
    core = _core_with(action)
    run_id = await _start(core, [_shop_step()], key="lenient")
    assert (await core.process_next_step(run_id)).status == RunStatus.COMPLETED
    assert action.calls[0][0] == {"order_ref": None}
    call = [e for e in await core.store.list_events(TENANT) if e.category == "provider_call"][0]
    assert call.payload["missing_inputs"] == ["trigger.order_ref"]

    strict = await _start(core, [_shop_step(strict_inputs=True)], key="strict")
    outcome = await core.process_next_step(strict)
    assert outcome.status == RunStatus.FAILED
    assert "trigger.order_ref" in outcome.message
    assert len(action.calls) == 1


@pytest.mark.asyncio
async def test_recorded_step_result_is_replayed():
    action = CountingAction()
    core = _core_with(action)
    run_id = await _start(core, [_shop_step()])
    run = await core.get_run(TENANT, run_id)
    scope = f"step:{run_id}:0"
    await core.ledger.check_or_reserve(TENANT, scope, run.correlation_id)
    await core.ledger.complete(TENANT, scope, run.correlation_id, {"seen": "earlier"})

    outcome = await core.process_next_step(run_id)
    assert outcome.status == RunStatus.COMPLETED
    assert outcome.result == {"seen": "earlier"}
    assert action.calls == []


@pytest.mark.asyncio
async def test_fatal_error_returns_run_to_pending(monkeypatch):
    core = _core_with(CountingAction())
    await core.vault.store(TENANT, "conn-1", "shopify", {"shop_domain": "s", "access_token": "t"})
    run_id = await _start(core, [_shop_step(connection_id="conn-1")])

    async def unreachable(tenant_id, connection_id):
        raise RuntimeError("vault unreachable")

    monkeypatch.setattr(core.vault, "fetch", unreachable)
    with pytest.raises(RuntimeError):
        await core.process_next_step(run_id)
    run = await core.get_run(TENANT, run_id)
    assert run.status == RunStatus.PENDING
    assert run.locked_by is None


@pytest.mark.asyncio
async def test_rollback_walks_completed_steps_in_reverse():
    registry = register_builtin_actions(ActionRegistry())
    undone = []

    class Undo:
        async def invoke(self, params, credentials):
            undone.append(params["result"]["value"])
            if params["result"]["value"] == "step-1":
                raise ActionFailed("cannot undo")
            return {}

    registry.register("core", "undo", Undo())
    core = make_core(registry=registry)
    run_id = await _start(
        core,
        [
            echo_step(0, "a", rollback_action="undo"),
            echo_step(1, "b", rollback_action="undo"),
            echo_step(2, "c"),
        ],
    )
    await core.process_next_step(run_id)
    await core.process_next_step(run_id)
    run = await core.get_run(TENANT, run_id)

    results = await core.executor.rollback(run)
    assert undone == ["step-1", "step-0"]
    assert [(r.step_order, r.ok) for r in results] == [(1, False), (0, True)]
    assert results[0].error == "cannot undo"


@pytest.mark.asyncio
async def test_approval_window_comes_from_config():
    core = make_core(approval_window_hours=2)
    run_id = await _start(core, [echo_step(0, "gate", requires_approval=True, approvers=["alice"])])
    outcome = await core.process_next_step(run_id)
    approval = await core.store.get_approval(outcome.approval_id)
    assert approval.expires_at - approval.requested_at == timedelta(hours=2)
    assert approval.expires_at > utcnow()
