"""
Tests for the bot lifecycle coordinator
"""

import asyncio

import pytest

from botfleet.config import settings
from botfleet.db import async_session_maker
from botfleet.db.models import BotStatus
from botfleet.errors import InvalidBotState, NotFound, ProvisionFailed, QuotaExceeded
from botfleet.schemas import BotUpdate
from botfleet.services import BotStore, create_user
from botfleet.services.bot_manager import BotManager, KeyedLocks, ProvisioningTasks
from botfleet.services.governor import Governor
from botfleet.services.provisioning.base import DeploymentResult

from conftest import FakeBackend, make_bot_data


def make_manager(backend=None):
    backend = backend or FakeBackend()
    return BotManager(backend, async_session_maker, Governor(settings), settings), backend


async def _settle(manager, bot_id):
    task = manager.tasks.get(bot_id)
    if task is not None:
        await asyncio.gather(task, return_exceptions=True)


# ============ Helpers ============

class TestKeyedLocks:

    def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks.lock("a") is locks.lock("a")
        assert locks.lock("a") is not locks.lock("b")

    def test_discard_only_unlocked(self):
        locks = KeyedLocks()
        locks.lock("a")
        locks.discard("a")
        assert len(locks) == 0
        locks.discard("never")


@pytest.mark.asyncio
async def test_held_lock_dropped_after_last_holder():
    locks = KeyedLocks()
    order = []

    async def worker(name):
        async with locks.hold("user:1"):
            order.append(name)
            await asyncio.sleep(0)
            # A queued waiter keeps the entry alive
            assert "user:1" in locks

    await asyncio.gather(worker("a"), worker("b"))
    assert order == ["a", "b"]
    assert "user:1" not in locks


@pytest.mark.asyncio
async def test_provisioning_task_states():
    tasks = ProvisioningTasks()
    gate = asyncio.Event()

    async def waits():
        await gate.wait()
        return "ok"

    async def fails():
        raise ProvisionFailed("nope")

    tasks.spawn("a", waits())
    tasks.spawn("b", fails())
    assert tasks.state("a") == "pending"
    assert tasks.state("missing") == "none"

    await asyncio.gather(tasks.get("b"), return_exceptions=True)
    assert tasks.state("b") == "failed"

    gate.set()
    await tasks.get("a")
    assert tasks.state("a") == "done"


@pytest.mark.asyncio
async def test_spawn_replaces_pending_task():
    tasks = ProvisioningTasks()
    first = tasks.spawn("a", asyncio.sleep(60))
    second = tasks.spawn("a", asyncio.sleep(0))
    await asyncio.gather(first, second, return_exceptions=True)
    assert first.cancelled()
    assert tasks.state("a") == "done"
    assert await tasks.cancel_all() == 0


# ============ Create / quota ============

@pytest.mark.asyncio
async def test_create_provisions_in_background(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())

    assert bot.status == "deploying"
    await _settle(manager, bot.id)

    refreshed = await manager.get(user, bot.id)
    assert refreshed.status == "running"
    assert refreshed.deployment_handle == f"fake-{bot.id}"
    assert manager.tasks.state(bot.id) == "done"
    assert backend.calls == [("start", bot.id), ("provision", bot.id)]


@pytest.mark.asyncio
async def test_quota_blocks_second_free_bot(user):
    manager, _ = make_manager()
    first = await manager.create(user, make_bot_data())
    await _settle(manager, first.id)

    with pytest.raises(QuotaExceeded) as exc:
        await manager.create(user, make_bot_data(name="Second Bot"))
    assert exc.value.limit == 1
    assert len(await manager.list_bots(user)) == 1


@pytest.mark.asyncio
async def test_concurrent_creates_respect_quota(user):
    manager, _ = make_manager()
    results = await asyncio.gather(
        manager.create(user, make_bot_data(name="Bot One")),
        manager.create(user, make_bot_data(name="Bot Two")),
        return_exceptions=True,
    )
    assert sum(isinstance(r, QuotaExceeded) for r in results) == 1
    for bot in await manager.list_bots(user):
        await _settle(manager, bot.id)
    assert f"user:{user.id}" not in manager.locks


@pytest.mark.asyncio
async def test_pro_plan_quota(db_session):
    pro = await create_user(db_session, email="pro@example.com", password="password123", plan="pro")
    manager, _ = make_manager()
    for i in range(3):
        bot = await manager.create(pro, make_bot_data(name=f"Bot {i}"))
        await _settle(manager, bot.id)
    with pytest.raises(QuotaExceeded):
        await manager.create(pro, make_bot_data(name="Bot 4"))


# ============ Failure and retry ============

@pytest.mark.asyncio
async def test_failed_provision_then_start_retries(user):
    backend = FakeBackend(fail_with=ProvisionFailed("Deployment dep-1 ended with status FAILED"))
    manager, _ = make_manager(backend)

    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    failed = await manager.get(user, bot.id)
    assert failed.status == "error"
    assert "FAILED" in failed.error_message
    assert manager.tasks.state(bot.id) == "failed"

    backend.fail_with = None
    started, result = await manager.start(user, bot.id)
    assert result.success
    assert started.status == "running"
    assert started.error_message is None


@pytest.mark.asyncio
async def test_unexpected_provision_error_marks_error(user):
    manager, _ = make_manager(FakeBackend(fail_with=RuntimeError("boom")))

    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    failed = await manager.get(user, bot.id)
    assert failed.status == "error"
    assert failed.error_message == "Provisioning crashed"
    assert manager.tasks.state(bot.id) == "failed"


@pytest.mark.asyncio
async def test_start_errors_propagate_and_mark_error(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)
    await manager.stop(user, bot.id)

    backend.fail_with = ProvisionFailed("boom")
    with pytest.raises(ProvisionFailed):
        await manager.start(user, bot.id)
    assert (await manager.get(user, bot.id)).status == "error"


# ============ State rules ============


@pytest.mark.asyncio
async def test_operations_on_one_bot_run_one_at_a_time(user):
    manager, backend = make_manager()
    backend.gate = asyncio.Event()

    bot = await manager.create(user, make_bot_data())
    await backend.entered.wait()

    start = asyncio.create_task(manager.start(user, bot.id))
    for _ in range(5):
        await asyncio.sleep(0)
    # Waits for the background provisioning to release the bot
    assert not start.done()

    backend.gate.set()
    with pytest.raises(InvalidBotState):
        await start
    await _settle(manager, bot.id)
    assert backend.calls.count(("provision", bot.id)) == 1


@pytest.mark.asyncio
async def test_state_transitions(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    with pytest.raises(InvalidBotState):
        await manager.start(user, bot.id)

    stopped = await manager.stop(user, bot.id)
    assert stopped.status == "stopped"
    with pytest.raises(InvalidBotState):
        await manager.stop(user, bot.id)

    restarted, _ = await manager.restart(user, bot.id)
    assert restarted.status == "running"
    # Stopped bot: restart goes through start, not a redeploy
    assert ("restart", f"fake-{bot.id}") not in backend.calls

    restarted, result = await manager.restart(user, bot.id)
    assert restarted.status == "running"
    assert ("restart", f"fake-{bot.id}") in backend.calls


@pytest.mark.asyncio
async def test_restart_failure_marks_error(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    backend.fail_with = ProvisionFailed("redeploy failed")
    with pytest.raises(ProvisionFailed):
        await manager.restart(user, bot.id)
    assert (await manager.get(user, bot.id)).status == "error"


@pytest.mark.asyncio
async def test_manual_restart_leaves_bot_stopped(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    async def manual_restart(handle):
        return DeploymentResult(success=True, manual=True, message="Manual deployment required")

    backend.restart = manual_restart
    restarted, result = await manager.restart(user, bot.id)
    assert result.manual
    assert restarted.status == "stopped"


# ============ Ownership ============

@pytest.mark.asyncio
async def test_foreign_bots_are_not_found(user, other_user):
    manager, _ = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    for call in (manager.get, manager.stop, manager.start, manager.restart, manager.status, manager.delete):
        with pytest.raises(NotFound):
            await call(other_user, bot.id)
    assert await manager.list_bots(other_user) == []


# ============ Delete ============

@pytest.mark.asyncio
async def test_delete_tears_down(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    await manager.delete(user, bot.id)
    assert ("stop", bot.id) in backend.calls
    assert ("delete", f"fake-{bot.id}") in backend.calls
    with pytest.raises(NotFound):
        await manager.get(user, bot.id)
    calls = list(backend.calls)
    with pytest.raises(NotFound):
        await manager.delete(user, bot.id)
    assert backend.calls == calls


@pytest.mark.asyncio
async def test_delete_cancels_pending_provisioning(user):
    manager, backend = make_manager()
    backend.gate = asyncio.Event()

    bot = await manager.create(user, make_bot_data())
    await backend.entered.wait()
    assert manager.tasks.state(bot.id) == "pending"

    await manager.delete(user, bot.id)
    assert manager.tasks.state(bot.id) == "none"
    async with async_session_maker() as db:
        assert await BotStore(db).get(bot.id) is None


@pytest.mark.asyncio
async def test_delete_survives_backend_errors(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    async def broken_stop(bot_id):
        raise ProvisionFailed("orchestrator said no")

    backend.stop = broken_stop
    await manager.delete(user, bot.id)
    assert await manager.list_bots(user) == []


# ============ Update ============

@pytest.mark.asyncio
async def test_update_plain_fields_does_not_restart(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)
    calls_before = len(backend.calls)

    updated, restart_error = await manager.update(
        user, bot.id, BotUpdate(name="Renamed Bot", config={"tone": "formal"})
    )
    assert updated.name == "Renamed Bot"
    assert updated.config_json == {"tone": "formal"}
    assert restart_error is None
    assert len(backend.calls) == calls_before


@pytest.mark.asyncio
async def test_update_ai_config_restarts_running_bot(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    updated, restart_error = await manager.update(
        user, bot.id, BotUpdate(ai_provider="Anthropic", ai_token="sk-ant-new", ai_model="claude-3-haiku-latest")
    )
    assert restart_error is None
    assert updated.status == "running"
    assert updated.ai_provider == "anthropic"
    assert backend.calls[-3:] == [("stop", bot.id), ("start", bot.id), ("provision", bot.id)]

    creds = await backend.load_credentials(bot.id)
    assert creds.ai_token == "sk-ant-new"


@pytest.mark.asyncio
async def test_update_restart_failure_is_reported(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    backend.fail_with = ProvisionFailed("cannot redeploy")
    updated, restart_error = await manager.update(user, bot.id, BotUpdate(ai_model="gpt-4o-mini"))
    assert restart_error == "cannot redeploy"
    assert updated.ai_model == "gpt-4o-mini"
    assert updated.status == "error"


@pytest.mark.asyncio
async def test_update_stopped_bot_does_not_restart(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)
    await manager.stop(user, bot.id)

    updated, _ = await manager.update(user, bot.id, BotUpdate(ai_token="sk-new"))
    assert updated.status == "stopped"
    assert backend.calls[-1] == ("stop", bot.id)


# ============ Status / reconcile / shutdown ============

@pytest.mark.asyncio
async def test_status_includes_task_state(user):
    manager, _ = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    runtime, task_state = await manager.status(user, bot.id)
    assert runtime.running is True
    assert runtime.deployment_handle == f"fake-{bot.id}"
    assert task_state == "done"


@pytest.mark.asyncio
async def test_reconcile_flags_dead_deployments(user):
    manager, backend = make_manager()
    bot = await manager.create(user, make_bot_data())
    await _settle(manager, bot.id)

    async def crashed_status(bot_id):
        result = await backend.local_status(bot_id)
        result.remote_status = "CRASHED"
        return result

    backend.status = crashed_status
    assert await manager.reconcile() == 1
    bot = await manager.get(user, bot.id)
    assert bot.status == BotStatus.ERROR.value
    assert "CRASHED" in bot.error_message
    assert await manager.reconcile() == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_tasks(user):
    manager, backend = make_manager()
    backend.gate = asyncio.Event()
    bot = await manager.create(user, make_bot_data())
    await backend.entered.wait()

    await manager.shutdown()
    assert len(manager.tasks) == 0
    assert (await manager.get(user, bot.id)).status == "error"
