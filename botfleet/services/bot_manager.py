"""
Bot lifecycle coordinator.

Every user action on a bot goes through here: it checks ownership and
state, serializes work per bot, persists through the BotStore and leaves
the external side effects to the configured provisioning backend.

Background provisioning (kicked off by create) runs as an asyncio.Task
tracked per bot id, so it can be inspected, cancelled on delete and
cancelled on shutdown.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Dict, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botfleet.config import Settings, settings as default_settings
from botfleet.db.models import Bot, BotStatus, User
from botfleet.errors import (
    BotFleetError,
    CryptoError,
    ExternalUnavailable,
    InvalidBotState,
    NotFound,
    ProvisionFailed,
    ProvisionTimeout,
)
from botfleet.schemas import BotCreate, BotUpdate
from botfleet.services.bot_store import BotStore
from botfleet.services.governor import Governor
from botfleet.services.provisioning.base import (
    DEPLOY_TERMINAL_FAILURES,
    DeploymentResult,
    ProvisioningBackend,
    RuntimeStatus,
)
from botfleet.services.vault import CredentialVault, get_vault

logger = logging.getLogger(__name__)

# Failures a lifecycle call reports to the caller after recording them on the bot
LIFECYCLE_ERRORS = (ProvisionFailed, ProvisionTimeout, ExternalUnavailable, CryptoError)


class KeyedLocks:
    """One asyncio.Lock per key, created on first use."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for key; the entry is dropped once nobody holds or awaits it."""
        lock = self.lock(key)
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                self._locks.pop(key, None)

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())

    def discard(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and not lock.locked() and key not in self._holders:
            del self._locks[key]

    def __contains__(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


class ProvisioningTasks:
    """Background provisioning tasks keyed by bot id."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def spawn(self, bot_id: str, coro: Awaitable[Any]) -> asyncio.Task:
        previous = self._tasks.get(bot_id)
        if previous is not None and not previous.done():
            previous.cancel()
        task = asyncio.create_task(coro, name=f"provision-{bot_id}")
        task.add_done_callback(lambda t, bid=bot_id: self._on_done(bid, t))
        self._tasks[bot_id] = task
        return task

    @staticmethod
    def _on_done(bot_id: str, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.info("Provisioning of bot %s cancelled", bot_id)
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background provisioning of bot %s failed: %s", bot_id, exc)

    def get(self, bot_id: str) -> Optional[asyncio.Task]:
        return self._tasks.get(bot_id)

    def state(self, bot_id: str) -> str:
        """pending | done | failed | cancelled | none"""
        task = self._tasks.get(bot_id)
        if task is None:
            return "none"
        if not task.done():
            return "pending"
        if task.cancelled():
            return "cancelled"
        if task.exception() is not None:
            return "failed"
        return "done"

    async def cancel(self, bot_id: str) -> None:
        task = self._tasks.pop(bot_id, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except BotFleetError:
            # Already logged by _on_done
            pass

    async def cancel_all(self) -> int:
        pending = [bid for bid, t in self._tasks.items() if not t.done()]
        for bot_id in pending:
            await self.cancel(bot_id)
        self._tasks.clear()
        return len(pending)

    def __len__(self) -> int:
        return len(self._tasks)


class BotManager:
    def __init__(
        self,
        backend: ProvisioningBackend,
        session_factory: async_sessionmaker[AsyncSession],
        governor: Optional[Governor] = None,
        cfg: Settings = default_settings,
        vault: Optional[CredentialVault] = None,
    ):
        self.backend = backend
        self.session_factory = session_factory
        self.settings = cfg
        self.governor = governor or Governor(cfg)
        self.vault = vault or get_vault()
        self.locks = KeyedLocks()
        self.tasks = ProvisioningTasks()

    # ── Helpers ─────────────────────────────────────────────

    async def _get(self, bot_id: str) -> Optional[Bot]:
        async with self.session_factory() as db:
            return await BotStore(db, self.vault).get(bot_id)

    async def _owned(self, user: User, bot_id: str) -> Bot:
        async with self.session_factory() as db:
            return await BotStore(db, self.vault).get_for_user(bot_id, user.id)

    async def _set_status(
        self, bot_id: str, status: BotStatus, error_message: Optional[str] = None
    ) -> None:
        async with self.session_factory() as db:
            await BotStore(db, self.vault).update_status(bot_id, status, error_message)

    async def _mark_error(self, bot_id: str, message: str) -> None:
        try:
            await self._set_status(bot_id, BotStatus.ERROR, message)
        except Exception:
            logger.exception("Could not record error state for bot %s", bot_id)

    async def _run_start(self, bot_id: str) -> DeploymentResult:
        """Caller holds the bot lock."""
        await self._set_status(bot_id, BotStatus.DEPLOYING)
        try:
            return await self.backend.start(bot_id)
        except asyncio.CancelledError:
            await self._mark_error(bot_id, "Deployment cancelled")
            raise
        except LIFECYCLE_ERRORS as exc:
            await self._mark_error(bot_id, str(exc))
            raise
        except Exception:
            logger.exception("Provisioning of bot %s crashed", bot_id)
            await self._mark_error(bot_id, "Provisioning crashed")
            raise

    async def _provision_in_background(self, bot_id: str) -> DeploymentResult:
        async with self.locks.lock(bot_id):
            logger.info("Provisioning bot %s", bot_id, extra={"bot_id": bot_id})
            return await self._run_start(bot_id)

    # ── Queries ─────────────────────────────────────────────

    async def list_bots(self, user: User) -> List[Bot]:
        async with self.session_factory() as db:
            return await BotStore(db, self.vault).list_for_user(user.id)

    async def get(self, user: User, bot_id: str) -> Bot:
        return await self._owned(user, bot_id)

    async def status(self, user: User, bot_id: str) -> Tuple[RuntimeStatus, str]:
        await self._owned(user, bot_id)
        runtime = await self.backend.status(bot_id)
        return runtime, self.task_state(bot_id)

    def task_state(self, bot_id: str) -> str:
        return self.tasks.state(bot_id)

    # ── Commands ────────────────────────────────────────────

    async def create(self, user: User, data: BotCreate) -> Bot:
        # Per-user lock: two concurrent creates cannot both pass the quota check
        async with self.locks.hold(f"user:{user.id}"):
            async with self.session_factory() as db:
                store = BotStore(db, self.vault)
                self.governor.check_bot_quota(user, await store.count_for_user(user.id))
                bot = await store.create(user.id, data)

        self.tasks.spawn(bot.id, self._provision_in_background(bot.id))
        return bot

    async def start(self, user: User, bot_id: str) -> Tuple[Bot, DeploymentResult]:
        async with self.locks.lock(bot_id):
            bot = await self._owned(user, bot_id)
            if bot.status == BotStatus.RUNNING.value:
                raise InvalidBotState("Bot is already running")
            result = await self._run_start(bot_id)
            return await self._get(bot_id), result

    async def stop(self, user: User, bot_id: str) -> Bot:
        async with self.locks.lock(bot_id):
            bot = await self._owned(user, bot_id)
            if bot.status != BotStatus.RUNNING.value:
                raise InvalidBotState("Bot is not running")
            await self.backend.stop(bot_id)
            return await self._get(bot_id)

    async def restart(self, user: User, bot_id: str) -> Tuple[Bot, DeploymentResult]:
        async with self.locks.lock(bot_id):
            bot = await self._owned(user, bot_id)
            if not bot.deployment_handle or bot.status != BotStatus.RUNNING.value:
                # Nothing live to redeploy; start brings the webhook back too
                result = await self._run_start(bot_id)
                return await self._get(bot_id), result

            await self._set_status(bot_id, BotStatus.DEPLOYING)
            try:
                result = await self.backend.restart(bot.deployment_handle)
            except asyncio.CancelledError:
                await self._mark_error(bot_id, "Restart cancelled")
                raise
            except LIFECYCLE_ERRORS as exc:
                await self._mark_error(bot_id, str(exc))
                raise
            except Exception:
                logger.exception("Restart of bot %s crashed", bot_id)
                await self._mark_error(bot_id, "Restart crashed")
                raise
            await self._set_status(
                bot_id, BotStatus.STOPPED if result.manual else BotStatus.RUNNING
            )
            return await self._get(bot_id), result

    async def delete(self, user: User, bot_id: str) -> None:
        await self._owned(user, bot_id)
        await self.tasks.cancel(bot_id)

        async with self.locks.lock(bot_id):
            bot = await self._get(bot_id)
            if bot is None or bot.user_id != user.id:
                raise NotFound("Bot not found")

            try:
                await self.backend.stop(bot_id)
            except BotFleetError as exc:
                logger.warning("Stop before delete failed for bot %s: %s", bot_id, exc)
            if bot.deployment_handle:
                try:
                    await self.backend.delete(bot.deployment_handle)
                except BotFleetError as exc:
                    logger.warning(
                        "Teardown of %s failed for bot %s: %s", bot.deployment_handle, bot_id, exc
                    )

            async with self.session_factory() as db:
                await BotStore(db, self.vault).delete(bot_id)
            logger.info("Bot %s deleted", bot_id)
        self.locks.discard(bot_id)

    async def update(self, user: User, bot_id: str, data: BotUpdate) -> Tuple[Bot, Optional[str]]:
        """Apply changes; a running bot whose AI config changed is restarted."""
        async with self.locks.lock(bot_id):
            bot = await self._owned(user, bot_id)
            was_running = bot.status == BotStatus.RUNNING.value

            fields = data.model_dump(exclude_none=True)
            if "config" in fields:
                fields["config_json"] = fields.pop("config")
            if "ai_provider" in fields:
                fields["ai_provider"] = data.ai_provider.value
            async with self.session_factory() as db:
                await BotStore(db, self.vault).update(bot_id, **fields)

            restart_error = None
            if data.changes_ai_config and was_running:
                logger.info("AI config of bot %s changed, restarting", bot_id)
                try:
                    await self.backend.stop(bot_id)
                    await asyncio.sleep(self.settings.restart_delay_seconds)
                    await self._run_start(bot_id)
                except LIFECYCLE_ERRORS as exc:
                    restart_error = str(exc)
                    logger.error("Restart after update failed for bot %s: %s", bot_id, exc)

            return await self._get(bot_id), restart_error

    # ── Maintenance ─────────────────────────────────────────

    async def reconcile(self) -> int:
        """Compare live bots with the backend; mark bots whose deployment died. Returns drift count."""
        async with self.session_factory() as db:
            bots = await BotStore(db, self.vault).list_by_status(
                BotStatus.DEPLOYING.value, BotStatus.RUNNING.value
            )

        drifted = 0
        for bot in bots:
            if not bot.deployment_handle or self.locks.locked(bot.id):
                continue
            try:
                runtime = await self.backend.status(bot.id)
            except BotFleetError as exc:
                logger.warning("Reconcile: status of bot %s unavailable: %s", bot.id, exc)
                continue
            if runtime.remote_status in DEPLOY_TERMINAL_FAILURES:
                drifted += 1
                logger.warning(
                    "Bot %s is %s locally but its deployment reports %s",
                    bot.id, bot.status, runtime.remote_status,
                )
                await self._set_status(
                    bot.id, BotStatus.ERROR, f"Deployment reported {runtime.remote_status}"
                )
        return drifted

    async def shutdown(self) -> None:
        cancelled = await self.tasks.cancel_all()
        if cancelled:
            logger.info("Cancelled %d pending provisioning task(s)", cancelled)
