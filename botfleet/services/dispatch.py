"""
Inbound Dispatch Router.

Routes platform webhook updates to the backend that owns the bot's
runtime. It never raises: every outcome is logged and reported as a
DispatchOutcome so the HTTP route can always acknowledge with 200 and the
platform does not redeliver.
"""

import enum
import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botfleet.services.bot_store import BotStore
from botfleet.services.governor import Governor
from botfleet.services.provisioning.base import ProvisioningBackend

logger = logging.getLogger(__name__)


class DispatchOutcome(str, enum.Enum):
    HANDLED = "handled"
    THROTTLED = "throttled"
    UNKNOWN_BOT = "unknown_bot"
    NO_RUNTIME = "no_runtime"
    ERROR = "error"


class DispatchRouter:
    def __init__(
        self,
        backend: ProvisioningBackend,
        session_factory: async_sessionmaker[AsyncSession],
        governor: Governor,
    ):
        self.backend = backend
        self.session_factory = session_factory
        self.governor = governor

    async def dispatch(self, bot_id: str, payload: Dict[str, Any]) -> DispatchOutcome:
        if not self.governor.allow_webhook(bot_id):
            logger.warning("Webhook rate limit hit for bot %s", bot_id, extra={"bot_id": bot_id})
            return DispatchOutcome.THROTTLED

        try:
            async with self.session_factory() as db:
                bot = await BotStore(db).get(bot_id)
            if bot is None:
                logger.warning("Webhook for unknown bot %s", bot_id)
                return DispatchOutcome.UNKNOWN_BOT

            handled = await self.backend.handle_update(bot_id, payload)
        except Exception:
            logger.exception("Webhook dispatch failed for bot %s", bot_id, extra={"bot_id": bot_id})
            return DispatchOutcome.ERROR

        if not handled:
            logger.info(
                "Bot %s has no live runtime in %s; update %s dropped",
                bot_id, self.backend.name, payload.get("update_id"),
            )
            return DispatchOutcome.NO_RUNTIME
        return DispatchOutcome.HANDLED
