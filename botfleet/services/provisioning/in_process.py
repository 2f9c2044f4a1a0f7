"""
In-process bot runner.

No remote service: the platform itself receives each bot's Telegram
webhook at ``<PUBLIC_BASE_URL>/webhook/telegram/<bot_id>`` and answers
through the bot's AI provider. Live bots are held in a lock-guarded
registry with their decrypted credentials.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from botfleet.config import Settings, settings as default_settings
from botfleet.db.models import BotStatus
from botfleet.errors import ExternalUnavailable, ProvisionFailed
from botfleet.services.bot_store import BotStore
from botfleet.services.conversations import ConversationStore
from botfleet.services.llm_client import ChatCompleter, get_chat_completer
from botfleet.services.provisioning.base import (
    BotConfig,
    DeploymentResult,
    ProvisioningBackend,
    RuntimeStatus,
    with_scheme,
)

logger = logging.getLogger(__name__)

HANDLE_PREFIX = "inproc-"

HELP_TEXT = (
    "📚 Commands:\n"
    "/start - Start\n"
    "/help - Help\n"
    "Send any message to chat with the AI."
)
APOLOGY_TEXT = "Sorry, something went wrong on my side. Please try again later."
EMPTY_REPLY_TEXT = "I didn't quite understand that."


@dataclass
class LiveBot:
    bot_id: str
    name: str
    platform_token: str
    ai_provider: str
    ai_token: str
    ai_model: str
    system_prompt: Optional[str]
    webhook_url: str
    started_at: datetime = field(default_factory=datetime.utcnow)

    def __repr__(self) -> str:
        return f"LiveBot(bot_id={self.bot_id!r}, name={self.name!r})"


class LiveBotRegistry:
    """bot_id → LiveBot, guarded by an asyncio.Lock."""

    def __init__(self):
        self._bots: Dict[str, LiveBot] = {}
        self._lock = asyncio.Lock()

    async def register(self, live: LiveBot) -> None:
        async with self._lock:
            self._bots[live.bot_id] = live

    async def unregister(self, bot_id: str) -> Optional[LiveBot]:
        async with self._lock:
            return self._bots.pop(bot_id, None)

    async def get(self, bot_id: str) -> Optional[LiveBot]:
        async with self._lock:
            return self._bots.get(bot_id)

    async def bot_ids(self) -> List[str]:
        async with self._lock:
            return list(self._bots)

    def __len__(self) -> int:
        return len(self._bots)


def handle_for(bot_id: str) -> str:
    return f"{HANDLE_PREFIX}{bot_id}"


def bot_id_from_handle(handle: str) -> str:
    return handle[len(HANDLE_PREFIX):] if handle.startswith(HANDLE_PREFIX) else handle


class InProcessBackend(ProvisioningBackend):
    name = "in-process"
    kind = "local"

    def __init__(
        self,
        session_factory,
        cfg: Settings = default_settings,
        telegram=None,
        completer: Optional[ChatCompleter] = None,
        conversations: Optional[ConversationStore] = None,
    ):
        super().__init__(session_factory, cfg, telegram)
        self.completer = completer or get_chat_completer()
        self.conversations = conversations or ConversationStore(cfg.conversation_history_turns)
        self.registry = LiveBotRegistry()

    def webhook_url_for(self, bot_id: str) -> str:
        base = self.settings.public_base_url
        if not base:
            raise ProvisionFailed("PUBLIC_BASE_URL is not configured")
        return f"{with_scheme(base).rstrip('/')}/webhook/telegram/{bot_id}"

    # ── Lifecycle ───────────────────────────────────────────

    async def provision(self, config: BotConfig) -> DeploymentResult:
        bot_id = config.bot_id
        try:
            webhook_url = self.webhook_url_for(bot_id)
            if not await self.telegram.set_webhook(config.platform_token, webhook_url):
                raise ProvisionFailed("Telegram rejected the webhook registration")
        except (ProvisionFailed, ExternalUnavailable) as exc:
            logger.error("Starting bot %s in-process failed: %s", bot_id, exc)
            await self._mark_error(bot_id, str(exc))
            raise

        try:
            await self.registry.register(LiveBot(
                bot_id=bot_id,
                name=config.name,
                platform_token=config.platform_token,
                ai_provider=config.ai_provider,
                ai_token=config.ai_token,
                ai_model=config.ai_model,
                system_prompt=config.system_prompt,
                webhook_url=webhook_url,
            ))
            await self.set_runtime(bot_id, deployment_handle=handle_for(bot_id), webhook_url=webhook_url)
            await self.set_status(bot_id, BotStatus.RUNNING)
        except Exception:
            logger.exception("Starting bot %s in-process crashed", bot_id)
            await self.registry.unregister(bot_id)
            await self._mark_error(bot_id, "Provisioning crashed")
            raise
        logger.info("Bot %s started with webhook %s", bot_id, webhook_url)

        return DeploymentResult(
            success=True,
            deployment_handle=handle_for(bot_id),
            service_name=f"bot-{bot_id}",
            webhook_url=webhook_url,
        )

    async def start(self, bot_id: str) -> DeploymentResult:
        return await self.provision(await self.load_credentials(bot_id))

    async def _detach(self, bot_id: str) -> None:
        live = await self.registry.unregister(bot_id)
        self.conversations.clear_bot(bot_id)
        if live is None:
            return
        try:
            await self.telegram.delete_webhook(live.platform_token)
        except ExternalUnavailable as exc:
            logger.warning("Could not delete webhook of bot %s: %s", bot_id, exc)

    async def stop(self, bot_id: str) -> None:
        if await self.registry.get(bot_id) is None:
            # Not live in this process (e.g. after a restart); still drop its webhook
            config = await self.load_credentials(bot_id)
            try:
                await self.telegram.delete_webhook(config.platform_token)
            except ExternalUnavailable as exc:
                logger.warning("Could not delete webhook of bot %s: %s", bot_id, exc)
        else:
            await self._detach(bot_id)
        await self.set_runtime(bot_id, webhook_url=None)
        await self.set_status(bot_id, BotStatus.STOPPED)
        logger.info("Bot %s stopped", bot_id)

    async def restart(self, deployment_handle: str) -> DeploymentResult:
        bot_id = bot_id_from_handle(deployment_handle)
        await self._detach(bot_id)
        await asyncio.sleep(self.settings.restart_delay_seconds)
        return await self.start(bot_id)

    async def delete(self, deployment_handle: str) -> None:
        await self._detach(bot_id_from_handle(deployment_handle))

    async def status(self, bot_id: str) -> RuntimeStatus:
        live = await self.registry.get(bot_id)
        result = await self.local_status(bot_id, running=live is not None)
        if live is not None:
            result.status = BotStatus.RUNNING.value
            result.domain = live.webhook_url
        return result

    async def shutdown(self) -> None:
        for bot_id in await self.registry.bot_ids():
            await self.registry.unregister(bot_id)

    # ── Inbound updates ─────────────────────────────────────

    async def handle_update(self, bot_id: str, payload: Dict[str, Any]) -> bool:
        live = await self.registry.get(bot_id)
        if live is None:
            return False

        message = payload.get("message")
        if not message:
            # callback_query and friends: acknowledged, nothing to answer
            return True

        chat_id = message["chat"]["id"]
        text = message.get("text") or ""
        sender = message.get("from") or {}
        user_name = sender.get("username") or sender.get("first_name") or "there"
        logger.info("Bot %s message from %s: %s", bot_id, user_name, text[:50])

        if text == "/start":
            await self.telegram.send_message(
                live.platform_token, chat_id,
                f"👋 Hello {user_name}!\n\nI'm {live.name}, your AI assistant. How can I help?",
            )
            return True
        if text == "/help":
            await self.telegram.send_message(live.platform_token, chat_id, HELP_TEXT)
            return True
        if not text:
            return True

        messages = self.conversations.build_messages(bot_id, chat_id, live.system_prompt, text)
        try:
            reply = await self.completer.complete(
                live.ai_provider, live.ai_token, live.ai_model, messages
            )
        except ExternalUnavailable as exc:
            logger.error("AI call for bot %s failed: %s", bot_id, exc)
            await self.telegram.send_message(live.platform_token, chat_id, APOLOGY_TEXT)
            return True

        answer = reply.content or EMPTY_REPLY_TEXT
        self.conversations.append_turn(bot_id, chat_id, text, answer)
        await self.telegram.send_message(live.platform_token, chat_id, answer)

        async with self.session_factory() as db:
            await BotStore(db).record_activity(bot_id)
        return True
