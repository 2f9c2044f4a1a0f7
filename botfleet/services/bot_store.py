"""
Bot Record Store — the single write path for Bot rows.

Credential columns are encrypted before the row is flushed and are only
ever decrypted by ``find_with_credentials``, which provisioning code uses.
Everything user-facing goes through ``schemas.BotResponse``.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, func, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from botfleet.db.models import Bot, BotStatus
from botfleet.errors import NotFound
from botfleet.schemas import BotCreate
from botfleet.plans import default_model_for
from botfleet.services.vault import CredentialVault, get_vault

logger = logging.getLogger(__name__)

# Plain columns callers may change through update()
UPDATABLE_FIELDS = {
    "name", "ai_provider", "ai_model", "system_prompt", "config_json",
    "memory_usage_mb", "cpu_usage_percent",
}


@dataclass
class BotCredentials:
    """Decrypted view of a bot, for provisioning code only."""
    bot_id: str
    user_id: str
    name: str
    platform: str
    platform_token: str
    ai_provider: str
    ai_token: str
    ai_model: str
    system_prompt: Optional[str]
    status: str
    deployment_handle: Optional[str] = None
    webhook_url: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        # Never render tokens
        return f"BotCredentials(bot_id={self.bot_id!r}, name={self.name!r}, status={self.status!r})"


class BotStore:
    def __init__(self, db: AsyncSession, vault: Optional[CredentialVault] = None):
        self.db = db
        self.vault = vault or get_vault()

    # ── Create ──────────────────────────────────────────────

    async def create(self, user_id: str, data: BotCreate) -> Bot:
        bot = Bot(
            user_id=user_id,
            name=data.name,
            platform=data.platform.value,
            platform_token_encrypted=self.vault.encrypt(data.platform_token),
            ai_provider=data.ai_provider.value,
            ai_token_encrypted=self.vault.encrypt(data.ai_token),
            ai_model=data.ai_model or default_model_for(data.ai_provider.value),
            system_prompt=data.system_prompt,
            config_json=data.config or {},
            status=BotStatus.DEPLOYING.value,
        )
        self.db.add(bot)
        await self.db.commit()
        await self.db.refresh(bot)
        logger.info("Bot %s created for user %s", bot.id, user_id)
        return bot

    # ── Read ────────────────────────────────────────────────

    async def get(self, bot_id: str) -> Optional[Bot]:
        # populate_existing: bulk UPDATEs below bypass the identity map
        result = await self.db.execute(
            select(Bot).where(Bot.id == bot_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_for_user(self, bot_id: str, user_id: str) -> Bot:
        """Owner-scoped lookup. Foreign bots look exactly like missing ones."""
        bot = await self.get(bot_id)
        if bot is None or bot.user_id != user_id:
            raise NotFound("Bot not found")
        return bot

    async def list_for_user(self, user_id: str) -> List[Bot]:
        result = await self.db.execute(
            select(Bot)
            .where(Bot.user_id == user_id)
            .order_by(Bot.created_at.desc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_by_status(self, *statuses: str) -> List[Bot]:
        result = await self.db.execute(
            select(Bot).where(Bot.status.in_(statuses)).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_for_user(self, user_id: str) -> int:
        result = await self.db.execute(
            select(func.count(Bot.id)).where(Bot.user_id == user_id)
        )
        return result.scalar_one()

    async def count_by_status(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(Bot.status, func.count(Bot.id)).group_by(Bot.status)
        )
        return {status: count for status, count in result.all()}

    async def find_with_credentials(self, bot_id: str) -> BotCredentials:
        """Privileged accessor: decrypts both tokens. Raises CryptoError on tamper."""
        bot = await self.get(bot_id)
        if bot is None:
            raise NotFound("Bot not found")
        return BotCredentials(
            bot_id=bot.id,
            user_id=bot.user_id,
            name=bot.name,
            platform=bot.platform,
            platform_token=self.vault.decrypt(bot.platform_token_encrypted),
            ai_provider=bot.ai_provider,
            ai_token=self.vault.decrypt(bot.ai_token_encrypted),
            ai_model=bot.ai_model,
            system_prompt=bot.system_prompt,
            status=bot.status,
            deployment_handle=bot.deployment_handle,
            webhook_url=bot.webhook_url,
            config=dict(bot.config_json or {}),
        )

    # ── Write ───────────────────────────────────────────────

    async def update(self, bot_id: str, **fields: Any) -> Optional[Bot]:
        values = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        ai_token = fields.get("ai_token")
        if ai_token:
            values["ai_token_encrypted"] = self.vault.encrypt(ai_token)
        if not values:
            return await self.get(bot_id)

        values["updated_at"] = datetime.utcnow()
        await self.db.execute(update(Bot).where(Bot.id == bot_id).values(**values))
        await self.db.commit()
        return await self.get(bot_id)

    async def update_status(
        self,
        bot_id: str,
        status: BotStatus,
        error_message: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "status": BotStatus(status).value,
            "updated_at": datetime.utcnow(),
            "error_message": error_message[:500] if error_message else None,
        }
        await self.db.execute(update(Bot).where(Bot.id == bot_id).values(**values))
        await self.db.commit()

    async def update_runtime(self, bot_id: str, **runtime: Any) -> None:
        """Write deployment_handle / webhook_url / internal_port only."""
        allowed = {"deployment_handle", "webhook_url", "internal_port"}
        values = {k: v for k, v in runtime.items() if k in allowed}
        if not values:
            return
        if values.get("deployment_handle") or values.get("webhook_url"):
            values["last_started_at"] = datetime.utcnow()
        values["updated_at"] = datetime.utcnow()
        await self.db.execute(update(Bot).where(Bot.id == bot_id).values(**values))
        await self.db.commit()

    async def record_activity(self, bot_id: str) -> None:
        await self.db.execute(
            update(Bot)
            .where(Bot.id == bot_id)
            .values(total_messages=Bot.total_messages + 1, last_activity_at=datetime.utcnow())
        )
        await self.db.commit()

    async def delete(self, bot_id: str) -> bool:
        result = await self.db.execute(delete(Bot).where(Bot.id == bot_id))
        await self.db.commit()
        return result.rowcount > 0
