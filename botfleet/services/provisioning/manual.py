"""Fallback backend when no orchestrator is configured: records intent only."""

import logging

from botfleet.db.models import BotStatus
from botfleet.services.provisioning.base import (
    BotConfig,
    DeploymentResult,
    ProvisioningBackend,
    RuntimeStatus,
)

logger = logging.getLogger(__name__)

MANUAL_MESSAGE = "Manual deployment required"


class ManualBackend(ProvisioningBackend):
    """Never touches an external API. Bots stay stopped until deployed by hand."""

    name = "manual"
    kind = "manual"

    def _result(self, bot_id: str) -> DeploymentResult:
        return DeploymentResult(
            success=True,
            service_name=f"bot-{bot_id}",
            message=MANUAL_MESSAGE,
            manual=True,
        )

    async def provision(self, config: BotConfig) -> DeploymentResult:
        logger.info("Bot %s recorded; no automatic deployment", config.bot_id)
        await self.set_status(config.bot_id, BotStatus.STOPPED)
        return self._result(config.bot_id)

    async def start(self, bot_id: str) -> DeploymentResult:
        return await self.provision(await self.load_credentials(bot_id))

    async def stop(self, bot_id: str) -> None:
        await self.set_runtime(bot_id, webhook_url=None)
        await self.set_status(bot_id, BotStatus.STOPPED)

    async def restart(self, deployment_handle: str) -> DeploymentResult:
        return DeploymentResult(success=True, message=MANUAL_MESSAGE, manual=True)

    async def delete(self, deployment_handle: str) -> None:
        logger.info("Nothing to tear down for %s", deployment_handle)

    async def status(self, bot_id: str) -> RuntimeStatus:
        return await self.local_status(
            bot_id,
            running=False,
            manual=True,
            message="Manual mode: deployment required",
        )
