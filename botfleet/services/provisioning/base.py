"""
Provisioning backend interface and the shared remote-orchestrator logic.

A backend owns every external side effect of a bot's lifecycle. It opens
short database sessions through the injected session factory; no session
is held while waiting on the orchestrator.
"""

import asyncio
import functools
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional, Tuple

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botfleet.config import Settings, settings as default_settings
from botfleet.db.models import BotStatus
from botfleet.errors import ExternalUnavailable, NotFound, ProvisionFailed, ProvisionTimeout
from botfleet.services.bot_store import BotCredentials, BotStore
from botfleet.services.messaging import TelegramControl, get_telegram_control

logger = logging.getLogger(__name__)

# Decrypted bot configuration handed to provision()
BotConfig = BotCredentials

DEFAULT_SYSTEM_PROMPT = "You are a helpful and intelligent assistant."
WORKER_DATABASE_URL = "file:./data/openclaw.db"

DEPLOY_SUCCESS = "SUCCESS"
DEPLOY_TERMINAL_FAILURES = frozenset({"FAILED", "CRASHED", "REMOVED"})


@dataclass
class DeploymentResult:
    success: bool
    deployment_handle: Optional[str] = None
    service_name: Optional[str] = None
    domain: Optional[str] = None
    deployment_id: Optional[str] = None
    webhook_url: Optional[str] = None
    message: Optional[str] = None
    manual: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RuntimeStatus:
    bot_id: str
    status: str
    running: bool
    deployment_handle: Optional[str] = None
    remote_status: Optional[str] = None
    domain: Optional[str] = None
    manual: bool = False
    stale: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ProvisioningBackend(ABC):
    """Base class for every deployment strategy."""

    name: str = "abstract"
    kind: str = "abstract"  # remote | local | manual

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cfg: Settings = default_settings,
        telegram: Optional[TelegramControl] = None,
    ):
        self.session_factory = session_factory
        self.settings = cfg
        self.telegram = telegram or get_telegram_control()

    # ── Lifecycle ───────────────────────────────────────────

    @abstractmethod
    async def provision(self, config: BotConfig) -> DeploymentResult:
        """Create the runtime for a bot that has none."""

    @abstractmethod
    async def start(self, bot_id: str) -> DeploymentResult:
        """Bring a stopped or errored bot up."""

    @abstractmethod
    async def stop(self, bot_id: str) -> None:
        """Take a running bot down and mark it stopped."""

    @abstractmethod
    async def restart(self, deployment_handle: str) -> DeploymentResult:
        """Redeploy an existing runtime."""

    @abstractmethod
    async def delete(self, deployment_handle: str) -> None:
        """Destroy the runtime behind a handle."""

    @abstractmethod
    async def status(self, bot_id: str) -> RuntimeStatus:
        """Report the runtime state of a bot."""

    async def handle_update(self, bot_id: str, payload: Dict[str, Any]) -> bool:
        """Process an inbound platform update. False means no local runtime."""
        return False

    async def shutdown(self) -> None:
        """Release clients on process stop."""

    # ── Store helpers (short sessions) ──────────────────────

    async def load_credentials(self, bot_id: str) -> BotCredentials:
        async with self.session_factory() as db:
            return await BotStore(db).find_with_credentials(bot_id)

    async def set_status(
        self, bot_id: str, status: BotStatus, error_message: Optional[str] = None
    ) -> None:
        async with self.session_factory() as db:
            await BotStore(db).update_status(bot_id, status, error_message)

    async def set_runtime(self, bot_id: str, **runtime: Any) -> None:
        async with self.session_factory() as db:
            await BotStore(db).update_runtime(bot_id, **runtime)

    async def local_status(self, bot_id: str, **extra: Any) -> RuntimeStatus:
        """RuntimeStatus built from the database record alone."""
        async with self.session_factory() as db:
            bot = await BotStore(db).get(bot_id)
        if bot is None:
            raise NotFound("Bot not found")
        values = dict(
            bot_id=bot.id,
            status=bot.status,
            running=bot.status == BotStatus.RUNNING.value,
            deployment_handle=bot.deployment_handle,
            domain=bot.webhook_url,
        )
        values.update(extra)
        return RuntimeStatus(**values)

    async def _mark_error(self, bot_id: str, message: str) -> None:
        try:
            await self.set_status(bot_id, BotStatus.ERROR, message)
        except Exception:
            logger.exception("Could not record error state for bot %s", bot_id)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r}>"


def parses_response(func):
    """Orchestrator answers of an unexpected shape become ProvisionFailed."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (AttributeError, KeyError, IndexError, TypeError) as exc:
            raise ProvisionFailed(
                f"Unexpected orchestrator response in {func.__name__}: {exc!r}"
            ) from exc

    return wrapper


def service_name(name: str, bot_id: str) -> str:
    """Deterministic orchestrator service name for a bot."""
    slug = re.sub(r"[^a-z0-9]", "-", name.lower())
    return f"openclaw-{slug}-{bot_id[:8]}"


def with_scheme(domain: str) -> str:
    return domain if domain.startswith(("http://", "https://")) else f"https://{domain}"


class RemoteOrchestratorBackend(ProvisioningBackend):
    """
    One orchestrator service per bot, built from the worker repository.

    Subclasses implement the transport (query language or REST) through the
    ``_api_*`` hooks; the lifecycle below is shared.
    """

    kind = "remote"

    def __init__(
        self,
        session_factory,
        cfg: Settings = default_settings,
        telegram=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(session_factory, cfg, telegram)
        self.poll_interval = cfg.deploy_poll_interval_seconds
        self.poll_attempts = cfg.deploy_poll_attempts
        self.project_id = cfg.railway_project_id
        self.environment_id = cfg.railway_environment_id
        if not cfg.railway_api_token:
            logger.warning("RAILWAY_API_TOKEN not set, orchestrator calls will be rejected")
        if not cfg.railway_project_id:
            logger.warning("RAILWAY_PROJECT_ID not set, services cannot be created")

        self.client = httpx.AsyncClient(
            base_url=self.api_base_url(cfg),
            headers={
                "Authorization": f"Bearer {cfg.railway_api_token or ''}",
                "Accept": "application/json",
            },
            timeout=cfg.orchestrator_timeout_seconds,
            transport=transport,
        )

    async def _send(self, method: str, url: str, **kwargs: Any) -> Any:
        """
        One orchestrator call. Transport failures and 5xx/429 answers are
        ExternalUnavailable (retryable); other non-2xx answers are
        ProvisionFailed.
        """
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ExternalUnavailable(f"Orchestrator unreachable: {exc}") from exc

        if response.status_code >= 500 or response.status_code == 429:
            raise ExternalUnavailable(
                f"Orchestrator HTTP {response.status_code}: {response.text[:200]}"
            )
        if response.status_code >= 400:
            raise ProvisionFailed(
                f"Orchestrator HTTP {response.status_code}: {response.text[:200]}"
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalUnavailable("Orchestrator returned a non-JSON body") from exc

    async def shutdown(self) -> None:
        await self.client.aclose()

    def api_base_url(self, cfg: Settings) -> str:
        return ""

    # ── Transport hooks ─────────────────────────────────────

    @abstractmethod
    async def _api_create_service(self, name: str) -> str:
        """Create the service; returns its id."""

    @abstractmethod
    async def _api_service_domain(self, service_id: str) -> Optional[str]:
        """Public domain assigned to the service, if any yet."""

    @abstractmethod
    async def _api_set_variable(self, service_id: str, name: str, value: str) -> None:
        ...

    @abstractmethod
    async def _api_deploy(self, service_id: str) -> str:
        """Trigger a deployment; returns the deployment id."""

    @abstractmethod
    async def _api_deployment_state(
        self, service_id: str, deployment_id: str
    ) -> Tuple[Optional[str], Optional[str]]:
        """(status, domain) of one deployment."""

    @abstractmethod
    async def _api_latest_deployment_status(self, service_id: str) -> Optional[str]:
        ...

    @abstractmethod
    async def _api_delete_service(self, service_id: str) -> None:
        ...

    async def _api_scale(self, service_id: str, replicas: int) -> None:
        logger.warning("%s cannot scale services; stop stays advisory", self.name)

    # ── Shared lifecycle ────────────────────────────────────

    def service_name(self, name: str, bot_id: str) -> str:
        return service_name(name, bot_id)

    def worker_variables(self, config: BotConfig, webhook_url: str) -> Dict[str, str]:
        return {
            "TELEGRAM_BOT_TOKEN": config.platform_token,
            "OPENAI_API_KEY": config.ai_token,
            "OPENAI_MODEL": config.ai_model or "gpt-4o-mini",
            "DATABASE_URL": WORKER_DATABASE_URL,
            "WEBHOOK_URL": webhook_url,
            "BOT_NAME": config.name,
            "SYSTEM_PROMPT": config.system_prompt or DEFAULT_SYSTEM_PROMPT,
            "PORT": str(self.settings.worker_port),
            "NODE_ENV": "production",
            "BOT_ID": config.bot_id,
            "USER_ID": config.user_id,
        }

    async def set_variables(self, service_id: str, variables: Dict[str, str]) -> None:
        failed = []
        for key, value in variables.items():
            try:
                await self._api_set_variable(service_id, key, str(value))
            except (ExternalUnavailable, ProvisionFailed) as exc:
                logger.error("Failed to set %s on service %s: %s", key, service_id, exc)
                failed.append(key)
            else:
                logger.debug("Set %s on service %s", key, service_id)
        if failed:
            raise ProvisionFailed(f"Could not set variables on {service_id}: {', '.join(failed)}")

    async def wait_for_deployment(self, service_id: str, deployment_id: str) -> str:
        """Poll until the deployment succeeds; returns its public https URL."""
        logger.info("Waiting for deployment %s of service %s", deployment_id, service_id)
        for attempt in range(1, self.poll_attempts + 1):
            await asyncio.sleep(self.poll_interval)
            try:
                state, domain = await self._api_deployment_state(service_id, deployment_id)
            except ExternalUnavailable as exc:
                logger.info("Poll %d/%d for %s failed: %s", attempt, self.poll_attempts, deployment_id, exc)
                continue

            if state == DEPLOY_SUCCESS:
                return with_scheme(domain or f"{service_id}.up.railway.app")
            if state in DEPLOY_TERMINAL_FAILURES:
                raise ProvisionFailed(f"Deployment {deployment_id} ended with status {state}")
            logger.debug("Deployment %s status %s (%d/%d)", deployment_id, state, attempt, self.poll_attempts)

        raise ProvisionTimeout(
            f"Deployment {deployment_id} not ready after {self.poll_attempts} attempts"
        )

    async def _configure_webhook(self, token: str, url: str) -> bool:
        try:
            ok = await self.telegram.set_webhook(token, url)
        except ExternalUnavailable as exc:
            logger.warning("Webhook %s not configured: %s", url, exc)
            return False
        if not ok:
            logger.warning("Telegram refused webhook %s", url)
        return ok

    async def provision(self, config: BotConfig) -> DeploymentResult:
        bot_id = config.bot_id
        name = self.service_name(config.name, bot_id)
        logger.info("Provisioning bot %s as service %s", bot_id, name)

        try:
            service_id = await self._api_create_service(name)
            logger.info("Service %s created for bot %s", service_id, bot_id)
            # Persist the handle first so a failed deploy can be retried or torn down
            await self.set_runtime(bot_id, deployment_handle=service_id)

            domain = await self._api_service_domain(service_id) or f"{service_id}.up.railway.app"
            await self.set_variables(service_id, self.worker_variables(config, with_scheme(domain)))

            deployment_id = await self._api_deploy(service_id)
            logger.info("Deployment %s triggered for service %s", deployment_id, service_id)

            domain = await self.wait_for_deployment(service_id, deployment_id)
            webhook_url = f"{domain}/webhook/telegram"
            webhook_ok = await self._configure_webhook(config.platform_token, webhook_url)

            await self.set_runtime(
                bot_id,
                deployment_handle=service_id,
                webhook_url=domain,
                internal_port=self.settings.worker_port,
            )
            await self.set_status(bot_id, BotStatus.RUNNING)
        except asyncio.CancelledError:
            await self._mark_error(bot_id, "Provisioning cancelled")
            raise
        except (ProvisionFailed, ProvisionTimeout, ExternalUnavailable) as exc:
            logger.error("Provisioning bot %s failed: %s", bot_id, exc)
            await self._mark_error(bot_id, str(exc))
            raise
        except Exception:
            logger.exception("Provisioning bot %s crashed", bot_id)
            await self._mark_error(bot_id, "Provisioning crashed")
            raise

        logger.info("Bot %s running at %s", bot_id, domain)
        return DeploymentResult(
            success=True,
            deployment_handle=service_id,
            service_name=name,
            domain=domain,
            deployment_id=deployment_id,
            webhook_url=webhook_url,
            message=None if webhook_ok else "Deployed, but the Telegram webhook could not be set",
        )

    async def start(self, bot_id: str) -> DeploymentResult:
        config = await self.load_credentials(bot_id)
        if not config.deployment_handle:
            return await self.provision(config)

        # Existing service: redeploy it rather than creating a duplicate
        try:
            result = await self.restart(config.deployment_handle)
        except asyncio.CancelledError:
            await self._mark_error(bot_id, "Start cancelled")
            raise
        except (ProvisionFailed, ProvisionTimeout, ExternalUnavailable) as exc:
            await self._mark_error(bot_id, str(exc))
            raise
        except Exception:
            logger.exception("Starting bot %s crashed", bot_id)
            await self._mark_error(bot_id, "Provisioning crashed")
            raise

        webhook_ok = await self._configure_webhook(config.platform_token, result.webhook_url)
        await self.set_runtime(bot_id, deployment_handle=result.deployment_handle, webhook_url=result.domain)
        await self.set_status(bot_id, BotStatus.RUNNING)
        if not webhook_ok:
            result.message = "Deployed, but the Telegram webhook could not be set"
        return result

    async def stop(self, bot_id: str) -> None:
        config = await self.load_credentials(bot_id)
        try:
            await self.telegram.delete_webhook(config.platform_token)
        except ExternalUnavailable as exc:
            logger.warning("Could not delete webhook of bot %s: %s", bot_id, exc)

        if config.deployment_handle and self.settings.orchestrator_scale_to_zero_on_stop:
            await self._api_scale(config.deployment_handle, 0)

        await self.set_runtime(bot_id, webhook_url=None)
        await self.set_status(bot_id, BotStatus.STOPPED)
        logger.info("Bot %s stopped", bot_id)

    async def restart(self, deployment_handle: str) -> DeploymentResult:
        logger.info("Redeploying service %s", deployment_handle)
        if self.settings.orchestrator_scale_to_zero_on_stop:
            await self._api_scale(deployment_handle, 1)
        deployment_id = await self._api_deploy(deployment_handle)
        domain = await self.wait_for_deployment(deployment_handle, deployment_id)
        return DeploymentResult(
            success=True,
            deployment_handle=deployment_handle,
            domain=domain,
            deployment_id=deployment_id,
            webhook_url=f"{domain}/webhook/telegram",
        )

    async def delete(self, deployment_handle: str) -> None:
        logger.info("Deleting service %s", deployment_handle)
        await self._api_delete_service(deployment_handle)

    async def status(self, bot_id: str) -> RuntimeStatus:
        local = await self.local_status(bot_id)
        if not local.deployment_handle:
            return local
        try:
            remote = await self._api_latest_deployment_status(local.deployment_handle)
        except ExternalUnavailable as exc:
            logger.warning("Remote status for bot %s unavailable: %s", bot_id, exc)
            local.stale = True
            local.message = "Orchestrator unreachable; showing last known status"
            return local
        except ProvisionFailed as exc:
            logger.warning("Orchestrator rejected status query for bot %s: %s", bot_id, exc)
            local.message = f"Orchestrator rejected the status query: {exc}"
            return local

        local.remote_status = remote
        # Stop is advisory, so a live remote service does not make the bot running
        local.running = remote == DEPLOY_SUCCESS and local.status == BotStatus.RUNNING.value
        return local
