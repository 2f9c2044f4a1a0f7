"""
Shared test setup.

Settings are read at import time, so the environment is pinned here before
any botfleet module is imported: in-memory SQLite, no scheduler, no
orchestrator credentials.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENCRYPTION_KEY"] = "test-encryption-key"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["PROVISIONING_BACKEND"] = "manual"
os.environ["PUBLIC_BASE_URL"] = "https://fleet.example.com"
os.environ["RESTART_DELAY_SECONDS"] = "0"
os.environ["DEPLOY_POLL_INTERVAL_SECONDS"] = "0"
os.environ["DEPLOY_POLL_ATTEMPTS"] = "3"
os.environ.pop("RAILWAY_API_TOKEN", None)
os.environ.pop("RAILWAY_PROJECT_ID", None)

import asyncio
from typing import Any, Dict, List, Optional

import pytest_asyncio

from botfleet.db import async_session_maker, drop_db, init_db
from botfleet.errors import ExternalUnavailable
from botfleet.schemas import BotCreate
from botfleet.services import create_user
from botfleet.services.llm_client import ChatReply
from botfleet.services.provisioning.base import (
    BotConfig,
    DeploymentResult,
    ProvisioningBackend,
    RuntimeStatus,
)
from botfleet.db.models import BotStatus


class FakeTelegram:
    """Stands in for TelegramControl; records every call."""

    def __init__(self, webhook_ok: bool = True):
        self.webhook_ok = webhook_ok
        self.webhooks: List[tuple] = []
        self.deleted: List[str] = []
        self.sent: List[tuple] = []
        self.unavailable = False

    async def set_webhook(self, token, url, allowed_updates=("message", "callback_query")):
        if self.unavailable:
            raise ExternalUnavailable("telegram down")
        self.webhooks.append((token, url))
        return self.webhook_ok

    async def delete_webhook(self, token):
        if self.unavailable:
            raise ExternalUnavailable("telegram down")
        self.deleted.append(token)
        return True

    async def get_webhook_info(self, token):
        return {"url": self.webhooks[-1][1] if self.webhooks else ""}

    async def send_message(self, token, chat_id, text):
        self.sent.append((token, chat_id, text))


class FakeCompleter:
    """Stands in for ChatCompleter."""

    def __init__(self, reply: str = "Hi there!", fail: bool = False):
        self.reply = reply
        self.fail = fail
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, provider, api_key, model, messages):
        self.calls.append({"provider": provider, "api_key": api_key, "model": model, "messages": messages})
        if self.fail:
            raise ExternalUnavailable("AI provider error")
        return ChatReply(content=self.reply, model=model or "gpt-4o", tokens_total=10)


class FakeBackend(ProvisioningBackend):
    """Deterministic backend for lifecycle tests."""

    name = "fake"
    kind = "local"

    def __init__(self, session_factory=async_session_maker, fail_with: Optional[Exception] = None):
        super().__init__(session_factory, telegram=FakeTelegram())
        self.fail_with = fail_with
        self.gate = None  # asyncio.Event to hold provisioning open
        self.entered = asyncio.Event()
        self.calls: List[tuple] = []
        self.updates: List[tuple] = []
        self.handles_updates = True

    async def provision(self, config: BotConfig) -> DeploymentResult:
        self.calls.append(("provision", config.bot_id))
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_with is not None:
            raise self.fail_with
        handle = f"fake-{config.bot_id}"
        await self.set_runtime(config.bot_id, deployment_handle=handle, webhook_url="https://fake.example.com")
        await self.set_status(config.bot_id, BotStatus.RUNNING)
        return DeploymentResult(success=True, deployment_handle=handle, domain="https://fake.example.com")

    async def start(self, bot_id: str) -> DeploymentResult:
        self.calls.append(("start", bot_id))
        return await self.provision(await self.load_credentials(bot_id))

    async def stop(self, bot_id: str) -> None:
        self.calls.append(("stop", bot_id))
        await self.set_status(bot_id, BotStatus.STOPPED)

    async def restart(self, deployment_handle: str) -> DeploymentResult:
        self.calls.append(("restart", deployment_handle))
        if self.fail_with is not None:
            raise self.fail_with
        return DeploymentResult(success=True, deployment_handle=deployment_handle)

    async def delete(self, deployment_handle: str) -> None:
        self.calls.append(("delete", deployment_handle))

    async def status(self, bot_id: str) -> RuntimeStatus:
        return await self.local_status(bot_id)

    async def handle_update(self, bot_id: str, payload: Dict[str, Any]) -> bool:
        self.updates.append((bot_id, payload))
        return self.handles_updates


def make_bot_data(**overrides) -> BotCreate:
    values = dict(
        name="Support Bot",
        platform="telegram",
        platform_token="123456:telegram-secret",
        ai_provider="openai",
        ai_token="sk-openai-secret",
        system_prompt="Be brief.",
    )
    values.update(overrides)
    return BotCreate(**values)


@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create a fresh database for each test"""
    await init_db()
    yield
    await drop_db()


@pytest_asyncio.fixture
async def db_session():
    async with async_session_maker() as session:
        yield session


@pytest_asyncio.fixture
async def user(db_session):
    return await create_user(db_session, email="Owner@Example.com", password="password123", name="Owner")


@pytest_asyncio.fixture
async def other_user(db_session):
    return await create_user(db_session, email="other@example.com", password="password123", name="Other")
