"""
Tests for the bot record store
"""

import pytest

from botfleet.db.models import BotStatus
from botfleet.errors import CryptoError, NotFound
from botfleet.schemas import BotResponse
from botfleet.services import BotStore

from conftest import make_bot_data


@pytest.mark.asyncio
async def test_create_encrypts_tokens(db_session, user):
    store = BotStore(db_session)
    bot = await store.create(user.id, make_bot_data())

    assert bot.status == BotStatus.DEPLOYING.value
    assert bot.ai_model == "gpt-4o"  # provider default
    assert "telegram-secret" not in bot.platform_token_encrypted
    assert "sk-openai-secret" not in bot.ai_token_encrypted


@pytest.mark.asyncio
async def test_find_with_credentials_decrypts(db_session, user):
    store = BotStore(db_session)
    bot = await store.create(user.id, make_bot_data(ai_provider="anthropic"))

    creds = await store.find_with_credentials(bot.id)
    assert creds.platform_token == "123456:telegram-secret"
    assert creds.ai_token == "sk-openai-secret"
    assert creds.ai_model == "claude-3-5-sonnet-latest"
    assert "secret" not in repr(creds)


@pytest.mark.asyncio
async def test_find_with_credentials_tampered(db_session, user):
    store = BotStore(db_session)
    bot = await store.create(user.id, make_bot_data())
    bot.ai_token_encrypted = "AAAA" + bot.ai_token_encrypted[4:]
    await db_session.commit()

    with pytest.raises(CryptoError):
        await store.find_with_credentials(bot.id)


@pytest.mark.asyncio
async def test_response_has_no_credentials(db_session, user):
    bot = await BotStore(db_session).create(user.id, make_bot_data())
    body = BotResponse.model_validate(bot).model_dump()

    assert "platform_token_encrypted" not in body
    assert "ai_token_encrypted" not in body
    assert "secret" not in str(body)


@pytest.mark.asyncio
async def test_owner_scoped_lookup(db_session, user, other_user):
    store = BotStore(db_session)
    bot = await store.create(user.id, make_bot_data())

    assert (await store.get_for_user(bot.id, user.id)).id == bot.id
    with pytest.raises(NotFound):
        await store.get_for_user(bot.id, other_user.id)
    with pytest.raises(NotFound):
        await store.get_for_user("missing", user.id)


@pytest.mark.asyncio
async def test_list_and_count(db_session, user, other_user):
    store = BotStore(db_session)
    await store.create(user.id, make_bot_data(name="First"))
    await store.create(user.id, make_bot_data(name="Second"))
    await store.create(other_user.id, make_bot_data(name="Foreign"))

    bots = await store.list_for_user(user.id)
    assert {b.name for b in bots} == {"First", "Second"}
    assert await store.count_for_user(user.id) == 2
    assert await store.count_by_status() == {"deploying": 3}


@pytest.mark.asyncio
async def test_update_status_and_runtime(db_session, user):
    store = BotStore(db_session)
    bot = await store.create(user.id, make_bot_data())

    await store.update_runtime(bot.id, deployment_handle="svc-1", webhook_url="https://x.example.com", bogus=1)
    await store.update_status(bot.id, BotStatus.ERROR, "boom" * 200)

    bot = await store.get(bot.id)
    assert bot.deployment_handle == "svc-1"
    assert bot.last_started_at is not None
    assert bot.status == "error"
    assert len(bot.error_message) == 500

    await store.update_status(bot.id, BotStatus.RUNNING)
    bot = await store.get(bot.id)
    assert bot.error_message is None
    assert await store.list_by_status("running") == [bot]

    await store.update_runtime(bot.id, webhook_url=None)
    bot = await store.get(bot.id)
    assert bot.webhook_url is None
    assert bot.deployment_handle == "svc-1"


@pytest.mark.asyncio
async def test_update_reencrypts_ai_token(db_session, user):
    store = BotStore(db_session)
    bot = await store.create(user.id, make_bot_data())

    updated = await store.update(bot.id, name="Renamed", ai_token="sk-new", status="running")
    assert updated.name == "Renamed"
    assert updated.status == "deploying"  # not an updatable field
    creds = await store.find_with_credentials(bot.id)
    assert creds.ai_token == "sk-new"


@pytest.mark.asyncio
async def test_record_activity_and_delete(db_session, user):
    store = BotStore(db_session)
    bot = await store.create(user.id, make_bot_data())

    await store.record_activity(bot.id)
    await store.record_activity(bot.id)
    bot = await store.get(bot.id)
    assert bot.total_messages == 2
    assert bot.last_activity_at is not None

    assert await store.delete(bot.id) is True
    assert await store.delete(bot.id) is False
    assert await store.get(bot.id) is None
