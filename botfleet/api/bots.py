"""
Bot management endpoints.

GET    /api/bots                 — list the caller's bots
POST   /api/bots                 — create a bot (provisioning runs in background)
GET    /api/bots/providers       — platforms and AI providers (public)
GET    /api/bots/{id}            — one bot with runtime status
PUT    /api/bots/{id}            — update; AI config changes restart a running bot
DELETE /api/bots/{id}            — tear down and delete
POST   /api/bots/{id}/start|stop|restart
GET    /api/bots/{id}/status     — runtime status + background provisioning state
"""

import logging

from fastapi import APIRouter, Depends, status

from botfleet.api.auth import get_rate_limited_user
from botfleet.api.deps import get_governor, get_manager
from botfleet.db.models import User
from botfleet.plans import AI_PROVIDERS, PLATFORMS
from botfleet.schemas import (
    BotActionResponse,
    BotCreate,
    BotDetailResponse,
    BotListResponse,
    BotResponse,
    BotUpdate,
    ProvidersResponse,
    RuntimeStatusResponse,
)
from botfleet.services.bot_manager import BotManager
from botfleet.services.governor import Governor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bots", tags=["Bots"])


def _runtime_response(runtime, task_state: str) -> RuntimeStatusResponse:
    return RuntimeStatusResponse(**runtime.to_dict(), provisioning_task=task_state)


@router.get("/providers", response_model=ProvidersResponse)
async def list_providers():
    """Supported messaging platforms and AI providers"""
    return ProvidersResponse(platforms=PLATFORMS, ai_providers=AI_PROVIDERS)


@router.get("", response_model=BotListResponse)
async def list_bots(
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
):
    bots = await manager.list_bots(user)
    return BotListResponse(
        bots=[BotDetailResponse(bot=BotResponse.model_validate(b)) for b in bots]
    )


@router.post("", response_model=BotActionResponse, status_code=status.HTTP_201_CREATED)
async def create_bot(
    data: BotCreate,
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
    governor: Governor = Depends(get_governor),
):
    """Create a bot. The response returns while deployment continues in background."""
    governor.check_bot_creation(user.id)
    bot = await manager.create(user, data)
    return BotActionResponse(
        message="Bot created, deployment in progress",
        bot=BotResponse.model_validate(bot),
    )


@router.get("/{bot_id}", response_model=BotDetailResponse)
async def get_bot(
    bot_id: str,
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
):
    runtime, task_state = await manager.status(user, bot_id)
    bot = await manager.get(user, bot_id)
    return BotDetailResponse(
        bot=BotResponse.model_validate(bot),
        runtime=_runtime_response(runtime, task_state),
    )


@router.put("/{bot_id}", response_model=BotActionResponse)
async def update_bot(
    bot_id: str,
    data: BotUpdate,
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
):
    bot, restart_error = await manager.update(user, bot_id, data)
    return BotActionResponse(
        message="Bot updated" if not restart_error else "Bot updated, but restart failed",
        bot=BotResponse.model_validate(bot),
        restart_error=restart_error,
    )


@router.delete("/{bot_id}", response_model=BotActionResponse)
async def delete_bot(
    bot_id: str,
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
):
    await manager.delete(user, bot_id)
    return BotActionResponse(message="Bot deleted")


@router.post("/{bot_id}/start", response_model=BotActionResponse)
async def start_bot(
    bot_id: str,
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
):
    bot, result = await manager.start(user, bot_id)
    return BotActionResponse(
        message=result.message or "Bot started",
        bot=BotResponse.model_validate(bot),
        deployment=result.to_dict(),
    )


@router.post("/{bot_id}/stop", response_model=BotActionResponse)
async def stop_bot(
    bot_id: str,
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
):
    bot = await manager.stop(user, bot_id)
    return BotActionResponse(message="Bot stopped", bot=BotResponse.model_validate(bot))


@router.post("/{bot_id}/restart", response_model=BotActionResponse)
async def restart_bot(
    bot_id: str,
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
):
    bot, result = await manager.restart(user, bot_id)
    return BotActionResponse(
        message=result.message or "Bot restarted",
        bot=BotResponse.model_validate(bot),
        deployment=result.to_dict(),
    )


@router.get("/{bot_id}/status", response_model=RuntimeStatusResponse)
async def bot_status(
    bot_id: str,
    user: User = Depends(get_rate_limited_user),
    manager: BotManager = Depends(get_manager),
):
    runtime, task_state = await manager.status(user, bot_id)
    return _runtime_response(runtime, task_state)
