"""
Inbound messaging-platform webhooks.

Always answers 200 {"ok": true}: Telegram retries anything else, and a
retry storm for a stopped or unknown bot helps nobody.
"""
from fastapi import APIRouter, Depends, Request
import logging

from botfleet.api.deps import get_dispatch_router
from botfleet.services.dispatch import DispatchRouter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.post("/telegram/{bot_id}")
async def telegram_webhook(
    bot_id: str,
    request: Request,
    dispatcher: DispatchRouter = Depends(get_dispatch_router),
):
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("Malformed webhook body for bot %s", bot_id)
        return {"ok": True}

    if not isinstance(payload, dict):
        logger.warning("Unexpected webhook payload type for bot %s", bot_id)
        return {"ok": True}

    outcome = await dispatcher.dispatch(bot_id, payload)
    logger.debug("Webhook for bot %s: %s", bot_id, outcome.value)
    return {"ok": True}
