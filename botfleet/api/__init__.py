from botfleet.api.auth import router as auth_router, get_current_user
from botfleet.api.bots import router as bots_router
from botfleet.api.webhooks import router as webhooks_router

__all__ = [
    "auth_router",
    "bots_router",
    "webhooks_router",
    "get_current_user",
]
