"""Shared request dependencies: app-scoped services and rate limiting."""

from fastapi import Depends, Request

from botfleet.services.bot_manager import BotManager
from botfleet.services.dispatch import DispatchRouter
from botfleet.services.governor import Governor


def get_manager(request: Request) -> BotManager:
    return request.app.state.manager


def get_governor(request: Request) -> Governor:
    return request.app.state.governor


def get_dispatch_router(request: Request) -> DispatchRouter:
    return request.app.state.dispatch


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit_anonymous(
    request: Request,
    governor: Governor = Depends(get_governor),
) -> str:
    """Unauthenticated routes are limited per client IP at the free-plan ceiling."""
    ip = client_ip(request)
    governor.check_api(ip)
    return ip
