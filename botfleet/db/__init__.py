from botfleet.db.models import (
    Base, User, Bot,
    PlanTier, UserStatus, BotStatus, Platform, AIProvider,
)
from botfleet.db.database import get_db, init_db, drop_db, async_session_maker, engine

__all__ = [
    "Base",
    "User",
    "Bot",
    "PlanTier",
    "UserStatus",
    "BotStatus",
    "Platform",
    "AIProvider",
    # Database
    "get_db",
    "init_db",
    "drop_db",
    "async_session_maker",
    "engine",
]
