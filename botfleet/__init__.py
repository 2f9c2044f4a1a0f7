"""BotFleet - multi-tenant AI chat-bot fleet platform."""

__version__ = "1.0.0"
