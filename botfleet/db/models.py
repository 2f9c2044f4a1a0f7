"""
Database models for the bot platform.

Two durable entities:
- User: account, plan tier and status
- Bot: a chat worker bound to one messaging platform and one AI provider.
  Credential columns hold Vault blobs only (see services/vault.py).
"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from enum import Enum
import uuid

from sqlalchemy import (
    String, Text, DateTime, Float, Integer, ForeignKey, JSON, Index
)
from sqlalchemy.orm import relationship, Mapped, mapped_column
from sqlalchemy.ext.declarative import declarative_base

Base = declarative_base()


class PlanTier(str, Enum):
    """Subscription tiers; each fixes a bot ceiling and a request-rate ceiling"""
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


class BotStatus(str, Enum):
    """Last known state of a bot's runtime"""
    DEPLOYING = "deploying"   # Record exists, runtime being provisioned
    RUNNING = "running"       # Runtime up and webhook registered
    STOPPED = "stopped"       # Stopped by the user (or manual backend)
    ERROR = "error"           # Last provision/redeploy failed
    SLEEPING = "sleeping"     # Reserved for idle-timeout policy


class Platform(str, Enum):
    TELEGRAM = "telegram"
    DISCORD = "discord"
    SLACK = "slack"


class AIProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    OPENROUTER = "openrouter"


class User(Base):
    """Platform account. Owns bots exclusively."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    hashed_password: Mapped[str] = mapped_column(String(255))
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    plan: Mapped[str] = mapped_column(String(20), default=PlanTier.FREE.value)
    status: Mapped[str] = mapped_column(String(20), default=UserStatus.ACTIVE.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    bots: Mapped[List["Bot"]] = relationship(
        "Bot",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value


class Bot(Base):
    """A configured chat worker."""
    __tablename__ = "bots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)

    # Messaging platform
    platform: Mapped[str] = mapped_column(String(20), nullable=False)
    platform_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)

    # AI provider
    ai_provider: Mapped[str] = mapped_column(String(20), nullable=False)
    ai_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    ai_model: Mapped[str] = mapped_column(String(100), nullable=False)
    system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    config_json: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)

    # Runtime (populated by the provisioning backend)
    status: Mapped[str] = mapped_column(String(20), default=BotStatus.DEPLOYING.value)
    deployment_handle: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    internal_port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    webhook_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Usage
    total_messages: Mapped[int] = mapped_column(Integer, default=0)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Resource telemetry (advisory)
    memory_usage_mb: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cpu_usage_percent: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped["User"] = relationship("User", back_populates="bots")

    __table_args__ = (
        Index("ix_bots_user_id", "user_id"),
        Index("ix_bots_status", "status"),
        Index("ix_bots_deployment_handle", "deployment_handle"),
    )
