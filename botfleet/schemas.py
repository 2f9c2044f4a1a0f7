"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, EmailStr, field_validator

from botfleet.db.models import AIProvider, BotStatus, Platform


# ============ User Schemas ============

class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8)
    name: Optional[str] = Field(None, min_length=2, max_length=100)


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserResponse(BaseModel):
    id: str
    email: str
    name: Optional[str]
    plan: str
    status: str
    created_at: datetime
    max_bots: Optional[int] = None
    bot_count: Optional[int] = None

    class Config:
        from_attributes = True


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ============ Bot Schemas ============

class BotCreate(BaseModel):
    name: str = Field(min_length=3, max_length=50)
    platform: Platform
    platform_token: str = Field(min_length=1)
    ai_provider: AIProvider
    ai_token: str = Field(min_length=1)
    ai_model: Optional[str] = None
    system_prompt: Optional[str] = Field(None, max_length=2000)
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("ai_provider", mode="before")
    @classmethod
    def _lower_provider(cls, v):
        return v.lower() if isinstance(v, str) else v


class BotUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=3, max_length=50)
    ai_provider: Optional[AIProvider] = None
    ai_token: Optional[str] = Field(None, min_length=1)
    ai_model: Optional[str] = None
    system_prompt: Optional[str] = Field(None, max_length=2000)
    config: Optional[Dict[str, Any]] = None

    @field_validator("ai_provider", mode="before")
    @classmethod
    def _lower_provider(cls, v):
        return v.lower() if isinstance(v, str) else v

    @property
    def changes_ai_config(self) -> bool:
        return any(v is not None for v in (self.ai_provider, self.ai_token, self.ai_model))


class BotResponse(BaseModel):
    """Sanitized projection: no credential fields exist on this model."""
    id: str
    user_id: str
    name: str
    platform: str
    ai_provider: str
    ai_model: str
    system_prompt: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict, validation_alias="config_json")
    status: BotStatus
    deployment_handle: Optional[str] = None
    internal_port: Optional[int] = None
    webhook_url: Optional[str] = None
    error_message: Optional[str] = None
    total_messages: int = 0
    last_activity_at: Optional[datetime] = None
    last_started_at: Optional[datetime] = None
    memory_usage_mb: Optional[float] = None
    cpu_usage_percent: Optional[float] = None
    created_at: datetime
    updated_at: datetime

    @field_validator("config", mode="before")
    @classmethod
    def _none_config(cls, v):
        return v or {}

    class Config:
        from_attributes = True
        populate_by_name = True


class RuntimeStatusResponse(BaseModel):
    bot_id: str
    status: str
    running: bool
    manual: bool = False
    stale: bool = False
    deployment_handle: Optional[str] = None
    remote_status: Optional[str] = None
    domain: Optional[str] = None
    message: Optional[str] = None
    provisioning_task: str = "none"  # none | pending | done | failed | cancelled


class BotDetailResponse(BaseModel):
    bot: BotResponse
    runtime: Optional[RuntimeStatusResponse] = None


class BotListResponse(BaseModel):
    bots: List[BotDetailResponse]


class BotActionResponse(BaseModel):
    message: str
    bot: Optional[BotResponse] = None
    deployment: Optional[Dict[str, Any]] = None
    restart_error: Optional[str] = None


class ProvidersResponse(BaseModel):
    platforms: List[str]
    ai_providers: Dict[str, Dict[str, Any]]
