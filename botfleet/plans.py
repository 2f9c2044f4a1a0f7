"""Plan tiers and the platform / AI provider catalog."""

from dataclasses import dataclass, field
from typing import Dict, List

from botfleet.config import Settings, settings as default_settings
from botfleet.db.models import AIProvider, PlanTier, Platform


@dataclass(frozen=True)
class Plan:
    name: str
    display_name: str
    max_bots: int
    rate_limit: int  # Requests per rate-limit window
    price: int  # USD / month
    features: List[str] = field(default_factory=list)


def get_plans(cfg: Settings = default_settings) -> Dict[PlanTier, Plan]:
    return {
        PlanTier.FREE: Plan(
            name="free",
            display_name="Free",
            max_bots=cfg.max_bots_free,
            rate_limit=cfg.rate_limit_free,
            price=0,
            features=["telegram", "basic_models"],
        ),
        PlanTier.PRO: Plan(
            name="pro",
            display_name="Pro",
            max_bots=cfg.max_bots_pro,
            rate_limit=cfg.rate_limit_pro,
            price=9,
            features=["telegram", "discord", "slack", "all_models", "priority"],
        ),
        PlanTier.BUSINESS: Plan(
            name="business",
            display_name="Business",
            max_bots=cfg.max_bots_business,
            rate_limit=cfg.rate_limit_business,
            price=29,
            features=["telegram", "discord", "slack", "all_models", "priority", "api_access", "dedicated"],
        ),
    }


def get_plan(tier: str, cfg: Settings = default_settings) -> Plan:
    """Resolve a plan by tier name; unknown tiers get the free plan."""
    plans = get_plans(cfg)
    try:
        return plans[PlanTier(tier)]
    except ValueError:
        return plans[PlanTier.FREE]


AI_PROVIDERS: Dict[str, Dict] = {
    AIProvider.OPENAI.value: {
        "display_name": "OpenAI",
        "models": ["gpt-4o", "gpt-4o-mini", "gpt-4", "gpt-3.5-turbo"],
        "default_model": "gpt-4o",
    },
    AIProvider.ANTHROPIC.value: {
        "display_name": "Anthropic",
        "models": ["claude-3-5-sonnet-latest", "claude-3-opus-latest", "claude-3-haiku-latest"],
        "default_model": "claude-3-5-sonnet-latest",
    },
    AIProvider.OPENROUTER.value: {
        "display_name": "OpenRouter",
        "models": ["openai/gpt-4o", "anthropic/claude-3.5-sonnet"],
        "default_model": "openai/gpt-4o",
    },
}

PLATFORMS: List[str] = [p.value for p in Platform]


def default_model_for(provider: str) -> str:
    entry = AI_PROVIDERS.get(provider)
    return entry["default_model"] if entry else "gpt-4o"
