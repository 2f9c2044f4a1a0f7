"""Pick and build the provisioning backend at startup."""

import logging
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from botfleet.config import Settings, settings as default_settings
from botfleet.services.messaging import TelegramControl
from botfleet.services.provisioning.base import ProvisioningBackend
from botfleet.services.provisioning.in_process import InProcessBackend
from botfleet.services.provisioning.manual import ManualBackend
from botfleet.services.provisioning.railway_graphql import RailwayGraphQLBackend
from botfleet.services.provisioning.railway_rest import RailwayRestBackend

logger = logging.getLogger(__name__)

BACKENDS = {
    "railway-graphql": RailwayGraphQLBackend,
    "railway-rest": RailwayRestBackend,
    "in-process": InProcessBackend,
    "manual": ManualBackend,
}


def resolve_backend_name(cfg: Settings) -> str:
    """``auto`` → railway-graphql when token and project are set, else manual."""
    name = (cfg.provisioning_backend or "auto").strip().lower()
    if name == "auto":
        if cfg.railway_api_token and cfg.railway_project_id:
            return "railway-graphql"
        return "manual"
    if name not in BACKENDS:
        raise ValueError(
            f"Unknown PROVISIONING_BACKEND {name!r}; expected one of "
            f"{', '.join(sorted(BACKENDS))} or auto"
        )
    return name


def build_backend(
    cfg: Settings = default_settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    telegram: Optional[TelegramControl] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ProvisioningBackend:
    if session_factory is None:
        from botfleet.db.database import async_session_maker
        session_factory = async_session_maker

    name = resolve_backend_name(cfg)
    backend_cls = BACKENDS[name]
    if name.startswith("railway-"):
        backend = backend_cls(session_factory, cfg, telegram, transport=transport)
    else:
        backend = backend_cls(session_factory, cfg, telegram)
    logger.info("Provisioning backend: %s", backend.name)
    return backend
