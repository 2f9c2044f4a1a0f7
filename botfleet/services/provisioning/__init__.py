from botfleet.services.provisioning.base import (
    BotConfig,
    DeploymentResult,
    ProvisioningBackend,
    RemoteOrchestratorBackend,
    RuntimeStatus,
    service_name,
)
from botfleet.services.provisioning.factory import build_backend, resolve_backend_name
from botfleet.services.provisioning.in_process import InProcessBackend
from botfleet.services.provisioning.manual import ManualBackend
from botfleet.services.provisioning.railway_graphql import RailwayGraphQLBackend
from botfleet.services.provisioning.railway_rest import RailwayRestBackend

__all__ = [
    "BotConfig",
    "DeploymentResult",
    "ProvisioningBackend",
    "RemoteOrchestratorBackend",
    "RuntimeStatus",
    "service_name",
    "build_backend",
    "resolve_backend_name",
    "InProcessBackend",
    "ManualBackend",
    "RailwayGraphQLBackend",
    "RailwayRestBackend",
]
