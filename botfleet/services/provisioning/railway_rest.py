"""Railway orchestrator over its REST API (``RAILWAY_REST_URL``), project tokens."""

import logging
from typing import Any, Optional, Tuple

from botfleet.config import Settings
from botfleet.errors import ProvisionFailed
from botfleet.services.provisioning.base import RemoteOrchestratorBackend, parses_response

logger = logging.getLogger(__name__)


def _latest(deployments: Any) -> Optional[dict]:
    # The listing is either a bare array or wrapped as {"deployments": [...]}
    if isinstance(deployments, dict):
        deployments = deployments.get("deployments") or []
    return deployments[0] if deployments else None


class RailwayRestBackend(RemoteOrchestratorBackend):
    name = "railway-rest"

    def api_base_url(self, cfg: Settings) -> str:
        return cfg.railway_rest_url.rstrip("/")

    @parses_response
    async def _api_create_service(self, name: str) -> str:
        service = await self._send("POST", f"/projects/{self.project_id}/services", json={
            "name": name,
            "source": {
                "repo": self.settings.worker_repo,
                "branch": self.settings.worker_branch,
                "rootDirectory": self.settings.worker_root_dir,
            },
        })
        if not service or not service.get("id"):
            raise ProvisionFailed("Service creation returned no id")
        return service["id"]

    @parses_response
    async def _api_service_domain(self, service_id: str) -> Optional[str]:
        service = await self._send("GET", f"/services/{service_id}") or {}
        return service.get("domain")

    @parses_response
    async def _api_set_variable(self, service_id: str, name: str, value: str) -> None:
        await self._send("POST", f"/services/{service_id}/variables", json={
            "environmentId": self.environment_id,
            "name": name,
            "value": value,
        })

    @parses_response
    async def _api_deploy(self, service_id: str) -> str:
        deployment = await self._send("POST", f"/services/{service_id}/deploy", json={
            "environmentId": self.environment_id,
        })
        if not deployment or not deployment.get("id"):
            raise ProvisionFailed(f"No deployment id returned for service {service_id}")
        return deployment["id"]

    @parses_response
    async def _api_deployment_state(
        self, service_id: str, deployment_id: str
    ) -> Tuple[Optional[str], Optional[str]]:
        deployments = await self._send("GET", f"/services/{service_id}/deployments")
        if isinstance(deployments, dict):
            deployments = deployments.get("deployments") or []
        match = next((d for d in deployments or [] if d.get("id") == deployment_id), None)
        if match is None:
            return None, None
        domain = match.get("domain")
        if match.get("status") == "SUCCESS" and not domain:
            domain = await self._api_service_domain(service_id)
        return match.get("status"), domain

    @parses_response
    async def _api_latest_deployment_status(self, service_id: str) -> Optional[str]:
        latest = _latest(await self._send("GET", f"/services/{service_id}/deployments"))
        return latest.get("status") if latest else None

    @parses_response
    async def _api_delete_service(self, service_id: str) -> None:
        await self._send("DELETE", f"/services/{service_id}")
