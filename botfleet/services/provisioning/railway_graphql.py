"""
Railway orchestrator over its GraphQL API (``RAILWAY_GRAPHQL_URL``).

Every call is a POST of ``{"query", "variables"}`` with bearer auth; a
response carrying ``errors`` is a rejected request.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from botfleet.config import Settings
from botfleet.errors import ProvisionFailed
from botfleet.services.provisioning.base import RemoteOrchestratorBackend, parses_response

logger = logging.getLogger(__name__)

SERVICE_CREATE = """
mutation ServiceCreate($input: ServiceCreateInput!) {
  serviceCreate(input: $input) {
    id
    name
    projectId
    serviceDomains { domain }
  }
}
"""

SERVICE_DOMAINS = """
query Service($id: String!) {
  service(id: $id) {
    id
    serviceDomains { domain }
  }
}
"""

VARIABLE_UPSERT = """
mutation VariableUpsert($input: VariableUpsertInput!) {
  variableUpsert(input: $input)
}
"""

SERVICE_INSTANCE_DEPLOY = """
mutation ServiceInstanceDeploy($serviceId: String!, $environmentId: String!) {
  serviceInstanceDeploy(serviceId: $serviceId, environmentId: $environmentId)
}
"""

DEPLOYMENT_STATUS = """
query Deployment($id: String!) {
  deployment(id: $id) {
    id
    status
    service {
      id
      domains { edges { node { domain } } }
    }
  }
}
"""

LATEST_DEPLOYMENT = """
query Service($id: String!) {
  service(id: $id) {
    id
    deployments(last: 1) { edges { node { id status createdAt } } }
  }
}
"""

SERVICE_DELETE = """
mutation ServiceDelete($id: String!) {
  serviceDelete(id: $id)
}
"""

SERVICE_INSTANCE_UPDATE = """
mutation ServiceInstanceUpdate($serviceId: String!, $environmentId: String, $input: ServiceInstanceUpdateInput!) {
  serviceInstanceUpdate(serviceId: $serviceId, environmentId: $environmentId, input: $input)
}
"""


class RailwayGraphQLBackend(RemoteOrchestratorBackend):
    name = "railway-graphql"

    def api_base_url(self, cfg: Settings) -> str:
        return cfg.railway_graphql_url

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        # Absolute URL: httpx would otherwise append a trailing slash to the base
        body = await self._send("POST", self.settings.railway_graphql_url, json={"query": query, "variables": variables or {}})
        body = body or {}
        errors = body.get("errors")
        if errors:
            raise ProvisionFailed(
                "Orchestrator rejected request: "
                + ", ".join(str(e.get("message", e)) for e in errors)
            )
        return body.get("data") or {}

    @parses_response
    async def _api_create_service(self, name: str) -> str:
        data = await self.graphql(SERVICE_CREATE, {
            "input": {
                "projectId": self.project_id,
                "name": name,
                "source": {
                    "repo": self.settings.worker_repo,
                    "branch": self.settings.worker_branch,
                    "rootDirectory": self.settings.worker_root_dir,
                },
            }
        })
        service = data.get("serviceCreate") or {}
        if not service.get("id"):
            raise ProvisionFailed("serviceCreate returned no service id")
        return service["id"]

    @parses_response
    async def _api_service_domain(self, service_id: str) -> Optional[str]:
        data = await self.graphql(SERVICE_DOMAINS, {"id": service_id})
        domains = (data.get("service") or {}).get("serviceDomains") or []
        return domains[0]["domain"] if domains else None

    @parses_response
    async def _api_set_variable(self, service_id: str, name: str, value: str) -> None:
        await self.graphql(VARIABLE_UPSERT, {
            "input": {
                "projectId": self.project_id,
                "environmentId": self.environment_id,
                "serviceId": service_id,
                "name": name,
                "value": value,
            }
        })

    @parses_response
    async def _api_deploy(self, service_id: str) -> str:
        data = await self.graphql(SERVICE_INSTANCE_DEPLOY, {
            "serviceId": service_id,
            "environmentId": self.environment_id,
        })
        deployment = data.get("serviceInstanceDeploy")
        # Older schema returns an object, newer returns the id directly
        if isinstance(deployment, dict):
            deployment = deployment.get("id")
        if not deployment:
            raise ProvisionFailed(f"No deployment id returned for service {service_id}")
        return str(deployment)

    @parses_response
    async def _api_deployment_state(
        self, service_id: str, deployment_id: str
    ) -> Tuple[Optional[str], Optional[str]]:
        data = await self.graphql(DEPLOYMENT_STATUS, {"id": deployment_id})
        deployment = data.get("deployment") or {}
        edges = (((deployment.get("service") or {}).get("domains") or {}).get("edges")) or []
        domain = edges[0]["node"]["domain"] if edges else None
        return deployment.get("status"), domain

    @parses_response
    async def _api_latest_deployment_status(self, service_id: str) -> Optional[str]:
        data = await self.graphql(LATEST_DEPLOYMENT, {"id": service_id})
        edges = (((data.get("service") or {}).get("deployments") or {}).get("edges")) or []
        return edges[0]["node"]["status"] if edges else None

    @parses_response
    async def _api_delete_service(self, service_id: str) -> None:
        await self.graphql(SERVICE_DELETE, {"id": service_id})

    @parses_response
    async def _api_scale(self, service_id: str, replicas: int) -> None:
        logger.info("Scaling service %s to %d replica(s)", service_id, replicas)
        await self.graphql(SERVICE_INSTANCE_UPDATE, {
            "serviceId": service_id,
            "environmentId": self.environment_id,
            "input": {"numReplicas": replicas},
        })
