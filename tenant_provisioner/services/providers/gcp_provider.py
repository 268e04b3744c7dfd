from __future__ import annotations

import logging
import time
from http import HTTPStatus
from typing import Any

import aiohttp

from tenant_provisioner.services.config import GcpConfig
from tenant_provisioner.services.provisioner_service import (
    FatalProviderError,
    ResourceAlreadyExistsError,
    ResourceHandler,
    TransientProviderError,
)
from tenant_provisioner.services.providers.base import CloudProviderAdapter, error_for_http_status
from tenant_provisioner.services.providers.rest_client import RestClient
from tenant_provisioner.services.resources import (
    CloudProvider,
    DeploymentLocalResource,
    OSKind,
    ResourceDescriptor,
    ResourceKind,
)


logger = logging.getLogger(__name__)


class GcpProvider(CloudProviderAdapter):
    """Compute Engine adapter.

    GCP has no security-group resource; the tenant baseline is a custom-mode
    VPC network plus one firewall per baseline rule.
    """

    provider = CloudProvider.GCP

    _WAIT_SECONDS: float = 300.0

    def __init__(self, config: GcpConfig, *, session: aiohttp.ClientSession) -> None:
        self._config = config
        self._rest = RestClient(
            session=session,
            endpoint=config.endpoint,
            access_token=config.access_token,
            timeout_seconds=config.timeout_seconds,
        )
        self._handlers: dict[ResourceKind, ResourceHandler] = {
            ResourceKind.NETWORK: _NetworkHandler(self),
            ResourceKind.FIREWALL_RULE: _FirewallHandler(self),
        }

    @property
    def supported_kinds(self) -> tuple[ResourceKind, ...]:
        return (ResourceKind.NETWORK, ResourceKind.FIREWALL_RULE)

    def handler(self, kind: ResourceKind) -> ResourceHandler:
        try:
            return self._handlers[kind]
        except KeyError:
            raise ValueError(f"GCP does not provision {kind.value} resources") from None

    @property
    def rest(self) -> RestClient:
        return self._rest

    @property
    def project_path(self) -> str:
        return f"/projects/{self._config.project}"

    def network_url(self, network_name: str) -> str:
        return f"projects/{self._config.project}/global/networks/{network_name}"

    def subnetwork_url(self, subnet_name: str) -> str:
        return f"projects/{self._config.project}/regions/{self._config.region}/subnetworks/{subnet_name}"

    async def resource_exists(self, path: str, *, name: str) -> bool:
        status, _ = await self._rest.request(method="GET", path=path)
        if status == HTTPStatus.OK:
            return True
        if status == HTTPStatus.NOT_FOUND:
            return False
        raise error_for_http_status(status, f"Unexpected GCP response checking {name} exists: HTTP {status}")

    async def insert(self, path: str, *, body: dict[str, Any], what: str) -> dict[str, Any]:
        operation = await self._rest.request_ok(method="POST", path=path, body=body, what=what)
        return await self.wait_operation(operation, what=what)

    async def wait_operation(self, operation: dict[str, Any], *, what: str) -> dict[str, Any]:
        """Block until a zonal/regional/global operation is DONE.

        Compute reports a lost create race as a finished operation carrying
        RESOURCE_ALREADY_EXISTS rather than as an HTTP 409.
        """

        deadline = time.monotonic() + self._WAIT_SECONDS
        while operation.get("status") != "DONE":
            if time.monotonic() >= deadline:
                raise TransientProviderError(f"Timed out waiting for GCP operation to {what}")
            self_link = operation.get("selfLink")
            if not self_link:
                raise FatalProviderError(f"GCP operation to {what} has no selfLink")
            operation = await self._rest.request_ok(method="POST", path=f"{self_link}/wait", what=what)

        errors = (operation.get("error") or {}).get("errors") or []
        if errors:
            code = errors[0].get("code") or ""
            message = f"Failed to {what} ({code}: {errors[0].get('message') or ''})"
            if code == "RESOURCE_ALREADY_EXISTS":
                raise ResourceAlreadyExistsError(message)
            raise FatalProviderError(message)
        return operation

    async def _delete(self, path: str, *, what: str) -> None:
        status, operation = await self._rest.request(method="DELETE", path=path)
        if status == HTTPStatus.NOT_FOUND:
            return
        if not 200 <= status < 300:
            raise error_for_http_status(status, f"Failed to {what} HTTP {status}")
        await self.wait_operation(operation, what=what)
        logger.info("GCP teardown: %s", what)

    async def create_subnet(self, deployment: DeploymentLocalResource, *, network_name: str) -> str:
        if not deployment.subnet_cidr:
            raise ValueError("deployment.subnet_cidr must be set before creating a subnet")

        operation = await self.insert(
            f"{self.project_path}/regions/{self._config.region}/subnetworks",
            body={
                "name": deployment.subnet_name,
                "network": self.network_url(network_name),
                "ipCidrRange": deployment.subnet_cidr,
                "region": self._config.region,
            },
            what=f"create subnetwork {deployment.subnet_name}",
        )
        return operation.get("targetLink") or self.subnetwork_url(deployment.subnet_name)

    async def create_instance(
        self,
        deployment: DeploymentLocalResource,
        *,
        os_kind: OSKind,
        subnet_id: str,
        parameters: dict[str, Any],
    ) -> str:
        body: dict[str, Any] = dict(parameters)
        body["name"] = deployment.instance_name
        body["networkInterfaces"] = [
            {
                "subnetwork": self.subnetwork_url(deployment.subnet_name),
                "accessConfigs": [{"type": "ONE_TO_ONE_NAT", "name": "External NAT"}],
            }
        ]
        body["labels"] = {**(body.get("labels") or {}), "tenant": deployment.scope.tenant_id, "os": os_kind.value}

        credentials = deployment.credentials
        if credentials is not None and credentials.ssh_public_key and os_kind == OSKind.LINUX:
            metadata = dict(body.get("metadata") or {})
            items = list(metadata.get("items") or [])
            items.append({"key": "ssh-keys", "value": f"{credentials.admin_username}:{credentials.ssh_public_key}"})
            metadata["items"] = items
            body["metadata"] = metadata

        operation = await self.insert(
            f"{self.project_path}/zones/{self._config.zone}/instances",
            body=body,
            what=f"create instance {deployment.instance_name}",
        )
        return operation.get("targetLink") or deployment.instance_name

    async def teardown_deployment(self, deployment: DeploymentLocalResource) -> None:
        await self._delete(
            f"{self.project_path}/zones/{self._config.zone}/instances/{deployment.instance_name}",
            what=f"delete instance {deployment.instance_name}",
        )
        await self._delete(
            f"{self.project_path}/regions/{self._config.region}/subnetworks/{deployment.subnet_name}",
            what=f"delete subnetwork {deployment.subnet_name}",
        )


class _NetworkHandler:
    kind = ResourceKind.NETWORK

    def __init__(self, provider: GcpProvider) -> None:
        self._provider = provider

    async def exists(self, descriptor: ResourceDescriptor) -> bool:
        return await self._provider.resource_exists(
            f"{self._provider.project_path}/global/networks/{descriptor.name}", name=descriptor.name
        )

    async def create(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> None:
        # Custom subnet mode: deployments add their own /24s. The tenant CIDR
        # is carried in the description since GCP networks have no range.
        await self._provider.insert(
            f"{self._provider.project_path}/global/networks",
            body={
                "name": descriptor.name,
                "autoCreateSubnetworks": False,
                "description": f"tenant={descriptor.scope.tenant_id} cidr={parameters.get('cidr', '')}",
            },
            what=f"create network {descriptor.name}",
        )


class _FirewallHandler:
    kind = ResourceKind.FIREWALL_RULE

    def __init__(self, provider: GcpProvider) -> None:
        self._provider = provider

    async def exists(self, descriptor: ResourceDescriptor) -> bool:
        return await self._provider.resource_exists(
            f"{self._provider.project_path}/global/firewalls/{descriptor.name}", name=descriptor.name
        )

    async def create(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> None:
        network = descriptor.parent or descriptor.scope.network_name
        await self._provider.insert(
            f"{self._provider.project_path}/global/firewalls",
            body={
                "name": descriptor.name,
                "network": self._provider.network_url(network),
                "direction": "INGRESS",
                "priority": parameters["priority"],
                "allowed": [{"IPProtocol": parameters["protocol"], "ports": [str(parameters["port"])]}],
                "sourceRanges": [parameters["source_range"]],
            },
            what=f"create firewall {descriptor.name}",
        )
