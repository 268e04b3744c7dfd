from __future__ import annotations

import asyncio
import logging
import time
from http import HTTPStatus
from typing import Any, Callable, Optional

import aiohttp

from tenant_provisioner.services.config import AzureConfig
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

NETWORK_API_VERSION = "2023-09-01"
COMPUTE_API_VERSION = "2024-03-01"


def _azure_error(status: int, message: str) -> Exception:
    return error_for_http_status(status, message, already_exists_statuses=(HTTPStatus.PRECONDITION_FAILED,))


class AzureProvider(CloudProviderAdapter):
    """Azure Resource Manager adapter.

    Shared resources: one virtual network and one network security group per
    tenant, with the baseline rules as NSG security rules. Creates are sent
    with `If-None-Match: *`, so ARM answers 412 instead of silently updating
    a resource that is already there.
    """

    provider = CloudProvider.AZURE

    _WAIT_SECONDS: float = 300.0
    _POLL_INTERVAL_SECONDS: float = 5.0

    def __init__(self, config: AzureConfig, *, session: aiohttp.ClientSession) -> None:
        self._config = config
        self._rest = RestClient(
            session=session,
            endpoint=config.endpoint,
            access_token=config.access_token,
            timeout_seconds=config.timeout_seconds,
            default_params={"api-version": NETWORK_API_VERSION},
            already_exists_statuses=(HTTPStatus.PRECONDITION_FAILED,),
        )
        self._handlers: dict[ResourceKind, ResourceHandler] = {
            ResourceKind.NETWORK: _ArmResourceHandler(
                self, kind=ResourceKind.NETWORK, path=self._vnet_path, body=self._vnet_body
            ),
            ResourceKind.SECURITY_GROUP: _ArmResourceHandler(
                self, kind=ResourceKind.SECURITY_GROUP, path=self._nsg_path, body=self._nsg_body
            ),
            ResourceKind.FIREWALL_RULE: _ArmResourceHandler(
                self, kind=ResourceKind.FIREWALL_RULE, path=self._rule_path, body=self._rule_body
            ),
        }

    @property
    def supported_kinds(self) -> tuple[ResourceKind, ...]:
        return (ResourceKind.NETWORK, ResourceKind.SECURITY_GROUP, ResourceKind.FIREWALL_RULE)

    def handler(self, kind: ResourceKind) -> ResourceHandler:
        return self._handlers[kind]

    @property
    def rest(self) -> RestClient:
        return self._rest

    # -----------------
    # ARM paths and bodies
    # -----------------

    def _provider_path(self, namespace: str) -> str:
        return (
            f"/subscriptions/{self._config.subscription_id}"
            f"/resourceGroups/{self._config.resource_group}"
            f"/providers/{namespace}"
        )

    def _vnet_path(self, descriptor: ResourceDescriptor) -> str:
        return f"{self._provider_path('Microsoft.Network')}/virtualNetworks/{descriptor.name}"

    def _nsg_path(self, descriptor: ResourceDescriptor) -> str:
        return f"{self._provider_path('Microsoft.Network')}/networkSecurityGroups/{descriptor.name}"

    def _rule_path(self, descriptor: ResourceDescriptor) -> str:
        nsg = descriptor.parent or descriptor.scope.security_group_name
        return f"{self._provider_path('Microsoft.Network')}/networkSecurityGroups/{nsg}/securityRules/{descriptor.name}"

    def _tags(self, descriptor: ResourceDescriptor) -> dict[str, str]:
        return {"tenant": descriptor.scope.tenant_id}

    def _vnet_body(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> dict[str, Any]:
        return {
            "location": self._config.location,
            "tags": self._tags(descriptor),
            "properties": {"addressSpace": {"addressPrefixes": [parameters["cidr"]]}},
        }

    def _nsg_body(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> dict[str, Any]:
        return {"location": self._config.location, "tags": self._tags(descriptor), "properties": {}}

    @staticmethod
    def _rule_body(descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> dict[str, Any]:
        return {
            "properties": {
                "protocol": str(parameters["protocol"]).capitalize(),
                "sourceAddressPrefix": parameters["source_range"],
                "sourcePortRange": "*",
                "destinationAddressPrefix": "*",
                "destinationPortRange": str(parameters["port"]),
                "access": "Allow",
                "direction": "Inbound",
                "priority": parameters["priority"],
            }
        }

    # -----------------
    # Long-running operations
    # -----------------

    async def wait_provisioned(self, path: str, *, params: Optional[dict[str, str]] = None) -> None:
        deadline = time.monotonic() + self._WAIT_SECONDS
        while time.monotonic() < deadline:
            status, parsed = await self._rest.request(method="GET", path=path, params=params)
            if status == HTTPStatus.OK:
                state = ((parsed.get("properties") or {}).get("provisioningState") or "").lower()
                if state == "succeeded":
                    return
                if state in ("failed", "canceled"):
                    raise FatalProviderError(f"Azure resource entered state {state!r}: {path}")
            elif status != HTTPStatus.NOT_FOUND:
                raise _azure_error(status, f"Failed polling Azure resource HTTP {status}: {path}")

            await asyncio.sleep(self._POLL_INTERVAL_SECONDS)

        raise TransientProviderError(f"Timed out waiting for Azure resource to provision: {path}")

    async def _delete_and_wait(self, path: str, *, params: Optional[dict[str, str]] = None) -> None:
        status, _ = await self._rest.request(method="DELETE", path=path, params=params)
        if status == HTTPStatus.NOT_FOUND:
            return
        if status not in (HTTPStatus.OK, HTTPStatus.ACCEPTED, HTTPStatus.NO_CONTENT):
            raise _azure_error(status, f"Failed to delete Azure resource HTTP {status}: {path}")

        deadline = time.monotonic() + self._WAIT_SECONDS
        while time.monotonic() < deadline:
            status, _ = await self._rest.request(method="GET", path=path, params=params)
            if status == HTTPStatus.NOT_FOUND:
                logger.info("Azure teardown: deleted %s", path.rsplit("/", 1)[-1])
                return
            await asyncio.sleep(self._POLL_INTERVAL_SECONDS)

        raise TransientProviderError(f"Timed out waiting for Azure resource deletion: {path}")

    # -----------------
    # Deployment-local resources
    # -----------------

    def _subnet_path(self, deployment: DeploymentLocalResource) -> str:
        vnet = deployment.scope.network_name
        return f"{self._provider_path('Microsoft.Network')}/virtualNetworks/{vnet}/subnets/{deployment.subnet_name}"

    def _nic_path(self, deployment: DeploymentLocalResource) -> str:
        return f"{self._provider_path('Microsoft.Network')}/networkInterfaces/{deployment.nic_name}"

    def _vm_path(self, deployment: DeploymentLocalResource) -> str:
        return f"{self._provider_path('Microsoft.Compute')}/virtualMachines/{deployment.instance_name}"

    async def create_subnet(self, deployment: DeploymentLocalResource, *, network_name: str) -> str:
        if not deployment.subnet_cidr:
            raise ValueError("deployment.subnet_cidr must be set before creating a subnet")

        nsg_id = f"{self._provider_path('Microsoft.Network')}/networkSecurityGroups/{deployment.scope.security_group_name}"
        path = (
            f"{self._provider_path('Microsoft.Network')}/virtualNetworks/{network_name}"
            f"/subnets/{deployment.subnet_name}"
        )
        parsed = await self._rest.request_ok(
            method="PUT",
            path=path,
            body={
                "properties": {
                    "addressPrefix": deployment.subnet_cidr,
                    "networkSecurityGroup": {"id": nsg_id},
                }
            },
            headers={"If-None-Match": "*"},
            what=f"create subnet {deployment.subnet_name}",
        )
        await self.wait_provisioned(path)
        return parsed.get("id") or path

    @staticmethod
    def _os_profile(deployment: DeploymentLocalResource, os_kind: OSKind) -> dict[str, Any]:
        credentials = deployment.credentials
        if credentials is None:
            raise FatalProviderError(f"Azure VM {deployment.instance_name} requires admin credentials")

        # Windows computer names are capped at 15 characters.
        computer_name = deployment.instance_name[:15] if os_kind == OSKind.WINDOWS else deployment.instance_name
        profile: dict[str, Any] = {"computerName": computer_name, "adminUsername": credentials.admin_username}
        if credentials.admin_password:
            profile["adminPassword"] = credentials.admin_password

        if os_kind == OSKind.WINDOWS:
            profile["windowsConfiguration"] = {"provisionVMAgent": True}
        else:
            linux: dict[str, Any] = {"disablePasswordAuthentication": not credentials.admin_password}
            if credentials.ssh_public_key:
                linux["ssh"] = {
                    "publicKeys": [
                        {
                            "path": f"/home/{credentials.admin_username}/.ssh/authorized_keys",
                            "keyData": credentials.ssh_public_key,
                        }
                    ]
                }
            profile["linuxConfiguration"] = linux
        return profile

    async def create_instance(
        self,
        deployment: DeploymentLocalResource,
        *,
        os_kind: OSKind,
        subnet_id: str,
        parameters: dict[str, Any],
    ) -> str:
        os_profile = self._os_profile(deployment, os_kind)

        nic_path = self._nic_path(deployment)
        nic = await self._rest.request_ok(
            method="PUT",
            path=nic_path,
            body={
                "location": self._config.location,
                "tags": {"tenant": deployment.scope.tenant_id},
                "properties": {
                    "ipConfigurations": [
                        {
                            "name": "ipconfig1",
                            "properties": {
                                "subnet": {"id": subnet_id},
                                "privateIPAllocationMethod": "Dynamic",
                            },
                        }
                    ]
                },
            },
            headers={"If-None-Match": "*"},
            what=f"create network interface {deployment.nic_name}",
        )
        await self.wait_provisioned(nic_path)

        body: dict[str, Any] = {k: v for k, v in parameters.items() if k not in ("location", "properties")}
        properties: dict[str, Any] = dict(parameters.get("properties") or {})
        properties["networkProfile"] = {"networkInterfaces": [{"id": nic.get("id") or nic_path}]}
        properties["osProfile"] = os_profile
        body.update(
            {
                "location": self._config.location,
                "tags": {**(body.get("tags") or {}), "tenant": deployment.scope.tenant_id, "os": os_kind.value},
                "properties": properties,
            }
        )

        vm_path = self._vm_path(deployment)
        vm = await self._rest.request_ok(
            method="PUT",
            path=vm_path,
            body=body,
            headers={"If-None-Match": "*"},
            params={"api-version": COMPUTE_API_VERSION},
            what=f"create virtual machine {deployment.instance_name}",
        )
        return vm.get("id") or vm_path

    async def teardown_deployment(self, deployment: DeploymentLocalResource) -> None:
        await self._delete_and_wait(self._vm_path(deployment), params={"api-version": COMPUTE_API_VERSION})
        await self._delete_and_wait(self._nic_path(deployment))
        await self._delete_and_wait(self._subnet_path(deployment))


class _ArmResourceHandler:
    def __init__(
        self,
        provider: AzureProvider,
        *,
        kind: ResourceKind,
        path: Callable[[ResourceDescriptor], str],
        body: Callable[[ResourceDescriptor, dict[str, Any]], dict[str, Any]],
    ) -> None:
        self.kind = kind
        self._provider = provider
        self._path = path
        self._body = body

    async def exists(self, descriptor: ResourceDescriptor) -> bool:
        status, _ = await self._provider.rest.request(method="GET", path=self._path(descriptor))
        if status == HTTPStatus.OK:
            return True
        if status == HTTPStatus.NOT_FOUND:
            return False
        raise _azure_error(status, f"Unexpected Azure response checking {descriptor.name} exists: HTTP {status}")

    async def create(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> None:
        path = self._path(descriptor)
        try:
            await self._provider.rest.request_ok(
                method="PUT",
                path=path,
                body=self._body(descriptor, parameters),
                headers={"If-None-Match": "*"},
                what=f"create {descriptor.kind.value} {descriptor.name}",
            )
        except ResourceAlreadyExistsError:
            # The winner's resource may still be Updating; children PUT into it would get 409.
            await self._provider.wait_provisioned(path)
            raise
        await self._provider.wait_provisioned(path)
