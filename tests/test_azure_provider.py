"""Tests for the Azure Resource Manager adapter against an in-memory ARM."""

from __future__ import annotations

from typing import Any, Optional

import pytest

from conftest import FakeHttpSession
from tenant_provisioner.services.config import AzureConfig
from tenant_provisioner.services.provisioner_service import (
    EnsureOutcome,
    FatalProviderError,
    TransientProviderError,
    ensure_exists,
    ensure_with_handler,
)
from tenant_provisioner.services.providers import AzureProvider
from tenant_provisioner.services.providers.azure_provider import COMPUTE_API_VERSION, NETWORK_API_VERSION
from tenant_provisioner.services.resources import (
    DeploymentCredentials,
    DeploymentLocalResource,
    OSKind,
    ResourceDescriptor,
    ResourceKind,
    TenantScope,
    baseline_rules,
)

ENDPOINT = "https://management.azure.com"
NET = "/subscriptions/sub-1/resourceGroups/rg-1/providers/Microsoft.Network"
COMPUTE = "/subscriptions/sub-1/resourceGroups/rg-1/providers/Microsoft.Compute"


class FakeArm:
    def __init__(self) -> None:
        self.resources: dict[str, dict[str, Any]] = {}
        self.forced: dict[tuple[str, str], int] = {}
        self.provisioning_state = "Succeeded"
        # States a resource reports on its next GETs before settling, e.g. ["Updating"].
        self.pending_states: dict[str, list[str]] = {}

    def route(
        self,
        *,
        method: str,
        path: str,
        params: dict[str, str],
        body: Optional[dict[str, Any]],
        headers: dict[str, str],
    ) -> tuple[int, Optional[dict[str, Any]]]:
        if (method, path) in self.forced:
            return (self.forced[(method, path)], {"error": {"code": "Forced", "message": "forced failure"}})

        if method == "GET":
            pending = self.pending_states.get(path)
            if path in self.resources and pending:
                state = pending.pop(0)
                resource = self.resources[path]
                return (200, {**resource, "properties": {**resource["properties"], "provisioningState": state}})
            if path in self.resources:
                return (200, self.resources[path])
            return (404, {"error": {"code": "ResourceNotFound"}})

        if method == "PUT":
            if headers.get("If-None-Match") == "*" and path in self.resources:
                return (412, {"error": {"code": "PreconditionFailed", "message": "already exists"}})
            body = body or {}
            resource = {
                **body,
                "id": path,
                "properties": {**(body.get("properties") or {}), "provisioningState": self.provisioning_state},
            }
            self.resources[path] = resource
            return (201, resource)

        if method == "DELETE":
            if self.resources.pop(path, None) is None:
                return (204, None)
            return (202, None)

        return (405, None)


@pytest.fixture
def arm() -> FakeArm:
    return FakeArm()


@pytest.fixture
def session(arm: FakeArm) -> FakeHttpSession:
    return FakeHttpSession(ENDPOINT, arm.route)


@pytest.fixture
def provider(session: FakeHttpSession) -> AzureProvider:
    provider = AzureProvider(
        AzureConfig(subscription_id="sub-1", resource_group="rg-1", location="westeurope", access_token="tok"),
        session=session,
    )
    provider._POLL_INTERVAL_SECONDS = 0.0
    return provider


SCOPE = TenantScope("t1")
NETWORK = ResourceDescriptor(kind=ResourceKind.NETWORK, name="t1-network", scope=SCOPE)
GROUP = ResourceDescriptor(kind=ResourceKind.SECURITY_GROUP, name="t1-baseline", scope=SCOPE, parent="t1-network")
(SSH,) = baseline_rules(OSKind.LINUX)
SSH_RULE = ResourceDescriptor(kind=ResourceKind.FIREWALL_RULE, name="t1-allow-ssh", scope=SCOPE, parent="t1-baseline")


async def _baseline(provider: AzureProvider) -> None:
    await ensure_with_handler(provider.handler(ResourceKind.NETWORK), NETWORK, {"cidr": "10.0.0.0/16"})
    await ensure_with_handler(provider.handler(ResourceKind.SECURITY_GROUP), GROUP, {})
    await ensure_with_handler(provider.handler(ResourceKind.FIREWALL_RULE), SSH_RULE, SSH.as_parameters())


class TestSharedResources:
    async def test_network_is_created_with_create_only_put(
        self, provider: AzureProvider, session: FakeHttpSession, arm: FakeArm
    ) -> None:
        outcome = await ensure_with_handler(provider.handler(ResourceKind.NETWORK), NETWORK, {"cidr": "10.0.0.0/16"})

        assert outcome == EnsureOutcome.CREATED
        put = next(r for r in session.requests if r["method"] == "PUT")
        assert put["path"] == f"{NET}/virtualNetworks/t1-network"
        assert put["headers"]["If-None-Match"] == "*"
        assert put["headers"]["Authorization"] == "Bearer tok"
        assert put["params"] == {"api-version": NETWORK_API_VERSION}
        assert put["body"]["location"] == "westeurope"
        assert put["body"]["properties"]["addressSpace"]["addressPrefixes"] == ["10.0.0.0/16"]
        assert put["body"]["tags"] == {"tenant": "t1"}

    async def test_second_ensure_finds_existing(self, provider: AzureProvider, session: FakeHttpSession) -> None:
        await _baseline(provider)
        puts_before = sum(1 for r in session.requests if r["method"] == "PUT")

        await _baseline(provider)

        assert sum(1 for r in session.requests if r["method"] == "PUT") == puts_before

    async def test_precondition_failed_converges(self, provider: AzureProvider) -> None:
        await _baseline(provider)

        async def stale_exists(_: ResourceDescriptor) -> bool:
            return False

        outcome = await ensure_exists(NETWORK, stale_exists, provider.handler(ResourceKind.NETWORK).create, {"cidr": "10.0.0.0/16"})

        assert outcome == EnsureOutcome.CONVERGED

    async def test_lost_race_waits_for_the_winner_to_finish(
        self, provider: AzureProvider, arm: FakeArm, session: FakeHttpSession
    ) -> None:
        await _baseline(provider)
        nsg_path = f"{NET}/networkSecurityGroups/t1-baseline"
        arm.pending_states[nsg_path] = ["Updating", "Updating"]

        async def stale_exists(_: ResourceDescriptor) -> bool:
            return False

        outcome = await ensure_exists(GROUP, stale_exists, provider.handler(ResourceKind.SECURITY_GROUP).create, {})

        assert outcome == EnsureOutcome.CONVERGED
        assert arm.pending_states[nsg_path] == []
        last_put = max(i for i, r in enumerate(session.requests) if r["method"] == "PUT" and r["path"] == nsg_path)
        polls = [r for r in session.requests[last_put:] if r["method"] == "GET" and r["path"] == nsg_path]
        assert len(polls) == 3

    async def test_rule_lives_in_the_security_group(self, provider: AzureProvider, arm: FakeArm) -> None:
        await _baseline(provider)

        rule = arm.resources[f"{NET}/networkSecurityGroups/t1-baseline/securityRules/t1-allow-ssh"]
        assert rule["properties"]["protocol"] == "Tcp"
        assert rule["properties"]["destinationPortRange"] == "22"
        assert rule["properties"]["direction"] == "Inbound"
        assert rule["properties"]["priority"] == 1000

    async def test_conflict_is_transient(self, provider: AzureProvider, arm: FakeArm) -> None:
        arm.forced[("PUT", f"{NET}/virtualNetworks/t1-network")] = 409

        with pytest.raises(TransientProviderError):
            await ensure_with_handler(provider.handler(ResourceKind.NETWORK), NETWORK, {"cidr": "10.0.0.0/16"})

    async def test_forbidden_is_fatal(self, provider: AzureProvider, arm: FakeArm) -> None:
        arm.forced[("GET", f"{NET}/virtualNetworks/t1-network")] = 403

        with pytest.raises(FatalProviderError, match="HTTP 403"):
            await provider.handler(ResourceKind.NETWORK).exists(NETWORK)

    async def test_failed_provisioning_is_fatal(self, provider: AzureProvider, arm: FakeArm) -> None:
        arm.provisioning_state = "Failed"

        with pytest.raises(FatalProviderError, match="failed"):
            await ensure_with_handler(provider.handler(ResourceKind.NETWORK), NETWORK, {"cidr": "10.0.0.0/16"})


class TestDeploymentResources:
    def _deployment(self, **credentials: Any) -> DeploymentLocalResource:
        return DeploymentLocalResource(
            scope=SCOPE,
            instance_name="web-server-0001",
            subnet_cidr="10.0.9.0/24",
            credentials=DeploymentCredentials(**credentials) if credentials else None,
        )

    async def test_linux_vm(self, provider: AzureProvider, arm: FakeArm, session: FakeHttpSession) -> None:
        await _baseline(provider)
        deployment = self._deployment(admin_username="azureuser", ssh_public_key="ssh-rsa AAAA")

        subnet_id = await provider.create_subnet(deployment, network_name="t1-network")
        vm_id = await provider.create_instance(
            deployment,
            os_kind=OSKind.LINUX,
            subnet_id=subnet_id,
            parameters={"properties": {"hardwareProfile": {"vmSize": "Standard_B1s"}}},
        )

        subnet = arm.resources[f"{NET}/virtualNetworks/t1-network/subnets/web-server-0001-subnet"]
        assert subnet["properties"]["addressPrefix"] == "10.0.9.0/24"
        assert subnet["properties"]["networkSecurityGroup"]["id"] == f"{NET}/networkSecurityGroups/t1-baseline"

        nic = arm.resources[f"{NET}/networkInterfaces/web-server-0001-nic"]
        assert nic["properties"]["ipConfigurations"][0]["properties"]["subnet"]["id"] == subnet_id

        assert vm_id == f"{COMPUTE}/virtualMachines/web-server-0001"
        vm = arm.resources[vm_id]
        assert vm["properties"]["hardwareProfile"] == {"vmSize": "Standard_B1s"}
        assert vm["properties"]["networkProfile"]["networkInterfaces"] == [{"id": nic["id"]}]
        os_profile = vm["properties"]["osProfile"]
        assert os_profile["adminUsername"] == "azureuser"
        assert os_profile["linuxConfiguration"]["disablePasswordAuthentication"] is True
        assert os_profile["linuxConfiguration"]["ssh"]["publicKeys"][0]["keyData"] == "ssh-rsa AAAA"

        vm_put = next(r for r in session.requests if r["method"] == "PUT" and r["path"] == vm_id)
        assert vm_put["params"] == {"api-version": COMPUTE_API_VERSION}

    async def test_windows_vm_name_is_truncated(self, provider: AzureProvider, arm: FakeArm) -> None:
        await _baseline(provider)
        deployment = self._deployment(admin_username="winadmin", admin_password="S3cret!pass")
        subnet_id = await provider.create_subnet(deployment, network_name="t1-network")

        vm_id = await provider.create_instance(deployment, os_kind=OSKind.WINDOWS, subnet_id=subnet_id, parameters={})

        os_profile = arm.resources[vm_id]["properties"]["osProfile"]
        assert os_profile["computerName"] == "web-server-0001"[:15]
        assert os_profile["adminPassword"] == "S3cret!pass"
        assert "windowsConfiguration" in os_profile

    async def test_vm_requires_credentials(self, provider: AzureProvider) -> None:
        with pytest.raises(FatalProviderError, match="credentials"):
            await provider.create_instance(self._deployment(), os_kind=OSKind.LINUX, subnet_id="x", parameters={})

    async def test_teardown_deletes_local_resources_in_order(
        self, provider: AzureProvider, arm: FakeArm, session: FakeHttpSession
    ) -> None:
        await _baseline(provider)
        deployment = self._deployment(admin_username="azureuser", ssh_public_key="ssh-rsa AAAA")
        subnet_id = await provider.create_subnet(deployment, network_name="t1-network")
        await provider.create_instance(deployment, os_kind=OSKind.LINUX, subnet_id=subnet_id, parameters={})

        await provider.teardown_deployment(DeploymentLocalResource(scope=SCOPE, instance_name="web-server-0001"))

        deletes = [r["path"].rsplit("/", 1)[-1] for r in session.requests if r["method"] == "DELETE"]
        assert deletes == ["web-server-0001", "web-server-0001-nic", "web-server-0001-subnet"]
        assert f"{NET}/virtualNetworks/t1-network" in arm.resources
        assert f"{NET}/networkSecurityGroups/t1-baseline" in arm.resources
        assert not any("web-server-0001" in path for path in arm.resources)

    async def test_teardown_of_missing_deployment(self, provider: AzureProvider) -> None:
        await provider.teardown_deployment(DeploymentLocalResource(scope=SCOPE, instance_name="ghost"))
