"""Shared fixtures: an in-memory cloud whose names are unique per kind."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import pytest

from tenant_provisioner.services.providers.base import CloudProviderAdapter
from tenant_provisioner.services.provisioner_service import ResourceAlreadyExistsError
from tenant_provisioner.services.resources import (
    CloudProvider,
    DeploymentLocalResource,
    OSKind,
    ResourceDescriptor,
    ResourceKind,
)


class FakeStore:
    """Resource store with a uniqueness constraint on (kind, name)."""

    def __init__(self) -> None:
        self.resources: dict[tuple[ResourceKind, str], dict[str, Any]] = {}
        self.create_calls: list[str] = []
        self.successful_creates: list[str] = []

    def names(self, kind: ResourceKind) -> list[str]:
        return sorted(name for k, name in self.resources if k == kind)


class FakeHandler:
    def __init__(self, kind: ResourceKind, store: FakeStore, *, fail_with: Optional[Exception] = None) -> None:
        self.kind = kind
        self._store = store
        self.fail_with = fail_with
        self.exists_calls = 0

    async def exists(self, descriptor: ResourceDescriptor) -> bool:
        self.exists_calls += 1
        # Yield so concurrent callers all get to look before anyone creates.
        await asyncio.sleep(0)
        return (self.kind, descriptor.name) in self._store.resources

    async def create(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> None:
        self._store.create_calls.append(descriptor.name)
        await asyncio.sleep(0)
        if self.fail_with is not None:
            raise self.fail_with
        key = (self.kind, descriptor.name)
        if key in self._store.resources:
            raise ResourceAlreadyExistsError(f"{descriptor.name} already exists")
        self._store.resources[key] = dict(parameters, parent=descriptor.parent)
        self._store.successful_creates.append(descriptor.name)


class FakeProvider(CloudProviderAdapter):
    provider = CloudProvider.AWS

    def __init__(
        self,
        *,
        kinds: tuple[ResourceKind, ...] = (
            ResourceKind.NETWORK,
            ResourceKind.SECURITY_GROUP,
            ResourceKind.FIREWALL_RULE,
        ),
        provider: CloudProvider = CloudProvider.AWS,
    ) -> None:
        self.provider = provider
        self.store = FakeStore()
        self._kinds = kinds
        self.handlers = {kind: FakeHandler(kind, self.store) for kind in kinds}
        self.subnets: dict[str, str] = {}
        self.instances: dict[str, dict[str, Any]] = {}
        self.subnet_error: Optional[Exception] = None

    @property
    def supported_kinds(self) -> tuple[ResourceKind, ...]:
        return self._kinds

    def handler(self, kind: ResourceKind) -> FakeHandler:
        return self.handlers[kind]

    async def create_subnet(self, deployment: DeploymentLocalResource, *, network_name: str) -> str:
        await asyncio.sleep(0)
        if self.subnet_error is not None:
            raise self.subnet_error
        if (ResourceKind.NETWORK, network_name) not in self.store.resources:
            raise AssertionError(f"network {network_name} must exist before its subnets")
        self.subnets[deployment.subnet_name] = deployment.subnet_cidr or ""
        return f"subnet-{deployment.instance_name}"

    async def create_instance(
        self,
        deployment: DeploymentLocalResource,
        *,
        os_kind: OSKind,
        subnet_id: str,
        parameters: dict[str, Any],
    ) -> str:
        await asyncio.sleep(0)
        self.instances[deployment.instance_name] = {
            "os_kind": os_kind,
            "subnet_id": subnet_id,
            "parameters": parameters,
            "credentials": deployment.credentials,
        }
        return f"i-{deployment.instance_name}"

    async def teardown_deployment(self, deployment: DeploymentLocalResource) -> None:
        self.instances.pop(deployment.instance_name, None)
        self.subnets.pop(deployment.subnet_name, None)


@pytest.fixture
def fake_provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def fake_gcp_provider() -> FakeProvider:
    return FakeProvider(
        kinds=(ResourceKind.NETWORK, ResourceKind.FIREWALL_RULE),
        provider=CloudProvider.GCP,
    )


class FakeHttpResponse:
    def __init__(self, status: int, body: Optional[dict[str, Any]]) -> None:
        self.status = status
        self._body = body

    async def read(self) -> bytes:
        return json.dumps(self._body).encode("utf-8") if self._body is not None else b""


class FakeHttpContext:
    def __init__(self, response: FakeHttpResponse) -> None:
        self._response = response

    async def __aenter__(self) -> FakeHttpResponse:
        return self._response

    async def __aexit__(self, *exc: Any) -> None:
        return None


class FakeHttpSession:
    """Stands in for aiohttp.ClientSession; `route` answers (method, path, params, body, headers)."""

    def __init__(self, endpoint: str, route: Callable[..., tuple[int, Optional[dict[str, Any]]]]) -> None:
        self._endpoint = endpoint
        self._route = route
        self.requests: list[dict[str, Any]] = []

    def request(self, method: str, url: str, **kwargs: Any) -> FakeHttpContext:
        path = url[len(self._endpoint):] if url.startswith(self._endpoint) else url
        body = json.loads(kwargs["data"].decode("utf-8")) if kwargs.get("data") else None
        record = {
            "method": method,
            "path": path,
            "params": kwargs.get("params") or {},
            "body": body,
            "headers": kwargs.get("headers") or {},
        }
        self.requests.append(record)
        status, payload = self._route(**record)
        return FakeHttpContext(FakeHttpResponse(status, payload))
