from __future__ import annotations

from typing import Optional

import aiohttp
from fastapi import FastAPI, Request

from tenant_provisioner.services.config import AwsConfig, AzureConfig, GcpConfig, ProvisionerConfig
from tenant_provisioner.services.deployment_service import DeploymentService
from tenant_provisioner.services.providers import AwsProvider, AzureProvider, CloudProviderAdapter, GcpProvider
from tenant_provisioner.services.provisioner_service import ProviderNotConfiguredError
from tenant_provisioner.services.resources import CloudProvider
from tenant_provisioner.services.subnet_allocator import SubnetAllocator
from tenant_provisioner.services.tenant_service import TenantService


def build_provider(provider: CloudProvider, *, session: aiohttp.ClientSession) -> CloudProviderAdapter:
    try:
        if provider == CloudProvider.AWS:
            return AwsProvider(AwsConfig.from_env())
        if provider == CloudProvider.AZURE:
            return AzureProvider(AzureConfig.from_env(), session=session)
        if provider == CloudProvider.GCP:
            return GcpProvider(GcpConfig.from_env(), session=session)
    except ValueError as exc:
        raise ProviderNotConfiguredError(f"{provider.value} provider is not configured: {exc}") from exc
    raise ValueError(f"Unsupported provider: {provider!r}")


class ServiceFactory:
    """Builds provider-bound services on demand.

    The provider is only known once the request has been parsed, so routes
    depend on this factory instead of on a ready-made service.
    """

    def __init__(self, *, config: ProvisionerConfig, session: aiohttp.ClientSession) -> None:
        self._config = config
        self._session = session

    @property
    def config(self) -> ProvisionerConfig:
        return self._config

    def resolve_provider(self, provider: Optional[CloudProvider]) -> CloudProvider:
        return provider or CloudProvider(self._config.default_provider)

    def provider(self, provider: Optional[CloudProvider]) -> CloudProviderAdapter:
        return build_provider(self.resolve_provider(provider), session=self._session)

    def tenant_service(self, provider: Optional[CloudProvider] = None) -> TenantService:
        return TenantService(
            provider=self.provider(provider),
            tenant_network_cidr=self._config.tenant_network_cidr,
            admin_source_range=self._config.admin_source_range,
        )

    def deployment_service(self, provider: Optional[CloudProvider] = None) -> DeploymentService:
        return DeploymentService(
            tenants=self.tenant_service(provider),
            allocator=SubnetAllocator(
                tenant_network_cidr=self._config.tenant_network_cidr,
                octet_min=self._config.subnet_octet_min,
                octet_max=self._config.subnet_octet_max,
            ),
        )


def get_http_session_from_app(app: FastAPI) -> aiohttp.ClientSession:
    session = getattr(app.state, "http_session", None)
    if session is None:
        raise RuntimeError("HTTP session not initialized (app.state.http_session)")
    if not isinstance(session, aiohttp.ClientSession):
        raise RuntimeError("Unexpected http_session type")
    return session


def get_service_factory_from_app(app: FastAPI) -> ServiceFactory:
    """Provider for non-request contexts (e.g. app lifespan startup)."""

    return ServiceFactory(config=ProvisionerConfig.from_env(), session=get_http_session_from_app(app))


def get_service_factory(request: Request) -> ServiceFactory:
    """FastAPI dependency provider for a ServiceFactory."""

    return get_service_factory_from_app(request.app)
