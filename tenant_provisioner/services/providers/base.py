from __future__ import annotations

from abc import ABC, abstractmethod
from http import HTTPStatus
from typing import Any

from tenant_provisioner.services.provisioner_service import (
    FatalProviderError,
    ResourceAlreadyExistsError,
    ResourceHandler,
    TransientProviderError,
)
from tenant_provisioner.services.resources import (
    CloudProvider,
    DeploymentLocalResource,
    OSKind,
    ResourceKind,
)


class CloudProviderAdapter(ABC):
    """One cloud's implementation of the shared-resource handlers and deployment steps."""

    provider: CloudProvider

    @property
    @abstractmethod
    def supported_kinds(self) -> tuple[ResourceKind, ...]:
        ...

    @abstractmethod
    def handler(self, kind: ResourceKind) -> ResourceHandler:
        ...

    @abstractmethod
    async def create_subnet(self, deployment: DeploymentLocalResource, *, network_name: str) -> str:
        """Create the deployment's subnet inside the tenant network and return its id."""

    @abstractmethod
    async def create_instance(
        self,
        deployment: DeploymentLocalResource,
        *,
        os_kind: OSKind,
        subnet_id: str,
        parameters: dict[str, Any],
    ) -> str:
        """Launch the deployment's VM and return its id.

        `parameters` is passed through to the provider's create call as-is
        (sizing, image and so on are the caller's business).
        """

    @abstractmethod
    async def teardown_deployment(self, deployment: DeploymentLocalResource) -> None:
        """Delete every deployment-local resource; missing ones are skipped."""


def error_for_http_status(
    status: int,
    message: str,
    *,
    already_exists_statuses: tuple[int, ...] = (HTTPStatus.CONFLICT, HTTPStatus.PRECONDITION_FAILED),
) -> Exception:
    """Map an unsuccessful HTTP status from a cloud REST API to the provisioner taxonomy."""

    if status in already_exists_statuses:
        return ResourceAlreadyExistsError(message)
    if status in (HTTPStatus.CONFLICT, HTTPStatus.TOO_MANY_REQUESTS) or status >= HTTPStatus.INTERNAL_SERVER_ERROR:
        return TransientProviderError(message)
    return FatalProviderError(message)
