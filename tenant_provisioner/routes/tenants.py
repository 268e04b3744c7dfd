from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query

from tenant_provisioner.models.deployment import TENANT_ID_PATTERN, StepOutcome
from tenant_provisioner.models.tenant import (
    SharedResourceStatus,
    TenantBaselineResponse,
    TenantResourcesResponse,
)
from tenant_provisioner.services.dependencies import ServiceFactory, get_service_factory
from tenant_provisioner.services.resources import CloudProvider, OSKind, TenantScope

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.post("/{tenant_id}/baseline", response_model=TenantBaselineResponse)
async def ensure_baseline(
    tenant_id: str = Path(..., pattern=TENANT_ID_PATTERN),
    provider: Optional[CloudProvider] = Query(default=None),
    os_kind: Optional[OSKind] = Query(default=None),
    factory: ServiceFactory = Depends(get_service_factory),
) -> TenantBaselineResponse:
    resolved = factory.resolve_provider(provider)
    steps = await factory.tenant_service(resolved).ensure_baseline(TenantScope(tenant_id), os_kind)
    return TenantBaselineResponse(
        tenant_id=tenant_id,
        provider=resolved,
        os_kind=os_kind,
        shared_resources=[
            StepOutcome(kind=step.descriptor.kind.value, name=step.descriptor.name, outcome=step.outcome.value)
            for step in steps
        ],
    )


@router.get("/{tenant_id}/resources", response_model=TenantResourcesResponse)
async def list_shared_resources(
    tenant_id: str = Path(..., pattern=TENANT_ID_PATTERN),
    provider: Optional[CloudProvider] = Query(default=None),
    factory: ServiceFactory = Depends(get_service_factory),
) -> TenantResourcesResponse:
    resolved = factory.resolve_provider(provider)
    status = await factory.tenant_service(resolved).describe(TenantScope(tenant_id))
    return TenantResourcesResponse(
        tenant_id=tenant_id,
        provider=resolved,
        resources=[
            SharedResourceStatus(
                kind=descriptor.kind.value,
                name=descriptor.name,
                parent=descriptor.parent,
                exists=present,
            )
            for descriptor, present in status
        ],
    )
