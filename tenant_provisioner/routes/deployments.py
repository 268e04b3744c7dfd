from __future__ import annotations

from fastapi import APIRouter, Depends, Path
from starlette import status

from tenant_provisioner.models.deployment import (
    INSTANCE_NAME_PATTERN,
    TENANT_ID_PATTERN,
    DeploymentRequest,
    DeploymentResponse,
    StepOutcome,
    TeardownResponse,
)
from tenant_provisioner.services.dependencies import ServiceFactory, get_service_factory
from tenant_provisioner.services.deployment_service import DeploymentPlan
from tenant_provisioner.services.resources import CloudProvider, DeploymentCredentials, TenantScope

router = APIRouter(prefix="/deployments", tags=["deployments"])


@router.post("", response_model=DeploymentResponse, status_code=status.HTTP_201_CREATED)
async def create_deployment(
    body: DeploymentRequest,
    factory: ServiceFactory = Depends(get_service_factory),
) -> DeploymentResponse:
    provider = factory.resolve_provider(body.provider)
    service = factory.deployment_service(provider)

    result = await service.deploy(
        DeploymentPlan(
            scope=TenantScope(body.tenant_id),
            instance_name=body.instance_name,
            os_kind=body.os_kind,
            credentials=DeploymentCredentials(
                admin_username=body.credentials.admin_username,
                ssh_public_key=body.credentials.ssh_public_key,
                admin_password=body.credentials.admin_password,
            ),
            instance_parameters=body.instance_parameters,
        )
    )

    return DeploymentResponse(
        tenant_id=body.tenant_id,
        instance_name=body.instance_name,
        provider=provider,
        subnet_cidr=result.deployment.subnet_cidr or "",
        subnet_id=result.subnet_id,
        instance_id=result.instance_id,
        shared_resources=[
            StepOutcome(kind=step.descriptor.kind.value, name=step.descriptor.name, outcome=step.outcome.value)
            for step in result.shared_steps
        ],
    )


@router.delete("/{provider}/{tenant_id}/{instance_name}", response_model=TeardownResponse)
async def delete_deployment(
    provider: CloudProvider,
    tenant_id: str = Path(..., pattern=TENANT_ID_PATTERN),
    instance_name: str = Path(..., pattern=INSTANCE_NAME_PATTERN),
    factory: ServiceFactory = Depends(get_service_factory),
) -> TeardownResponse:
    await factory.deployment_service(provider).teardown(TenantScope(tenant_id), instance_name)
    return TeardownResponse(tenant_id=tenant_id, instance_name=instance_name, provider=provider, deleted=True)
