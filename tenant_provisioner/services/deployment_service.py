from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from tenant_provisioner.services.resources import (
    DeploymentCredentials,
    DeploymentLocalResource,
    OSKind,
    TenantScope,
)
from tenant_provisioner.services.subnet_allocator import SubnetAllocator
from tenant_provisioner.services.tenant_service import StepResult, TenantService

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeploymentPlan:
    """Inputs for one deployment run."""

    scope: TenantScope
    instance_name: str
    os_kind: OSKind
    credentials: Optional[DeploymentCredentials] = None
    instance_parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeploymentResult:
    deployment: DeploymentLocalResource
    shared_steps: list[StepResult]
    subnet_id: str
    instance_id: str


class DeploymentService:
    """Runs a deployment as a fixed sequence of steps.

    1) Ensure the tenant's shared network, security group and OS rules.
    2) Draw a subnet CIDR and create the deployment's subnet.
    3) Launch the instance into it.

    Any exception aborts the remaining steps. Nothing already created is
    rolled back; a later teardown removes the deployment-local part.
    """

    def __init__(self, *, tenants: TenantService, allocator: SubnetAllocator) -> None:
        self._tenants = tenants
        self._allocator = allocator

    async def deploy(self, plan: DeploymentPlan) -> DeploymentResult:
        provider = self._tenants.provider
        logger.info(
            "Deploying %s for tenant %s on %s (%s)",
            plan.instance_name,
            plan.scope.tenant_id,
            provider.provider.value,
            plan.os_kind.value,
        )

        shared_steps = await self._tenants.ensure_baseline(plan.scope, plan.os_kind)

        deployment = DeploymentLocalResource(
            scope=plan.scope,
            instance_name=plan.instance_name,
            subnet_cidr=self._allocator.subnet_cidr(),
            credentials=plan.credentials,
        )
        logger.info("Subnet %s: %s", deployment.subnet_name, deployment.subnet_cidr)
        subnet_id = await provider.create_subnet(deployment, network_name=plan.scope.network_name)

        instance_id = await provider.create_instance(
            deployment,
            os_kind=plan.os_kind,
            subnet_id=subnet_id,
            parameters=dict(plan.instance_parameters),
        )
        logger.info("Instance %s: %s", plan.instance_name, instance_id)

        return DeploymentResult(
            deployment=deployment,
            shared_steps=shared_steps,
            subnet_id=subnet_id,
            instance_id=instance_id,
        )

    async def teardown(self, scope: TenantScope, instance_name: str) -> DeploymentLocalResource:
        """Delete one deployment's own resources. Tenant-shared resources stay."""

        deployment = DeploymentLocalResource(scope=scope, instance_name=instance_name)
        logger.info("Tearing down %s for tenant %s", instance_name, scope.tenant_id)
        await self._tenants.provider.teardown_deployment(deployment)
        return deployment
