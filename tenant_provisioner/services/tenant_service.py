from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from tqdm import tqdm

from tenant_provisioner.services.providers.base import CloudProviderAdapter
from tenant_provisioner.services.provisioner_service import (
    EnsureOutcome,
    ProvisionerError,
    ensure_with_handler,
)
from tenant_provisioner.services.resources import (
    OSKind,
    ResourceDescriptor,
    ResourceKind,
    TenantScope,
    baseline_rules,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PlannedResource:
    descriptor: ResourceDescriptor
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StepResult:
    descriptor: ResourceDescriptor
    outcome: EnsureOutcome


class TenantService:
    """Plans and ensures the infrastructure shared by all of a tenant's deployments."""

    def __init__(
        self,
        *,
        provider: CloudProviderAdapter,
        tenant_network_cidr: str = "10.0.0.0/16",
        admin_source_range: str = "0.0.0.0/0",
    ) -> None:
        self._provider = provider
        self._tenant_network_cidr = tenant_network_cidr
        self._admin_source_range = admin_source_range

    @property
    def provider(self) -> CloudProviderAdapter:
        return self._provider

    def plan(self, scope: TenantScope, os_kind: Optional[OSKind] = None) -> list[PlannedResource]:
        """Shared resources for `scope`, parents before children.

        With `os_kind=None` only the OS-independent part (network and security
        group) is planned.
        """

        supported = self._provider.supported_kinds
        planned = [
            PlannedResource(
                descriptor=ResourceDescriptor(kind=ResourceKind.NETWORK, name=scope.network_name, scope=scope),
                parameters={"cidr": self._tenant_network_cidr},
            )
        ]

        rule_parent = scope.network_name
        if ResourceKind.SECURITY_GROUP in supported:
            planned.append(
                PlannedResource(
                    descriptor=ResourceDescriptor(
                        kind=ResourceKind.SECURITY_GROUP,
                        name=scope.security_group_name,
                        scope=scope,
                        parent=scope.network_name,
                    ),
                    parameters={"description": f"Baseline ingress for tenant {scope.tenant_id}"},
                )
            )
            rule_parent = scope.security_group_name

        if os_kind is not None and ResourceKind.FIREWALL_RULE in supported:
            for rule in baseline_rules(os_kind, source_range=self._admin_source_range):
                planned.append(
                    PlannedResource(
                        descriptor=ResourceDescriptor(
                            kind=ResourceKind.FIREWALL_RULE,
                            name=scope.firewall_rule_name(rule),
                            scope=scope,
                            parent=rule_parent,
                        ),
                        parameters=rule.as_parameters(),
                    )
                )

        return planned

    async def ensure_baseline(self, scope: TenantScope, os_kind: Optional[OSKind] = None) -> list[StepResult]:
        """Ensure every planned shared resource exists, in order.

        A failing step raises and the remaining steps are not attempted.
        """

        results: list[StepResult] = []
        for item in self.plan(scope, os_kind):
            handler = self._provider.handler(item.descriptor.kind)
            outcome = await ensure_with_handler(handler, item.descriptor, item.parameters)
            results.append(StepResult(descriptor=item.descriptor, outcome=outcome))
        return results

    async def describe(self, scope: TenantScope) -> list[tuple[ResourceDescriptor, bool]]:
        """Existence of every shared resource the tenant could have, for all OS kinds."""

        seen: set[str] = set()
        descriptors: list[ResourceDescriptor] = []
        for os_kind in OSKind:
            for item in self.plan(scope, os_kind):
                if item.descriptor.name not in seen:
                    seen.add(item.descriptor.name)
                    descriptors.append(item.descriptor)

        status: list[tuple[ResourceDescriptor, bool]] = []
        for descriptor in descriptors:
            present = await self._provider.handler(descriptor.kind).exists(descriptor)
            status.append((descriptor, present))
        return status

    async def bootstrap(self, tenant_ids: list[str], *, concurrency: int = 5) -> tuple[int, int]:
        """Startup check: ensure the OS-independent baseline for each configured tenant.

        Tenants are handled concurrently; failures are logged and counted but
        do not stop the other tenants. Returns (succeeded, failed).
        """

        if not tenant_ids:
            return (0, 0)

        logger.info("Tenant bootstrap: %d tenant(s) on %s", len(tenant_ids), self._provider.provider.value)
        semaphore = asyncio.Semaphore(concurrency)

        async def _bootstrap_one(tenant_id: str) -> tuple[str, bool, Optional[str]]:
            async with semaphore:
                try:
                    await self.ensure_baseline(TenantScope(tenant_id))
                    return (tenant_id, True, None)
                except (ProvisionerError, ValueError) as exc:
                    return (tenant_id, False, str(exc))

        tasks = [asyncio.create_task(_bootstrap_one(tenant_id)) for tenant_id in tenant_ids]

        succeeded = 0
        failed = 0

        for fut in tqdm(
            asyncio.as_completed(tasks),
            total=len(tasks),
            desc="Bootstrapping tenants",
            unit="tenant",
        ):
            tenant_id, ok, err = await fut
            if ok:
                succeeded += 1
            else:
                failed += 1
                logger.error("Tenant bootstrap failed (tenant=%s): %s", tenant_id, err)

        logger.info("Tenant bootstrap complete: succeeded=%d, failed=%d", succeeded, failed)
        return (succeeded, failed)
