from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from tenant_provisioner.models.deployment import StepOutcome
from tenant_provisioner.services.resources import CloudProvider, OSKind


class SharedResourceStatus(BaseModel):
    kind: str
    name: str
    parent: Optional[str] = None
    exists: bool


class TenantResourcesResponse(BaseModel):
    tenant_id: str
    provider: CloudProvider
    resources: list[SharedResourceStatus]


class TenantBaselineResponse(BaseModel):
    tenant_id: str
    provider: CloudProvider
    os_kind: Optional[OSKind] = None
    shared_resources: list[StepOutcome]
