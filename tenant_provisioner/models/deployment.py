from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from tenant_provisioner.services.resources import CloudProvider, OSKind

TENANT_ID_PATTERN = r"^[a-z][a-z0-9-]{0,39}$"
INSTANCE_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,49}$"


class CredentialsModel(BaseModel):
    admin_username: str = Field(..., min_length=1)
    ssh_public_key: Optional[str] = None
    admin_password: Optional[str] = Field(default=None, repr=False)


class DeploymentRequest(BaseModel):
    tenant_id: str = Field(..., pattern=TENANT_ID_PATTERN)
    instance_name: str = Field(..., pattern=INSTANCE_NAME_PATTERN)
    os_kind: OSKind = OSKind.LINUX
    provider: Optional[CloudProvider] = Field(
        default=None, description="Defaults to PROVISIONER_DEFAULT_PROVIDER"
    )
    credentials: CredentialsModel
    instance_parameters: dict[str, Any] = Field(
        default_factory=dict,
        description="Passed through to the provider's instance create call (size, image, ...)",
    )


class StepOutcome(BaseModel):
    kind: str
    name: str
    outcome: str


class DeploymentResponse(BaseModel):
    tenant_id: str
    instance_name: str
    provider: CloudProvider
    subnet_cidr: str
    subnet_id: str
    instance_id: str
    shared_resources: list[StepOutcome]


class TeardownResponse(BaseModel):
    tenant_id: str
    instance_name: str
    provider: CloudProvider
    deleted: bool
