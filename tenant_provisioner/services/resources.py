from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ResourceKind(str, Enum):
    NETWORK = "network"
    FIREWALL_RULE = "firewall-rule"
    SECURITY_GROUP = "security-group"


class OSKind(str, Enum):
    LINUX = "linux"
    WINDOWS = "windows"


class CloudProvider(str, Enum):
    AWS = "aws"
    AZURE = "azure"
    GCP = "gcp"


_TENANT_ID_RE = re.compile(r"^[a-z][a-z0-9-]{0,39}$")


@dataclass(frozen=True)
class TenantScope:
    """Namespace for infrastructure shared by every deployment of one tenant.

    Tenant ids end up inside resource names on every provider, so they are
    restricted to the intersection of the providers' naming rules.
    """

    tenant_id: str

    def __post_init__(self) -> None:
        if not _TENANT_ID_RE.match(self.tenant_id or ""):
            raise ValueError(
                "tenant_id must start with a lowercase letter and contain only [a-z0-9-] "
                f"(max 40 chars), got {self.tenant_id!r}"
            )

    @property
    def network_name(self) -> str:
        return f"{self.tenant_id}-network"

    @property
    def security_group_name(self) -> str:
        return f"{self.tenant_id}-baseline"

    def firewall_rule_name(self, rule: "FirewallRule") -> str:
        return f"{self.tenant_id}-allow-{rule.label}"


@dataclass(frozen=True)
class ResourceDescriptor:
    """Identity of a tenant-shared resource.

    `parent` is the name of the shared resource this one lives in (a VPC for a
    security group, a security group for an ingress rule), or None.
    """

    kind: ResourceKind
    name: str
    scope: TenantScope
    parent: Optional[str] = None


@dataclass(frozen=True)
class FirewallRule:
    label: str
    protocol: str
    port: int
    priority: int
    source_range: str = "0.0.0.0/0"

    def as_parameters(self) -> dict[str, object]:
        return {
            "protocol": self.protocol,
            "port": self.port,
            "priority": self.priority,
            "source_range": self.source_range,
        }


_BASELINE_RULES: dict[OSKind, tuple[FirewallRule, ...]] = {
    OSKind.LINUX: (FirewallRule(label="ssh", protocol="tcp", port=22, priority=1000),),
    OSKind.WINDOWS: (
        FirewallRule(label="rdp", protocol="tcp", port=3389, priority=1010),
        FirewallRule(label="winrm", protocol="tcp", port=5986, priority=1020),
    ),
}


def baseline_rules(os_kind: OSKind, *, source_range: str = "0.0.0.0/0") -> list[FirewallRule]:
    """Ingress rules every deployment of the given OS kind needs."""

    return [
        FirewallRule(
            label=rule.label,
            protocol=rule.protocol,
            port=rule.port,
            priority=rule.priority,
            source_range=source_range,
        )
        for rule in _BASELINE_RULES[os_kind]
    ]


@dataclass(frozen=True)
class DeploymentCredentials:
    admin_username: str
    ssh_public_key: Optional[str] = None
    admin_password: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class DeploymentLocalResource:
    """Resources created fresh for a single deployment and destroyed with it."""

    scope: TenantScope
    instance_name: str
    subnet_cidr: Optional[str] = None
    credentials: Optional[DeploymentCredentials] = None

    @property
    def subnet_name(self) -> str:
        return f"{self.instance_name}-subnet"

    @property
    def key_name(self) -> str:
        return f"{self.instance_name}-key"

    @property
    def nic_name(self) -> str:
        return f"{self.instance_name}-nic"
