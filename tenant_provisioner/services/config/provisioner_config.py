from __future__ import annotations

import os
from dataclasses import dataclass
from typing import ClassVar


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}; must be an integer") from exc


@dataclass(frozen=True)
class ProvisionerConfig:
    """Provider-independent settings for tenant and deployment provisioning."""

    default_provider: str
    tenant_network_cidr: str
    subnet_octet_min: int
    subnet_octet_max: int
    admin_source_range: str
    bootstrap_tenants: tuple[str, ...] = ()
    bootstrap_provider: str = ""
    _DEFAULT_BOOTSTRAP_CONCURRENCY: ClassVar[int] = 5
    bootstrap_concurrency: int = _DEFAULT_BOOTSTRAP_CONCURRENCY

    _PROVIDERS: ClassVar[frozenset[str]] = frozenset({"aws", "azure", "gcp"})

    @staticmethod
    def _validate_provider(*, env: str, value: str) -> str:
        cleaned = value.strip().lower()
        if cleaned not in ProvisionerConfig._PROVIDERS:
            raise ValueError(f"Invalid {env}; must be one of aws, azure, gcp (got {value!r})")
        return cleaned

    @staticmethod
    def from_env() -> "ProvisionerConfig":
        default_provider = ProvisionerConfig._validate_provider(
            env="PROVISIONER_DEFAULT_PROVIDER",
            value=os.getenv("PROVISIONER_DEFAULT_PROVIDER", "aws"),
        )

        bootstrap_raw = os.getenv("PROVISIONER_BOOTSTRAP_TENANTS", "")
        bootstrap_tenants = tuple(t.strip() for t in bootstrap_raw.split(",") if t.strip())

        bootstrap_provider = default_provider
        if os.getenv("PROVISIONER_BOOTSTRAP_PROVIDER"):
            bootstrap_provider = ProvisionerConfig._validate_provider(
                env="PROVISIONER_BOOTSTRAP_PROVIDER",
                value=os.getenv("PROVISIONER_BOOTSTRAP_PROVIDER", ""),
            )

        concurrency = _int_from_env(
            "PROVISIONER_BOOTSTRAP_CONCURRENCY",
            ProvisionerConfig._DEFAULT_BOOTSTRAP_CONCURRENCY,
        )
        if concurrency <= 0:
            concurrency = ProvisionerConfig._DEFAULT_BOOTSTRAP_CONCURRENCY

        return ProvisionerConfig(
            default_provider=default_provider,
            tenant_network_cidr=os.getenv("PROVISIONER_TENANT_NETWORK_CIDR", "10.0.0.0/16"),
            subnet_octet_min=_int_from_env("PROVISIONER_SUBNET_OCTET_MIN", 1),
            subnet_octet_max=_int_from_env("PROVISIONER_SUBNET_OCTET_MAX", 254),
            admin_source_range=os.getenv("PROVISIONER_ADMIN_SOURCE_RANGE", "0.0.0.0/0"),
            bootstrap_tenants=bootstrap_tenants,
            bootstrap_provider=bootstrap_provider,
            bootstrap_concurrency=concurrency,
        )
