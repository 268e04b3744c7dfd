from __future__ import annotations

import os
from dataclasses import dataclass
from typing import ClassVar, Optional


def _require(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ValueError(f"Missing required environment variable: {name}")
    return value


def _timeout_from_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Invalid {name}; must be a number") from exc


@dataclass(frozen=True)
class AwsConfig:
    region_name: str
    endpoint_url: Optional[str] = None

    @staticmethod
    def from_env() -> "AwsConfig":
        region_name = os.getenv("AWS_REGION") or os.getenv("AWS_DEFAULT_REGION")
        if not region_name:
            raise ValueError("Missing required environment variable: AWS_REGION (or AWS_DEFAULT_REGION)")

        return AwsConfig(region_name=region_name, endpoint_url=os.getenv("AWS_EC2_ENDPOINT_URL"))


@dataclass(frozen=True)
class AzureConfig:
    """Settings for the Azure Resource Manager REST API.

    `access_token` is an ARM bearer token obtained out of band
    (e.g. `az account get-access-token`).
    """

    subscription_id: str
    resource_group: str
    location: str
    access_token: str = ""
    endpoint: str = "https://management.azure.com"
    _DEFAULT_TIMEOUT_SECONDS: ClassVar[float] = 30.0
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS

    @staticmethod
    def from_env() -> "AzureConfig":
        return AzureConfig(
            subscription_id=_require("AZURE_SUBSCRIPTION_ID"),
            resource_group=_require("AZURE_RESOURCE_GROUP"),
            location=_require("AZURE_LOCATION"),
            access_token=_require("AZURE_ACCESS_TOKEN"),
            endpoint=(os.getenv("AZURE_ARM_ENDPOINT") or "https://management.azure.com").rstrip("/"),
            timeout_seconds=_timeout_from_env("AZURE_TIMEOUT_SECONDS", AzureConfig._DEFAULT_TIMEOUT_SECONDS),
        )


@dataclass(frozen=True)
class GcpConfig:
    project: str
    region: str
    zone: str
    access_token: str = ""
    endpoint: str = "https://compute.googleapis.com/compute/v1"
    _DEFAULT_TIMEOUT_SECONDS: ClassVar[float] = 30.0
    timeout_seconds: float = _DEFAULT_TIMEOUT_SECONDS

    @staticmethod
    def from_env() -> "GcpConfig":
        region = _require("GCP_REGION")
        return GcpConfig(
            project=_require("GCP_PROJECT"),
            region=region,
            # First zone of the region unless told otherwise.
            zone=os.getenv("GCP_ZONE") or f"{region}-a",
            access_token=_require("GOOGLE_OAUTH_ACCESS_TOKEN"),
            endpoint=(os.getenv("GCP_COMPUTE_ENDPOINT") or "https://compute.googleapis.com/compute/v1").rstrip("/"),
            timeout_seconds=_timeout_from_env("GCP_TIMEOUT_SECONDS", GcpConfig._DEFAULT_TIMEOUT_SECONDS),
        )
