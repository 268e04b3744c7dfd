"""Cloud provider adapters.

Each adapter supplies the `exists`/`create` pair for the tenant-shared resource
kinds it supports, plus the deployment-local steps (subnet, instance, teardown).
"""

from tenant_provisioner.services.providers.aws_provider import AwsProvider
from tenant_provisioner.services.providers.azure_provider import AzureProvider
from tenant_provisioner.services.providers.base import CloudProviderAdapter
from tenant_provisioner.services.providers.gcp_provider import GcpProvider

__all__ = ["AwsProvider", "AzureProvider", "CloudProviderAdapter", "GcpProvider"]
