"""Configuration package (Facade).

Re-exports the public config types so callers import from one stable path
instead of the module that happens to define each one:

	from tenant_provisioner.services.config import ProvisionerConfig, AwsConfig
"""

from tenant_provisioner.services.config.cloud_config import AwsConfig, AzureConfig, GcpConfig
from tenant_provisioner.services.config.provisioner_config import ProvisionerConfig

__all__ = ["AwsConfig", "AzureConfig", "GcpConfig", "ProvisionerConfig"]
