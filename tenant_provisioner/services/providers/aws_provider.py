from __future__ import annotations

import logging
from typing import Any, Optional

import aioboto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
    WaiterError,
)

from tenant_provisioner.services.config import AwsConfig
from tenant_provisioner.services.provisioner_service import (
    FatalProviderError,
    ResourceAlreadyExistsError,
    ResourceHandler,
    TransientProviderError,
)
from tenant_provisioner.services.providers.base import CloudProviderAdapter
from tenant_provisioner.services.resources import (
    CloudProvider,
    DeploymentLocalResource,
    OSKind,
    ResourceDescriptor,
    ResourceKind,
    TenantScope,
)


logger = logging.getLogger(__name__)

_DUPLICATE_CODES = frozenset(
    {
        "InvalidGroup.Duplicate",
        "InvalidPermission.Duplicate",
        "InvalidKeyPair.Duplicate",
    }
)
_TRANSIENT_CODES = frozenset(
    {
        "RequestLimitExceeded",
        "Throttling",
        "ThrottlingException",
        "ServiceUnavailable",
        "Unavailable",
        "InternalError",
    }
)
_TRANSIENT_BOTOCORE_ERRORS = (
    EndpointConnectionError,
    ConnectTimeoutError,
    ReadTimeoutError,
    ConnectionClosedError,
    WaiterError,
)
_DUPLICATE_VPC_SKIP_CODES = frozenset({"InvalidVpcID.NotFound", "DependencyViolation"})


def _map_aws_error(exc: Exception, what: str) -> Exception:
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "")
        message = f"Failed to {what} ({code})"
        if code in _DUPLICATE_CODES:
            return ResourceAlreadyExistsError(message)
        if code in _TRANSIENT_CODES:
            return TransientProviderError(message)
        return FatalProviderError(message)
    message = f"Failed to {what} ({type(exc).__name__})"
    if isinstance(exc, _TRANSIENT_BOTOCORE_ERRORS):
        return TransientProviderError(message)
    # Bad parameters, missing credentials and the like do not heal on retry.
    return FatalProviderError(message)


def _tags(*, name: str, scope: TenantScope, resource_type: str) -> list[dict[str, Any]]:
    return [
        {
            "ResourceType": resource_type,
            "Tags": [
                {"Key": "Name", "Value": name},
                {"Key": "tenant", "Value": scope.tenant_id},
            ],
        }
    ]


class AwsProvider(CloudProviderAdapter):
    """EC2 adapter: VPC per tenant, one baseline security group, ingress rules on it."""

    provider = CloudProvider.AWS

    def __init__(self, config: AwsConfig, *, session: Optional[Any] = None) -> None:
        self._config = config
        self._session = session or aioboto3.Session()
        self._handlers: dict[ResourceKind, ResourceHandler] = {
            ResourceKind.NETWORK: _VpcHandler(self),
            ResourceKind.SECURITY_GROUP: _SecurityGroupHandler(self),
            ResourceKind.FIREWALL_RULE: _IngressRuleHandler(self),
        }

    def _client(self) -> Any:
        return self._session.client(
            "ec2",
            region_name=self._config.region_name,
            endpoint_url=self._config.endpoint_url,
        )

    @property
    def supported_kinds(self) -> tuple[ResourceKind, ...]:
        return (ResourceKind.NETWORK, ResourceKind.SECURITY_GROUP, ResourceKind.FIREWALL_RULE)

    def handler(self, kind: ResourceKind) -> ResourceHandler:
        return self._handlers[kind]

    # -----------------
    # Lookups
    # -----------------

    async def _vpc_ids(self, ec2: Any, *, name: str, scope: TenantScope) -> list[str]:
        try:
            resp = await ec2.describe_vpcs(
                Filters=[
                    {"Name": "tag:Name", "Values": [name]},
                    {"Name": "tag:tenant", "Values": [scope.tenant_id]},
                ]
            )
        except (ClientError, BotoCoreError) as exc:
            raise _map_aws_error(exc, f"describe VPC {name}") from exc
        return sorted(v["VpcId"] for v in resp.get("Vpcs", []))

    async def find_vpc_id(self, ec2: Any, *, scope: TenantScope) -> Optional[str]:
        ids = await self._vpc_ids(ec2, name=scope.network_name, scope=scope)
        # Name tags are not unique in EC2; every caller settles on the smallest id.
        return ids[0] if ids else None

    async def settle_duplicate_vpcs(self, ec2: Any, *, ids: list[str], name: str) -> str:
        """Keep the smallest of several same-named VPC ids and delete the rest.

        Every caller that sees more than one id deletes the same losers, so
        the outcome does not depend on which creator listed first. A VPC that
        is already gone, or that already holds resources, is left alone.
        """

        keeper = min(ids)
        for vpc_id in ids:
            if vpc_id == keeper:
                continue
            try:
                await ec2.delete_vpc(VpcId=vpc_id)
            except ClientError as exc:
                code = exc.response.get("Error", {}).get("Code", "")
                if code not in _DUPLICATE_VPC_SKIP_CODES:
                    raise _map_aws_error(exc, f"delete duplicate VPC {vpc_id}") from exc
                logger.warning("Duplicate VPC %s for %s not deleted (%s); keeping %s", vpc_id, name, code, keeper)
                continue
            except BotoCoreError as exc:
                raise _map_aws_error(exc, f"delete duplicate VPC {vpc_id}") from exc
            logger.info("Deleted duplicate VPC %s for %s; keeping %s", vpc_id, name, keeper)
        return keeper

    async def find_security_group(self, ec2: Any, *, scope: TenantScope, vpc_id: str) -> Optional[dict[str, Any]]:
        try:
            resp = await ec2.describe_security_groups(
                Filters=[
                    {"Name": "group-name", "Values": [scope.security_group_name]},
                    {"Name": "vpc-id", "Values": [vpc_id]},
                ]
            )
        except (ClientError, BotoCoreError) as exc:
            raise _map_aws_error(exc, f"describe security group {scope.security_group_name}") from exc
        groups = resp.get("SecurityGroups", [])
        return groups[0] if groups else None

    async def _require_vpc_id(self, ec2: Any, *, scope: TenantScope) -> str:
        vpc_id = await self.find_vpc_id(ec2, scope=scope)
        if vpc_id is None:
            raise FatalProviderError(f"Tenant network not found: {scope.network_name}")
        return vpc_id

    async def _require_security_group_id(self, ec2: Any, *, scope: TenantScope) -> str:
        vpc_id = await self._require_vpc_id(ec2, scope=scope)
        group = await self.find_security_group(ec2, scope=scope, vpc_id=vpc_id)
        if group is None:
            raise FatalProviderError(f"Tenant security group not found: {scope.security_group_name}")
        return group["GroupId"]

    # -----------------
    # Deployment-local resources
    # -----------------

    async def create_subnet(self, deployment: DeploymentLocalResource, *, network_name: str) -> str:
        if not deployment.subnet_cidr:
            raise ValueError("deployment.subnet_cidr must be set before creating a subnet")

        async with self._client() as ec2:
            vpc_id = await self._require_vpc_id(ec2, scope=deployment.scope)
            try:
                resp = await ec2.create_subnet(
                    VpcId=vpc_id,
                    CidrBlock=deployment.subnet_cidr,
                    TagSpecifications=_tags(name=deployment.subnet_name, scope=deployment.scope, resource_type="subnet"),
                )
            except (ClientError, BotoCoreError) as exc:
                logger.exception("AWS create_subnet failed (name=%s cidr=%s)", deployment.subnet_name, deployment.subnet_cidr)
                raise _map_aws_error(exc, f"create subnet {deployment.subnet_name}") from exc

        return resp["Subnet"]["SubnetId"]

    async def create_instance(
        self,
        deployment: DeploymentLocalResource,
        *,
        os_kind: OSKind,
        subnet_id: str,
        parameters: dict[str, Any],
    ) -> str:
        async with self._client() as ec2:
            group_id = await self._require_security_group_id(ec2, scope=deployment.scope)

            run_args: dict[str, Any] = {
                k: v
                for k, v in parameters.items()
                if k not in ("MinCount", "MaxCount", "SubnetId", "SecurityGroupIds", "TagSpecifications")
            }
            credentials = deployment.credentials
            if credentials is not None and credentials.ssh_public_key:
                try:
                    await ec2.import_key_pair(
                        KeyName=deployment.key_name,
                        PublicKeyMaterial=credentials.ssh_public_key.encode("utf-8"),
                    )
                except (ClientError, BotoCoreError) as exc:
                    err = _map_aws_error(exc, f"import key pair {deployment.key_name}")
                    if not isinstance(err, ResourceAlreadyExistsError):
                        raise err from exc
                    logger.warning(
                        "Key pair %s already exists; %s launches with the existing key material",
                        deployment.key_name,
                        deployment.instance_name,
                    )
                run_args["KeyName"] = deployment.key_name

            tags = _tags(name=deployment.instance_name, scope=deployment.scope, resource_type="instance")
            tags[0]["Tags"].append({"Key": "os", "Value": os_kind.value})

            try:
                resp = await ec2.run_instances(
                    **run_args,
                    MinCount=1,
                    MaxCount=1,
                    SubnetId=subnet_id,
                    SecurityGroupIds=[group_id],
                    TagSpecifications=tags,
                )
            except (ClientError, BotoCoreError) as exc:
                logger.exception("AWS run_instances failed (name=%s)", deployment.instance_name)
                raise _map_aws_error(exc, f"launch instance {deployment.instance_name}") from exc

        return resp["Instances"][0]["InstanceId"]

    async def teardown_deployment(self, deployment: DeploymentLocalResource) -> None:
        async with self._client() as ec2:
            try:
                resp = await ec2.describe_instances(
                    Filters=[
                        {"Name": "tag:Name", "Values": [deployment.instance_name]},
                        {"Name": "tag:tenant", "Values": [deployment.scope.tenant_id]},
                        {"Name": "instance-state-name", "Values": ["pending", "running", "stopping", "stopped"]},
                    ]
                )
                instance_ids = [
                    instance["InstanceId"]
                    for reservation in resp.get("Reservations", [])
                    for instance in reservation.get("Instances", [])
                ]
                if instance_ids:
                    await ec2.terminate_instances(InstanceIds=instance_ids)
                    waiter = ec2.get_waiter("instance_terminated")
                    await waiter.wait(InstanceIds=instance_ids)
                    logger.info("AWS teardown: terminated %s", ", ".join(instance_ids))

                resp = await ec2.describe_subnets(
                    Filters=[
                        {"Name": "tag:Name", "Values": [deployment.subnet_name]},
                        {"Name": "tag:tenant", "Values": [deployment.scope.tenant_id]},
                    ]
                )
                for subnet in resp.get("Subnets", []):
                    await ec2.delete_subnet(SubnetId=subnet["SubnetId"])
                    logger.info("AWS teardown: deleted subnet %s", subnet["SubnetId"])

                await ec2.delete_key_pair(KeyName=deployment.key_name)
            except (ClientError, BotoCoreError) as exc:
                logger.exception("AWS teardown failed (instance=%s)", deployment.instance_name)
                raise _map_aws_error(exc, f"tear down {deployment.instance_name}") from exc


class _VpcHandler:
    kind = ResourceKind.NETWORK

    def __init__(self, provider: AwsProvider) -> None:
        self._provider = provider

    async def exists(self, descriptor: ResourceDescriptor) -> bool:
        async with self._provider._client() as ec2:
            ids = await self._provider._vpc_ids(ec2, name=descriptor.name, scope=descriptor.scope)
            if len(ids) > 1:
                # A creator that listed before its rival's VPC appeared kept its own.
                await self._provider.settle_duplicate_vpcs(ec2, ids=ids, name=descriptor.name)
            return bool(ids)

    async def create(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> None:
        async with self._provider._client() as ec2:
            try:
                resp = await ec2.create_vpc(
                    CidrBlock=parameters["cidr"],
                    TagSpecifications=_tags(name=descriptor.name, scope=descriptor.scope, resource_type="vpc"),
                )
            except (ClientError, BotoCoreError) as exc:
                logger.exception("AWS create_vpc failed (name=%s)", descriptor.name)
                raise _map_aws_error(exc, f"create VPC {descriptor.name}") from exc
            own_id = resp["Vpc"]["VpcId"]

            # EC2 has no uniqueness on tags, so a concurrent creator may have
            # made a twin. Keep the smallest id and delete every other one.
            ids = await self._provider._vpc_ids(ec2, name=descriptor.name, scope=descriptor.scope)
            ids = sorted(set(ids) | {own_id})
            keeper = await self._provider.settle_duplicate_vpcs(ec2, ids=ids, name=descriptor.name)
            if keeper != own_id:
                raise ResourceAlreadyExistsError(f"VPC {descriptor.name} already exists as {keeper}")


class _SecurityGroupHandler:
    kind = ResourceKind.SECURITY_GROUP

    def __init__(self, provider: AwsProvider) -> None:
        self._provider = provider

    async def exists(self, descriptor: ResourceDescriptor) -> bool:
        async with self._provider._client() as ec2:
            vpc_id = await self._provider.find_vpc_id(ec2, scope=descriptor.scope)
            if vpc_id is None:
                return False
            group = await self._provider.find_security_group(ec2, scope=descriptor.scope, vpc_id=vpc_id)
            return group is not None

    async def create(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> None:
        async with self._provider._client() as ec2:
            vpc_id = await self._provider._require_vpc_id(ec2, scope=descriptor.scope)
            try:
                await ec2.create_security_group(
                    GroupName=descriptor.name,
                    Description=parameters.get("description") or f"Baseline ingress for tenant {descriptor.scope.tenant_id}",
                    VpcId=vpc_id,
                    TagSpecifications=_tags(
                        name=descriptor.name, scope=descriptor.scope, resource_type="security-group"
                    ),
                )
            except (ClientError, BotoCoreError) as exc:
                raise _map_aws_error(exc, f"create security group {descriptor.name}") from exc


class _IngressRuleHandler:
    kind = ResourceKind.FIREWALL_RULE

    def __init__(self, provider: AwsProvider) -> None:
        self._provider = provider

    async def exists(self, descriptor: ResourceDescriptor) -> bool:
        async with self._provider._client() as ec2:
            vpc_id = await self._provider.find_vpc_id(ec2, scope=descriptor.scope)
            if vpc_id is None:
                return False
            group = await self._provider.find_security_group(ec2, scope=descriptor.scope, vpc_id=vpc_id)
            if group is None:
                return False

        for permission in group.get("IpPermissions", []):
            for ip_range in permission.get("IpRanges", []):
                if ip_range.get("Description") == descriptor.name:
                    return True
        return False

    async def create(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> None:
        async with self._provider._client() as ec2:
            group_id = await self._provider._require_security_group_id(ec2, scope=descriptor.scope)
            try:
                await ec2.authorize_security_group_ingress(
                    GroupId=group_id,
                    IpPermissions=[
                        {
                            "IpProtocol": parameters["protocol"],
                            "FromPort": parameters["port"],
                            "ToPort": parameters["port"],
                            "IpRanges": [{"CidrIp": parameters["source_range"], "Description": descriptor.name}],
                        }
                    ],
                )
            except (ClientError, BotoCoreError) as exc:
                raise _map_aws_error(exc, f"authorize ingress {descriptor.name}") from exc
