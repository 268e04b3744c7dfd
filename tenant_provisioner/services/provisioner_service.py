from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Protocol

from tenant_provisioner.services.resources import ResourceDescriptor, ResourceKind


logger = logging.getLogger(__name__)


class ProvisionerError(RuntimeError):
    pass


class ResourceAlreadyExistsError(ProvisionerError):
    """Raised by a create step when the target (or a name-unique twin) is already present."""


class TransientProviderError(ProvisionerError):
    pass


class FatalProviderError(ProvisionerError):
    pass


class ProviderNotConfiguredError(ProvisionerError):
    """The selected cloud is missing its settings in the environment."""


class EnsureOutcome(str, Enum):
    EXISTED = "existed"
    CREATED = "created"
    # Lost a create race against another caller; the resource exists.
    CONVERGED = "converged"


ExistsCheck = Callable[[ResourceDescriptor], Awaitable[bool]]
CreateAction = Callable[[ResourceDescriptor, dict[str, Any]], Awaitable[None]]


class ResourceHandler(Protocol):
    """Provider-side existence check and create step for one resource kind."""

    kind: ResourceKind

    async def exists(self, descriptor: ResourceDescriptor) -> bool:
        ...

    async def create(self, descriptor: ResourceDescriptor, parameters: dict[str, Any]) -> None:
        ...


async def ensure_exists(
    descriptor: ResourceDescriptor,
    exists: ExistsCheck,
    create: CreateAction,
    parameters: Optional[dict[str, Any]] = None,
) -> EnsureOutcome:
    """Make sure `descriptor` exists, creating it at most once from this call.

    Two callers may both see the resource as absent and both try to create it.
    The provider's uniqueness constraint lets exactly one of them win; the
    other gets ResourceAlreadyExistsError, which is folded into success here.

    Any other exception from `exists` or `create` propagates unchanged.
    """

    if await exists(descriptor):
        logger.info("%s %s: already exists", descriptor.kind.value, descriptor.name)
        return EnsureOutcome.EXISTED

    try:
        await create(descriptor, dict(parameters or {}))
    except ResourceAlreadyExistsError:
        logger.info("%s %s: created concurrently by another caller", descriptor.kind.value, descriptor.name)
        return EnsureOutcome.CONVERGED

    logger.info("%s %s: created", descriptor.kind.value, descriptor.name)
    return EnsureOutcome.CREATED


async def ensure_with_handler(
    handler: ResourceHandler,
    descriptor: ResourceDescriptor,
    parameters: Optional[dict[str, Any]] = None,
) -> EnsureOutcome:
    if handler.kind != descriptor.kind:
        raise ValueError(f"Handler for {handler.kind.value} cannot provision {descriptor.kind.value}")
    return await ensure_exists(descriptor, handler.exists, handler.create, parameters)
