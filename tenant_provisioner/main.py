from contextlib import asynccontextmanager
import logging

import aiohttp
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette import status

from tenant_provisioner.routes.deployments import router as deployments_router
from tenant_provisioner.routes.tenants import router as tenants_router
from tenant_provisioner.services.dependencies import get_service_factory_from_app
from tenant_provisioner.services.provisioner_service import (
    FatalProviderError,
    ProviderNotConfiguredError,
    ProvisionerError,
    ResourceAlreadyExistsError,
    TransientProviderError,
)
from tenant_provisioner.services.resources import CloudProvider

logger = logging.getLogger(__name__)


def _ensure_logging() -> None:
    formatter = logging.Formatter("%(levelname)s: %(message)s")
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    else:
        root.setLevel(logging.INFO)
        for handler in root.handlers:
            handler.setFormatter(formatter)


async def _bootstrap_tenants(app: FastAPI) -> None:
    factory = get_service_factory_from_app(app)
    config = factory.config
    if not config.bootstrap_tenants:
        return
    await factory.tenant_service(CloudProvider(config.bootstrap_provider)).bootstrap(
        list(config.bootstrap_tenants),
        concurrency=config.bootstrap_concurrency,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    _ensure_logging()
    async with aiohttp.ClientSession() as session:
        app.state.http_session = session
        await _bootstrap_tenants(app)
        yield


app = FastAPI(lifespan=lifespan)

app.include_router(deployments_router)
app.include_router(tenants_router)


@app.exception_handler(FatalProviderError)
async def fatal_provider_error_handler(request: Request, exc: FatalProviderError) -> JSONResponse:
    """Map a non-recoverable cloud failure to 502 Bad Gateway with {"detail": "..."}."""

    logger.error("Provisioning failed: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": str(exc)},
    )


@app.exception_handler(TransientProviderError)
async def transient_provider_error_handler(request: Request, exc: TransientProviderError) -> JSONResponse:
    """Throttling, 5xx and timeouts from the provider: 503, the caller may try again."""

    logger.warning("Provisioning interrupted by a transient provider error: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
    )


@app.exception_handler(ResourceAlreadyExistsError)
async def already_exists_error_handler(request: Request, exc: ResourceAlreadyExistsError) -> JSONResponse:
    """A deployment-local resource (subnet, NIC, VM) is already there: 409 Conflict."""

    logger.warning("Provisioning conflict: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"detail": str(exc)},
    )


@app.exception_handler(ProviderNotConfiguredError)
async def provider_not_configured_handler(request: Request, exc: ProviderNotConfiguredError) -> JSONResponse:
    logger.error("%s", exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": str(exc)},
    )


@app.exception_handler(ProvisionerError)
async def provisioner_error_handler(request: Request, exc: ProvisionerError) -> JSONResponse:
    logger.error("Provisioning failed: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"detail": str(exc)},
    )


@app.get("/")
async def root():
    return {"message": "Tenant provisioner is running."}
