"""
WhatIfInvested API Gateway - FastAPI Application Entry Point.
Serves the routing surface through the edge gateway, plus liveness and readiness probes.
"""
from __future__ import annotations
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
import structlog
import uvicorn

from infrastructure.common.logging_config import configure_logging
from infrastructure.provisioning.settings import EdgeSettings

if TYPE_CHECKING:
    from infrastructure.provisioning.stack import BackendStack

logger = structlog.get_logger(__name__)

EDGE_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _create_redis_client(redis_url: str):
    import redis.asyncio as redis
    return redis.from_url(redis_url)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan manager for startup/shutdown."""
    from infrastructure.provisioning.stack import build_backend_stack
    settings: EdgeSettings = app.state.settings
    configure_logging(settings.log_level)
    logger.info("edge_starting", environment=settings.environment.value, host=settings.host, port=settings.port)
    redis_client = None
    if app.state.stack is None:
        if settings.redis_url:
            redis_client = _create_redis_client(settings.redis_url)
        app.state.stack = await build_backend_stack(settings, redis_client=redis_client)
    logger.info("edge_started", routes=len(app.state.stack.routes))
    yield
    logger.info("edge_stopping")
    if redis_client is not None:
        await redis_client.aclose()
    logger.info("edge_stopped")


def create_application(stack: BackendStack | None = None, settings: EdgeSettings | None = None) -> FastAPI:
    """Create and configure FastAPI application."""
    settings = settings or (stack.settings if stack is not None else EdgeSettings())
    app = FastAPI(
        title="WhatIfInvested Edge",
        description="Routes payment and exchange requests to isolated compute units",
        version="1.0.0",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.stack = stack
    _register_probes(app)
    _register_edge_route(app)
    return app


def _register_probes(app: FastAPI) -> None:

    @app.get("/_edge/live", include_in_schema=False)
    async def liveness() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/_edge/ready", include_in_schema=False)
    async def readiness(request: Request) -> JSONResponse:
        if request.app.state.stack is None:
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "not_ready"})
        return JSONResponse(content={"status": "ready", "routes": len(request.app.state.stack.routes)})


def _register_edge_route(app: FastAPI) -> None:

    @app.api_route("/{full_path:path}", methods=EDGE_METHODS, include_in_schema=False)
    async def edge(request: Request, full_path: str) -> Response:
        stack = request.app.state.stack
        if stack is None:
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "not_ready"})
        result = await stack.gateway.handle(request.method, request.url.path, dict(request.headers),
                                            await request.body())
        return Response(content=result.render(), status_code=result.status_code, headers=result.headers)


def run_server() -> None:
    """Run the edge server."""
    settings = EdgeSettings()
    uvicorn.run(
        "infrastructure.api_gateway.main:create_application",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=settings.debug,
    )


if __name__ == "__main__":
    run_server()
