from __future__ import annotations

from contextlib import asynccontextmanager
from time import perf_counter
from typing import AsyncIterator, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import FastAPI, Request, Response

from etcdcluster.config import get_settings
from etcdcluster.dependencies import get_status_reconciler
from etcdcluster.logger import configure_logging, get_logger
from etcdcluster.metrics import observe_http_request
from etcdcluster.routes import clusters, events, machines, system

settings = get_settings()
configure_logging(settings.log_level, settings.log_file)
logger = get_logger("api")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "app.startup",
        "Starting app",
        env=settings.app_env,
        version=settings.app_version,
        pki_dir=settings.pki_dir,
    )
    yield
    # Drops every cached mTLS client so no authenticated connection outlives the process.
    await get_status_reconciler().aclose()
    logger.info("app.shutdown", "Shutting down app")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


def _route_path(request: Request) -> str:
    route = request.scope.get("route")
    return str(getattr(route, "path", request.url.path))


@app.middleware("http")
async def request_logging(
    request: Request,
    call_next: Callable[[Request], Awaitable[Response]],
) -> Response:
    request_id = request.headers.get("x-request-id") or str(uuid4())
    client: Optional[str] = None
    if request.client:
        client = request.client.host

    start = perf_counter()
    with logger.context(request_id=request_id):
        logger.info(
            "request.start",
            "Started",
            method=request.method,
            path=request.url.path,
            client=client,
        )
        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (perf_counter() - start) * 1000
            logger.exception(
                "request.error",
                "Failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 1),
                error_type=type(exc).__name__,
            )
            observe_http_request(
                method=request.method,
                path=_route_path(request),
                status=500,
                duration_seconds=duration_ms / 1000,
            )
            raise

        duration_ms = (perf_counter() - start) * 1000
        logger.info(
            "request.complete",
            "Completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 1),
        )
        observe_http_request(
            method=request.method,
            path=_route_path(request),
            status=response.status_code,
            duration_seconds=duration_ms / 1000,
        )

    response.headers["X-Request-ID"] = request_id
    return response


app.include_router(system.router)
app.include_router(machines.router)
app.include_router(clusters.router)
app.include_router(events.router)
