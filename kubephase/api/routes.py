"""HTTP routes: probes, Prometheus metrics and a dynamic cache snapshot."""

from __future__ import annotations

from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from kubephase.api.schemas import CacheSnapshot, HealthResponse, ReadyResponse

probes = APIRouter()
router = APIRouter()


@probes.get("/healthz", response_model=HealthResponse)
async def healthz() -> HealthResponse:
    from kubephase import __version__

    return HealthResponse(status="ok", version=__version__)


@probes.get("/readyz", response_model=ReadyResponse)
async def readyz(request: Request) -> JSONResponse:
    controllers = {c.name: c.ready for c in request.app.state.controllers}
    cache = request.app.state.cache
    cache_synced = cache.synced if cache is not None else True
    body = ReadyResponse(
        ready=bool(controllers) and all(controllers.values()) and cache_synced,
        controllers=controllers,
        cache_synced=cache_synced,
    )
    return JSONResponse(status_code=200 if body.ready else 503, content=body.model_dump())


@probes.get("/metrics")
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@router.get("/cache", response_model=CacheSnapshot)
async def cache_snapshot(request: Request) -> CacheSnapshot:
    cache = request.app.state.cache
    if cache is None:
        return CacheSnapshot()
    return CacheSnapshot.model_validate(cache.snapshot())
