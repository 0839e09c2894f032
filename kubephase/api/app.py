"""FastAPI application factory for kubephase.

Usage::

    from kubephase.api.app import create_app

    app = create_app(controllers=controllers, cache=cache)

Used by the production bootstrap (``kubephase.app``) and by tests.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from kubephase.api.routes import probes, router
from kubephase.api.schemas import ErrorResponse

_log = structlog.get_logger(component="api.app")

_API_PREFIX = "/api/v1"


def create_app(controllers: Sequence[Any] = (), cache: Any = None) -> FastAPI:
    """Create the kubephase FastAPI application.

    Args:
        controllers: Objects with ``name`` and ``ready`` attributes.
        cache:       DynamicCache, or None when no cache is running.
    """
    from kubephase import __version__

    app = FastAPI(
        title="kubephase",
        summary="Phased, revisioned rollouts of arbitrary Kubernetes objects",
        version=__version__,
        docs_url="/api/v1/docs",
        redoc_url=None,
        openapi_url="/api/v1/openapi.json",
    )
    app.state.controllers = list(controllers)
    app.state.cache = cache

    app.include_router(probes)
    app.include_router(router, prefix=_API_PREFIX)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all for unhandled exceptions; never expose stack traces."""
        _log.error("unhandled_exception", path=str(request.url.path), method=request.method, error=str(exc))
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(error="INTERNAL_ERROR", detail="An unexpected error occurred.").model_dump(),
        )

    return app
