"""FastAPI peer service for clipmesh."""

from collections.abc import AsyncGenerator
from typing import Any, Callable

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from clipmesh import __version__
from clipmesh.api.routes import peer
from clipmesh.errors import CorruptStore, ProtocolError, StoreError
from clipmesh.utils.logging import get_logger

logger = get_logger(__name__)


def create_api_app(
    lifespan: Callable[[FastAPI], AsyncGenerator[None, None]] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="clipmesh",
        description="Clipboard history replication between devices",
        version=__version__,
        lifespan=lifespan,
    )

    app.include_router(peer.router, tags=["peer"])

    @app.get("/")
    async def root() -> dict:
        return {
            "name": "clipmesh",
            "version": __version__,
            "docs": "/docs",
        }

    @app.exception_handler(ProtocolError)
    async def protocol_error(request: Request, exc: ProtocolError) -> JSONResponse:
        logger.warning(f"Rejected {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors: list[dict[str, Any]] = list(exc.errors())
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError) -> JSONResponse:
        if isinstance(exc, CorruptStore):
            logger.error(f"History file is corrupt: {exc}")
        else:
            logger.error(f"History store failure: {exc}")
        return JSONResponse(status_code=500, content={"error": str(exc)})

    @app.exception_handler(RuntimeError)
    async def not_initialized(request: Request, exc: RuntimeError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"error": str(exc)})

    return app
