"""FastAPI application entry point."""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..errors import (
    AuthorizationError,
    MigrationError,
    NotFoundError,
    PreconditionError,
    VendorConnectionError,
)
from ..orchestrator import MigrationOrchestrator
from .routes import runs

logger = logging.getLogger(__name__)

# Most specific first.
ERROR_STATUS_CODES = (
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (PreconditionError, 409),
    (VendorConnectionError, 502),
    (MigrationError, 500),
)


def create_app(orchestrator: Optional[MigrationOrchestrator] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        orchestrator: Orchestrator to serve; built from CLINIC_MIGRATE_*
            settings on first use when omitted

    Returns:
        FastAPI app
    """
    app = FastAPI(
        title="Clinic Migration API",
        description="API for resumable clinic data migrations",
        version="1.0.0",
    )
    app.state.orchestrator = orchestrator

    # CORS middleware for frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(MigrationError)
    async def migration_error_handler(request: Request, exc: MigrationError):
        status_code = next(code for cls, code in ERROR_STATUS_CODES if isinstance(exc, cls))
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(runs.router, prefix="/api/runs", tags=["runs"])

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


app = create_app()
