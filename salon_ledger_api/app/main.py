"""
Main entrypoint for the Salon Ledger API.

``create_app`` builds the FastAPI application: logging, CORS, the
versioned router and database migrations at startup.  The instance
created at import time can be served with uvicorn::

    uvicorn salon_ledger_api.app.main:app --reload

The ledger endpoint is reachable both at ``/exec`` (the URL browsers
are configured with) and at ``/api/v1/exec``.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .core.config import settings
from .core.logging_config import setup_logging
from .api.v1.router import router as v1_router
from .core.db import init_db


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Creates the database file on first start and applies migrations.
    init_db()
    yield


def create_app() -> FastAPI:
    """Create and configure a FastAPI application.

    Returns
    -------
    FastAPI
        A configured FastAPI application instance.
    """
    setup_logging(settings.log_level, settings.log_file or None)

    app = FastAPI(title=settings.project_name, version=settings.api_version, lifespan=lifespan)

    # Credentials are never sent as cookies, only as the idToken field,
    # so wildcard origins stay compatible with the browser rules.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.origins(),
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )

    app.include_router(v1_router)
    app.include_router(v1_router, prefix="/api/v1")
    return app


app = create_app()
