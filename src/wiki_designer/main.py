"""
Wiki Designer Application Entry Point

This module defines the FastAPI application instance, registers all routers,
configures global exception handling, and provides a test-friendly application
factory.

Design Goals
------------
- Process-wide services (the UI result rendezvous and the built-in tool
  server) are created once per app and exposed on `app.state`
- Centralized router registration
- Global exception safety net
- Test-friendly via create_app()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from .config import settings
from .core.errors import unhandled_exception_handler
from .db.session import async_engine, create_tables
from .rendezvous.registry import ResultRendezvous
from .tools.builtin_server import BuiltinToolServer

from .api import (
    auth_routes,
    chat_routes,
    health_routes,
    task_routes,
    ui_routes,
    wiki_routes,
)


logger = logging.getLogger("designer.app")


# ---------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info("Starting wiki-designer")

    try:
        await create_tables()
    except Exception:
        logger.exception("Could not create database tables; chats will not be persisted")

    rendezvous: ResultRendezvous = app.state.rendezvous
    rendezvous.start()

    yield

    logger.info("Shutting down wiki-designer")
    await rendezvous.stop()
    rendezvous.clear_all()
    await async_engine.dispose()


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    app = FastAPI(
        title="wiki-designer",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # --------------------------------------------------------------
    # Process-wide services
    # --------------------------------------------------------------

    rendezvous = ResultRendezvous(
        ttl=settings.ui_result_ttl,
        sweep_interval=settings.ui_result_sweep_interval,
    )
    app.state.rendezvous = rendezvous
    app.state.builtin_server = BuiltinToolServer(
        rendezvous,
        confirm_timeout=settings.edit_confirm_timeout,
    )

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(auth_routes.router)
    app.include_router(chat_routes.router)
    app.include_router(ui_routes.router)
    app.include_router(task_routes.router)
    app.include_router(wiki_routes.router)

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn/Gunicorn)
# ---------------------------------------------------------------------

app = create_app()
