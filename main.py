"""
Platform Connectors — application entry point.
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from config.settings import config
from connectors.routes import router as connectors_router
from connectors.services import ConnectorServices
from connectors.webhook_routes import router as webhooks_router
from database.session import async_session_factory

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "hpack"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app(services: Optional[ConnectorServices] = None, *, run_schedulers: bool = True) -> FastAPI:
    """
    Build the app.  Tests pass prebuilt ``services`` (fake clock, mock
    transport) and usually ``run_schedulers=False``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services or ConnectorServices(config, async_session_factory)
        app.state.services = svc
        if run_schedulers:
            svc.start()
        logger.info("Application ready to accept requests.")
        try:
            yield
        finally:
            await svc.aclose()

    app = FastAPI(
        title="Platform Connectors",
        version="1.0.0",
        description="OAuth2 connection and webhook lifecycle for commerce platforms.",
        lifespan=lifespan,
    )
    if services is not None:
        # Available even when the ASGI lifespan is not run (e.g. ASGITransport).
        app.state.services = services

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(connectors_router, prefix="/api/v1/connectors")
    app.include_router(webhooks_router, prefix="/api/v1")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
