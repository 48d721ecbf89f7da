"""FastAPI application factory.

Learn: App factory pattern — create_app() returns a configured FastAPI
instance. The lifespan owns the RelayRuntime: it starts the consumer pool,
sweeper and reconciler before serving, and on shutdown stops pulling,
nacks unfinished messages and closes every live session.

Run with:
    uvicorn jobrelay.main:app --port 8000
"""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from jobrelay import __version__
from jobrelay.api import api_router, metrics_router
from jobrelay.config import settings
from jobrelay.logging_config import configure_logging
from jobrelay.middleware.request_id import RequestIdMiddleware
from jobrelay.realtime.websocket import router as ws_router
from jobrelay.runtime import RelayRuntime

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle.

    Learn: Anything before `yield` runs at startup, after `yield` runs at
    shutdown. A runtime injected through create_app() is used as-is (tests);
    otherwise one is built from settings.
    """
    runtime: Optional[RelayRuntime] = getattr(app.state, "relay", None)
    if runtime is None:
        runtime = RelayRuntime.from_settings(settings)
        app.state.relay = runtime

    logger.info(
        "jobrelay.starting",
        version=__version__,
        environment=settings.environment,
        broker=runtime.broker.name,
    )
    await runtime.start()

    yield

    logger.info("jobrelay.shutdown")
    await runtime.stop()


def create_app(runtime: Optional[RelayRuntime] = None) -> FastAPI:
    """Build and return the FastAPI application."""
    app = FastAPI(
        title="JobRelay",
        description="Reliable delivery of job completion events to live client sessions",
        version=__version__,
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.relay = runtime

    # Request flow: RequestId → CORS → handler
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(api_router)
    app.include_router(metrics_router)
    app.include_router(ws_router)

    return app


configure_logging()

# Default app instance (used by uvicorn: jobrelay.main:app)
app = create_app()
