"""FastAPI application for the codedrop signaling relay."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from .core.config import Settings, settings as default_settings
from .core.errors import SignalingError
from .routers import signaling as signaling_router
from .schemas.signaling import HealthResponse
from .services.rendezvous import RendezvousProtocol
from .services.session_store import SessionStore
from .services.signaling import SignalingHub, SignalingService

logger = logging.getLogger(__name__)


async def _sweep_forever(service: SignalingService, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await service.sweep()
        except Exception:  # noqa: BLE001 - keep the sweeper alive
            logger.exception("Session sweep failed")


def create_app(config: Settings | None = None) -> FastAPI:
    """Build the relay with its own session store, protocol and push hub."""

    config = config or default_settings

    store = SessionStore(
        max_age_seconds=config.session_max_age_seconds,
        resolved_ttl_seconds=config.resolved_session_ttl_seconds,
    )
    service = SignalingService(RendezvousProtocol(store), SignalingHub())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(_sweep_forever(service, config.sweep_interval_seconds))
        logger.info("Signaling relay started (%s)", config.app_env)
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            logger.info("Signaling relay stopped with %d live session(s)", len(store))

    app = FastAPI(title="codedrop signaling relay", version="0.1.0", lifespan=lifespan)
    app.state.settings = config
    app.state.store = store
    app.state.signaling = service

    if config.cors_allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.exception_handler(SignalingError)
    async def signaling_error_handler(_: Request, exc: SignalingError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.get("/api/health", response_model=HealthResponse, tags=["meta"])
    async def health() -> HealthResponse:
        """Liveness check with the number of live sessions."""

        return HealthResponse(status="ok", connections=len(store), timestamp=datetime.now(timezone.utc))

    @app.head("/api/health", tags=["meta"])
    async def health_head() -> Response:
        """Allow HEAD for uptime monitors that only need the status code."""

        return Response(status_code=200)

    @app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
    async def robots() -> PlainTextResponse:
        return PlainTextResponse("User-agent: *\nDisallow:")

    app.include_router(signaling_router.router, prefix="/api/signaling", tags=["signaling"])
    return app


app = create_app()
