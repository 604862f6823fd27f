"""
ParcelDesk web surface - FastAPI application.

The lifespan builds the DatabaseFacade (backend selection runs once
here), the RealtimeHub and the TicketDesk, and keeps them on app.state.
Route handlers reach them through request.app.state; nothing is global.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from parceldesk import __version__
from parceldesk.config import DeskSettings, get_settings
from parceldesk.db.facade import DatabaseFacade
from parceldesk.desk import TicketDesk
from parceldesk.realtime.hub import RealtimeHub
from parceldesk.realtime.tokens import TokenVerifier

logger = logging.getLogger(__name__)


def create_app(settings: DeskSettings | None = None, db: DatabaseFacade | None = None) -> FastAPI:
    """
    Create the FastAPI application.

    `db` may be an unstarted facade (tests inject one with custom factories);
    by default one is built from settings.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        facade = db or DatabaseFacade(settings)
        await facade.start()
        hub = RealtimeHub(
            facade,
            TokenVerifier(settings.jwt_secret, settings.jwt_algorithm),
            send_timeout_seconds=settings.realtime_send_timeout_seconds,
        )
        if settings.realtime_relay_backend_changes:
            await hub.relay_changes()

        app.state.settings = settings
        app.state.db = facade
        app.state.hub = hub
        app.state.desk = TicketDesk(facade, hub)
        logger.info(f"ParcelDesk started on the {facade.backend_kind} backend")
        try:
            yield
        finally:
            await hub.stop_relay()
            await hub.drain()
            await facade.close()

    app = FastAPI(title="ParcelDesk", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    async def health_check(request: Request):
        """Backend kind, backend health and live socket count."""
        facade: DatabaseFacade = request.app.state.db
        hub: RealtimeHub = request.app.state.hub
        healthy = await facade.health_check()
        return {
            "status": "healthy" if healthy else "degraded",
            "backend": facade.backend_kind,
            "cache": facade.cache_stats()["size"],
            "sessions": hub.session_count,
        }

    @app.websocket("/ws")
    async def realtime(websocket: WebSocket):
        hub: RealtimeHub = websocket.app.state.hub
        await hub.serve(websocket, handshake_timeout=settings.realtime_handshake_timeout_seconds)

    return app
