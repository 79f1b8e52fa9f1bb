"""Reminder API: FastAPI application factory.

The app is bound to one running ``ReminderService`` and one user:
- CORS middleware (configurable origins)
- Health endpoint at GET /api/health
- Reminder endpoints under /api/reminders
- Live events at GET /api/events
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medminder import __version__
from medminder.api.middleware import register_error_handlers
from medminder.api.routers import sse
from medminder.api.routers.reminders import router as reminders_router
from medminder.reminders.models import require_user_id
from medminder.reminders.service import ReminderService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Point the service's refresh callback at the event bus while serving."""
    service: ReminderService = app.state.service
    bus: sse.EventBus = app.state.event_bus
    service.set_refresh_callback(bus.broadcast_refresh)
    yield
    bus.shutdown()
    service.set_refresh_callback(None)
    service.set_reminder_callback(None)


def create_app(
    service: ReminderService,
    user_id: uuid.UUID | str,
    cors_origins: list[str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service:
        The reminder service the endpoints act on. Starting and stopping it
        is the caller's job.
    user_id:
        The user whose reminders this app serves.
    cors_origins:
        Allowed CORS origins. Defaults to none.
    """
    app = FastAPI(
        title="Medminder Reminder API",
        version=__version__,
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False
    app.state.service = service
    app.state.user_id = require_user_id(user_id)
    app.state.event_bus = sse.EventBus()

    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    register_error_handlers(app)

    app.include_router(reminders_router)
    app.include_router(sse.router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "running": service.is_running}

    return app
