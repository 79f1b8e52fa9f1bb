"""Tests for the FastAPI application factory, lifespan and error handling."""

from __future__ import annotations

import uuid

import httpx
import pytest
from fastapi import FastAPI

from medminder.api.app import create_app, lifespan
from medminder.reminders.service import ReminderService

pytestmark = pytest.mark.unit


@pytest.fixture
async def service(store, clock):
    svc = ReminderService(store, clock=clock)
    yield svc
    await svc.close()


def _client(app: FastAPI) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestCreateApp:
    def test_returns_fastapi_with_state(self, service, user_id):
        app = create_app(service, str(user_id))
        assert isinstance(app, FastAPI)
        assert app.state.service is service
        assert app.state.user_id == user_id

    def test_rejects_bad_user_id(self, service):
        with pytest.raises(ValueError):
            create_app(service, "nobody")

    def test_routes_registered(self, service, user_id):
        paths = {route.path for route in create_app(service, user_id).routes}
        assert {
            "/api/health",
            "/api/events",
            "/api/reminders/due",
            "/api/reminders/pending",
            "/api/reminders/{medication_id}/{reminder_time}/taken",
            "/api/reminders/{medication_id}/{reminder_time}/missed",
        } <= paths

    def test_cors_only_when_origins_given(self, service, user_id):
        def _has_cors(app: FastAPI) -> bool:
            return any(m.cls.__name__ == "CORSMiddleware" for m in app.user_middleware)

        assert not _has_cors(create_app(service, user_id))
        assert _has_cors(create_app(service, user_id, cors_origins=["http://localhost:5173"]))


class TestHealth:
    async def test_reports_running_state(self, service, user_id):
        app = create_app(service, user_id)
        async with _client(app) as client:
            resp = await client.get("/api/health")
            assert resp.json() == {"status": "ok", "running": False}

            await service.start(user_id)
            resp = await client.get("/api/health")
            assert resp.json() == {"status": "ok", "running": True}


class TestCorsPreflight:
    async def test_allowed_origin(self, service, user_id):
        app = create_app(service, user_id, cors_origins=["http://localhost:5173"])
        async with _client(app) as client:
            resp = await client.options(
                "/api/health",
                headers={
                    "Origin": "http://localhost:5173",
                    "Access-Control-Request-Method": "GET",
                },
            )
        assert resp.headers["access-control-allow-origin"] == "http://localhost:5173"


class TestErrors:
    async def test_value_error_maps_to_400(self, service, user_id):
        app = create_app(service, user_id)
        async with _client(app) as client:
            resp = await client.post(f"/api/reminders/{uuid.uuid4()}/8am/taken")
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"]["code"] == "VALIDATION_ERROR"
        assert "HH:MM" in body["error"]["message"]

    async def test_unhandled_error_maps_to_500(self, service, user_id, monkeypatch):
        async def _boom(*_args):
            raise RuntimeError("kaboom")

        monkeypatch.setattr(service, "mark_taken", _boom)
        app = create_app(service, user_id)
        async with _client(app) as client:
            resp = await client.post(f"/api/reminders/{uuid.uuid4()}/08:00/taken")
        assert resp.status_code == 500
        assert resp.json() == {
            "error": {"code": "INTERNAL_ERROR", "message": "Internal server error", "details": None}
        }


class TestLifespan:
    async def test_wires_refresh_callback_and_clears_on_exit(self, service, user_id):
        app = create_app(service, user_id)
        service.set_reminder_callback(app.state.event_bus.broadcast_reminder)

        async with lifespan(app):
            assert service.dispatcher.refresh_callback == app.state.event_bus.broadcast_refresh
            assert service.tracker.on_change == app.state.event_bus.broadcast_refresh

        assert service.dispatcher.refresh_callback is None
        assert service.tracker.on_change is None
        assert service.dispatcher.reminder_callback is None
