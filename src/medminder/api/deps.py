"""FastAPI dependencies: the reminder service and the session user."""

from __future__ import annotations

import uuid

from fastapi import Request

from medminder.reminders.service import ReminderService


def get_service(request: Request) -> ReminderService:
    return request.app.state.service


def get_user_id(request: Request) -> uuid.UUID:
    return request.app.state.user_id
