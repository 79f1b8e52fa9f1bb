"""Shared fakes and fixtures for the medminder test suite.

Test modules import the fakes directly, e.g.
``from tests.conftest import InMemoryReminderStore``.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

import pytest

from medminder.alerts.base import AlertSender
from medminder.notifications.base import PlatformNotifier
from medminder.reminders.models import (
    AdherenceRecord,
    AdherenceStatus,
    FamilyContact,
    Medication,
    OccurrenceKey,
    PendingResponse,
    Schedule,
    parse_time_of_day,
)
from medminder.reminders.store import ReminderStore

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

UTC = ZoneInfo("UTC")


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class FakeClock:
    """A settable clock; call it to read the current time."""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2026, 3, 10, 8, 0, 30, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, hour: int, minute: int, second: int = 0) -> datetime:
        self.now = self.now.replace(hour=hour, minute=minute, second=second, microsecond=0)
        return self.now


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class InMemoryReminderStore(ReminderStore):
    """A ``ReminderStore`` kept in dicts, with the same CAS upsert semantics.

    Add an operation name to ``fail_on`` to make that operation raise.
    Every call is appended to ``calls``.
    """

    def __init__(self) -> None:
        self.medications: dict[uuid.UUID, Medication] = {}
        self.schedules: list[Schedule] = []
        self.contacts: list[FamilyContact] = []
        self.records: dict[tuple[uuid.UUID, uuid.UUID, datetime], AdherenceRecord] = {}
        self.pending: dict[OccurrenceKey, PendingResponse] = {}
        self.fail_on: set[str] = set()
        self.calls: list[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"store failure: {name}")

    # -- test helpers -------------------------------------------------------

    def add_medication(
        self,
        user_id: uuid.UUID,
        name: str = "Aspirin",
        dosage: str = "100mg",
        *,
        times: Sequence[str] = (),
        instructions: str = "",
        active: bool = True,
    ) -> Medication:
        med = Medication(
            id=uuid.uuid4(),
            user_id=user_id,
            name=name,
            dosage=dosage,
            instructions=instructions,
            active=active,
        )
        self.medications[med.id] = med
        for at in times:
            self.add_schedule(med.id, at)
        return med

    def add_schedule(self, medication_id: uuid.UUID, at: str, *, active: bool = True) -> Schedule:
        schedule = Schedule(
            id=uuid.uuid4(),
            medication_id=medication_id,
            reminder_time=parse_time_of_day(at),
            active=active,
        )
        self.schedules.append(schedule)
        return schedule

    def add_contact(
        self, user_id: uuid.UUID, name: str, email: str | None, relationship: str | None = None
    ) -> FamilyContact:
        contact = FamilyContact(
            id=uuid.uuid4(), user_id=user_id, name=name, email=email, relationship=relationship
        )
        self.contacts.append(contact)
        return contact

    def put_record(self, record: AdherenceRecord) -> AdherenceRecord:
        if record.id is None:
            record.id = uuid.uuid4()
        self.records[(record.medication_id, record.user_id, record.scheduled_time)] = record
        return record

    def record_for(self, key: OccurrenceKey, tz=UTC) -> AdherenceRecord | None:
        return self.records.get((key.medication_id, key.user_id, key.scheduled_at(tz)))

    # -- ReminderStore --------------------------------------------------------

    async def list_active_schedules_at(self, time_of_day: time) -> list[Schedule]:
        self._call("list_active_schedules_at")
        return [s for s in self.schedules if s.active and s.reminder_time == time_of_day]

    async def list_active_medications_for_user(self, user_id: uuid.UUID) -> list[Medication]:
        self._call("list_active_medications_for_user")
        return [m for m in self.medications.values() if m.user_id == user_id and m.active]

    async def get_medication(self, medication_id: uuid.UUID) -> Medication | None:
        self._call("get_medication")
        return self.medications.get(medication_id)

    async def get_adherence_record(
        self, medication_id: uuid.UUID, user_id: uuid.UUID, scheduled_time: datetime
    ) -> AdherenceRecord | None:
        self._call("get_adherence_record")
        return self.records.get((medication_id, user_id, scheduled_time))

    async def upsert_adherence_record(
        self, record: AdherenceRecord, *, skip_if_completed: bool = False
    ) -> AdherenceRecord | None:
        self._call("upsert_adherence_record")
        key = (record.medication_id, record.user_id, record.scheduled_time)
        existing = self.records.get(key)
        if existing is not None and skip_if_completed and existing.status.user_authored:
            return None
        stored = AdherenceRecord(
            medication_id=record.medication_id,
            user_id=record.user_id,
            scheduled_time=record.scheduled_time,
            status=record.status,
            taken_at=record.taken_at,
            id=existing.id if existing is not None else uuid.uuid4(),
        )
        self.records[key] = stored
        return stored

    async def list_adherence_records_since(
        self,
        user_id: uuid.UUID,
        since: datetime,
        statuses: Sequence[AdherenceStatus],
    ) -> list[AdherenceRecord]:
        self._call("list_adherence_records_since")
        return sorted(
            (
                r
                for r in self.records.values()
                if r.user_id == user_id and r.scheduled_time >= since and r.status in statuses
            ),
            key=lambda r: r.scheduled_time,
        )

    async def list_family_contacts_with_email(self, user_id: uuid.UUID) -> list[FamilyContact]:
        self._call("list_family_contacts_with_email")
        return [c for c in self.contacts if c.user_id == user_id and c.email]

    async def save_pending_response(self, pending: PendingResponse) -> None:
        self._call("save_pending_response")
        self.pending[pending.key] = pending

    async def delete_pending_response(self, key: OccurrenceKey) -> None:
        self._call("delete_pending_response")
        self.pending.pop(key, None)

    async def list_pending_responses(self, user_id: uuid.UUID) -> list[PendingResponse]:
        self._call("list_pending_responses")
        return sorted(
            (p for p in self.pending.values() if p.key.user_id == user_id),
            key=lambda p: p.deadline,
        )


# ---------------------------------------------------------------------------
# Outbound channels
# ---------------------------------------------------------------------------


class RecordingNotifier(PlatformNotifier):
    """A notifier that records what it shows and dismisses."""

    def __init__(self, *, granted: bool = True, dismiss_after: float = 10.0) -> None:
        super().__init__(dismiss_after=dismiss_after)
        self.granted = granted
        self.permission_requests = 0
        self.shown: list[dict[str, Any]] = []
        self.dismissed: list[str] = []

    async def _request_permission(self) -> bool:
        self.permission_requests += 1
        return self.granted

    async def _show(self, title: str, body: str, tag: str) -> Any:
        self.shown.append({"title": title, "body": body, "tag": tag})
        return len(self.shown)

    async def _dismiss(self, tag: str, handle: Any) -> None:
        self.dismissed.append(tag)


class RecordingAlertSender(AlertSender):
    """An alert sender that records deliveries; recipients in ``fail_for`` raise."""

    def __init__(self) -> None:
        self.sent: list[dict[str, str]] = []
        self.fail_for: set[str] = set()

    async def _send(self, to: str, subject: str, message: str) -> None:
        if to in self.fail_for:
            raise RuntimeError(f"delivery to {to} failed")
        self.sent.append({"to": to, "subject": subject, "message": message})


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryReminderStore:
    return InMemoryReminderStore()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def alert_sender() -> RecordingAlertSender:
    return RecordingAlertSender()


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each ``provisioned_postgres_pool`` usage creates a new database with a
    random name, so rows never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database with the reminder schema for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from medminder.db import Database
    from medminder.reminders.store import ensure_schema

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            await ensure_schema(pool)
            yield pool
        finally:
            await db.close()

    return _provision
