from __future__ import annotations

from datetime import UTC, datetime

import pytest

from booking_core.engine import BookingEngine
from booking_core.models import BookingEvent, ResourceCreate, ResourceType
from booking_core.store import InMemoryBookingStore, InMemoryResourceStore

# a Sunday; 2030-01-07 is the following Monday
NOW = datetime(2030, 1, 6, 8, 0, tzinfo=UTC)


class FrozenClock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[BookingEvent] = []

    def publish(self, event: BookingEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.type for e in self.events]


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def store() -> InMemoryBookingStore:
    return InMemoryBookingStore()


@pytest.fixture()
def resources() -> InMemoryResourceStore:
    return InMemoryResourceStore()


@pytest.fixture()
def engine(
    store: InMemoryBookingStore, resources: InMemoryResourceStore, sink: RecordingSink, clock: FrozenClock
) -> BookingEngine:
    return BookingEngine(store, resources, sink, clock=clock)


def room_payload(**overrides: object) -> ResourceCreate:
    base: dict[str, object] = {"name": "Board room", "type": ResourceType.ROOM, "capacity": 8, "location": "HQ floor 3"}
    base.update(overrides)
    return ResourceCreate.model_validate(base)


@pytest.fixture()
def room(engine: BookingEngine) -> str:
    return engine.create_resource(room_payload()).resource_id
