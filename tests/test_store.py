from __future__ import annotations

import gc
import threading
from datetime import UTC, date, datetime, timedelta
from typing import Any

import pytest

from booking_core.errors import NotFoundError
from booking_core.models import (
    Booking,
    BookingFilter,
    BookingStatus,
    Resource,
    ResourceFilter,
    ResourceType,
    WeeklySlot,
)
from booking_core.store import (
    InMemoryBookingStore,
    InMemoryResourceStore,
    matches_filter,
    matches_resource_filter,
    paginate,
)

BASE = datetime(2030, 1, 7, 10, 0, tzinfo=UTC)


def booking_factory(**overrides: Any) -> Booking:
    base: dict[str, Any] = dict(
        booking_id="",
        user_id="u-1",
        resource_id="r-1",
        start_time=BASE,
        end_time=BASE + timedelta(hours=1),
        status=BookingStatus.PENDING,
        created_at=BASE - timedelta(days=1),
        updated_at=BASE - timedelta(days=1),
    )
    base.update(overrides)
    return Booking(**base)


def test_create_assigns_fresh_ids(store: InMemoryBookingStore) -> None:
    first = store.create(booking_factory())
    second = store.create(booking_factory())
    assert first and second and first != second
    assert store.get_by_id(first).booking_id == first


def test_get_missing_raises_not_found(store: InMemoryBookingStore) -> None:
    with pytest.raises(NotFoundError):
        store.get_by_id("does-not-exist")


def test_update_missing_raises_not_found(store: InMemoryBookingStore) -> None:
    with pytest.raises(NotFoundError):
        store.update(booking_factory(booking_id="ghost"))


def test_returned_bookings_are_copies(store: InMemoryBookingStore) -> None:
    booking_id = store.create(booking_factory())
    fetched = store.get_by_id(booking_id)
    fetched.notes = "changed locally"
    assert store.get_by_id(booking_id).notes == ""


def test_update_replaces_whole_record(store: InMemoryBookingStore) -> None:
    booking_id = store.create(booking_factory(notes="old"))
    current = store.get_by_id(booking_id)
    store.update(current.model_copy(update={"notes": "new", "status": BookingStatus.CONFIRMED}))
    stored = store.get_by_id(booking_id)
    assert (stored.notes, stored.status) == ("new", BookingStatus.CONFIRMED)


def test_find_conflicting_skips_canceled_other_resources_and_adjacent(store: InMemoryBookingStore) -> None:
    hit = store.create(booking_factory())
    store.create(booking_factory(status=BookingStatus.CANCELED))
    store.create(booking_factory(resource_id="r-2"))
    store.create(booking_factory(start_time=BASE + timedelta(hours=1), end_time=BASE + timedelta(hours=2)))

    found = store.find_conflicting("r-1", BASE + timedelta(minutes=30), BASE + timedelta(hours=1))
    assert [b.booking_id for b in found] == [hit]


def test_find_conflicting_counts_completed_and_confirmed(store: InMemoryBookingStore) -> None:
    store.create(booking_factory(status=BookingStatus.COMPLETED))
    store.create(booking_factory(status=BookingStatus.CONFIRMED))
    assert len(store.find_conflicting("r-1", BASE, BASE + timedelta(hours=1))) == 2  # noqa: PLR2004


def test_list_by_filter_and_pagination(store: InMemoryBookingStore) -> None:
    ids = [
        store.create(
            booking_factory(start_time=BASE + timedelta(hours=h), end_time=BASE + timedelta(hours=h, minutes=30))
        )
        for h in range(5)
    ]
    store.create(booking_factory(user_id="u-2"))

    mine = BookingFilter(user_id="u-1")
    assert [b.booking_id for b in store.list_by_filter(mine, page=1, size=2)] == ids[:2]
    assert [b.booking_id for b in store.list_by_filter(mine, page=3, size=2)] == ids[4:]
    assert store.list_by_filter(mine, page=4, size=2) == []


def test_page_size_defaults_and_caps() -> None:
    items = [booking_factory(booking_id=f"b{i:03d}") for i in range(150)]
    assert len(paginate(items, page=1, size=0)) == 20  # noqa: PLR2004
    assert len(paginate(items, page=1, size=-5)) == 20  # noqa: PLR2004
    assert len(paginate(items, page=1, size=500)) == 100  # noqa: PLR2004
    assert paginate(items, page=0, size=1)[0].booking_id == "b000"


def test_date_filter_is_inclusive_of_whole_end_day() -> None:
    eleven_pm = datetime(2030, 1, 7, 23, 0, tzinfo=UTC)
    late = booking_factory(start_time=eleven_pm, end_time=eleven_pm + timedelta(hours=1))
    spills = booking_factory(start_time=eleven_pm, end_time=eleven_pm + timedelta(minutes=90))
    criteria = BookingFilter(start_date=date(2030, 1, 7), end_date=date(2030, 1, 7))

    assert matches_filter(late, criteria)
    assert not matches_filter(spills, criteria)
    assert not matches_filter(late, BookingFilter(start_date=date(2030, 1, 8)))


def test_status_filter(store: InMemoryBookingStore) -> None:
    store.create(booking_factory())
    confirmed = store.create(booking_factory(status=BookingStatus.CONFIRMED))
    found = store.list_by_filter(BookingFilter(status=BookingStatus.CONFIRMED))
    assert [b.booking_id for b in found] == [confirmed]


def test_locked_serializes_per_resource(store: InMemoryBookingStore) -> None:
    entered = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def holder() -> None:
        with store.locked("r-1"):
            entered.set()
            release.wait(timeout=5)
            order.append("holder")

    def waiter() -> None:
        with store.locked("r-1"):
            order.append("waiter")

    t1 = threading.Thread(target=holder)
    t1.start()
    assert entered.wait(timeout=5)
    t2 = threading.Thread(target=waiter)
    t2.start()

    # another resource is not blocked
    with store.locked("r-2"):
        order.append("other")

    release.set()
    t1.join(timeout=5)
    t2.join(timeout=5)
    assert order == ["other", "holder", "waiter"]


def test_resource_locks_are_dropped_once_released(store: InMemoryBookingStore) -> None:
    with store.locked("r-1"):
        assert "r-1" in store._resource_locks
    gc.collect()
    assert "r-1" not in store._resource_locks
    assert len(store._resource_locks) == 0


def test_starts_after_and_ends_by_are_exact_instants() -> None:
    booking = booking_factory()

    assert matches_filter(booking, BookingFilter(starts_after=BASE - timedelta(seconds=1)))
    assert not matches_filter(booking, BookingFilter(starts_after=BASE))
    assert matches_filter(booking, BookingFilter(ends_by=BASE + timedelta(hours=1)))
    assert not matches_filter(booking, BookingFilter(ends_by=BASE + timedelta(minutes=59)))


def resource_factory(**overrides: Any) -> Resource:
    base: dict[str, Any] = dict(
        resource_id="",
        name="Board room",
        type=ResourceType.ROOM,
        capacity=8,
        location="HQ",
        created_at=BASE,
        updated_at=BASE,
    )
    base.update(overrides)
    return Resource(**base)


def test_resource_store_create_get_update(resources: InMemoryResourceStore) -> None:
    resource_id = resources.create(resource_factory(properties={"projector": "yes"}))
    stored = resources.get_by_id(resource_id)
    assert stored.resource_id == resource_id

    # returned copies are detached from the store
    stored.properties["projector"] = "no"
    assert resources.get_by_id(resource_id).properties == {"projector": "yes"}

    resources.update(stored.model_copy(update={"is_active": False}))
    assert not resources.get_by_id(resource_id).is_active
    assert resources.list_by_filter(ResourceFilter()) == []

    with pytest.raises(NotFoundError):
        resources.update(resource_factory(resource_id="ghost"))
    with pytest.raises(NotFoundError):
        resources.get_by_id("ghost")


def test_resource_filter_rules() -> None:
    van = resource_factory(type=ResourceType.VEHICLE, capacity=3, location="North Garage")

    assert matches_resource_filter(van, ResourceFilter(location="garage"))
    assert matches_resource_filter(van, ResourceFilter(type=ResourceType.VEHICLE, min_capacity=3))
    assert not matches_resource_filter(van, ResourceFilter(min_capacity=4))
    assert not matches_resource_filter(van, ResourceFilter(type=ResourceType.ROOM))
    assert not matches_resource_filter(van.model_copy(update={"is_active": False}), ResourceFilter())


def test_schedule_store_clear_and_replace(resources: InMemoryResourceStore) -> None:
    resource_id = resources.create(resource_factory())
    assert resources.get_slots(resource_id) == []

    resources.replace_slots(
        resource_id, [WeeklySlot(resource_id="x", day_of_week=1, start_time="09:00", end_time="17:00")]
    )
    resources.replace_slots(
        resource_id, [WeeklySlot(resource_id="x", day_of_week=2, start_time="10:00", end_time="12:00")]
    )
    slots = resources.get_slots(resource_id)
    assert [(s.resource_id, s.day_of_week) for s in slots] == [(resource_id, 2)]


def test_schedule_store_unknown_resource(resources: InMemoryResourceStore) -> None:
    with pytest.raises(NotFoundError):
        resources.get_slots("nope")
    with pytest.raises(NotFoundError):
        resources.replace_slots("nope", [])
