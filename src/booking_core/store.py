"""Storage contracts for bookings and the resource catalog, plus in-process implementations.

Concurrency contract: ``BookingStore.locked(resource_id)`` is the per-resource
critical section. The engine holds it around "find conflicting bookings" and
the create/update that follows, so two writers on the same resource can never
both observe an empty conflict set. Plain reads (``get_by_id``,
``list_by_filter``) do not need it.
"""
from __future__ import annotations

import threading
import uuid
import weakref
from collections.abc import Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import UTC, datetime, time, timedelta
from typing import Protocol, TypeVar

from aws_lambda_powertools import Logger

from .errors import NotFoundError
from .intervals import overlaps
from .models import Booking, BookingFilter, BookingStatus, Resource, ResourceFilter, WeeklySlot

logger = Logger()

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

BOOKING_NOT_FOUND = "Booking not found"

T = TypeVar("T")


class BookingStore(Protocol):
    def create(self, booking: Booking) -> str: ...

    def get_by_id(self, booking_id: str) -> Booking: ...

    def update(self, booking: Booking) -> None: ...

    def find_conflicting(self, resource_id: str, start: datetime, end: datetime) -> list[Booking]: ...

    def list_by_filter(self, criteria: BookingFilter, page: int = 1, size: int = 0) -> list[Booking]: ...

    def locked(self, resource_id: str) -> AbstractContextManager[None]: ...


class ResourceStore(Protocol):
    """Resource catalog with each resource's weekly slots.

    ``get_by_id`` returns inactive resources too; ``list_by_filter`` does not.
    Slot operations raise ``NotFoundError`` for an unknown resource.
    """

    def create(self, resource: Resource) -> str: ...

    def get_by_id(self, resource_id: str) -> Resource: ...

    def update(self, resource: Resource) -> None: ...

    def list_by_filter(self, criteria: ResourceFilter, page: int = 1, size: int = 0) -> list[Resource]: ...

    def get_slots(self, resource_id: str) -> list[WeeklySlot]: ...

    def replace_slots(self, resource_id: str, slots: Iterable[WeeklySlot]) -> None: ...


def new_booking_id() -> str:
    return str(uuid.uuid4())


def resource_not_found(resource_id: str) -> NotFoundError:
    return NotFoundError(f"Resource {resource_id} not found")


def is_conflicting(booking: Booking, resource_id: str, start: datetime, end: datetime) -> bool:
    return (
        booking.resource_id == resource_id
        and booking.status != BookingStatus.CANCELED
        and overlaps(booking.start_time, booking.end_time, start, end)
    )


def matches_filter(booking: Booking, criteria: BookingFilter) -> bool:
    """Date bounds are whole UTC days: the booking must lie within [start_date, end_date]."""
    if criteria.user_id and booking.user_id != criteria.user_id:
        return False
    if criteria.resource_id and booking.resource_id != criteria.resource_id:
        return False
    if criteria.status and booking.status != criteria.status:
        return False
    if criteria.start_date and booking.start_time < datetime.combine(criteria.start_date, time.min, tzinfo=UTC):
        return False
    if criteria.end_date:
        day_after = datetime.combine(criteria.end_date + timedelta(days=1), time.min, tzinfo=UTC)
        if booking.end_time > day_after:
            return False
    if criteria.starts_after and booking.start_time <= criteria.starts_after:
        return False
    if criteria.ends_by and booking.end_time > criteria.ends_by:
        return False
    return True


def matches_resource_filter(resource: Resource, criteria: ResourceFilter) -> bool:
    if not resource.is_active:
        return False
    if criteria.type and resource.type != criteria.type:
        return False
    if criteria.location and criteria.location.lower() not in resource.location.lower():
        return False
    if criteria.min_capacity and resource.capacity < criteria.min_capacity:
        return False
    return True


def _booking_order(booking: Booking) -> tuple[datetime, str]:
    return booking.start_time, booking.booking_id


def cut_page(ordered: list[T], page: int, size: int, default_size: int, max_size: int) -> list[T]:
    """One 1-based page; size <= 0 means the default, and size is capped."""
    if size <= 0:
        size = default_size
    size = min(size, max_size)
    page = max(page, 1)
    offset = (page - 1) * size
    return ordered[offset : offset + size]


def paginate(
    bookings: Iterable[Booking],
    page: int,
    size: int,
    default_size: int = DEFAULT_PAGE_SIZE,
    max_size: int = MAX_PAGE_SIZE,
) -> list[Booking]:
    """Order by start time (then id) and cut one page out of the result."""
    return cut_page(sorted(bookings, key=_booking_order), page, size, default_size, max_size)


def paginate_resources(
    resources: Iterable[Resource],
    page: int,
    size: int,
    default_size: int = DEFAULT_PAGE_SIZE,
    max_size: int = MAX_PAGE_SIZE,
) -> list[Resource]:
    """Order by creation time (then id) and cut one page out of the result."""
    ordered = sorted(resources, key=lambda r: (r.created_at, r.resource_id))
    return cut_page(ordered, page, size, default_size, max_size)


class InMemoryBookingStore:
    def __init__(self, default_page_size: int = DEFAULT_PAGE_SIZE, max_page_size: int = MAX_PAGE_SIZE) -> None:
        self._bookings: dict[str, Booking] = {}
        self._mutex = threading.Lock()
        # a resource's lock lives only while some caller holds or waits on it
        self._resource_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def create(self, booking: Booking) -> str:
        booking_id = new_booking_id()
        with self._mutex:
            self._bookings[booking_id] = booking.model_copy(update={"booking_id": booking_id})
        return booking_id

    def get_by_id(self, booking_id: str) -> Booking:
        with self._mutex:
            booking = self._bookings.get(booking_id)
        if booking is None:
            raise NotFoundError(BOOKING_NOT_FOUND)
        return booking.model_copy()

    def update(self, booking: Booking) -> None:
        with self._mutex:
            if booking.booking_id not in self._bookings:
                raise NotFoundError(BOOKING_NOT_FOUND)
            self._bookings[booking.booking_id] = booking.model_copy()

    def find_conflicting(self, resource_id: str, start: datetime, end: datetime) -> list[Booking]:
        with self._mutex:
            found = [b.model_copy() for b in self._bookings.values() if is_conflicting(b, resource_id, start, end)]
        return sorted(found, key=_booking_order)

    def list_by_filter(self, criteria: BookingFilter, page: int = 1, size: int = 0) -> list[Booking]:
        with self._mutex:
            matched = [b.model_copy() for b in self._bookings.values() if matches_filter(b, criteria)]
        return paginate(matched, page, size, self._default_page_size, self._max_page_size)

    @contextmanager
    def locked(self, resource_id: str) -> Iterator[None]:
        with self._mutex:
            lock = self._resource_locks.get(resource_id)
            if lock is None:
                lock = threading.Lock()
                self._resource_locks[resource_id] = lock
        with lock:
            yield


class InMemoryResourceStore:
    def __init__(self, default_page_size: int = DEFAULT_PAGE_SIZE, max_page_size: int = MAX_PAGE_SIZE) -> None:
        self._resources: dict[str, Resource] = {}
        self._slots: dict[str, list[WeeklySlot]] = {}
        self._mutex = threading.Lock()
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def create(self, resource: Resource) -> str:
        resource_id = str(uuid.uuid4())
        with self._mutex:
            self._resources[resource_id] = resource.model_copy(update={"resource_id": resource_id})
            self._slots[resource_id] = []
        return resource_id

    def get_by_id(self, resource_id: str) -> Resource:
        with self._mutex:
            resource = self._resources.get(resource_id)
        if resource is None:
            raise resource_not_found(resource_id)
        return resource.model_copy(deep=True)

    def update(self, resource: Resource) -> None:
        with self._mutex:
            if resource.resource_id not in self._resources:
                raise resource_not_found(resource.resource_id)
            self._resources[resource.resource_id] = resource.model_copy(deep=True)

    def list_by_filter(self, criteria: ResourceFilter, page: int = 1, size: int = 0) -> list[Resource]:
        with self._mutex:
            matched = [
                r.model_copy(deep=True) for r in self._resources.values() if matches_resource_filter(r, criteria)
            ]
        return paginate_resources(matched, page, size, self._default_page_size, self._max_page_size)

    def get_slots(self, resource_id: str) -> list[WeeklySlot]:
        with self._mutex:
            slots = self._slots.get(resource_id)
        if slots is None:
            raise resource_not_found(resource_id)
        return [s.model_copy() for s in slots]

    def replace_slots(self, resource_id: str, slots: Iterable[WeeklySlot]) -> None:
        fresh = [s.model_copy(update={"resource_id": resource_id}) for s in slots]
        with self._mutex:
            if resource_id not in self._resources:
                raise resource_not_found(resource_id)
            self._slots[resource_id] = fresh
        logger.info("Replaced availability schedule", extra={"resource_id": resource_id, "slots": len(fresh)})
