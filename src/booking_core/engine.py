"""Booking lifecycle and availability engine.

Every mutation follows the same shape: read the booking to learn its
resource, take that resource's store lock, re-read, validate against the
state machine and the conflict query, write, release, then hand an event to
the sink. Validation failures raise before anything is written.
"""
from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime, tzinfo
from zoneinfo import ZoneInfo

from aws_lambda_powertools import Logger

from . import state_machine
from .config import Settings
from .errors import InvalidIntervalError, InvalidStateTransitionError, NotFoundError, ResourceUnavailableError
from .events import EventSink
from .intervals import as_utc
from .models import (
    AvailabilityCheck,
    AvailabilityWindow,
    Booking,
    BookingConflict,
    BookingCreate,
    BookingEvent,
    BookingFilter,
    BookingStatus,
    BookingUpdate,
    EventType,
    Resource,
    ResourceCreate,
    ResourceFilter,
    ResourceUpdate,
    WeeklySlot,
    WeeklySlotIn,
)
from .schedule import expand_availability
from .store import BookingStore, ResourceStore

logger = Logger()

Clock = Callable[[], datetime]

UPCOMING_LIMIT = 50


def utcnow() -> datetime:
    return datetime.now(UTC)


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year, month = moment.year + month_index // 12, month_index % 12 + 1
    # clamp to the last day of the target month
    for day in (moment.day, 30, 29, 28):
        try:
            return moment.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    raise ValueError(f"cannot add {months} months to {moment}")


class BookingEngine:
    def __init__(
        self,
        store: BookingStore,
        resources: ResourceStore,
        sink: EventSink,
        clock: Clock = utcnow,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._resources = resources
        self._sink = sink
        self._clock = clock
        self._settings = settings or Settings()
        tz_name = self._settings.schedule_timezone
        self._tz: tzinfo = UTC if tz_name == "UTC" else ZoneInfo(tz_name)

    def _now(self) -> datetime:
        return as_utc(self._clock())

    def create_booking(self, payload: BookingCreate) -> Booking:
        now = self._now()
        if payload.start_time >= payload.end_time:
            raise InvalidIntervalError("start_time must be before end_time")
        if payload.start_time < now:
            raise InvalidIntervalError("start_time is in the past")

        with self._store.locked(payload.resource_id):
            self._ensure_free(payload.resource_id, payload.start_time, payload.end_time)
            booking = Booking(
                booking_id="",
                user_id=payload.user_id,
                resource_id=payload.resource_id,
                start_time=payload.start_time,
                end_time=payload.end_time,
                status=BookingStatus.PENDING,
                notes=payload.notes,
                created_at=now,
                updated_at=now,
            )
            booking_id = self._store.create(booking)
            booking = booking.model_copy(update={"booking_id": booking_id})

        logger.info(
            "Booking created",
            extra={"booking_id": booking_id, "resource_id": booking.resource_id, "user_id": booking.user_id},
        )
        self._emit("booking.created", booking)
        return booking

    def get_booking(self, booking_id: str) -> Booking:
        return self._store.get_by_id(booking_id)

    def list_bookings(self, criteria: BookingFilter, page: int = 1, size: int = 0) -> list[Booking]:
        return self._store.list_by_filter(criteria, page, size)

    def upcoming_bookings(self, user_id: str) -> list[Booking]:
        """Confirmed bookings of a user starting after now, through one month ahead."""
        now = self._now()
        criteria = BookingFilter(
            user_id=user_id,
            status=BookingStatus.CONFIRMED,
            starts_after=now,
            end_date=_add_months(now, 1).date(),
        )
        return self._store.list_by_filter(criteria, 1, UPCOMING_LIMIT)

    def reschedule(self, booking_id: str, payload: BookingUpdate) -> Booking:
        resource_id = self._store.get_by_id(booking_id).resource_id
        with self._store.locked(resource_id):
            current = self._store.get_by_id(booking_id)
            state_machine.ensure_modifiable(current.status)

            changes: dict[str, object] = {}
            if payload.start_time is not None or payload.end_time is not None:
                start = payload.start_time or current.start_time
                end = payload.end_time or current.end_time
                if start >= end:
                    raise InvalidIntervalError("start_time must be before end_time")
                self._ensure_free(resource_id, start, end, exclude=booking_id)
                changes.update(start_time=start, end_time=end)
            if payload.notes is not None:
                changes["notes"] = payload.notes
            changes["updated_at"] = self._now()

            updated = current.model_copy(update=changes)
            self._store.update(updated)

        logger.info("Booking updated", extra={"booking_id": booking_id, "fields": sorted(changes)})
        self._emit("booking.updated", updated)
        return updated

    def cancel(self, booking_id: str) -> Booking:
        return self._transition(booking_id, BookingStatus.CANCELED, "booking.canceled")

    def confirm(self, booking_id: str) -> Booking:
        return self._transition(booking_id, BookingStatus.CONFIRMED, "booking.confirmed")

    def complete(self, booking_id: str) -> Booking:
        """Mark an elapsed booking Completed; meant for an external sweep."""
        return self._transition(booking_id, BookingStatus.COMPLETED, "booking.updated")

    def complete_elapsed(self) -> list[Booking]:
        """Complete every Confirmed booking that has ended by now.

        Ids are collected before any write so completing does not shift the
        pages being read. A booking canceled in between is skipped.
        """
        criteria = BookingFilter(status=BookingStatus.CONFIRMED, ends_by=self._now())
        due: list[str] = []
        page = 1
        while batch := self._store.list_by_filter(criteria, page, self._settings.max_page_size):
            due.extend(b.booking_id for b in batch)
            page += 1

        completed: list[Booking] = []
        for booking_id in due:
            try:
                completed.append(self.complete(booking_id))
            except (InvalidStateTransitionError, NotFoundError) as exc:
                logger.warning(
                    "Skipped booking in completion sweep", extra={"booking_id": booking_id, "error": str(exc)}
                )
        logger.info("Completion sweep finished", extra={"due": len(due), "completed": len(completed)})
        return completed

    def _transition(self, booking_id: str, target: BookingStatus, event_type: EventType) -> Booking:
        resource_id = self._store.get_by_id(booking_id).resource_id
        with self._store.locked(resource_id):
            current = self._store.get_by_id(booking_id)
            state_machine.ensure_transition(current.status, target)
            now = self._now()
            if target == BookingStatus.COMPLETED and current.end_time > now:
                raise InvalidIntervalError("Booking has not ended yet")

            changes: dict[str, object] = {"status": target, "updated_at": now}
            if target == BookingStatus.CANCELED:
                changes["canceled_at"] = now
            updated = current.model_copy(update=changes)
            self._store.update(updated)

        logger.info(
            "Booking status changed",
            extra={"booking_id": booking_id, "from": current.status.value, "to": target.value},
        )
        self._emit(event_type, updated)
        return updated

    def check_availability(self, resource_id: str, start: datetime, end: datetime) -> AvailabilityCheck:
        start, end = as_utc(start), as_utc(end)
        if start >= end:
            raise InvalidIntervalError("start_time must be before end_time")
        conflicts = self._store.find_conflicting(resource_id, start, end)
        return AvailabilityCheck(
            available=not conflicts,
            conflicts=[BookingConflict.from_booking(b) for b in conflicts],
        )

    def check_schedule_fit(self, resource_id: str, start: datetime, end: datetime) -> AvailabilityCheck:
        """Whether [start, end) lies inside one schedule window of the resource and is unbooked.

        Stricter than ``check_availability``: the interval must also sit
        within a single expanded weekly slot. Other bookings in the same slot
        do not matter as long as they do not overlap the interval itself.
        """
        start, end = as_utc(start), as_utc(end)
        if start >= end:
            raise InvalidIntervalError("start_time must be before end_time")
        self._active_resource(resource_id)
        slots = self._resources.get_slots(resource_id)
        day = start.astimezone(self._tz).date()
        fits = any(
            w.start <= start and end <= w.end
            for w in expand_availability(slots, day, day, tz=self._tz, max_days=self._settings.max_availability_days)
        )
        conflicts = self._store.find_conflicting(resource_id, start, end)
        return AvailabilityCheck(
            available=fits and not conflicts,
            conflicts=[BookingConflict.from_booking(b) for b in conflicts],
        )

    def get_resource_availability(self, resource_id: str, from_date: date, to_date: date) -> list[AvailabilityWindow]:
        """Expand the weekly schedule over [from_date, to_date] and mark booked windows.

        Granularity is the whole slot: a window overlapped by any non-canceled
        booking is booked, and carries the earliest such booking's id.
        """
        self._active_resource(resource_id)
        slots = self._resources.get_slots(resource_id)
        windows: list[AvailabilityWindow] = []
        for window in expand_availability(
            slots, from_date, to_date, tz=self._tz, max_days=self._settings.max_availability_days
        ):
            occupying = self._store.find_conflicting(resource_id, window.start, window.end)
            windows.append(
                AvailabilityWindow(
                    resource_id=resource_id,
                    date=window.date,
                    start_time=window.start,
                    end_time=window.end,
                    is_booked=bool(occupying),
                    booking_id=occupying[0].booking_id if occupying else None,
                )
            )
        return windows

    def set_weekly_schedule(self, resource_id: str, slots: Iterable[WeeklySlotIn]) -> list[WeeklySlot]:
        """Replace the resource's whole weekly template."""
        self._active_resource(resource_id)
        fresh = [
            WeeklySlot(
                resource_id=resource_id,
                day_of_week=s.day_of_week,
                start_time=s.start_time,
                end_time=s.end_time,
            )
            for s in slots
        ]
        self._resources.replace_slots(resource_id, fresh)
        return fresh

    def get_weekly_schedule(self, resource_id: str) -> list[WeeklySlot]:
        self._active_resource(resource_id)
        return self._resources.get_slots(resource_id)

    def create_resource(self, payload: ResourceCreate) -> Resource:
        now = self._now()
        resource = Resource(resource_id="", **payload.model_dump(), created_at=now, updated_at=now)
        resource_id = self._resources.create(resource)
        logger.info("Resource created", extra={"resource_id": resource_id, "type": resource.type.value})
        return resource.model_copy(update={"resource_id": resource_id})

    def get_resource(self, resource_id: str) -> Resource:
        return self._resources.get_by_id(resource_id)

    def list_resources(self, criteria: ResourceFilter, page: int = 1, size: int = 0) -> list[Resource]:
        """Active resources only."""
        return self._resources.list_by_filter(criteria, page, size)

    def update_resource(self, resource_id: str, payload: ResourceUpdate) -> Resource:
        current = self._resources.get_by_id(resource_id)
        changes: dict[str, object] = payload.model_dump(exclude_none=True)
        changes["updated_at"] = self._now()
        updated = current.model_copy(update=changes)
        self._resources.update(updated)
        logger.info("Resource updated", extra={"resource_id": resource_id, "fields": sorted(changes)})
        return updated

    def delete_resource(self, resource_id: str) -> Resource:
        """Soft delete: the resource turns inactive, keeps its schedule, and its bookings stay as they are."""
        current = self._active_resource(resource_id)
        deleted = current.model_copy(update={"is_active": False, "updated_at": self._now()})
        self._resources.update(deleted)
        logger.info("Resource deactivated", extra={"resource_id": resource_id})
        return deleted

    def _active_resource(self, resource_id: str) -> Resource:
        resource = self._resources.get_by_id(resource_id)
        if not resource.is_active:
            raise NotFoundError(f"Resource {resource_id} is inactive")
        return resource

    def _ensure_free(self, resource_id: str, start: datetime, end: datetime, exclude: str | None = None) -> None:
        conflicts = [
            b for b in self._store.find_conflicting(resource_id, start, end) if b.booking_id != exclude
        ]
        if conflicts:
            logger.info(
                "Booking conflict",
                extra={"resource_id": resource_id, "conflicts": [b.booking_id for b in conflicts]},
            )
            raise ResourceUnavailableError([BookingConflict.from_booking(b) for b in conflicts])

    def _emit(self, event_type: EventType, booking: Booking) -> None:
        event = BookingEvent(
            type=event_type,
            booking_id=booking.booking_id,
            user_id=booking.user_id,
            timestamp=self._now(),
            payload=booking,
        )
        try:
            self._sink.publish(event)
        except Exception:
            # the write is already committed; delivery is the sink's concern
            logger.exception(
                "Failed to hand off booking event",
                extra={"type": event_type, "booking_id": booking.booking_id},
            )
