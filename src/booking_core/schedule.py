"""Expansion of weekly recurring availability into concrete calendar windows."""
from __future__ import annotations

from collections.abc import Iterable, Iterator
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import NamedTuple

from aws_lambda_powertools import Logger

from .errors import InvalidIntervalError
from .models import WeeklySlot

logger = Logger()

DEFAULT_MAX_DAYS = 366


class ScheduleWindow(NamedTuple):
    date: date
    start: datetime
    end: datetime


def sunday_based_weekday(day: date) -> int:
    """0 = Sunday ... 6 = Saturday, matching WeeklySlot.day_of_week."""
    return day.isoweekday() % 7


def parse_time_of_day(value: str) -> time:
    """Parse a 24-hour ``HH:MM`` string; raises ValueError on anything else."""
    hours, sep, minutes = value.partition(":")
    if not sep or len(hours) != 2 or len(minutes) != 2 or not (hours + minutes).isdigit():  # noqa: PLR2004
        raise ValueError(f"expected HH:MM, got {value!r}")
    return time(int(hours), int(minutes))


def _usable_slots(slots: Iterable[WeeklySlot]) -> list[tuple[WeeklySlot, time, time]]:
    usable: list[tuple[WeeklySlot, time, time]] = []
    for slot in slots:
        if not slot.is_active:
            continue
        try:
            start = parse_time_of_day(slot.start_time)
            end = parse_time_of_day(slot.end_time)
        except ValueError as exc:
            logger.warning(
                "Skipping malformed availability slot",
                extra={"resource_id": slot.resource_id, "day_of_week": slot.day_of_week, "error": str(exc)},
            )
            continue
        if start >= end:
            logger.warning(
                "Skipping availability slot that ends before it starts",
                extra={
                    "resource_id": slot.resource_id,
                    "day_of_week": slot.day_of_week,
                    "start_time": slot.start_time,
                    "end_time": slot.end_time,
                },
            )
            continue
        usable.append((slot, start, end))
    return usable


def check_date_range(from_date: date, to_date: date, max_days: int = DEFAULT_MAX_DAYS) -> None:
    if from_date > to_date:
        raise InvalidIntervalError("from_date must not be after to_date")
    days = (to_date - from_date).days + 1
    if days > max_days:
        raise InvalidIntervalError(f"date range spans {days} days; at most {max_days} allowed")


def expand_availability(
    slots: Iterable[WeeklySlot],
    from_date: date,
    to_date: date,
    tz: tzinfo = UTC,
    max_days: int = DEFAULT_MAX_DAYS,
) -> Iterator[ScheduleWindow]:
    """Yield one window per (date, matching active slot) over the inclusive range.

    Windows come out date first, then in slot order. Slots are expanded
    independently, so overlapping slots on one day produce overlapping windows.
    A slot with unparseable or inverted bounds is skipped with a warning and
    the rest of the expansion goes on.
    """
    # validated eagerly so a bad range fails at call time, not on first next()
    check_date_range(from_date, to_date, max_days)
    return _expand(_usable_slots(slots), from_date, to_date, tz)


def _expand(
    usable: list[tuple[WeeklySlot, time, time]], from_date: date, to_date: date, tz: tzinfo
) -> Iterator[ScheduleWindow]:
    day = from_date
    while day <= to_date:
        weekday = sunday_based_weekday(day)
        for slot, start, end in usable:
            if slot.day_of_week == weekday:
                yield ScheduleWindow(
                    date=day,
                    start=datetime.combine(day, start, tzinfo=tz),
                    end=datetime.combine(day, end, tzinfo=tz),
                )
        day += timedelta(days=1)
