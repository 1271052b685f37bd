from __future__ import annotations

from typing import Any, Protocol

import boto3
from aws_lambda_powertools import Logger

from .models import BookingEvent

logger = Logger()


class EventSink(Protocol):
    def publish(self, event: BookingEvent) -> None: ...


class EventBridgeSink:
    """Hands booking events to an EventBridge bus; delivery is EventBridge's job."""

    def __init__(self, bus_name: str, source: str = "booking.core", client: Any | None = None) -> None:
        self._bus_name = bus_name
        self._source = source
        self._events = client if client is not None else boto3.client("events")

    def publish(self, event: BookingEvent) -> None:
        logger.info("Emitting booking event", extra={"type": event.type, "booking_id": event.booking_id})
        resp = self._events.put_events(
            Entries=[
                {
                    "Source": self._source,
                    "DetailType": event.type,
                    "Detail": event.model_dump_json(),
                    "EventBusName": self._bus_name,
                }
            ]
        )
        if isinstance(resp, dict) and resp.get("FailedEntryCount"):
            logger.error("EventBridge rejected booking event", extra={"type": event.type, "response": resp})


class LoggingEventSink:
    def publish(self, event: BookingEvent) -> None:
        logger.info(
            "Booking event",
            extra={"type": event.type, "booking_id": event.booking_id, "user_id": event.user_id},
        )
