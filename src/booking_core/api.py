from datetime import date, datetime
from functools import lru_cache
from http import HTTPStatus
from typing import Annotated

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.metrics import Metrics, MetricUnit
from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from booking_core.config import Settings, get_settings
from booking_core.dynamo_store import DynamoBookingStore, DynamoResourceStore
from booking_core.engine import BookingEngine
from booking_core.errors import (
    BackendError,
    BookingError,
    BookingNotModifiableError,
    InvalidIntervalError,
    InvalidStateTransitionError,
    NotFoundError,
    ResourceUnavailableError,
)
from booking_core.events import EventBridgeSink, EventSink, LoggingEventSink
from booking_core.models import (
    AvailabilityCheck,
    AvailabilityCheckRequest,
    AvailabilityWindow,
    Booking,
    BookingCreate,
    BookingFilter,
    BookingStatus,
    BookingUpdate,
    Resource,
    ResourceCreate,
    ResourceFilter,
    ResourceType,
    ResourceUpdate,
    WeeklySlot,
    WeeklySlotIn,
)
from booking_core.store import BookingStore, InMemoryBookingStore, InMemoryResourceStore, ResourceStore

logger = Logger()
tracer = Tracer()
metrics = Metrics(namespace="BookingCore")

app = FastAPI(title="Booking Core API", version="0.1.0")

ERROR_STATUS: dict[type[BookingError], HTTPStatus] = {
    InvalidIntervalError: HTTPStatus.BAD_REQUEST,
    ResourceUnavailableError: HTTPStatus.CONFLICT,
    NotFoundError: HTTPStatus.NOT_FOUND,
    BookingNotModifiableError: HTTPStatus.CONFLICT,
    InvalidStateTransitionError: HTTPStatus.CONFLICT,
    BackendError: HTTPStatus.SERVICE_UNAVAILABLE,
}


def build_engine(settings: Settings) -> BookingEngine:
    store: BookingStore
    resources: ResourceStore
    if settings.backend == "dynamodb":
        store = DynamoBookingStore(
            table_name=settings.table_name,
            lock_timeout_seconds=settings.lock_timeout_seconds,
            lock_lease_seconds=settings.lock_lease_seconds,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
        )
        resources = DynamoResourceStore(
            table_name=settings.resources_table_name,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
        )
    else:
        store = InMemoryBookingStore(settings.default_page_size, settings.max_page_size)
        resources = InMemoryResourceStore(settings.default_page_size, settings.max_page_size)
    sink: EventSink = (
        EventBridgeSink(settings.event_bus_name, settings.event_source)
        if settings.event_bus_name
        else LoggingEventSink()
    )
    logger.info("Booking engine configured", extra={"backend": settings.backend, "events": type(sink).__name__})
    return BookingEngine(store, resources, sink, settings=settings)


@lru_cache(maxsize=1)
def get_engine() -> BookingEngine:
    return build_engine(get_settings())


EngineDep = Annotated[BookingEngine, Depends(get_engine)]


@app.exception_handler(BookingError)
def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    status = ERROR_STATUS.get(type(exc), HTTPStatus.INTERNAL_SERVER_ERROR)
    body: dict[str, object] = {"code": exc.code, "detail": str(exc)}
    if isinstance(exc, ResourceUnavailableError):
        metrics.add_metric(name="BookingConflict", value=1, unit=MetricUnit.Count)
        body["conflicts"] = [c.model_dump(mode="json") for c in exc.conflicts]
    if isinstance(exc, BackendError):
        logger.error("Backend failure", extra={"path": request.url.path, "error": str(exc)})
    return JSONResponse(status_code=status, content=body)


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/bookings", response_model=Booking, status_code=201)
@tracer.capture_method
def create_booking(payload: BookingCreate, engine: EngineDep) -> Booking:
    metrics.add_metric(name="CreateBooking", value=1, unit=MetricUnit.Count)
    return engine.create_booking(payload)


@app.get("/bookings", response_model=list[Booking])
@tracer.capture_method
def list_bookings(
    engine: EngineDep,
    user_id: str | None = None,
    resource_id: str | None = None,
    status: BookingStatus | None = None,
    start_date: date | None = None,
    end_date: date | None = None,
    page: int = 1,
    size: int = 0,
) -> list[Booking]:
    criteria = BookingFilter(
        user_id=user_id, resource_id=resource_id, status=status, start_date=start_date, end_date=end_date
    )
    return engine.list_bookings(criteria, page, size)


@app.get("/bookings/{booking_id}", response_model=Booking)
@tracer.capture_method
def get_booking(booking_id: str, engine: EngineDep) -> Booking:
    return engine.get_booking(booking_id)


@app.put("/bookings/{booking_id}", response_model=Booking)
@tracer.capture_method
def update_booking(booking_id: str, payload: BookingUpdate, engine: EngineDep) -> Booking:
    return engine.reschedule(booking_id, payload)


@app.post("/bookings/{booking_id}/confirm", response_model=Booking)
@tracer.capture_method
def confirm_booking(booking_id: str, engine: EngineDep) -> Booking:
    return engine.confirm(booking_id)


@app.post("/bookings/{booking_id}/cancel", response_model=Booking)
@tracer.capture_method
def cancel_booking(booking_id: str, engine: EngineDep) -> Booking:
    return engine.cancel(booking_id)


@app.get("/users/{user_id}/bookings/upcoming", response_model=list[Booking])
@tracer.capture_method
def upcoming_bookings(user_id: str, engine: EngineDep) -> list[Booking]:
    return engine.upcoming_bookings(user_id)


@app.post("/availability/check", response_model=AvailabilityCheck)
@tracer.capture_method
def check_availability(payload: AvailabilityCheckRequest, engine: EngineDep) -> AvailabilityCheck:
    return engine.check_availability(payload.resource_id, payload.start_time, payload.end_time)


@app.get("/resources/{resource_id}/availability", response_model=list[AvailabilityWindow])
@tracer.capture_method
def resource_availability(
    resource_id: str,
    engine: EngineDep,
    from_date: Annotated[date, Query()],
    to_date: Annotated[date, Query()],
) -> list[AvailabilityWindow]:
    return engine.get_resource_availability(resource_id, from_date, to_date)


@app.get("/resources/{resource_id}/schedule", response_model=list[WeeklySlot])
@tracer.capture_method
def get_schedule(resource_id: str, engine: EngineDep) -> list[WeeklySlot]:
    return engine.get_weekly_schedule(resource_id)


@app.put("/resources/{resource_id}/schedule", response_model=list[WeeklySlot])
@tracer.capture_method
def replace_schedule(resource_id: str, slots: list[WeeklySlotIn], engine: EngineDep) -> list[WeeklySlot]:
    return engine.set_weekly_schedule(resource_id, slots)


@app.get("/resources/{resource_id}/schedule/fit", response_model=AvailabilityCheck)
@tracer.capture_method
def schedule_fit(
    resource_id: str,
    engine: EngineDep,
    start_time: Annotated[datetime, Query()],
    end_time: Annotated[datetime, Query()],
) -> AvailabilityCheck:
    return engine.check_schedule_fit(resource_id, start_time, end_time)


@app.post("/resources", response_model=Resource, status_code=201)
@tracer.capture_method
def create_resource(payload: ResourceCreate, engine: EngineDep) -> Resource:
    metrics.add_metric(name="CreateResource", value=1, unit=MetricUnit.Count)
    return engine.create_resource(payload)


@app.get("/resources", response_model=list[Resource])
@tracer.capture_method
def list_resources(
    engine: EngineDep,
    resource_type: Annotated[ResourceType | None, Query(alias="type")] = None,
    location: str | None = None,
    min_capacity: Annotated[int | None, Query(ge=1)] = None,
    page: int = 1,
    size: int = 0,
) -> list[Resource]:
    criteria = ResourceFilter(type=resource_type, location=location, min_capacity=min_capacity)
    return engine.list_resources(criteria, page, size)


@app.get("/resources/{resource_id}", response_model=Resource)
@tracer.capture_method
def get_resource(resource_id: str, engine: EngineDep) -> Resource:
    return engine.get_resource(resource_id)


@app.put("/resources/{resource_id}", response_model=Resource)
@tracer.capture_method
def update_resource(resource_id: str, payload: ResourceUpdate, engine: EngineDep) -> Resource:
    return engine.update_resource(resource_id, payload)


@app.delete("/resources/{resource_id}", response_model=Resource)
@tracer.capture_method
def delete_resource(resource_id: str, engine: EngineDep) -> Resource:
    return engine.delete_resource(resource_id)
