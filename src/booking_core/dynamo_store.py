from __future__ import annotations

import threading
import time
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypedDict, cast

import boto3
from aws_lambda_powertools import Logger
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    # Only for static type checking; not imported at runtime
    from mypy_boto3_dynamodb.service_resource import Table as DynamoDBTable
else:
    DynamoDBTable = Any  # type: ignore[assignment]

from .errors import BackendError, NotFoundError
from .intervals import as_utc
from .models import Booking, BookingFilter, BookingStatus, Resource, ResourceFilter, ResourceType, WeeklySlot
from .store import (
    BOOKING_NOT_FOUND,
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    is_conflicting,
    matches_filter,
    matches_resource_filter,
    new_booking_id,
    paginate,
    paginate_resources,
    resource_not_found,
)

logger = Logger()

RESOURCE_INDEX = "resource_id_index"
USER_INDEX = "user_id_index"
LOCK_PREFIX = "lock#"
BOOKING_SET_PREFIX = "bookings#"

CREATE_CONDITION = "attribute_not_exists(booking_id)"
UPDATE_CONDITION = "attribute_exists(booking_id)"
LOCK_ACQUIRE_CONDITION = "attribute_not_exists(booking_id) OR expires_at < :now"
LOCK_HELD_CONDITION = "lock_owner = :owner"
BOOKING_SET_ADD = "ADD booking_ids :ids"
BOOKING_SET_DELETE = "DELETE booking_ids :ids"

RESOURCE_CREATE_CONDITION = "attribute_not_exists(resource_id)"
RESOURCE_UPDATE_CONDITION = "attribute_exists(resource_id)"

BATCH_GET_LIMIT = 100

_CONDITION_FAILED = "ConditionalCheckFailedException"
_TRANSACTION_CANCELED = "TransactionCanceledException"

_serializer = TypeSerializer()
_deserializer = TypeDeserializer()


class BookingItem(TypedDict, total=False):
    booking_id: str
    user_id: str
    resource_id: str
    start_time: str
    end_time: str
    status: str
    notes: str
    created_at: str
    updated_at: str
    canceled_at: str


def _dt_to_iso(dt: datetime) -> str:
    return as_utc(dt).isoformat()


def _iso_to_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


def _is_condition_failure(exc: ClientError) -> bool:
    return exc.response.get("Error", {}).get("Code") == _CONDITION_FAILED


def _failed_actions(exc: ClientError) -> set[int]:
    """Positions of the transaction actions whose condition did not hold."""
    if exc.response.get("Error", {}).get("Code") != _TRANSACTION_CANCELED:
        return set()
    reasons = cast(list[dict[str, Any]], exc.response.get("CancellationReasons", []))
    return {i for i, reason in enumerate(reasons) if reason.get("Code") == "ConditionalCheckFailed"}


def _serialize(values: dict[str, Any]) -> dict[str, Any]:
    return {k: _serializer.serialize(v) for k, v in values.items()}


def _deserialize(raw: dict[str, Any]) -> dict[str, Any]:
    return {k: _deserializer.deserialize(v) for k, v in raw.items()}


def _set_expression(fields: dict[str, Any]) -> dict[str, Any]:
    # placeholders for every name: "name", "type" and "location" are reserved words
    names = {f"#f{i}": name for i, name in enumerate(fields)}
    values = {f":f{i}": value for i, value in enumerate(fields.values())}
    return {
        "UpdateExpression": "SET " + ", ".join(f"#f{i} = :f{i}" for i in range(len(fields))),
        "ExpressionAttributeNames": names,
        "ExpressionAttributeValues": values,
    }


@contextmanager
def _backend_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except ClientError as exc:
        logger.error("DynamoDB call failed", extra={"operation": operation, "error": str(exc)})
        raise BackendError(f"{operation} failed: {exc}") from exc


def _to_item(booking: Booking) -> BookingItem:
    item: BookingItem = {
        "booking_id": booking.booking_id,
        "user_id": booking.user_id,
        "resource_id": booking.resource_id,
        "start_time": _dt_to_iso(booking.start_time),
        "end_time": _dt_to_iso(booking.end_time),
        "status": booking.status.value,
        "notes": booking.notes,
        "created_at": _dt_to_iso(booking.created_at),
        "updated_at": _dt_to_iso(booking.updated_at),
    }
    if booking.canceled_at is not None:
        item["canceled_at"] = _dt_to_iso(booking.canceled_at)
    return item


def _to_model(item: BookingItem) -> Booking:
    canceled_at = item.get("canceled_at")
    return Booking(
        booking_id=item["booking_id"],
        user_id=item["user_id"],
        resource_id=item["resource_id"],
        start_time=_iso_to_dt(item["start_time"]),
        end_time=_iso_to_dt(item["end_time"]),
        status=BookingStatus(item.get("status", BookingStatus.PENDING)),
        notes=item.get("notes", ""),
        created_at=_iso_to_dt(item["created_at"]),
        updated_at=_iso_to_dt(item["updated_at"]),
        canceled_at=_iso_to_dt(canceled_at) if canceled_at else None,
    )


def _is_booking_key(key: str) -> bool:
    # lock and booking-set items share the table; booking ids are UUIDs
    return "#" not in key


class DynamoBookingStore:
    """Booking store over a DynamoDB table keyed by ``booking_id``.

    Besides the bookings themselves the table holds two kinds of helper items
    per resource:

    * ``lock#<resource_id>``, a lease claimed with a conditional put, so the
      critical section holds across Lambda instances, not just threads;
    * ``bookings#<resource_id>``, the set of that resource's live booking ids.

    The conflict query reads only the base table with ``ConsistentRead``: the
    booking set first, then the bookings it names. The ``resource_id_index``
    and ``user_id_index`` global secondary indexes lag writes and serve
    listings only. Every write made while holding a resource's lease is a
    transaction that also checks the lease is still ours.
    """

    def __init__(
        self,
        table: DynamoDBTable | None = None,
        table_name: str = "bookings",
        lock_timeout_seconds: float = 5.0,
        lock_lease_seconds: int = 30,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._table: DynamoDBTable = table if table is not None else boto3.resource("dynamodb").Table(table_name)
        self._lock_timeout = lock_timeout_seconds
        self._lock_lease = lock_lease_seconds
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size
        self._held = threading.local()

    def create(self, booking: Booking) -> str:
        booking_id = new_booking_id()
        item = _to_item(booking.model_copy(update={"booking_id": booking_id}))
        logger.info("Creating booking", extra={"booking_id": booking_id, "resource_id": booking.resource_id})
        self._transact(
            "create",
            booking.resource_id,
            [
                {"Put": {"Item": _serialize(dict(item)), "ConditionExpression": CREATE_CONDITION}},
                self._booking_set_change(BOOKING_SET_ADD, booking.resource_id, booking_id),
            ],
        )
        return booking_id

    def get_by_id(self, booking_id: str) -> Booking:
        if not _is_booking_key(booking_id):
            raise NotFoundError(BOOKING_NOT_FOUND)
        with _backend_errors("get_by_id"):
            resp = cast(dict[str, Any], self._table.get_item(Key={"booking_id": booking_id}))
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise NotFoundError(BOOKING_NOT_FOUND)
        return _to_model(cast(BookingItem, item))

    def update(self, booking: Booking) -> None:
        actions = [{"Put": {"Item": _serialize(dict(_to_item(booking))), "ConditionExpression": UPDATE_CONDITION}}]
        if booking.status == BookingStatus.CANCELED:
            # canceled bookings never conflict again
            actions.append(self._booking_set_change(BOOKING_SET_DELETE, booking.resource_id, booking.booking_id))
        self._transact("update", booking.resource_id, actions, missing=NotFoundError(BOOKING_NOT_FOUND))

    def find_conflicting(self, resource_id: str, start: datetime, end: datetime) -> list[Booking]:
        bookings = self._resource_bookings(resource_id)
        found = [b for b in bookings if is_conflicting(b, resource_id, start, end)]
        return sorted(found, key=lambda b: (b.start_time, b.booking_id))

    def list_by_filter(self, criteria: BookingFilter, page: int = 1, size: int = 0) -> list[Booking]:
        if criteria.user_id:
            candidates = self._query_index(USER_INDEX, "user_id", criteria.user_id)
        elif criteria.resource_id:
            candidates = self._query_index(RESOURCE_INDEX, "resource_id", criteria.resource_id)
        else:
            candidates = self._scan()
        matched = [b for b in candidates if matches_filter(b, criteria)]
        return paginate(matched, page, size, self._default_page_size, self._max_page_size)

    @contextmanager
    def locked(self, resource_id: str) -> Iterator[None]:
        owner = str(uuid.uuid4())
        self._acquire(resource_id, owner)
        owners = self._owners()
        owners[resource_id] = owner
        try:
            yield
        finally:
            owners.pop(resource_id, None)
            self._release(resource_id, owner)

    def _owners(self) -> dict[str, str]:
        owners: dict[str, str] | None = getattr(self._held, "owners", None)
        if owners is None:
            owners = self._held.owners = {}
        return owners

    def _acquire(self, resource_id: str, owner: str) -> None:
        deadline = time.monotonic() + self._lock_timeout
        delay = 0.05
        while True:
            now = int(time.time())
            try:
                self._table.put_item(  # type: ignore
                    Item={
                        "booking_id": f"{LOCK_PREFIX}{resource_id}",
                        "lock_owner": owner,
                        "expires_at": now + self._lock_lease,
                    },
                    ConditionExpression=LOCK_ACQUIRE_CONDITION,
                    ExpressionAttributeValues={":now": now},
                )
                return
            except ClientError as exc:
                if not _is_condition_failure(exc):
                    raise BackendError(f"lock failed: {exc}") from exc
            if time.monotonic() >= deadline:
                logger.warning("Timed out waiting for resource lock", extra={"resource_id": resource_id})
                raise BackendError(f"Timed out acquiring lock for resource {resource_id}")
            time.sleep(delay)
            delay = min(delay * 2, 0.5)

    def _release(self, resource_id: str, owner: str) -> None:
        try:
            self._table.delete_item(  # type: ignore
                Key={"booking_id": f"{LOCK_PREFIX}{resource_id}"},
                ConditionExpression=LOCK_HELD_CONDITION,
                ExpressionAttributeValues={":owner": owner},
            )
        except ClientError as exc:
            if not _is_condition_failure(exc):
                raise BackendError(f"unlock failed: {exc}") from exc
            # lease expired and someone else holds it now; nothing of ours to release
            logger.warning("Resource lock lease expired before release", extra={"resource_id": resource_id})

    def _booking_set_change(self, expression: str, resource_id: str, booking_id: str) -> dict[str, Any]:
        return {
            "Update": {
                "Key": _serialize({"booking_id": f"{BOOKING_SET_PREFIX}{resource_id}"}),
                "UpdateExpression": expression,
                "ExpressionAttributeValues": _serialize({":ids": {booking_id}}),
            }
        }

    def _transact(
        self,
        operation: str,
        resource_id: str,
        actions: list[dict[str, Any]],
        missing: NotFoundError | None = None,
    ) -> None:
        """Write ``actions`` atomically; the first action is the booking itself."""
        owner = self._owners().get(resource_id)
        if owner is not None:
            actions.append(
                {
                    "ConditionCheck": {
                        "Key": _serialize({"booking_id": f"{LOCK_PREFIX}{resource_id}"}),
                        "ConditionExpression": LOCK_HELD_CONDITION,
                        "ExpressionAttributeValues": _serialize({":owner": owner}),
                    }
                }
            )
        for action in actions:
            next(iter(action.values()))["TableName"] = self._table.name
        try:
            self._table.meta.client.transact_write_items(TransactItems=actions)  # type: ignore
        except ClientError as exc:
            failed = _failed_actions(exc)
            if owner is not None and len(actions) - 1 in failed:
                logger.warning("Resource lock lease lost before write", extra={"resource_id": resource_id})
                raise BackendError(f"{operation} failed: lock on resource {resource_id} was lost") from exc
            if missing is not None and 0 in failed:
                raise missing from exc
            logger.error("DynamoDB call failed", extra={"operation": operation, "error": str(exc)})
            raise BackendError(f"{operation} failed: {exc}") from exc

    def _resource_bookings(self, resource_id: str) -> list[Booking]:
        with _backend_errors("find_conflicting"):
            resp = cast(
                dict[str, Any],
                self._table.get_item(Key={"booking_id": f"{BOOKING_SET_PREFIX}{resource_id}"}, ConsistentRead=True),
            )
        booking_ids = sorted(resp.get("Item", {}).get("booking_ids", ()))
        items: list[BookingItem] = []
        for offset in range(0, len(booking_ids), BATCH_GET_LIMIT):
            items.extend(self._batch_get(booking_ids[offset : offset + BATCH_GET_LIMIT]))
        return [_to_model(it) for it in items]

    def _batch_get(self, booking_ids: list[str]) -> list[BookingItem]:
        table_name = self._table.name
        request: dict[str, Any] = {
            table_name: {"Keys": [_serialize({"booking_id": b}) for b in booking_ids], "ConsistentRead": True}
        }
        items: list[BookingItem] = []
        delay = 0.05
        with _backend_errors("batch_get"):
            while True:
                resp = cast(dict[str, Any], self._table.meta.client.batch_get_item(RequestItems=request))
                raw_items = resp.get("Responses", {}).get(table_name, [])
                items.extend(cast(BookingItem, _deserialize(raw)) for raw in raw_items)
                request = resp.get("UnprocessedKeys") or {}
                if not request:
                    break
                time.sleep(delay)
                delay = min(delay * 2, 0.5)
        return items

    def _query_index(self, index: str, key: str, value: str) -> list[Booking]:
        items: list[BookingItem] = []
        kwargs: dict[str, Any] = {
            "IndexName": index,
            "KeyConditionExpression": f"{key} = :v",
            "ExpressionAttributeValues": {":v": value},
        }
        with _backend_errors("query"):
            while True:
                resp = cast(dict[str, Any], self._table.query(**kwargs))
                items.extend(cast(BookingItem, it) for it in resp.get("Items", []) if isinstance(it, dict))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        return [_to_model(it) for it in items]

    def _scan(self) -> list[Booking]:
        items: list[BookingItem] = []
        kwargs: dict[str, Any] = {}
        with _backend_errors("scan"):
            while True:
                resp = cast(dict[str, Any], self._table.scan(**kwargs))
                items.extend(
                    cast(BookingItem, it)
                    for it in resp.get("Items", [])
                    if isinstance(it, dict) and _is_booking_key(str(it.get("booking_id", "")))
                )
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        return [_to_model(it) for it in items]


def _resource_fields(resource: Resource) -> dict[str, Any]:
    return {
        "name": resource.name,
        "type": resource.type.value,
        "description": resource.description,
        "capacity": resource.capacity,
        "location": resource.location,
        "properties": dict(resource.properties),
        "is_active": resource.is_active,
        "created_at": _dt_to_iso(resource.created_at),
        "updated_at": _dt_to_iso(resource.updated_at),
    }


def _resource_to_model(item: dict[str, Any]) -> Resource:
    return Resource(
        resource_id=item["resource_id"],
        name=item["name"],
        type=ResourceType(item["type"]),
        description=item.get("description", ""),
        # numbers come back from DynamoDB as Decimal
        capacity=int(item["capacity"]),
        location=item["location"],
        properties={str(k): str(v) for k, v in item.get("properties", {}).items()},
        is_active=bool(item.get("is_active", True)),
        created_at=_iso_to_dt(item["created_at"]),
        updated_at=_iso_to_dt(item["updated_at"]),
    )


def _slot_to_item(slot: WeeklySlot) -> dict[str, Any]:
    return {
        "day_of_week": slot.day_of_week,
        "start_time": slot.start_time,
        "end_time": slot.end_time,
        "is_active": slot.is_active,
    }


class DynamoResourceStore:
    """Resource catalog over a DynamoDB table keyed by ``resource_id``.

    A resource's weekly slots live on its own item as the ``slots`` list, so
    replacing a schedule is a single write and a schedule never outlives its
    resource. Reads are strongly consistent; listing scans the table, which
    is sized for a catalog, not for bookings.
    """

    def __init__(
        self,
        table: DynamoDBTable | None = None,
        table_name: str = "resources",
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ) -> None:
        self._table: DynamoDBTable = table if table is not None else boto3.resource("dynamodb").Table(table_name)
        self._default_page_size = default_page_size
        self._max_page_size = max_page_size

    def create(self, resource: Resource) -> str:
        resource_id = str(uuid.uuid4())
        item = {"resource_id": resource_id, **_resource_fields(resource), "slots": []}
        logger.info("Creating resource", extra={"resource_id": resource_id, "type": resource.type.value})
        with _backend_errors("create_resource"):
            self._table.put_item(Item=item, ConditionExpression=RESOURCE_CREATE_CONDITION)  # type: ignore
        return resource_id

    def get_by_id(self, resource_id: str) -> Resource:
        return _resource_to_model(self._get_item(resource_id))

    def update(self, resource: Resource) -> None:
        self._update_item(resource.resource_id, _resource_fields(resource))

    def list_by_filter(self, criteria: ResourceFilter, page: int = 1, size: int = 0) -> list[Resource]:
        resources: list[Resource] = []
        kwargs: dict[str, Any] = {}
        with _backend_errors("scan_resources"):
            while True:
                resp = cast(dict[str, Any], self._table.scan(**kwargs))
                resources.extend(_resource_to_model(it) for it in resp.get("Items", []) if isinstance(it, dict))
                last_key = resp.get("LastEvaluatedKey")
                if not last_key:
                    break
                kwargs["ExclusiveStartKey"] = last_key
        matched = [r for r in resources if matches_resource_filter(r, criteria)]
        return paginate_resources(matched, page, size, self._default_page_size, self._max_page_size)

    def get_slots(self, resource_id: str) -> list[WeeklySlot]:
        item = self._get_item(resource_id)
        return [
            WeeklySlot(
                resource_id=resource_id,
                day_of_week=int(raw["day_of_week"]),
                start_time=raw["start_time"],
                end_time=raw["end_time"],
                is_active=bool(raw.get("is_active", True)),
            )
            for raw in item.get("slots", [])
        ]

    def replace_slots(self, resource_id: str, slots: Iterable[WeeklySlot]) -> None:
        fresh = [_slot_to_item(s) for s in slots]
        self._update_item(resource_id, {"slots": fresh})
        logger.info("Replaced availability schedule", extra={"resource_id": resource_id, "slots": len(fresh)})

    def _get_item(self, resource_id: str) -> dict[str, Any]:
        with _backend_errors("get_resource"):
            resp = cast(dict[str, Any], self._table.get_item(Key={"resource_id": resource_id}, ConsistentRead=True))
        item = resp.get("Item")
        if not isinstance(item, dict):
            raise resource_not_found(resource_id)
        return item

    def _update_item(self, resource_id: str, fields: dict[str, Any]) -> None:
        try:
            self._table.update_item(  # type: ignore
                Key={"resource_id": resource_id},
                ConditionExpression=RESOURCE_UPDATE_CONDITION,
                **_set_expression(fields),
            )
        except ClientError as exc:
            if _is_condition_failure(exc):
                raise resource_not_found(resource_id) from exc
            raise BackendError(f"update_resource failed: {exc}") from exc
