"""Lambda entry point.

One function serves two event sources: API Gateway HTTP API (v2.0) requests
go to the FastAPI app through Mangum, and EventBridge scheduled events run
the completion sweep that moves elapsed Confirmed bookings to Completed.
"""
from __future__ import annotations

from typing import Any

from aws_lambda_powertools import Logger
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext
from mangum import Mangum

from booking_core.api import app, get_engine

logger = Logger()
http_handler = Mangum(app, lifespan="off")

SCHEDULED_DETAIL_TYPE = "Scheduled Event"


def _is_scheduled(event: dict[str, Any]) -> bool:
    return event.get("source") == "aws.events" and event.get("detail-type") == SCHEDULED_DETAIL_TYPE


def _with_request_defaults(event: dict[str, Any]) -> dict[str, Any]:
    # console test events and local invocations omit parts Mangum requires
    request_context = event.setdefault("requestContext", {})
    http_ctx = request_context.setdefault("http", {})
    http_ctx.setdefault("sourceIp", "127.0.0.1")
    http_ctx.setdefault("userAgent", "local")
    request_context.setdefault("stage", "$default")
    event.setdefault("headers", {})
    return event


def run_completion_sweep(event: dict[str, Any]) -> dict[str, Any]:
    logger.info("Completion sweep triggered", extra={"rule": event.get("resources", []), "time": event.get("time")})
    completed = get_engine().complete_elapsed()
    return {"completed": [b.booking_id for b in completed]}


@logger.inject_lambda_context(correlation_id_path=correlation_paths.API_GATEWAY_HTTP, clear_state=True)
def lambda_handler(event: dict[str, Any], context: LambdaContext) -> Any:
    if _is_scheduled(event):
        return run_completion_sweep(event)
    if event.get("version") == "2.0":
        event = _with_request_defaults(event)
    return http_handler(event, context)
