from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field


class Settings(BaseModel):
    backend: Literal["memory", "dynamodb"] = "memory"
    table_name: str = "bookings"
    resources_table_name: str = "resources"
    event_bus_name: str | None = None
    event_source: str = "booking.core"
    schedule_timezone: str = "UTC"
    max_availability_days: int = Field(default=366, ge=1)
    default_page_size: int = Field(default=20, ge=1)
    max_page_size: int = Field(default=100, ge=1)
    lock_timeout_seconds: float = Field(default=5.0, gt=0)
    lock_lease_seconds: int = Field(default=30, ge=1)

    @classmethod
    def from_env(cls) -> Settings:
        env = os.environ
        # only pass what is set so the model defaults apply otherwise
        raw = {
            "backend": env.get("BOOKING_BACKEND"),
            "table_name": env.get("TABLE_NAME"),
            "resources_table_name": env.get("RESOURCES_TABLE_NAME"),
            "event_bus_name": env.get("EVENT_BUS_NAME"),
            "event_source": env.get("EVENT_SOURCE"),
            "schedule_timezone": env.get("SCHEDULE_TIMEZONE"),
            "max_availability_days": env.get("MAX_AVAILABILITY_DAYS"),
            "default_page_size": env.get("DEFAULT_PAGE_SIZE"),
            "max_page_size": env.get("MAX_PAGE_SIZE"),
            "lock_timeout_seconds": env.get("LOCK_TIMEOUT_SECONDS"),
            "lock_lease_seconds": env.get("LOCK_LEASE_SECONDS"),
        }
        return cls.model_validate({k: v for k, v in raw.items() if v})


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
