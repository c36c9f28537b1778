"""Runtime configuration for the clinic queue.

Everything is read from environment variables once, at application
startup, into a :class:`Settings` model.  Categories and their permitted
windows live here rather than in the call logic so that a new ticket type
only needs a new entry in ``CLINIC_CATEGORIES``.
"""

from __future__ import annotations

import json
import os
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")


class CategoryConfig(BaseModel):
    """A ticket category and the windows allowed to call it."""

    tag: str
    name: str
    windows: List[int]

    @field_validator("tag")
    @classmethod
    def _tag_not_blank(cls, value: str) -> str:
        value = value.strip().upper()
        if not value or not value.isalpha():
            raise ValueError("category tag must be a non-empty alphabetic string")
        return value

    @field_validator("windows")
    @classmethod
    def _windows_positive(cls, value: List[int]) -> List[int]:
        if not value:
            raise ValueError("a category needs at least one window")
        if any(w < 1 for w in value):
            raise ValueError("window numbers start at 1")
        return sorted(set(value))


DEFAULT_CATEGORIES = [
    CategoryConfig(tag="O", name="Occupational", windows=[1, 2, 4, 5]),
    CategoryConfig(tag="L", name="Laboratory", windows=[3]),
    CategoryConfig(tag="P", name="Preferential", windows=[1, 2, 4, 5]),
]


class Settings(BaseModel):
    categories: List[CategoryConfig] = Field(default_factory=lambda: list(DEFAULT_CATEGORIES))
    database_url: str = f"sqlite:///{DEFAULT_DB_FILENAME}"
    redis_url: Optional[str] = None
    redis_channel: str = "clinic:updates"
    retention_hours: float = 24.0
    sweep_interval_seconds: float = 3600.0
    persist_interval_seconds: float = 30.0
    recent_calls_limit: int = 5
    printer_host: Optional[str] = None
    printer_port: int = 9100
    printer_timeout: float = 3.0
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    @model_validator(mode="after")
    def _tags_unambiguous(self) -> "Settings":
        tags = [c.tag for c in self.categories]
        if not tags:
            raise ValueError("at least one category must be configured")
        if len(set(tags)) != len(tags):
            raise ValueError("category tags must be unique")
        # A ticket code is read back to its category by prefix.
        for a in tags:
            for b in tags:
                if a != b and b.startswith(a):
                    raise ValueError(f"category tag {a!r} is a prefix of {b!r}")
        return self

    def category(self, tag: str) -> Optional[CategoryConfig]:
        for cat in self.categories:
            if cat.tag == tag:
                return cat
        return None


def _env_list(name: str) -> Optional[List[str]]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


def load_settings() -> Settings:
    """Build :class:`Settings` from the process environment."""
    values = {}

    raw_categories = os.getenv("CLINIC_CATEGORIES")
    if raw_categories:
        values["categories"] = json.loads(raw_categories)

    database_url = os.getenv("DATABASE_URL")
    if database_url:
        # Heroku/Railway style URLs use the deprecated "postgres" scheme.
        if database_url.startswith("postgres://"):
            database_url = "postgresql://" + database_url[len("postgres://"):]
        values["database_url"] = database_url

    env_map = {
        "REDIS_URL": "redis_url",
        "REDIS_CHANNEL": "redis_channel",
        "RETENTION_HOURS": "retention_hours",
        "SWEEP_INTERVAL_SECONDS": "sweep_interval_seconds",
        "PERSIST_INTERVAL_SECONDS": "persist_interval_seconds",
        "RECENT_CALLS_LIMIT": "recent_calls_limit",
        "PRINTER_HOST": "printer_host",
        "PRINTER_PORT": "printer_port",
        "PRINTER_TIMEOUT": "printer_timeout",
        "LOG_LEVEL": "log_level",
        "PORT": "port",
    }
    for env_name, field_name in env_map.items():
        value = os.getenv(env_name)
        if value:
            values[field_name] = value

    origins = _env_list("CORS_ORIGINS")
    if origins:
        values["cors_origins"] = origins

    return Settings(**values)
