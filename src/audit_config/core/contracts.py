"""
Topics and payload schemas published by the configuration manager.

Each topic carries exactly one payload type so subscribers can rely on the
shape of what they receive; the bus rejects mismatched payloads.
"""

from __future__ import annotations

import datetime as dt
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

ChangeSource = Literal["update", "file-reload"]


class ConfigTopic(StrEnum):
    INITIALIZED = "config.initialized"
    CHANGED = "config.changed"
    HOT_RELOAD = "config.hot_reload"
    RELOADED = "config.reloaded"
    HOT_RELOAD_STARTED = "config.hot_reload.started"
    HOT_RELOAD_STOPPED = "config.hot_reload.stopped"
    ERROR = "config.error"


class BasePayload(BaseModel):
    """Base class for all bus payloads."""

    model_config = ConfigDict(
        extra="allow", frozen=True, alias_generator=to_camel, populate_by_name=True
    )

    schema_version: str = Field(
        default="1.0.0", description="Semantic version of the payload schema."
    )
    timestamp_utc: dt.datetime = Field(
        default_factory=lambda: dt.datetime.now(tz=dt.UTC),
        description="When the payload was created.",
    )


class ConfigInitialized(BasePayload):
    """The manager finished loading and validating the backing file."""

    environment: str
    version: str
    revision: int
    config_path: str
    encrypted: bool = Field(default=False)
    hot_reload_enabled: bool = Field(default=False)
    tree: dict[str, Any] = Field(
        default_factory=dict, description="Copy of the camelCase tree that was loaded."
    )


class ConfigChangeEvent(BasePayload):
    """Audit record of one field change, kept in the manager's history."""

    id: int = Field(description="Monotonically increasing per manager.")
    timestamp: str = Field(description="ISO-8601 time the change was applied.")
    field: str
    previous_value: Any = None
    new_value: Any = None
    changed_by: str
    reason: str | None = Field(default=None)
    environment: str
    previous_version: str | None = Field(default=None)
    new_version: str | None = Field(default=None)

    def to_record(self) -> dict[str, Any]:
        """camelCase dictionary without bus bookkeeping fields."""
        return self.model_dump(
            mode="json", by_alias=True, exclude={"schema_version", "timestamp_utc"}
        )


class HotReloadPayload(BasePayload):
    """A hot-reloadable field now holds a new value."""

    path: str
    new_value: Any = None
    previous_value: Any = None
    source: ChangeSource = Field(default="update")


class FieldChange(BasePayload):
    """One leaf that differs between two trees."""

    path: str
    previous_value: Any = None
    new_value: Any = None


class ConfigReloadedPayload(BasePayload):
    """The backing file was re-read and differed from the live tree."""

    changes: list[FieldChange] = Field(default_factory=list)
    previous_version: str | None = Field(default=None)
    new_version: str | None = Field(default=None)
    revision: int
    tree: dict[str, Any] = Field(
        default_factory=dict, description="Copy of the camelCase tree now live."
    )

    @property
    def paths(self) -> list[str]:
        return [change.path for change in self.changes]


class HotReloadStatus(BasePayload):
    """File watcher lifecycle notification."""

    config_path: str
    check_interval: float
    running: bool


class ConfigErrorPayload(BasePayload):
    """A manager operation failed."""

    operation: str
    error_type: str
    message: str
    issues: list[str] = Field(default_factory=list)


TOPIC_PAYLOADS: dict[ConfigTopic, type[BasePayload]] = {
    ConfigTopic.INITIALIZED: ConfigInitialized,
    ConfigTopic.CHANGED: ConfigChangeEvent,
    ConfigTopic.HOT_RELOAD: HotReloadPayload,
    ConfigTopic.RELOADED: ConfigReloadedPayload,
    ConfigTopic.HOT_RELOAD_STARTED: HotReloadStatus,
    ConfigTopic.HOT_RELOAD_STOPPED: HotReloadStatus,
    ConfigTopic.ERROR: ConfigErrorPayload,
}

EventHandler = Callable[[str, BasePayload], Awaitable[None] | None]


__all__ = [
    "TOPIC_PAYLOADS",
    "BasePayload",
    "ChangeSource",
    "ConfigChangeEvent",
    "ConfigErrorPayload",
    "ConfigInitialized",
    "ConfigReloadedPayload",
    "ConfigTopic",
    "EventHandler",
    "FieldChange",
    "HotReloadPayload",
    "HotReloadStatus",
]
