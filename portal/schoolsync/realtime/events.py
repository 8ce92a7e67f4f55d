"""
Realtime change events.

The portal's socket pushes table changes as

    {"table": "users", "event": "UPDATE", "data": {...}, "oldData": {...}}

and other feeds use {"table", "eventType", "payload"} where payload is a
record or a bare record id. Both shapes are validated with a pydantic
model and converted to an immutable RealtimeEvent. Events are never
stored, only applied to the cache.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class EventType(enum.Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class TableChangeMessage(BaseModel):
    """Wire shape of a table change notification."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    table: str = Field(..., min_length=1)
    event: EventType = Field(
        ...,
        validation_alias=AliasChoices("event", "eventType", "event_type", "type"),
    )
    data: Any = Field(
        None,
        validation_alias=AliasChoices("data", "payload", "record", "new"),
    )
    old_data: dict[str, Any] | None = Field(
        None,
        validation_alias=AliasChoices("oldData", "old_data", "old_record", "old"),
    )
    timestamp: float | str | None = Field(
        None,
        validation_alias=AliasChoices("timestamp", "ts", "commit_timestamp"),
    )

    @field_validator("event", mode="before")
    @classmethod
    def _lower_event(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        return value


def parse_timestamp(value: Any) -> float | None:
    """Convert an epoch number or ISO-8601 string to epoch seconds.

    Numbers above 1e11 are taken as milliseconds.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            return parse_timestamp(float(text))
        except ValueError:
            pass
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text).timestamp()
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class RealtimeEvent:
    """A change notification for one record of a table.

    Attributes:
        table: Resource table name
        event_type: insert, update or delete
        record_id: Id of the changed record, if known
        record: New record (insert/update), if the event carried one
        old_record: Previous record, if the event carried one
        timestamp: Change time in epoch seconds, if the event carried one
    """

    table: str
    event_type: EventType
    record_id: Any = None
    record: dict | None = None
    old_record: dict | None = None
    timestamp: float | None = None

    @classmethod
    def from_message(cls, message: dict[str, Any], id_field: str = "id") -> RealtimeEvent:
        """Parse a wire message.

        Raises:
            pydantic.ValidationError: If the message is malformed
        """
        parsed = TableChangeMessage.model_validate(message)
        record: dict | None = None
        record_id: Any = None
        if isinstance(parsed.data, dict):
            record = parsed.data
            record_id = record.get(id_field)
        elif parsed.data is not None:
            record_id = parsed.data
        if record_id is None and parsed.old_data is not None:
            record_id = parsed.old_data.get(id_field)

        return cls(
            table=parsed.table,
            event_type=parsed.event,
            record_id=record_id,
            record=record,
            old_record=parsed.old_data,
            timestamp=parse_timestamp(parsed.timestamp),
        )

    @classmethod
    def insert(cls, table: str, record: dict, id_field: str = "id", timestamp: float | None = None) -> RealtimeEvent:
        return cls(table, EventType.INSERT, record.get(id_field), record, None, timestamp)

    @classmethod
    def update(cls, table: str, record: dict, id_field: str = "id", timestamp: float | None = None) -> RealtimeEvent:
        return cls(table, EventType.UPDATE, record.get(id_field), record, None, timestamp)

    @classmethod
    def delete(cls, table: str, record_id: Any, timestamp: float | None = None) -> RealtimeEvent:
        return cls(table, EventType.DELETE, record_id, None, None, timestamp)

    def __str__(self) -> str:
        return f"RealtimeEvent({self.event_type.value} {self.table}:{self.record_id})"
