"""Data types flowing through the sampling and upload pipeline.

ServiceIdentity and CPUUsage live for one cycle only. A Row is created either
from a sample or from an ingress event, is immutable, and is consumed into an
UploadBatch when the buffer flushes.
"""

from __future__ import annotations

import math
import time
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

from unitpulse.errors import ValidationFailure

# Fixed row columns, in record order. Extra fields never overwrite these.
ROW_FIELDS = (
    "service_name",
    "instance",
    "user_pct",
    "system_pct",
    "total_pct",
    "hostname",
    "timestamp",
)

# Keys an ingress data item may use to carry CPU figures
_EVENT_CPU_KEYS = {
    "user_pct": ("user_pct", "user_cpu"),
    "system_pct": ("system_pct", "system_cpu"),
    "total_pct": ("total_pct", "total_cpu"),
}
_EVENT_NAME_KEYS = ("service_name", "systemd_unit", "name")

# Table for rows that don't name one (sampled rows)
DEFAULT_TABLE = "systemd_monitor_data"


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def cpu_value(value: Any, key: str) -> float:
    """Read a posted CPU figure: a finite number or numeric string.

    Raises:
        ValidationFailure: For anything else (booleans, null, objects, text).
    """
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ValidationFailure(f"{key} must be a number, got {value!r}")
    try:
        number = float(value)
    except ValueError:
        raise ValidationFailure(f"{key} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise ValidationFailure(f"{key} must be finite, got {value!r}")
    return number


def parse_timestamp(value: Any) -> datetime:
    """Read a posted timestamp: ISO-8601 text or epoch seconds. Naive means UTC.

    Raises:
        ValidationFailure: If the value is neither.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValidationFailure(f"timestamp out of range: {value!r}") from None
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            raise ValidationFailure(f"timestamp is not ISO-8601: {value!r}") from None
    else:
        raise ValidationFailure(f"timestamp must be ISO-8601 text, got {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class ServiceIdentity:
    """A monitored service as seen by the enumerator in one cycle."""

    name: str
    pid: int


@dataclass(frozen=True)
class CPUUsage:
    """CPU usage of one process over one sampling window, in percent.

    Values are normalized by core count, so a process saturating two cores on
    an eight-core host reports 200%, not 25%.
    """

    user_pct: float
    system_pct: float
    total_pct: float

    @classmethod
    def from_parts(cls, user_pct: float, system_pct: float) -> "CPUUsage":
        """Build a usage whose total is the sum of its parts."""
        return cls(user_pct=user_pct, system_pct=system_pct, total_pct=user_pct + system_pct)


@dataclass(frozen=True)
class SampleResult:
    """A successful sample joined with the identity it was taken for."""

    identity: ServiceIdentity
    usage: CPUUsage
    started_at: datetime


@dataclass(frozen=True)
class Row:
    """One flattened measurement record.

    ``instance`` is the pid for sampled services and the event id for rows
    that came in through HTTP ingress. ``extra`` carries free-form fields and
    is exposed read-only.
    """

    service_name: str
    instance: str
    user_pct: float
    system_pct: float
    total_pct: float
    hostname: str
    timestamp: datetime
    extra: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "extra", MappingProxyType(dict(self.extra)))

    @classmethod
    def from_sample(
        cls,
        identity: ServiceIdentity,
        usage: CPUUsage,
        hostname: str,
        timestamp: datetime | None = None,
    ) -> "Row":
        """Build a row from one sampler result."""
        return cls(
            service_name=identity.name,
            instance=str(identity.pid),
            user_pct=usage.user_pct,
            system_pct=usage.system_pct,
            total_pct=usage.total_pct,
            hostname=hostname,
            timestamp=timestamp or utcnow(),
        )

    @classmethod
    def from_event(
        cls,
        event: "Event",
        data: Mapping[str, Any],
        event_id: str,
        timestamp: datetime | None = None,
    ) -> "Row":
        """Build a row from one data item of an ingress event.

        CPU figures are read from the item when present (``user_cpu`` style
        keys as posted by remote monitors), otherwise they are zero. An item
        that carries ``instance``, ``timestamp`` or ``hostname`` (as rows
        forwarded by another unitpulse do) keeps them; otherwise the event id,
        arrival time and event hostname are used. Every other key is kept in
        ``extra`` alongside the event headers.

        Raises:
            ValidationFailure: If a CPU figure or timestamp can't be read.
        """
        remaining = dict(data)
        cpu: dict[str, float] = {}
        for column, keys in _EVENT_CPU_KEYS.items():
            value = 0.0
            for key in keys:
                if key in remaining:
                    value = cpu_value(remaining.pop(key), key)
            cpu[column] = value
        if not any(k in data for k in _EVENT_CPU_KEYS["total_pct"]):
            cpu["total_pct"] = cpu["user_pct"] + cpu["system_pct"]

        service_name = event.table
        for key in _EVENT_NAME_KEYS:
            if key in remaining:
                service_name = str(remaining.pop(key))
                break

        instance = remaining.pop("instance", None)
        if instance in (None, ""):
            instance = event_id
        posted_at = remaining.pop("timestamp", None)
        if posted_at not in (None, ""):
            timestamp = parse_timestamp(posted_at)
        hostname = remaining.pop("hostname", None)
        if not isinstance(hostname, str) or not hostname.strip():
            hostname = event.hostname
        for key in ROW_FIELDS:
            remaining.pop(key, None)

        extra = {
            "node_type": event.node_type,
            **remaining,
            "event_id": event_id,
            "table": event.table,
        }
        return cls(
            service_name=service_name,
            instance=str(instance),
            hostname=hostname,
            timestamp=timestamp or utcnow(),
            extra=extra,
            **cpu,
        )

    @classmethod
    def for_event_stream(
        cls,
        event: "Event",
        event_id: str,
        cluster_id: str,
        stream_table: str,
        timestamp: datetime,
    ) -> "Row":
        """The per-event record written to the event stream table.

        One is produced for every accepted event, so consumers can list events
        without reading every data table.
        """
        return cls(
            service_name=event.table,
            instance=event_id,
            user_pct=0.0,
            system_pct=0.0,
            total_pct=0.0,
            hostname=event.hostname,
            timestamp=timestamp,
            extra={
                "table": stream_table,
                "cluster_id": cluster_id,
                "node_type": event.node_type,
                "event_id": event_id,
            },
        )

    def table_name(self, default: str) -> str:
        """Destination table: the one the row names, else ``default``."""
        return str(self.extra.get("table") or default)

    def to_record(self, accepted: frozenset[str] | None = None) -> dict[str, Any]:
        """Flatten to a dict: fixed columns first, then extra fields.

        Args:
            accepted: Field set the destination understands. Extra keys outside
                it are dropped. ``None`` keeps everything.
        """
        record: dict[str, Any] = {
            "service_name": self.service_name,
            "instance": self.instance,
            "user_pct": self.user_pct,
            "system_pct": self.system_pct,
            "total_pct": self.total_pct,
            "hostname": self.hostname,
            "timestamp": self.timestamp,
        }
        for key, value in self.extra.items():
            if key in record:
                continue
            if accepted is not None and key not in accepted:
                continue
            record[key] = value
        return record

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "Row":
        """Rebuild a row from ``to_record`` output (timestamp may be ISO text)."""
        timestamp = record["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        return cls(
            service_name=record["service_name"],
            instance=str(record["instance"]),
            user_pct=float(record["user_pct"]),
            system_pct=float(record["system_pct"]),
            total_pct=float(record["total_pct"]),
            hostname=record["hostname"],
            timestamp=timestamp,
            extra={k: v for k, v in record.items() if k not in ROW_FIELDS},
        )


@dataclass(frozen=True)
class UploadBatch:
    """Immutable snapshot of the buffer handed to the uploader."""

    rows: tuple[Row, ...]
    created_at: float = field(default_factory=time.monotonic)

    def __len__(self) -> int:
        return len(self.rows)

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def records(self, accepted: frozenset[str] | None = None) -> list[dict[str, Any]]:
        """Flatten every row for a sink."""
        return [row.to_record(accepted) for row in self.rows]


@dataclass
class FlushState:
    """When the buffer last flushed, on the buffer's clock."""

    last_flush_time: float


class Event(BaseModel):
    """An externally-submitted event, as posted to the ingress."""

    table: str
    node_type: str
    hostname: str
    send_immediately: bool = False
    upload_timeout: str = ""
    data: list[dict[str, Any]]

    @field_validator("table", "node_type", "hostname")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value

    @field_validator("data", mode="before")
    @classmethod
    def _wrap_single_object(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return [value]
        return value

    @field_validator("data")
    @classmethod
    def _not_empty(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not value:
            raise ValueError("must contain at least one item")
        return value

    @field_validator("data")
    @classmethod
    def _typed_fields(cls, value: list[dict[str, Any]]) -> list[dict[str, Any]]:
        for index, item in enumerate(value):
            try:
                for keys in _EVENT_CPU_KEYS.values():
                    for key in keys:
                        if key in item:
                            cpu_value(item[key], key)
                if item.get("timestamp") not in (None, ""):
                    parse_timestamp(item["timestamp"])
            except ValidationFailure as e:
                raise ValueError(f"item {index}: {e}") from None
        return value

    @classmethod
    def parse(cls, payload: Any) -> "Event":
        """Validate a decoded JSON payload.

        Raises:
            ValidationFailure: If required headers are missing or blank, ``data`` is
                empty or not an object/array of objects, or a CPU figure or
                timestamp in it is unreadable.
        """
        if not isinstance(payload, Mapping):
            raise ValidationFailure("event must be a JSON object")
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            problems = ", ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'event'}: {err['msg']}"
                for err in e.errors()
            )
            raise ValidationFailure(f"Invalid event ({problems})") from e
