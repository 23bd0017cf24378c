"""Records shared between the queue, the local store and the sync engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from .errors import ErrorKind, RecordIntegrityError
from .permits import format_timestamp, parse_timestamp


class TaskStatus(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    RETRYING = "retrying"
    UPLOADED = "uploaded"
    FAILED = "failed"


@dataclass(slots=True)
class UploadTask:
    """A captured artifact waiting to be uploaded."""

    id: str
    source_location: str
    subject_id: str
    intent_id: str
    status: TaskStatus = TaskStatus.IDLE
    retry_count: int = 0
    last_error: str | None = None
    error_kind: ErrorKind | None = None
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    remote_key: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_location": self.source_location,
            "subject_id": self.subject_id,
            "intent_id": self.intent_id,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "enqueued_at": format_timestamp(self.enqueued_at),
            "remote_key": self.remote_key,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> UploadTask:
        kind = payload.get("error_kind")
        return cls(
            id=str(payload["id"]),
            source_location=str(payload["source_location"]),
            subject_id=str(payload["subject_id"]),
            intent_id=str(payload["intent_id"]),
            status=TaskStatus(payload.get("status", TaskStatus.IDLE.value)),
            retry_count=int(payload.get("retry_count") or 0),
            last_error=payload.get("last_error"),
            error_kind=ErrorKind(kind) if kind else None,
            enqueued_at=parse_timestamp(payload["enqueued_at"]),
            remote_key=payload.get("remote_key"),
        )


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive ``YYYY-MM-DD`` bounds; either side may be open."""

    start: str | None = None
    end: str | None = None

    def __post_init__(self) -> None:
        for value in (self.start, self.end):
            if value is not None:
                date.fromisoformat(value)
        if self.start and self.end and self.start > self.end:
            raise ValueError(f"date range start {self.start} is after end {self.end}")

    def contains(self, record_date: str | None) -> bool:
        if record_date is None:
            return self.start is None and self.end is None
        if self.start is not None and record_date < self.start:
            return False
        if self.end is not None and record_date > self.end:
            return False
        return True

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        if self.start:
            params["start"] = self.start
        if self.end:
            params["end"] = self.end
        return params


@dataclass(slots=True)
class DomainRecord:
    """A transaction record as held by either replica."""

    id: str
    updated_at: datetime
    confirmed_at: datetime | None = None
    record_date: str | None = None
    subject_id: str | None = None
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def confirmed(self) -> bool:
        return self.confirmed_at is not None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> DomainRecord:
        if not isinstance(payload, Mapping):
            raise RecordIntegrityError("record payload must be an object")
        record_id = str(payload.get("id") or "").strip()
        if not record_id:
            raise RecordIntegrityError("record missing id")
        updated_raw = payload.get("updated_at")
        if not updated_raw:
            raise RecordIntegrityError(f"record {record_id} missing updated_at")
        try:
            updated_at = parse_timestamp(updated_raw)
            confirmed_raw = payload.get("confirmed_at")
            confirmed_at = parse_timestamp(confirmed_raw) if confirmed_raw else None
        except ValueError as err:
            raise RecordIntegrityError(f"record {record_id} has a malformed timestamp: {err}") from err
        record_date = payload.get("record_date")
        if record_date is not None:
            record_date = str(record_date)[:10]
        fields_raw = payload.get("fields")
        return cls(
            id=record_id,
            updated_at=updated_at,
            confirmed_at=confirmed_at,
            record_date=record_date,
            subject_id=payload.get("subject_id"),
            fields=dict(fields_raw) if isinstance(fields_raw, Mapping) else {},
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "subject_id": self.subject_id,
            "updated_at": format_timestamp(self.updated_at),
            "confirmed_at": format_timestamp(self.confirmed_at) if self.confirmed_at else None,
            "record_date": self.record_date,
            "fields": dict(self.fields),
        }


__all__ = ["DateRange", "DomainRecord", "TaskStatus", "UploadTask"]
