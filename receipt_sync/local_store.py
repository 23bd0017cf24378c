"""Local persisted state: upload tasks, permit usage and domain records."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import Any

from .models import DateRange, DomainRecord, TaskStatus, UploadTask
from .permits import format_timestamp
from .storage import SqliteStore


class LocalStore(SqliteStore):
    """Three independent tables keyed by stable identifiers.

    Each table has a single owner: the upload queue writes ``upload_tasks``,
    the permit cache writes ``permit_usage`` and the sync engine writes
    ``domain_records``.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS upload_tasks (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            task_id TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL,
            payload TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS permit_usage (
            subject_id TEXT PRIMARY KEY,
            payload TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS domain_records (
            record_id TEXT PRIMARY KEY,
            subject_id TEXT,
            record_date TEXT,
            payload TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            dirty INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_domain_records_date
            ON domain_records (subject_id, record_date);
    """

    # ------------------------------------------------------------------
    def save_task(self, task: UploadTask) -> None:
        now = format_timestamp(datetime.now(tz=UTC))
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO upload_tasks(task_id, status, payload, updated_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(task_id) DO UPDATE SET
                    status = excluded.status,
                    payload = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (task.id, task.status.value, json.dumps(task.to_dict()), now),
            )
            conn.commit()

    def fetch_task(self, task_id: str) -> UploadTask | None:
        with self._connection() as conn:
            row = conn.execute("SELECT payload FROM upload_tasks WHERE task_id = ?", (task_id,)).fetchone()
        return UploadTask.from_dict(json.loads(row["payload"])) if row else None

    def list_tasks(self, statuses: Iterable[TaskStatus] | None = None) -> list[UploadTask]:
        """Return tasks oldest-enqueued first, optionally filtered by status."""

        query = "SELECT payload FROM upload_tasks"
        params: list[Any] = []
        if statuses is not None:
            values = [status.value for status in statuses]
            if not values:
                return []
            query += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        query += " ORDER BY seq"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [UploadTask.from_dict(json.loads(row["payload"])) for row in rows]

    def delete_task(self, task_id: str) -> bool:
        with self._connection() as conn:
            cur = conn.execute("DELETE FROM upload_tasks WHERE task_id = ?", (task_id,))
            conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    def save_usage(self, subject_id: str, payload: dict[str, Any]) -> None:
        now = format_timestamp(datetime.now(tz=UTC))
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO permit_usage(subject_id, payload, updated_at) VALUES(?, ?, ?)",
                (subject_id, json.dumps(payload), now),
            )
            conn.commit()

    def fetch_usage(self, subject_id: str) -> dict[str, Any] | None:
        with self._connection() as conn:
            row = conn.execute("SELECT payload FROM permit_usage WHERE subject_id = ?", (subject_id,)).fetchone()
        return json.loads(row["payload"]) if row else None

    def delete_usage(self, subject_id: str) -> None:
        with self._connection() as conn:
            conn.execute("DELETE FROM permit_usage WHERE subject_id = ?", (subject_id,))
            conn.commit()

    # ------------------------------------------------------------------
    def upsert_record(self, record: DomainRecord, *, dirty: bool = False) -> None:
        """Write ``record``; ``dirty`` marks a local edit the remote has not seen."""

        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO domain_records(record_id, subject_id, record_date, payload, updated_at, dirty)
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.subject_id,
                    record.record_date,
                    json.dumps(record.to_payload()),
                    format_timestamp(record.updated_at),
                    int(dirty),
                ),
            )
            conn.commit()

    def fetch_record(self, record_id: str) -> DomainRecord | None:
        with self._connection() as conn:
            row = conn.execute("SELECT payload FROM domain_records WHERE record_id = ?", (record_id,)).fetchone()
        return DomainRecord.from_payload(json.loads(row["payload"])) if row else None

    def list_records(self, subject_id: str, date_range: DateRange | None = None) -> list[DomainRecord]:
        query = "SELECT payload FROM domain_records WHERE subject_id = ?"
        params: list[Any] = [subject_id]
        if date_range is not None:
            if date_range.start:
                query += " AND record_date >= ?"
                params.append(date_range.start)
            if date_range.end:
                query += " AND record_date <= ?"
                params.append(date_range.end)
        query += " ORDER BY record_date, record_id"
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [DomainRecord.from_payload(json.loads(row["payload"])) for row in rows]

    def list_dirty_records(self, subject_id: str) -> list[DomainRecord]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT payload FROM domain_records WHERE subject_id = ? AND dirty = 1 ORDER BY updated_at, record_id",
                (subject_id,),
            ).fetchall()
        return [DomainRecord.from_payload(json.loads(row["payload"])) for row in rows]

    def clear_dirty(self, record_id: str, updated_at: datetime) -> bool:
        """Clear the flag unless the record was edited again since ``updated_at``."""

        with self._connection() as conn:
            cur = conn.execute(
                "UPDATE domain_records SET dirty = 0 WHERE record_id = ? AND updated_at = ? AND dirty = 1",
                (record_id, format_timestamp(updated_at)),
            )
            conn.commit()
            return cur.rowcount > 0

    def count_records(self, subject_id: str | None = None) -> int:
        with self._connection() as conn:
            if subject_id is None:
                row = conn.execute("SELECT COUNT(*) AS count FROM domain_records").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM domain_records WHERE subject_id = ?", (subject_id,)
                ).fetchone()
        return int(row["count"])


__all__ = ["LocalStore"]
