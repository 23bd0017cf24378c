"""Idempotency ledger mapping intent tokens to previously computed results."""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from .const import DEFAULT_INTENT_RETENTION
from .permits import format_timestamp
from .storage import SqliteStore

_LOGGER = logging.getLogger(__name__)


def new_intent_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True, slots=True)
class IntentOutcome:
    result: Any
    replayed: bool


class IntentLedger(SqliteStore):
    """Retain operation results per intent id for a bounded window.

    Results are stored only after the side effect has completed so a retry
    never observes success for work that did not happen. Expired rows read as
    absent; retention is a storage concern, not a correctness guarantee.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS intents (
            intent_id TEXT PRIMARY KEY,
            result TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL
        );
    """

    def __init__(
        self,
        path: str | Path = ":memory:",
        *,
        retention: timedelta = DEFAULT_INTENT_RETENTION,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.retention = retention
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        super().__init__(path)

    def check(self, intent_id: str) -> Any | None:
        now = format_timestamp(self._clock())
        with self._connection() as conn:
            row = conn.execute(
                "SELECT result FROM intents WHERE intent_id = ? AND expires_at > ?",
                (intent_id, now),
            ).fetchone()
        if row is None:
            return None
        return json.loads(row["result"])

    def store(self, intent_id: str, result: Any) -> None:
        if not intent_id:
            raise ValueError("intent_id is required")
        now = self._clock()
        with self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO intents(intent_id, result, created_at, expires_at) VALUES(?, ?, ?, ?)",
                (
                    intent_id,
                    json.dumps(result),
                    format_timestamp(now),
                    format_timestamp(now + self.retention),
                ),
            )
            conn.commit()

    def purge_expired(self) -> int:
        now = format_timestamp(self._clock())
        with self._connection() as conn:
            cur = conn.execute("DELETE FROM intents WHERE expires_at <= ?", (now,))
            conn.commit()
            removed = cur.rowcount
        if removed:
            _LOGGER.debug("Purged %d expired intent record(s)", removed)
        return removed

    def count(self) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS count FROM intents").fetchone()
        return int(row["count"])

    async def async_run_once(
        self,
        intent_id: str | None,
        operation: Callable[[], Awaitable[Any]],
    ) -> IntentOutcome:
        """Run ``operation`` unless ``intent_id`` already has a stored result.

        Without an ``intent_id`` the operation always runs and nothing is
        recorded. Failures propagate and are never stored.
        """

        if intent_id:
            cached = self.check(intent_id)
            if cached is not None:
                _LOGGER.debug("Replaying stored result for intent %s", intent_id)
                return IntentOutcome(result=cached, replayed=True)
        result = await operation()
        if intent_id:
            self.store(intent_id, result)
        return IntentOutcome(result=result, replayed=False)


__all__ = ["IntentLedger", "IntentOutcome", "new_intent_id"]
