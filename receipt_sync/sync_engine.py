"""Reconcile the local record store with the remote snapshot."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import asdict, dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from .errors import classify_error
from .intents import IntentLedger
from .local_store import LocalStore
from .models import DateRange, DomainRecord
from .network import NetworkMonitor

_LOGGER = logging.getLogger(__name__)


class ResolutionRule(str, Enum):
    """Rules in evaluation order; the first that applies decides the winner."""

    LOCAL_CONFIRMED = "local_confirmed"
    REMOTE_NEWER = "remote_newer"
    LOCAL_NEWER = "local_newer"
    REMOTE_DEFAULT = "remote_default"


class Winner(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


@dataclass(frozen=True, slots=True)
class Resolution:
    winner: Winner
    rule: ResolutionRule


def resolve_conflict(local: DomainRecord, remote: DomainRecord) -> Resolution:
    """Pick the canonical version of a record present in both replicas.

    A confirmed local record is never replaced by an unconfirmed remote one.
    Otherwise the later ``updated_at`` wins and the remote copy wins ties.
    """

    if local.confirmed and not remote.confirmed:
        return Resolution(Winner.LOCAL, ResolutionRule.LOCAL_CONFIRMED)
    if remote.updated_at > local.updated_at:
        return Resolution(Winner.REMOTE, ResolutionRule.REMOTE_NEWER)
    if local.updated_at > remote.updated_at:
        return Resolution(Winner.LOCAL, ResolutionRule.LOCAL_NEWER)
    return Resolution(Winner.REMOTE, ResolutionRule.REMOTE_DEFAULT)


@dataclass(frozen=True, slots=True)
class SyncIssue:
    record_id: str | None
    message: str


@dataclass(slots=True)
class SyncResult:
    """Merge summary for one sync pass."""

    synced: int = 0
    conflicts: int = 0
    unchanged: int = 0
    errors: list[SyncIssue] = field(default_factory=list)
    remote_count: int = 0
    local_count: int = 0
    pushed: int = 0
    queued: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["errors"] = [asdict(issue) for issue in self.errors]
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> SyncResult:
        return cls(
            synced=int(payload.get("synced", 0)),
            conflicts=int(payload.get("conflicts", 0)),
            unchanged=int(payload.get("unchanged", 0)),
            errors=[SyncIssue(**issue) for issue in payload.get("errors", [])],
            remote_count=int(payload.get("remote_count", 0)),
            local_count=int(payload.get("local_count", 0)),
            pushed=int(payload.get("pushed", 0)),
            queued=int(payload.get("queued", 0)),
        )


@dataclass(slots=True)
class PushResult:
    """Outcome of sending local edits; ``queued`` records stay dirty for the next pass."""

    pushed: int = 0
    queued: int = 0
    failed: list[SyncIssue] = field(default_factory=list)


class RemoteRecords(Protocol):
    async def async_fetch_records(
        self, subject_id: str, date_range: DateRange | None = None
    ) -> list[Mapping[str, Any] | DomainRecord]: ...

    async def async_push_record(self, subject_id: str, payload: Mapping[str, Any]) -> Mapping[str, Any]: ...


class SyncEngine:
    """Single owner of the ``domain_records`` table."""

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteRecords,
        *,
        ledger: IntentLedger | None = None,
        network: NetworkMonitor | None = None,
        clock: Callable[[], datetime] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.remote = remote
        self.ledger = ledger
        self.network = network
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.logger = logger or _LOGGER
        self.last_result: SyncResult | None = None
        self.last_error: str | None = None
        self.last_success_at: datetime | None = None
        self._lock = asyncio.Lock()

    async def async_sync(
        self,
        subject_id: str,
        date_range: DateRange | None = None,
        *,
        intent_id: str | None = None,
    ) -> SyncResult:
        if self.ledger is not None and intent_id:
            cached = self.ledger.check(intent_id)
            if cached is not None:
                return SyncResult.from_dict(cached)
        async with self._lock:
            push = await self._push(subject_id)
            result, fetched = await self._sync(subject_id, date_range)
        result.pushed = push.pushed
        result.queued = push.queued
        result.errors[:0] = push.failed
        # a pass that never saw both snapshots did no work worth replaying
        if fetched and self.ledger is not None and intent_id:
            self.ledger.store(intent_id, result.to_dict())
        self.last_result = result
        if fetched:
            self.last_success_at = self._clock()
        self.last_error = result.errors[0].message if result.errors else None
        return result

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    def save_local_edit(self, record: DomainRecord, *, confirm: bool = False) -> DomainRecord:
        """Store a local edit and mark it for the next push.

        ``updated_at`` is stamped with the current time so the edit wins
        against any remote version it was based on.
        """

        if not record.subject_id:
            raise ValueError(f"record {record.id} has no subject_id")
        now = self.now()
        now = now.replace(microsecond=now.microsecond - now.microsecond % 1000)
        confirmed_at = record.confirmed_at
        if confirm and confirmed_at is None:
            confirmed_at = now
        edited = replace(record, updated_at=now, confirmed_at=confirmed_at)
        self.store.upsert_record(edited, dirty=True)
        self.logger.debug("Stored local edit of %s", edited.id)
        return edited

    def confirm_record(self, record_id: str) -> DomainRecord | None:
        record = self.store.fetch_record(record_id)
        if record is None:
            return None
        if record.confirmed:
            return record
        return self.save_local_edit(record, confirm=True)

    async def async_push(self, subject_id: str) -> PushResult:
        async with self._lock:
            return await self._push(subject_id)

    async def _push(self, subject_id: str) -> PushResult:
        result = PushResult()
        dirty = self.store.list_dirty_records(subject_id)
        if not dirty:
            return result
        if self.network is not None and not self.network.online:
            result.queued = len(dirty)
            self.logger.info("Holding %d local edit(s) for %s until online", len(dirty), subject_id)
            return result
        for record in dirty:
            try:
                await self.remote.async_push_record(subject_id, record.to_payload())
            except asyncio.CancelledError:
                raise
            except Exception as err:
                kind = classify_error(err)
                self.logger.warning("Failed to push record %s (%s): %s", record.id, kind.value, err)
                result.failed.append(SyncIssue(record_id=record.id, message=str(err) or kind.value))
                if kind.retryable:
                    # the remote is unreachable; the rest stay dirty for the next pass
                    break
                continue
            self.store.clear_dirty(record.id, record.updated_at)
            result.pushed += 1
        result.queued = len(dirty) - result.pushed
        self.logger.info("Pushed %d local edit(s) for %s, %d left", result.pushed, subject_id, result.queued)
        return result

    async def _sync(self, subject_id: str, date_range: DateRange | None) -> tuple[SyncResult, bool]:
        result = SyncResult()
        try:
            remote_items = await self.remote.async_fetch_records(subject_id, date_range)
            local_records = self.store.list_records(subject_id, date_range)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            self.logger.warning("Sync for %s could not load snapshots: %s", subject_id, err)
            result.errors.append(SyncIssue(record_id=None, message=str(err) or type(err).__name__))
            return result, False

        result.remote_count = len(remote_items)
        result.local_count = len(local_records)
        local_by_id = {record.id: record for record in local_records}

        for item in remote_items:
            record_id = _item_id(item)
            try:
                remote = item if isinstance(item, DomainRecord) else DomainRecord.from_payload(item)
                if remote.subject_id is None:
                    remote.subject_id = subject_id
                local = local_by_id.get(remote.id)
                if local is None:
                    self.store.upsert_record(remote)
                    result.synced += 1
                    continue
                if local.to_payload() == remote.to_payload():
                    result.unchanged += 1
                    continue
                result.conflicts += 1
                resolution = resolve_conflict(local, remote)
                self.logger.debug(
                    "Record %s resolved to %s (%s)", remote.id, resolution.winner.value, resolution.rule.value
                )
                if resolution.winner is Winner.REMOTE:
                    self.store.upsert_record(remote)
                    result.synced += 1
            except Exception as err:
                self.logger.warning("Failed to sync record %s: %s", record_id, err)
                result.errors.append(SyncIssue(record_id=record_id, message=str(err) or type(err).__name__))

        self.logger.info(
            "Sync for %s: %d synced, %d conflicts, %d unchanged, %d errors (remote=%d local=%d)",
            subject_id,
            result.synced,
            result.conflicts,
            result.unchanged,
            len(result.errors),
            result.remote_count,
            result.local_count,
        )
        return result, True

    async def run_forever(
        self,
        subject_id: str,
        *,
        interval_seconds: float = 60,
        date_range: DateRange | None = None,
    ) -> None:
        while True:
            try:
                await self.async_sync(subject_id, date_range)
            except asyncio.CancelledError:
                raise
            except Exception as err:  # pragma: no cover - defensive log
                self.logger.exception("Unexpected sync error: %s", err)
                self.last_error = str(err)
            await asyncio.sleep(interval_seconds)

    def status(self) -> dict[str, Any]:
        return {
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
            "last_error": self.last_error,
            "last_result": self.last_result.to_dict() if self.last_result else None,
        }


def _item_id(item: Any) -> str | None:
    if isinstance(item, DomainRecord):
        return item.id
    if isinstance(item, Mapping):
        raw = item.get("id")
        return str(raw) if raw else None
    return None


__all__ = [
    "PushResult",
    "Resolution",
    "ResolutionRule",
    "SyncEngine",
    "SyncIssue",
    "SyncResult",
    "Winner",
    "resolve_conflict",
]
