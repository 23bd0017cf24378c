"""Wire the permit cache, upload queue and sync engine together."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from datetime import timedelta
from pathlib import Path
from typing import Any

from aiohttp import ClientSession

from .config import ClientConfig
from .const import EVENT_DATA_REFRESH, EVENT_UPLOAD_COMPLETE
from .errors import ReceiptSyncError
from .events import DebouncedTrigger, EventBus
from .intents import IntentLedger
from .local_store import LocalStore
from .models import DateRange, DomainRecord, UploadTask
from .network import NetworkMonitor
from .permit_cache import PermitCache, PermitFetcher
from .permits import verify_permit_any
from .sync_engine import RemoteRecords, SyncEngine, SyncResult
from .transport import PermitClient, RemoteRecordsClient, UploadTransport
from .upload_queue import PauseReason, Uploader, UploadQueue

_LOGGER = logging.getLogger(__name__)

PROBE_INTERVAL = 30


class CaptureSyncError(ReceiptSyncError):
    """Raised when a manager operation cannot be completed."""

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason


class CaptureSyncManager:
    """Own every client component and their lifecycle.

    Collaborators that talk to the network can be injected; anything not
    injected is built on :meth:`async_start` around a shared
    :class:`aiohttp.ClientSession`.
    """

    def __init__(
        self,
        config: ClientConfig,
        *,
        store_path: str | Path | None = None,
        session: ClientSession | None = None,
        permit_fetcher: PermitFetcher | None = None,
        uploader: Uploader | None = None,
        remote: RemoteRecords | None = None,
        network: NetworkMonitor | None = None,
        events: EventBus | None = None,
    ) -> None:
        self.config = config
        self.store_path = str(store_path or config.store_path)
        self.store = LocalStore(self.store_path)
        self.ledger = IntentLedger(self.store_path, retention=timedelta(days=config.intent_retention_days))
        self.network = network or NetworkMonitor()
        self.events = events or EventBus()
        self._session = session
        self._owns_session = False
        self._permit_fetcher = permit_fetcher
        self._uploader = uploader
        self._remote = remote
        self.permits: PermitCache | None = None
        self.queue: UploadQueue | None = None
        self.sync_engine: SyncEngine | None = None
        self._settle: DebouncedTrigger | None = None
        self._pending_sync_subjects: set[str] = set()
        self._sync_task: asyncio.Task | None = None
        self._probe_task: asyncio.Task | None = None
        self._unsubscribers: list[Callable[[], None]] = []
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def _needs_session(self) -> bool:
        return (
            self._permit_fetcher is None
            or self._uploader is None
            or self._remote is None
            or bool(self.config.probe_url)
        )

    async def async_start(self) -> None:
        if self._started:
            return
        if self._needs_session():
            if not self.config.base_url:
                raise CaptureSyncError("base_url is required", reason="not_configured")
            if self._session is None:
                self._session = ClientSession()
                self._owns_session = True
        session = self._session
        base_url = self.config.base_url
        verifier = None
        if self.config.verify_keys:
            keys = self.config.verify_keys

            def verifier(permit):
                return verify_permit_any(permit, keys)

        self.permits = PermitCache(
            self.store,
            self._permit_fetcher or PermitClient(session, base_url),
            verifier=verifier,
        )
        self.queue = UploadQueue(
            self.store,
            self.permits,
            self._uploader or UploadTransport(session, base_url),
            self.ledger,
            network=self.network,
            events=self.events,
            poll_interval=self.config.poll_interval,
            retry_delays=self.config.retry_delays,
            max_retries=self.config.max_retries,
        )
        self.sync_engine = SyncEngine(
            self.store,
            self._remote or RemoteRecordsClient(session, base_url),
            ledger=self.ledger,
            network=self.network,
        )
        self._settle = DebouncedTrigger(self.config.sync_settle_delay, self._async_run_settled_sync)
        self._unsubscribers.append(self.events.subscribe(EVENT_UPLOAD_COMPLETE, self._handle_upload_complete))
        self._unsubscribers.append(self.network.subscribe(self._handle_connectivity))
        self.ledger.purge_expired()
        await self.queue.async_start()
        loop = asyncio.get_running_loop()
        if self.config.subject_id:
            self._sync_task = loop.create_task(
                self.sync_engine.run_forever(self.config.subject_id, interval_seconds=self.config.sync_interval)
            )
        if self.config.probe_url and session is not None:
            self._probe_task = loop.create_task(self._probe_loop(session, self.config.probe_url))
        self._started = True
        _LOGGER.info("Capture sync started (store=%s)", self.store_path)

    async def async_stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for task in (self._sync_task, self._probe_task):
            if task is not None:
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task
        self._sync_task = None
        self._probe_task = None
        if self._settle is not None:
            await self._settle.async_cancel()
        if self.queue is not None:
            await self.queue.async_stop()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
            self._owns_session = False
        self.store.close()
        self.ledger.close()
        self._started = False

    # ------------------------------------------------------------------
    def _require_started(self) -> None:
        if not self._started:
            raise CaptureSyncError("capture sync is not running", reason="not_started")

    def _subject(self, subject_id: str | None) -> str:
        subject = subject_id or self.config.subject_id
        if not subject:
            raise CaptureSyncError("subject_id is required", reason="invalid_request")
        return subject

    def enqueue_capture(self, task_id: str, source_location: str, subject_id: str | None = None) -> UploadTask:
        self._require_started()
        return self.queue.enqueue(task_id, source_location, self._subject(subject_id))

    async def async_sync_now(
        self,
        subject_id: str | None = None,
        date_range: DateRange | None = None,
        *,
        intent_id: str | None = None,
    ) -> SyncResult:
        self._require_started()
        subject = self._subject(subject_id)
        result = await self.sync_engine.async_sync(subject, date_range, intent_id=intent_id)
        await self.events.async_publish(EVENT_DATA_REFRESH, {"subject_id": subject, "result": result.to_dict()})
        return result

    async def async_refresh_permit(
        self,
        subject_id: str | None = None,
        *,
        validity_days: int | None = None,
    ) -> dict[str, Any]:
        """Force a permit refresh and lift a quota pause once it succeeds."""

        self._require_started()
        subject = self._subject(subject_id)
        await self.permits.async_refresh(subject, force=True, validity_days=validity_days)
        if self.queue.pause_reason is PauseReason.QUOTA:
            self.queue.resume()
        return self.permits.usage_stats(subject)

    def edit_record(self, record: DomainRecord) -> DomainRecord:
        """Store a local edit and schedule the sync that pushes it."""

        self._require_started()
        if not record.subject_id:
            record.subject_id = self._subject(None)
        edited = self.sync_engine.save_local_edit(record)
        self._schedule_sync(edited.subject_id)
        return edited

    def confirm_record(self, record_id: str) -> DomainRecord | None:
        self._require_started()
        confirmed = self.sync_engine.confirm_record(record_id)
        if confirmed is not None:
            self._schedule_sync(confirmed.subject_id)
        return confirmed

    # ------------------------------------------------------------------
    def _schedule_sync(self, subject_id: str | None) -> None:
        if subject_id:
            self._pending_sync_subjects.add(subject_id)
        if self._settle is not None:
            self._settle.fire()

    def _handle_upload_complete(self, payload: Any) -> None:
        self._schedule_sync(payload.get("subject_id") if isinstance(payload, dict) else None)

    def _handle_connectivity(self, online: bool) -> None:
        # edits held while offline go out with the next pass
        if online and self.config.subject_id:
            self._schedule_sync(self.config.subject_id)

    async def _async_run_settled_sync(self) -> None:
        subjects = sorted(self._pending_sync_subjects)
        self._pending_sync_subjects.clear()
        for subject in subjects:
            result = await self.sync_engine.async_sync(subject)
            await self.events.async_publish(EVENT_DATA_REFRESH, {"subject_id": subject, "result": result.to_dict()})

    async def _probe_loop(self, session: ClientSession, url: str) -> None:
        while True:
            await self.network.async_probe(session, url)
            await asyncio.sleep(PROBE_INTERVAL)

    def status(self) -> dict[str, Any]:
        status: dict[str, Any] = {
            "started": self._started,
            "configured": self.config.ready,
            "store_path": self.store_path,
            "online": self.network.online,
            "intents": self.ledger.count(),
        }
        if self.queue is not None:
            status["queue"] = self.queue.status()
        if self.permits is not None and self.config.subject_id:
            status["permit"] = self.permits.usage_stats(self.config.subject_id)
        if self.sync_engine is not None:
            status["sync"] = self.sync_engine.status()
        return status


__all__ = ["CaptureSyncError", "CaptureSyncManager"]
