"""Polling upload queue gated by permit admission."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from contextlib import suppress
from enum import Enum
from typing import Any, Protocol

from .const import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RETRY_DELAYS,
    EVENT_UPLOAD_COMPLETE,
    EVENT_UPLOAD_FAILED,
)
from .errors import ErrorKind, classify_error
from .events import EventBus
from .intents import IntentLedger, new_intent_id
from .local_store import LocalStore
from .models import TaskStatus, UploadTask
from .network import NetworkMonitor
from .permit_cache import PermitCache
from .utils.logging import warn_once

_LOGGER = logging.getLogger(__name__)


class QueueStatus(str, Enum):
    DRAINING = "draining"
    PAUSED = "paused"


class PauseReason(str, Enum):
    OFFLINE = "offline"
    QUOTA = "quota"


class Uploader(Protocol):
    async def async_upload(self, subject_id: str, source_location: str, intent_id: str) -> dict[str, Any]: ...


class UploadQueue:
    """Drain upload tasks one at a time, oldest first.

    The poll loop only runs while the queue is draining and at least one task
    is idle; it is re-armed by :meth:`enqueue`, :meth:`resume` and retry
    timers. Each upload goes through the intent ledger under the task's
    intent id so a retried request never performs the upload twice.
    """

    def __init__(
        self,
        store: LocalStore,
        permits: PermitCache,
        transport: Uploader,
        ledger: IntentLedger,
        *,
        network: NetworkMonitor | None = None,
        events: EventBus | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        logger: logging.Logger | None = None,
    ) -> None:
        if not retry_delays:
            raise ValueError("retry_delays must not be empty")
        self.store = store
        self.permits = permits
        self.transport = transport
        self.ledger = ledger
        self.network = network
        self.events = events or EventBus()
        self.poll_interval = poll_interval
        self.retry_delays = tuple(retry_delays)
        self.max_retries = max_retries
        self.logger = logger or _LOGGER
        self.queue_status = QueueStatus.DRAINING
        self.pause_reason: PauseReason | None = None
        self._tasks: dict[str, UploadTask] = {}
        self._retry_timers: dict[str, asyncio.Task] = {}
        self._loop_task: asyncio.Task | None = None
        self._lock = asyncio.Lock()
        self._running = False
        self._unsubscribe_network = None

    # ------------------------------------------------------------------
    async def async_start(self) -> None:
        """Restore persisted tasks and start draining."""

        if self._running:
            return
        pending = (TaskStatus.IDLE, TaskStatus.UPLOADING, TaskStatus.RETRYING, TaskStatus.FAILED)
        for task in self.store.list_tasks(pending):
            if task.status in (TaskStatus.UPLOADING, TaskStatus.RETRYING):
                # interrupted attempts are safe to replay under the same intent id
                task.status = TaskStatus.IDLE
                self.store.save_task(task)
            self._tasks[task.id] = task
        if self._tasks:
            self.logger.info("Restored %d upload task(s)", len(self._tasks))
        if self.network is not None:
            self._unsubscribe_network = self.network.subscribe(self._handle_connectivity)
            if not self.network.online:
                self.pause(PauseReason.OFFLINE)
        self._running = True
        self._arm()

    async def async_stop(self) -> None:
        self._running = False
        if self._unsubscribe_network is not None:
            self._unsubscribe_network()
            self._unsubscribe_network = None
        for timer in list(self._retry_timers.values()):
            timer.cancel()
            with suppress(asyncio.CancelledError):
                await timer
        self._retry_timers.clear()
        if self._loop_task is not None:
            self._loop_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._loop_task
        self._loop_task = None

    @property
    def polling(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def _arm(self) -> None:
        if not self._running or self.queue_status is not QueueStatus.DRAINING:
            return
        if self.polling or self._next_idle() is None:
            return
        self._loop_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def _poll_loop(self) -> None:
        while self._running and self.queue_status is QueueStatus.DRAINING:
            if self._next_idle() is None:
                # suspend until enqueue, resume or a retry timer re-arms us
                return
            try:
                await self.async_process_once()
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover - defensive log
                self.logger.exception("Unexpected upload queue error")
            await asyncio.sleep(self.poll_interval)

    # ------------------------------------------------------------------
    def enqueue(
        self,
        task_id: str,
        source_location: str,
        subject_id: str,
        *,
        intent_id: str | None = None,
    ) -> UploadTask:
        existing = self._tasks.get(task_id)
        if existing is not None:
            return existing
        task = UploadTask(
            id=task_id,
            source_location=source_location,
            subject_id=subject_id,
            intent_id=intent_id or new_intent_id(),
        )
        self.store.save_task(task)
        self._tasks[task_id] = task
        self.logger.debug("Enqueued upload %s for %s", task_id, subject_id)
        self._arm()
        return task

    def remove(self, task_id: str) -> bool:
        """Drop a task. An in-flight attempt finishes and its result is discarded."""

        task = self._tasks.pop(task_id, None)
        timer = self._retry_timers.pop(task_id, None)
        if timer is not None:
            timer.cancel()
        deleted = self.store.delete_task(task_id)
        return task is not None or deleted

    def retry(self, task_id: str) -> bool:
        task = self._tasks.get(task_id)
        if task is None or task.status is not TaskStatus.FAILED:
            return False
        task.status = TaskStatus.IDLE
        self.store.save_task(task)
        self._arm()
        return True

    def retry_all_failed(self) -> int:
        count = 0
        for task_id in [task.id for task in self._tasks.values() if task.status is TaskStatus.FAILED]:
            if self.retry(task_id):
                count += 1
        return count

    def pause(self, reason: PauseReason) -> None:
        if self.queue_status is QueueStatus.PAUSED and self.pause_reason is PauseReason.QUOTA:
            # quota pauses are only lifted by an explicit resume
            return
        if self.queue_status is QueueStatus.PAUSED and self.pause_reason is reason:
            return
        self.queue_status = QueueStatus.PAUSED
        self.pause_reason = reason
        self.logger.info("Upload queue paused (%s)", reason.value)

    def resume(self) -> None:
        if self.network is not None and not self.network.online:
            self.queue_status = QueueStatus.PAUSED
            self.pause_reason = PauseReason.OFFLINE
            return
        if self.queue_status is QueueStatus.PAUSED:
            self.logger.info("Upload queue resumed")
        self.queue_status = QueueStatus.DRAINING
        self.pause_reason = None
        self._arm()

    def _handle_connectivity(self, online: bool) -> None:
        if not online:
            self.pause(PauseReason.OFFLINE)
        elif self.pause_reason is PauseReason.OFFLINE:
            self.resume()

    # ------------------------------------------------------------------
    def tasks(self) -> list[UploadTask]:
        return list(self._tasks.values())

    def get(self, task_id: str) -> UploadTask | None:
        return self._tasks.get(task_id)

    def _next_idle(self) -> UploadTask | None:
        for task in self._tasks.values():
            if task.status is TaskStatus.IDLE:
                return task
        return None

    def _is_current(self, task: UploadTask) -> bool:
        return self._tasks.get(task.id) is task

    async def async_process_once(self) -> UploadTask | None:
        """Attempt the oldest idle task once. Returns the task when an upload was attempted."""

        async with self._lock:
            if self.queue_status is QueueStatus.PAUSED:
                return None
            if self.network is not None and not self.network.online:
                self.pause(PauseReason.OFFLINE)
                return None
            task = self._next_idle()
            if task is None:
                return None
            decision = await self.permits.async_admit(task.subject_id)
            if not decision.allowed:
                if decision.pauses_queue:
                    self.pause(PauseReason.QUOTA)
                else:
                    warn_once(
                        self.logger,
                        f"upload_admission_{decision.reason.value if decision.reason else 'denied'}",
                        f"upload {task.id} deferred",
                    )
                return None
            # connectivity or quota may have paused the queue while admission awaited
            if self.queue_status is QueueStatus.PAUSED or not self._is_current(task):
                return None
            task.status = TaskStatus.UPLOADING
            self.store.save_task(task)
            try:
                outcome = await self.ledger.async_run_once(
                    task.intent_id,
                    lambda: self.transport.async_upload(task.subject_id, task.source_location, task.intent_id),
                )
            except asyncio.CancelledError:
                raise
            except Exception as err:
                await self._handle_failure(task, err)
                return task
            if not outcome.replayed:
                # the remote side effect happened, so quota is spent even if the task was removed
                self.permits.record_consumption(task.subject_id)
            if not self._is_current(task):
                self.logger.debug("Discarding upload result for removed task %s", task.id)
                return None
            result = outcome.result if isinstance(outcome.result, dict) else {}
            task.status = TaskStatus.UPLOADED
            task.remote_key = result.get("key")
            task.last_error = None
            task.error_kind = None
            self.store.save_task(task)
            del self._tasks[task.id]
            self.logger.info("Uploaded %s for %s", task.id, task.subject_id)
        await self.events.async_publish(
            EVENT_UPLOAD_COMPLETE,
            {"task_id": task.id, "subject_id": task.subject_id, "remote_key": task.remote_key},
        )
        return task

    def retry_delay(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (1-based)."""

        index = min(max(retry_count, 1) - 1, len(self.retry_delays) - 1)
        return self.retry_delays[index]

    async def _handle_failure(self, task: UploadTask, err: Exception) -> None:
        if not self._is_current(task):
            self.logger.debug("Discarding failed attempt for removed task %s: %s", task.id, err)
            return
        kind = classify_error(err)
        task.last_error = str(err) or kind.value
        task.error_kind = kind
        if kind.retryable and task.retry_count < self.max_retries:
            task.retry_count += 1
            task.status = TaskStatus.RETRYING
            delay = self.retry_delay(task.retry_count)
            self.store.save_task(task)
            self.logger.debug("Retrying %s in %.1fs after %s error", task.id, delay, kind.value)
            self._retry_timers[task.id] = asyncio.get_running_loop().create_task(self._retry_after(task, delay))
            return
        task.status = TaskStatus.FAILED
        self.store.save_task(task)
        self.logger.warning("Upload %s failed (%s): %s", task.id, kind.value, task.last_error)
        if kind is ErrorKind.QUOTA:
            self.pause(PauseReason.QUOTA)
        await self.events.async_publish(
            EVENT_UPLOAD_FAILED,
            {"task_id": task.id, "error": task.last_error, "error_kind": kind.value},
        )

    async def _retry_after(self, task: UploadTask, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
        finally:
            if self._retry_timers.get(task.id) is asyncio.current_task():
                self._retry_timers.pop(task.id, None)
        if not self._is_current(task) or task.status is not TaskStatus.RETRYING:
            return
        task.status = TaskStatus.IDLE
        self.store.save_task(task)
        self._arm()

    def status(self) -> dict[str, Any]:
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks.values():
            counts[task.status.value] += 1
        return {
            "status": self.queue_status.value,
            "pause_reason": self.pause_reason.value if self.pause_reason else None,
            "polling": self.polling,
            "pending": len(self._tasks),
            "counts": counts,
            "failed": [
                {
                    "id": task.id,
                    "error": task.last_error,
                    "error_kind": task.error_kind.value if task.error_kind else None,
                }
                for task in self._tasks.values()
                if task.status is TaskStatus.FAILED
            ],
        }


__all__ = ["PauseReason", "QueueStatus", "UploadQueue", "Uploader"]
