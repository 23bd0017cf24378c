"""In-process message passing between the upload queue and the sync engine."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from contextlib import suppress
from typing import Any

_LOGGER = logging.getLogger(__name__)

Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """Topic based publish/subscribe.

    A failing handler is logged and does not prevent delivery to the others.
    """

    def __init__(self, *, logger: logging.Logger | None = None) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self.logger = logger or _LOGGER

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            with suppress(ValueError):
                self._handlers[topic].remove(handler)

        return unsubscribe

    async def async_publish(self, topic: str, payload: Any = None) -> None:
        for handler in list(self._handlers.get(topic, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Handler for %s failed", topic)


class DebouncedTrigger:
    """Run ``action`` once ``delay`` seconds after the last :meth:`fire` call.

    Firing while the action runs does not interrupt it; one follow-up run is
    scheduled once it finishes.
    """

    def __init__(
        self,
        delay: float,
        action: Callable[[], Awaitable[Any]],
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.delay = delay
        self.action = action
        self.logger = logger or _LOGGER
        self._timer: asyncio.Task | None = None
        self._running = False
        self._rerun = False
        self.runs = 0

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    @property
    def running(self) -> bool:
        return self._running

    def fire(self) -> None:
        if self._running:
            self._rerun = True
            return
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._run_after_delay())

    async def _run_after_delay(self) -> None:
        await asyncio.sleep(self.delay)
        self._running = True
        self.runs += 1
        try:
            await self.action()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Debounced action failed")
        finally:
            self._running = False
        if self._rerun:
            self._rerun = False
            self._timer = asyncio.get_running_loop().create_task(self._run_after_delay())

    async def async_wait(self) -> None:
        """Wait for pending runs, including follow-ups, to finish."""
        while self._timer is not None and not self._timer.done():
            with suppress(asyncio.CancelledError):
                await self._timer

    async def async_cancel(self) -> None:
        self._rerun = False
        if self._timer is not None:
            self._timer.cancel()
            with suppress(asyncio.CancelledError):
                await self._timer
        self._timer = None


__all__ = ["DebouncedTrigger", "EventBus", "Handler"]
