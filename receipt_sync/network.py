"""Connectivity tracking for the upload queue."""

from __future__ import annotations

import logging
from collections.abc import Callable

import aiohttp
from aiohttp import ClientError, ClientSession

_LOGGER = logging.getLogger(__name__)


class NetworkMonitor:
    """Holds the current reachability flag and notifies on transitions only."""

    def __init__(self, online: bool = True, *, logger: logging.Logger | None = None) -> None:
        self._online = online
        self._listeners: list[Callable[[bool], None]] = []
        self.logger = logger or _LOGGER

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, callback: Callable[[bool], None]) -> Callable[[], None]:
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        self.logger.info("Network is now %s", "online" if online else "offline")
        for callback in list(self._listeners):
            try:
                callback(online)
            except Exception:
                self.logger.exception("Connectivity listener failed")

    async def async_probe(self, session: ClientSession, url: str, *, timeout: float = 5) -> bool:
        """Check ``url`` for reachability and update the flag."""

        try:
            async with session.head(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                reachable = resp.status < 500
        except (ClientError, TimeoutError):
            reachable = False
        self.set_online(reachable)
        return reachable


__all__ = ["NetworkMonitor"]
