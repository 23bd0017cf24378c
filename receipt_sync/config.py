"""Client options: validation, defaults and JSON file loading."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import voluptuous as vol

from .const import (
    CONF_BASE_URL,
    CONF_INTENT_RETENTION_DAYS,
    CONF_MAX_RETRIES,
    CONF_POLL_INTERVAL,
    CONF_PROBE_URL,
    CONF_RETRY_DELAYS,
    CONF_STORE_PATH,
    CONF_SUBJECT_ID,
    CONF_SYNC_INTERVAL,
    CONF_SYNC_SETTLE_DELAY,
    CONF_VERIFY_KEYS,
    DEFAULT_INTENT_RETENTION_DAYS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_RETRY_DELAYS,
    DEFAULT_STORE_PATH,
    DEFAULT_SYNC_INTERVAL,
    DEFAULT_SYNC_SETTLE_DELAY,
)
from .errors import ConfigError

_LOGGER = logging.getLogger(__name__)

DEFAULTS: dict[str, Any] = {
    CONF_BASE_URL: "",
    CONF_SUBJECT_ID: "",
    CONF_STORE_PATH: DEFAULT_STORE_PATH,
    CONF_POLL_INTERVAL: DEFAULT_POLL_INTERVAL,
    CONF_RETRY_DELAYS: list(DEFAULT_RETRY_DELAYS),
    CONF_MAX_RETRIES: DEFAULT_MAX_RETRIES,
    CONF_SYNC_SETTLE_DELAY: DEFAULT_SYNC_SETTLE_DELAY,
    CONF_SYNC_INTERVAL: DEFAULT_SYNC_INTERVAL,
    CONF_INTENT_RETENTION_DAYS: DEFAULT_INTENT_RETENTION_DAYS,
    CONF_PROBE_URL: None,
    CONF_VERIFY_KEYS: [],
}

_SECONDS = vol.All(vol.Coerce(float), vol.Range(min=0))

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Optional(CONF_BASE_URL, default=""): vol.All(str, vol.Strip),
        vol.Optional(CONF_SUBJECT_ID, default=""): vol.All(str, vol.Strip),
        vol.Optional(CONF_STORE_PATH, default=DEFAULT_STORE_PATH): vol.All(str, vol.Length(min=1)),
        vol.Optional(CONF_POLL_INTERVAL, default=DEFAULT_POLL_INTERVAL): vol.All(
            vol.Coerce(float), vol.Range(min=0.05)
        ),
        vol.Optional(CONF_RETRY_DELAYS, default=list(DEFAULT_RETRY_DELAYS)): vol.All([_SECONDS], vol.Length(min=1)),
        vol.Optional(CONF_MAX_RETRIES, default=DEFAULT_MAX_RETRIES): vol.All(vol.Coerce(int), vol.Range(min=0)),
        vol.Optional(CONF_SYNC_SETTLE_DELAY, default=DEFAULT_SYNC_SETTLE_DELAY): _SECONDS,
        vol.Optional(CONF_SYNC_INTERVAL, default=DEFAULT_SYNC_INTERVAL): vol.All(vol.Coerce(int), vol.Range(min=15)),
        vol.Optional(CONF_INTENT_RETENTION_DAYS, default=DEFAULT_INTENT_RETENTION_DAYS): vol.All(
            vol.Coerce(int), vol.Range(min=1)
        ),
        vol.Optional(CONF_PROBE_URL, default=None): vol.Any(None, vol.All(str, vol.Strip)),
        vol.Optional(CONF_VERIFY_KEYS, default=list): [vol.All(str, vol.Length(min=1))],
    },
    extra=vol.REMOVE_EXTRA,
)


@dataclass(slots=True)
class ClientConfig:
    """Validated options for :class:`~receipt_sync.manager.CaptureSyncManager`."""

    base_url: str = ""
    subject_id: str = ""
    store_path: str = DEFAULT_STORE_PATH
    poll_interval: float = DEFAULT_POLL_INTERVAL
    retry_delays: tuple[float, ...] = DEFAULT_RETRY_DELAYS
    max_retries: int = DEFAULT_MAX_RETRIES
    sync_settle_delay: float = DEFAULT_SYNC_SETTLE_DELAY
    sync_interval: int = DEFAULT_SYNC_INTERVAL
    intent_retention_days: int = DEFAULT_INTENT_RETENTION_DAYS
    probe_url: str | None = None
    verify_keys: tuple[str, ...] = ()

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> ClientConfig:
        try:
            data = CONFIG_SCHEMA(dict(options))
        except vol.Invalid as err:
            raise ConfigError(f"invalid client options: {err}") from err
        return cls(
            base_url=data[CONF_BASE_URL].rstrip("/"),
            subject_id=data[CONF_SUBJECT_ID],
            store_path=data[CONF_STORE_PATH],
            poll_interval=data[CONF_POLL_INTERVAL],
            retry_delays=tuple(data[CONF_RETRY_DELAYS]),
            max_retries=data[CONF_MAX_RETRIES],
            sync_settle_delay=data[CONF_SYNC_SETTLE_DELAY],
            sync_interval=data[CONF_SYNC_INTERVAL],
            intent_retention_days=data[CONF_INTENT_RETENTION_DAYS],
            probe_url=data[CONF_PROBE_URL] or None,
            verify_keys=tuple(data[CONF_VERIFY_KEYS]),
        )

    @property
    def ready(self) -> bool:
        return bool(self.base_url and self.subject_id)


def load_config(path: str | Path) -> dict[str, Any]:
    """Return the options stored at ``path`` merged over :data:`DEFAULTS`."""

    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            cfg = json.load(handle)
    except FileNotFoundError:
        return dict(DEFAULTS)
    except (OSError, json.JSONDecodeError) as err:
        _LOGGER.warning("Ignoring unreadable options file %s: %s", path, err)
        return dict(DEFAULTS)
    if not isinstance(cfg, dict):
        return dict(DEFAULTS)
    merged = dict(DEFAULTS)
    merged.update(cfg)
    return merged


def save_config(cfg: Mapping[str, Any], path: str | Path) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    with p.open("w", encoding="utf-8") as handle:
        json.dump(dict(cfg), handle, indent=2)


__all__ = ["CONFIG_SCHEMA", "ClientConfig", "DEFAULTS", "load_config", "save_config"]
