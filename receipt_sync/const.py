"""Constants for the receipt capture sync client."""

from __future__ import annotations

from datetime import timedelta

CONF_BASE_URL = "base_url"
CONF_SUBJECT_ID = "subject_id"
CONF_STORE_PATH = "store_path"
CONF_POLL_INTERVAL = "poll_interval"
CONF_RETRY_DELAYS = "retry_delays"
CONF_MAX_RETRIES = "max_retries"
CONF_SYNC_SETTLE_DELAY = "sync_settle_delay"
CONF_SYNC_INTERVAL = "sync_interval"
CONF_INTENT_RETENTION_DAYS = "intent_retention_days"
CONF_PROBE_URL = "probe_url"
CONF_VERIFY_KEYS = "verify_keys"

DEFAULT_POLL_INTERVAL = 1.0
# Seconds to wait before retry N (1-based); the last entry is reused.
DEFAULT_RETRY_DELAYS: tuple[float, ...] = (1.0, 2.0, 4.0)
DEFAULT_MAX_RETRIES = 3
DEFAULT_SYNC_SETTLE_DELAY = 3.0
DEFAULT_SYNC_INTERVAL = 60
DEFAULT_INTENT_RETENTION_DAYS = 7
DEFAULT_INTENT_RETENTION = timedelta(days=DEFAULT_INTENT_RETENTION_DAYS)
DEFAULT_STORE_PATH = ":memory:"
DEFAULT_REQUEST_TIMEOUT = 30

SECONDS_PER_DAY = 86400

TIER_GUEST = "guest"
TIER_FREE = "free"
TIER_BASIC = "basic"
TIER_PRO = "pro"

SUBJECT_PREFIX_DEVICE = "device-"
SUBJECT_PREFIX_USER = "user-"

EVENT_UPLOAD_COMPLETE = "upload:complete"
EVENT_UPLOAD_FAILED = "upload:failed"
EVENT_DATA_REFRESH = "data:refresh"

HEADER_SUBJECT_ID = "X-Subject-ID"
HEADER_INTENT_ID = "X-Intent-ID"

ENV_SIGNING_KEYS = "PERMIT_SIGNING_KEYS"
