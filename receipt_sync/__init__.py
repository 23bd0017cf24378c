"""Local-first receipt capture client: signed quota permits, an upload queue and record sync."""

from __future__ import annotations

from .admission import AdmissionDecision, DenialReason, LocalUsageRecord, can_consume
from .config import ClientConfig, load_config
from .errors import (
    ErrorKind,
    PermitIntegrityError,
    PermitRequestError,
    ReceiptSyncError,
    RecordIntegrityError,
    SigningKeyError,
    TransportError,
    classify_error,
)
from .events import DebouncedTrigger, EventBus
from .intents import IntentLedger, IntentOutcome, new_intent_id
from .local_store import LocalStore
from .manager import CaptureSyncError, CaptureSyncManager
from .models import DateRange, DomainRecord, TaskStatus, UploadTask
from .network import NetworkMonitor
from .permit_cache import LocalPermitIssuer, PermitCache
from .permits import QuotaPermit, SignatureAuthority, SigningKeyring, verify_permit, verify_permit_any
from .sync_engine import PushResult, SyncEngine, SyncResult, resolve_conflict
from .upload_queue import PauseReason, QueueStatus, UploadQueue

__all__ = [
    "AdmissionDecision",
    "CaptureSyncError",
    "CaptureSyncManager",
    "ClientConfig",
    "DateRange",
    "DebouncedTrigger",
    "DenialReason",
    "DomainRecord",
    "ErrorKind",
    "EventBus",
    "IntentLedger",
    "IntentOutcome",
    "LocalPermitIssuer",
    "LocalStore",
    "LocalUsageRecord",
    "NetworkMonitor",
    "PauseReason",
    "PermitCache",
    "PermitIntegrityError",
    "PermitRequestError",
    "PushResult",
    "QueueStatus",
    "QuotaPermit",
    "ReceiptSyncError",
    "RecordIntegrityError",
    "SignatureAuthority",
    "SigningKeyError",
    "SigningKeyring",
    "SyncEngine",
    "SyncResult",
    "TaskStatus",
    "TransportError",
    "UploadQueue",
    "UploadTask",
    "can_consume",
    "classify_error",
    "load_config",
    "new_intent_id",
    "resolve_conflict",
    "verify_permit",
    "verify_permit_any",
]
