from datetime import UTC, datetime

import pytest

from receipt_sync.config import ClientConfig
from receipt_sync.const import EVENT_DATA_REFRESH
from receipt_sync.manager import CaptureSyncError, CaptureSyncManager
from receipt_sync.models import DomainRecord
from receipt_sync.network import NetworkMonitor
from receipt_sync.permit_cache import LocalPermitIssuer
from receipt_sync.permits import SignatureAuthority, TierConfig
from receipt_sync.upload_queue import PauseReason


class FakeRemote:
    def __init__(self):
        self.records = []
        self.calls = []
        self.pushed = []

    async def async_fetch_records(self, subject_id, date_range=None):
        self.calls.append(subject_id)
        return list(self.records)

    async def async_push_record(self, subject_id, payload):
        self.pushed.append(payload["id"])
        self.records = [item for item in self.records if item["id"] != payload["id"]] + [dict(payload)]
        return dict(payload)


def _config(**overrides) -> ClientConfig:
    options = {
        "base_url": "https://api.test",
        "subject_id": "user-1",
        "poll_interval": 0.05,
        "retry_delays": [0],
        "sync_settle_delay": 0,
        "sync_interval": 3600,
    }
    options.update(overrides)
    return ClientConfig.from_options(options)


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote()


def _issuer(keyring, total=1000) -> LocalPermitIssuer:
    tiers = {
        "free": TierConfig(total_limit=total, daily_rate=0, validity_days=30),
        "guest": TierConfig(total_limit=total, daily_rate=0, validity_days=30),
    }
    return LocalPermitIssuer(SignatureAuthority(keyring, tiers=tiers))


@pytest.fixture
def manager(keyring, uploader, remote) -> CaptureSyncManager:
    return CaptureSyncManager(
        _config(),
        permit_fetcher=_issuer(keyring),
        uploader=uploader,
        remote=remote,
        network=NetworkMonitor(),
    )


@pytest.mark.asyncio
async def test_upload_completion_triggers_settled_sync(manager, remote, uploader, wait_until) -> None:
    refreshes = []
    manager.events.subscribe(EVENT_DATA_REFRESH, refreshes.append)
    await manager.async_start()
    try:
        await wait_until(lambda: len(remote.calls) >= 1)
        remote.records = [{"id": "r1", "updated_at": "2026-01-15T12:00:00Z", "record_date": "2026-01-15"}]

        manager.enqueue_capture("cap-1", "/captures/1.jpg")
        manager.enqueue_capture("cap-2", "/captures/2.jpg")
        await wait_until(lambda: len(refreshes) >= 1 and not manager.queue.tasks())

        assert len(uploader.calls) == 2
        assert refreshes[0]["subject_id"] == "user-1"
        assert refreshes[0]["result"]["synced"] == 1
        assert manager.store.fetch_record("r1") is not None
        status = manager.status()
        assert status["queue"]["pending"] == 0
        assert status["permit"]["used"] == 2
    finally:
        await manager.async_stop()


@pytest.mark.asyncio
async def test_sync_now_uses_default_subject(manager, remote, wait_until) -> None:
    await manager.async_start()
    try:
        await wait_until(lambda: len(remote.calls) >= 1)
        remote.records = [{"id": "r1", "updated_at": "2026-01-15T12:00:00Z"}]
        result = await manager.async_sync_now(intent_id="manual-1")
        assert result.synced == 1
        assert (await manager.async_sync_now(intent_id="manual-1")) == result
    finally:
        await manager.async_stop()


@pytest.mark.asyncio
async def test_refresh_permit_lifts_quota_pause(keyring, uploader, remote) -> None:
    manager = CaptureSyncManager(
        _config(),
        permit_fetcher=_issuer(keyring, total=1),
        uploader=uploader,
        remote=remote,
    )
    await manager.async_start()
    try:
        manager.queue.pause(PauseReason.QUOTA)
        stats = await manager.async_refresh_permit(validity_days=5)
        assert stats["has_permit"] is True
        assert stats["remaining"] == 1
        assert manager.queue.pause_reason is None
    finally:
        await manager.async_stop()


@pytest.mark.asyncio
async def test_operations_require_a_running_manager(manager) -> None:
    with pytest.raises(CaptureSyncError) as err:
        manager.enqueue_capture("cap-1", "/captures/1.jpg")
    assert err.value.reason == "not_started"


@pytest.mark.asyncio
async def test_start_without_endpoint_is_rejected() -> None:
    manager = CaptureSyncManager(ClientConfig.from_options({"subject_id": "user-1"}))
    with pytest.raises(CaptureSyncError) as err:
        await manager.async_start()
    assert err.value.reason == "not_configured"
    assert not manager.started


@pytest.mark.asyncio
async def test_local_edit_is_pushed_by_settled_sync(manager, remote, wait_until) -> None:
    await manager.async_start()
    try:
        await wait_until(lambda: len(remote.calls) >= 1)
        edited = manager.edit_record(
            DomainRecord(id="r9", updated_at=datetime(2020, 1, 1, tzinfo=UTC), fields={"total": 3})
        )
        assert edited.subject_id == "user-1"
        assert edited.updated_at > datetime(2020, 1, 1, tzinfo=UTC)

        await wait_until(lambda: remote.pushed == ["r9"])
        await wait_until(lambda: not manager.store.list_dirty_records("user-1"))
        assert manager.confirm_record("missing") is None
    finally:
        await manager.async_stop()


@pytest.mark.asyncio
async def test_reconnect_pushes_held_edits(manager, remote, wait_until) -> None:
    await manager.async_start()
    try:
        await wait_until(lambda: len(remote.calls) >= 1)
        manager.network.set_online(False)
        manager.edit_record(DomainRecord(id="r9", updated_at=datetime(2020, 1, 1, tzinfo=UTC)))
        await wait_until(lambda: len(remote.calls) >= 2)
        assert remote.pushed == []
        assert manager.sync_engine.last_result.queued == 1

        manager.network.set_online(True)
        await wait_until(lambda: remote.pushed == ["r9"])
    finally:
        await manager.async_stop()


@pytest.mark.asyncio
async def test_stop_closes_store_connections(manager) -> None:
    await manager.async_start()
    await manager.async_stop()
    assert manager.store._shared_conn is None
    assert manager.ledger._shared_conn is None
