import itertools
from datetime import UTC, datetime, timedelta

import pytest

from receipt_sync.errors import ErrorKind, TransportError
from receipt_sync.local_store import LocalStore
from receipt_sync.models import DateRange, DomainRecord
from receipt_sync.network import NetworkMonitor
from receipt_sync.sync_engine import ResolutionRule, SyncEngine, Winner, resolve_conflict

BASE = datetime(2026, 1, 15, 10, 0, tzinfo=UTC)


class FakeRemote:
    def __init__(self, records=None) -> None:
        self.records = list(records or [])
        self.calls = []
        self.error = None
        self.pushed = []
        self.push_errors = []

    async def async_fetch_records(self, subject_id, date_range=None):
        self.calls.append((subject_id, date_range))
        if self.error is not None:
            raise self.error
        return [
            dict(item)
            for item in self.records
            if date_range is None or date_range.contains(item.get("record_date"))
        ]

    async def async_push_record(self, subject_id, payload):
        if self.push_errors:
            raise self.push_errors.pop(0)
        self.pushed.append(payload["id"])
        self.records = [item for item in self.records if item["id"] != payload["id"]] + [dict(payload)]
        return dict(payload)


def _payload(record_id, *, updated_at=BASE, confirmed_at=None, record_date="2026-01-15", **fields):
    return {
        "id": record_id,
        "subject_id": "user-1",
        "updated_at": updated_at.isoformat(),
        "confirmed_at": confirmed_at.isoformat() if confirmed_at else None,
        "record_date": record_date,
        "fields": fields,
    }


def _local(store, record_id, **kwargs):
    record = DomainRecord.from_payload(_payload(record_id, **kwargs))
    store.upsert_record(record)
    return record


@pytest.mark.asyncio
async def test_first_sync_into_empty_store(store) -> None:
    remote = FakeRemote([_payload(f"r{i}", total=i) for i in range(5)])
    result = await SyncEngine(store, remote).async_sync("user-1")

    assert (result.synced, result.conflicts, result.errors) == (5, 0, [])
    assert (result.remote_count, result.local_count) == (5, 0)
    assert store.count_records("user-1") == 5
    assert store.fetch_record("r3").fields == {"total": 3}


@pytest.mark.asyncio
async def test_confirmed_local_record_is_kept(store) -> None:
    _local(store, "r1", updated_at=BASE, confirmed_at=datetime(2026, 1, 15, 11, 0, tzinfo=UTC), total=10)
    remote = FakeRemote([_payload("r1", updated_at=BASE + timedelta(hours=5), total=99)])

    result = await SyncEngine(store, remote).async_sync("user-1")

    assert result.conflicts == 1
    assert result.synced == 0
    kept = store.fetch_record("r1")
    assert kept.fields == {"total": 10}
    assert kept.confirmed_at == datetime(2026, 1, 15, 11, 0, tzinfo=UTC)


@pytest.mark.asyncio
async def test_newer_side_wins(store) -> None:
    _local(store, "remote-newer", updated_at=BASE, total=1)
    _local(store, "local-newer", updated_at=BASE + timedelta(hours=1), total=1)
    remote = FakeRemote(
        [
            _payload("remote-newer", updated_at=BASE + timedelta(minutes=1), total=2),
            _payload("local-newer", updated_at=BASE, total=2),
        ]
    )

    result = await SyncEngine(store, remote).async_sync("user-1")

    assert (result.synced, result.conflicts) == (1, 2)
    assert store.fetch_record("remote-newer").fields == {"total": 2}
    assert store.fetch_record("local-newer").fields == {"total": 1}


@pytest.mark.asyncio
async def test_equal_timestamps_prefer_remote(store) -> None:
    _local(store, "r1", total=1)
    result = await SyncEngine(store, FakeRemote([_payload("r1", total=2)])).async_sync("user-1")
    assert (result.synced, result.conflicts) == (1, 1)
    assert store.fetch_record("r1").fields == {"total": 2}


@pytest.mark.asyncio
async def test_second_run_writes_nothing(store, monkeypatch) -> None:
    _local(store, "r1", confirmed_at=BASE, total=1)
    _local(store, "r2", total=1)
    remote = FakeRemote(
        [_payload("r1", updated_at=BASE + timedelta(days=1)), _payload("r2", total=5), _payload("r3")]
    )
    engine = SyncEngine(store, remote)
    first = await engine.async_sync("user-1")
    assert first.synced == 2

    writes = []
    original = store.upsert_record
    monkeypatch.setattr(store, "upsert_record", lambda record: (writes.append(record.id), original(record)))
    second = await engine.async_sync("user-1")

    assert writes == []
    assert second.synced == 0
    assert second.unchanged == 2
    assert second.conflicts == 1


@pytest.mark.asyncio
async def test_partial_batch_failure(store) -> None:
    class FlakyStore(LocalStore):
        def upsert_record(self, record):
            if record.id == "r2":
                raise OSError("disk full")
            super().upsert_record(record)

    flaky = FlakyStore(":memory:")
    remote = FakeRemote([_payload("r1"), _payload("r2"), _payload("r3")])

    result = await SyncEngine(flaky, remote).async_sync("user-1")

    assert result.synced == 2
    assert len(result.errors) == 1
    assert result.errors[0].record_id == "r2"
    assert "disk full" in result.errors[0].message
    assert flaky.fetch_record("r3") is not None


@pytest.mark.asyncio
async def test_malformed_remote_record_is_reported(store) -> None:
    broken = _payload("r2")
    broken.pop("updated_at")
    remote = FakeRemote([_payload("r1"), broken, {"updated_at": BASE.isoformat()}])

    result = await SyncEngine(store, remote).async_sync("user-1")

    assert result.synced == 1
    assert [issue.record_id for issue in result.errors] == ["r2", None]
    assert store.fetch_record("r2") is None


@pytest.mark.asyncio
async def test_snapshot_failure_reports_zero_counts(store) -> None:
    remote = FakeRemote()
    remote.error = TransportError("GET /records failed: 503", kind=ErrorKind.SERVER)
    engine = SyncEngine(store, remote)

    result = await engine.async_sync("user-1")

    assert (result.synced, result.conflicts, result.remote_count, result.local_count) == (0, 0, 0, 0)
    assert result.errors[0].record_id is None
    assert engine.last_error == "GET /records failed: 503"
    assert engine.last_success_at is None


@pytest.mark.asyncio
async def test_date_range_bounds_both_snapshots(store) -> None:
    _local(store, "old", record_date="2025-12-01")
    _local(store, "jan", record_date="2026-01-10")
    remote = FakeRemote([_payload("jan-remote", record_date="2026-01-20"), _payload("feb", record_date="2026-02-02")])

    result = await SyncEngine(store, remote).async_sync("user-1", DateRange("2026-01-01", "2026-01-31"))

    assert (result.remote_count, result.local_count, result.synced) == (1, 1, 1)
    assert remote.calls[0][1] == DateRange("2026-01-01", "2026-01-31")


@pytest.mark.asyncio
async def test_intent_replays_previous_summary(store, ledger) -> None:
    remote = FakeRemote([_payload("r1")])
    engine = SyncEngine(store, remote, ledger=ledger)

    first = await engine.async_sync("user-1", intent_id="sync-1")
    remote.records.append(_payload("r2"))
    second = await engine.async_sync("user-1", intent_id="sync-1")

    assert second == first
    assert len(remote.calls) == 1


@pytest.mark.asyncio
async def test_failed_pass_is_not_cached_under_intent(store, ledger) -> None:
    remote = FakeRemote([_payload("r1")])
    remote.error = TransportError("offline", kind=ErrorKind.NETWORK)
    engine = SyncEngine(store, remote, ledger=ledger)

    assert not (await engine.async_sync("user-1", intent_id="sync-1")).ok
    remote.error = None
    assert (await engine.async_sync("user-1", intent_id="sync-1")).synced == 1


def test_resolution_rules_in_order() -> None:
    confirmed = DomainRecord(id="r", updated_at=BASE, confirmed_at=BASE)
    plain = DomainRecord(id="r", updated_at=BASE)
    later = DomainRecord(id="r", updated_at=BASE + timedelta(seconds=1))
    later_confirmed = DomainRecord(id="r", updated_at=BASE + timedelta(seconds=1), confirmed_at=BASE)

    assert resolve_conflict(confirmed, later).rule is ResolutionRule.LOCAL_CONFIRMED
    assert resolve_conflict(confirmed, later_confirmed).rule is ResolutionRule.REMOTE_NEWER
    assert resolve_conflict(plain, later).rule is ResolutionRule.REMOTE_NEWER
    assert resolve_conflict(later, plain).rule is ResolutionRule.LOCAL_NEWER
    assert resolve_conflict(plain, plain).rule is ResolutionRule.REMOTE_DEFAULT
    assert resolve_conflict(plain, plain).winner is Winner.REMOTE


def test_confirmed_local_never_loses_to_unconfirmed_remote() -> None:
    offsets = [timedelta(days=-3), timedelta(0), timedelta(seconds=1), timedelta(days=400)]
    for local_offset, remote_offset in itertools.product(offsets, repeat=2):
        local = DomainRecord(id="r", updated_at=BASE + local_offset, confirmed_at=BASE)
        remote = DomainRecord(id="r", updated_at=BASE + remote_offset)
        first = resolve_conflict(local, remote)
        assert first.winner is Winner.LOCAL
        assert resolve_conflict(local, remote) == first


def test_record_payload_requires_id_and_timestamp() -> None:
    from receipt_sync.errors import RecordIntegrityError

    with pytest.raises(RecordIntegrityError):
        DomainRecord.from_payload({"updated_at": BASE.isoformat()})
    with pytest.raises(RecordIntegrityError):
        DomainRecord.from_payload({"id": "r1", "updated_at": "not a time"})


@pytest.mark.asyncio
async def test_confirmed_edit_is_pushed_before_pull(store, clock) -> None:
    _local(store, "r1", total=10)
    remote = FakeRemote([_payload("r1", total=10)])
    engine = SyncEngine(store, remote, clock=clock)

    confirmed = engine.confirm_record("r1")
    assert confirmed.confirmed_at == clock()
    assert [record.id for record in store.list_dirty_records("user-1")] == ["r1"]

    result = await engine.async_sync("user-1")
    assert (result.pushed, result.queued, result.conflicts, result.unchanged) == (1, 0, 0, 1)
    assert remote.pushed == ["r1"]
    assert store.list_dirty_records("user-1") == []

    again = await engine.async_sync("user-1")
    assert (again.pushed, again.conflicts, again.unchanged) == (0, 0, 1)
    assert remote.pushed == ["r1"]


@pytest.mark.asyncio
async def test_unreachable_remote_keeps_edits_dirty(store, clock) -> None:
    engine = SyncEngine(store, FakeRemote(), clock=clock)
    for record_id in ("r1", "r2"):
        engine.save_local_edit(DomainRecord.from_payload(_payload(record_id)))
    engine.remote.push_errors = [TransportError("connection reset", kind=ErrorKind.NETWORK)]

    result = await engine.async_sync("user-1")

    assert (result.pushed, result.queued) == (0, 2)
    assert [issue.record_id for issue in result.errors] == ["r1"]
    assert len(store.list_dirty_records("user-1")) == 2

    result = await engine.async_sync("user-1")
    assert (result.pushed, result.queued) == (2, 0)


@pytest.mark.asyncio
async def test_rejected_edit_does_not_block_the_rest(store, clock) -> None:
    engine = SyncEngine(store, FakeRemote(), clock=clock)
    engine.save_local_edit(DomainRecord.from_payload(_payload("r1")))
    clock.advance(seconds=1)
    engine.save_local_edit(DomainRecord.from_payload(_payload("r2")))
    engine.remote.push_errors = [TransportError("forbidden", kind=ErrorKind.AUTHORIZATION, status=403)]

    push = await engine.async_push("user-1")

    assert (push.pushed, push.queued) == (1, 1)
    assert [record.id for record in store.list_dirty_records("user-1")] == ["r1"]


@pytest.mark.asyncio
async def test_offline_engine_holds_edits(store, clock) -> None:
    remote = FakeRemote()
    engine = SyncEngine(store, remote, network=NetworkMonitor(online=False), clock=clock)
    engine.save_local_edit(DomainRecord.from_payload(_payload("r1")))

    push = await engine.async_push("user-1")

    assert (push.pushed, push.queued, push.failed) == (0, 1, [])
    assert remote.pushed == []


@pytest.mark.asyncio
async def test_newer_remote_version_replaces_pending_edit(store, clock) -> None:
    engine = SyncEngine(store, FakeRemote(), clock=clock)
    edited = engine.save_local_edit(DomainRecord.from_payload(_payload("r1", total=1)))
    engine.remote.push_errors = [TransportError("timeout", kind=ErrorKind.TIMEOUT)]
    engine.remote.records = [_payload("r1", updated_at=edited.updated_at + timedelta(minutes=5), total=7)]

    result = await engine.async_sync("user-1")

    assert result.synced == 1
    assert store.fetch_record("r1").fields == {"total": 7}
    assert store.list_dirty_records("user-1") == []


def test_local_edit_needs_subject(store) -> None:
    engine = SyncEngine(store, FakeRemote())
    with pytest.raises(ValueError):
        engine.save_local_edit(DomainRecord(id="r1", updated_at=BASE))
