import asyncio
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from receipt_sync.intents import IntentLedger
from receipt_sync.local_store import LocalStore
from receipt_sync.permits import TIER_FREE, TIER_GUEST, SignatureAuthority, SigningKeyring, TierConfig
from receipt_sync.transport import PermitGrant
from receipt_sync.utils.logging import reset_warnings


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 15, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeFetcher:
    """Permit fetcher backed by a real authority with scriptable failures."""

    def __init__(self, authority: SignatureAuthority) -> None:
        self.authority = authority
        self.calls: list[tuple[str, int | None]] = []
        self.used = 0
        self.error: Exception | None = None

    async def async_fetch_permit(self, subject_id, validity_days=None):
        self.calls.append((subject_id, validity_days))
        if self.error is not None:
            raise self.error
        return PermitGrant(permit=self.authority.issue(subject_id, validity_days), used=self.used)


class FakeUploader:
    """Uploader returning scripted outcomes; exceptions in the script are raised."""

    def __init__(self, outcomes=None) -> None:
        self.outcomes = list(outcomes or [])
        self.calls: list[tuple[str, str, str]] = []

    async def async_upload(self, subject_id, source_location, intent_id):
        self.calls.append((subject_id, source_location, intent_id))
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is None:
            name = Path(source_location).name
            outcome = {"location": f"https://blobs.test/{name}", "token": "tok", "key": f"{subject_id}/{name}"}
        return outcome


@pytest.fixture(autouse=True)
def _reset_warn_once():
    reset_warnings()
    yield
    reset_warnings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def keyring() -> SigningKeyring:
    return SigningKeyring("test-key")


@pytest.fixture
def authority(keyring, clock) -> SignatureAuthority:
    return SignatureAuthority(keyring, clock=clock)


@pytest.fixture
def unmetered_authority(keyring, clock) -> SignatureAuthority:
    """Authority whose tiers impose no rate limit."""

    tiers = {
        TIER_GUEST: TierConfig(total_limit=500, daily_rate=0, validity_days=30),
        TIER_FREE: TierConfig(total_limit=1000, daily_rate=0, validity_days=30),
    }
    return SignatureAuthority(keyring, tiers=tiers, clock=clock)


@pytest.fixture
def store() -> LocalStore:
    return LocalStore(":memory:")


@pytest.fixture
def ledger(clock) -> IntentLedger:
    return IntentLedger(":memory:", clock=clock)


@pytest.fixture
def wait_until():
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.001)

    return _wait


@pytest.fixture
def fetcher(authority) -> FakeFetcher:
    return FakeFetcher(authority)


@pytest.fixture
def uploader() -> FakeUploader:
    return FakeUploader()
