"""Tests for lease claiming, renewal and release."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.lease_manager import LeaseManager
from core.types import JobStatus, Provider
from database.memory import InMemoryJobStore


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


@pytest.fixture
def store(clock: _Clock) -> InMemoryJobStore:
    store = InMemoryJobStore(clock=clock)
    store.add_provider(Provider(id=1, name="Shop", website_url="https://shop.example/"))
    return store


class _YieldingStore(InMemoryJobStore):
    """Suspends between reading candidates and returning them, so claims interleave."""

    async def find_claimable_jobs(self, now, limit=5):
        candidates = await super().find_claimable_jobs(now, limit)
        await asyncio.sleep(0)
        return candidates


def _manager(store: InMemoryJobStore, clock: _Clock, worker_id: str) -> LeaseManager:
    return LeaseManager(store, worker_id, lease_duration=timedelta(minutes=5), clock=clock)


@pytest.mark.asyncio
async def test_claim_sets_lease_and_started_at(store: InMemoryJobStore, clock: _Clock) -> None:
    job = await store.create_job(1, "https://shop.example/")

    claimed = await _manager(store, clock, "worker-a").claim()

    assert claimed is not None and claimed.id == job.id
    assert claimed.status == JobStatus.RUNNING
    assert claimed.lease_owner == "worker-a"
    assert claimed.lease_expires_at == clock.now + timedelta(minutes=5)
    assert claimed.started_at == clock.now
    assert claimed.version == job.version + 1


@pytest.mark.asyncio
async def test_claim_returns_none_when_queue_empty(store: InMemoryJobStore, clock: _Clock) -> None:
    assert await _manager(store, clock, "worker-a").claim() is None


@pytest.mark.asyncio
async def test_concurrent_claims_have_exactly_one_winner(clock: _Clock) -> None:
    store = _YieldingStore(clock=clock)
    job = await store.create_job(1, "https://shop.example/")
    managers = [_manager(store, clock, f"worker-{i}") for i in range(8)]

    results = await asyncio.gather(*(m.claim() for m in managers))

    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    stored = await store.get_job(job.id)
    assert stored.lease_owner == winners[0].lease_owner


@pytest.mark.asyncio
async def test_concurrent_claims_spread_over_jobs(store: InMemoryJobStore, clock: _Clock) -> None:
    for n in range(3):
        await store.create_job(1, f"https://shop.example/{n}")
    managers = [_manager(store, clock, f"worker-{i}") for i in range(5)]

    results = await asyncio.gather(*(m.claim() for m in managers))

    claimed_ids = [r.id for r in results if r is not None]
    assert len(claimed_ids) == 3
    assert len(set(claimed_ids)) == 3


@pytest.mark.asyncio
async def test_unexpired_lease_is_not_claimable(store: InMemoryJobStore, clock: _Clock) -> None:
    await store.create_job(1, "https://shop.example/")
    assert await _manager(store, clock, "worker-a").claim() is not None

    clock.advance(minutes=4)

    assert await _manager(store, clock, "worker-b").claim() is None


@pytest.mark.asyncio
async def test_expired_lease_is_reclaimed(store: InMemoryJobStore, clock: _Clock) -> None:
    job = await store.create_job(1, "https://shop.example/")
    first = await _manager(store, clock, "worker-a").claim()

    clock.advance(minutes=6)
    reclaimed = await _manager(store, clock, "worker-b").claim()

    assert reclaimed is not None and reclaimed.id == job.id
    assert reclaimed.status == JobStatus.RUNNING
    assert reclaimed.lease_owner == "worker-b"
    assert reclaimed.started_at == first.started_at
    assert reclaimed.lease_expires_at == clock.now + timedelta(minutes=5)


@pytest.mark.asyncio
async def test_renew_extends_only_own_lease(store: InMemoryJobStore, clock: _Clock) -> None:
    job = await store.create_job(1, "https://shop.example/")
    owner = _manager(store, clock, "worker-a")
    other = _manager(store, clock, "worker-b")
    await owner.claim()

    clock.advance(minutes=2)
    assert await owner.renew(job.id) is True
    assert (await store.get_job(job.id)).lease_expires_at == clock.now + timedelta(minutes=5)

    assert await other.renew(job.id) is False


@pytest.mark.asyncio
async def test_renew_fails_after_takeover(store: InMemoryJobStore, clock: _Clock) -> None:
    job = await store.create_job(1, "https://shop.example/")
    owner = _manager(store, clock, "worker-a")
    await owner.claim()
    clock.advance(minutes=6)
    await _manager(store, clock, "worker-b").claim()

    assert await owner.renew(job.id) is False
    assert await owner.release(job.id, JobStatus.SUCCEEDED) is None
    assert (await store.get_job(job.id)).lease_owner == "worker-b"


@pytest.mark.asyncio
async def test_release_clears_lease_and_stamps_completion(
    store: InMemoryJobStore, clock: _Clock
) -> None:
    job = await store.create_job(1, "https://shop.example/")
    manager = _manager(store, clock, "worker-a")
    await manager.claim()
    clock.advance(seconds=30)

    released = await manager.release(job.id, JobStatus.FAILED, error_message="boom")

    assert released.status == JobStatus.FAILED
    assert released.lease_owner is None and released.lease_expires_at is None
    assert released.completed_at == clock.now
    assert released.error_message == "boom"
    assert await store.find_claimable_jobs(clock.now) == []
