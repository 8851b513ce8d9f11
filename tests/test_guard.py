from datetime import datetime, timedelta, timezone

import pytest

from kidbookai.automation import AutomationRun, InMemoryRunStore, RunStatus, StorybookDispatchGuard

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


async def pending_store():
    store = InMemoryRunStore()
    await store.create(AutomationRun(id="run-1", book_id="book-1", status=RunStatus.STORYBOOK_PENDING))
    return store


@pytest.mark.anyio
async def test_only_one_acquire_succeeds():
    store = await pending_store()
    guard = StorybookDispatchGuard(store, clock=Clock(NOW))

    assert await guard.acquire("run-1")
    assert not await guard.acquire("run-1")
    assert guard.is_engaged(await store.get("run-1"))

    await guard.release("run-1")
    run = await store.get("run-1")
    assert not guard.is_engaged(run)
    assert await guard.acquire("run-1")


@pytest.mark.anyio
async def test_claim_from_another_process_blocks_until_it_expires():
    store = await pending_store()
    clock = Clock(NOW)
    other_process = StorybookDispatchGuard(store, clock=clock)
    guard = StorybookDispatchGuard(store, claim_ttl=timedelta(minutes=10), clock=clock)

    assert await other_process.acquire("run-1")
    assert guard.is_engaged(await store.get("run-1"))
    assert not await guard.acquire("run-1")

    clock.now = NOW + timedelta(minutes=15)
    assert not guard.is_engaged(await store.get("run-1"))
    assert await guard.acquire("run-1")


@pytest.mark.anyio
async def test_failed_claim_does_not_leave_local_entry():
    store = await pending_store()
    guard = StorybookDispatchGuard(store, clock=Clock(NOW))
    await store.update("run-1", storybook_job_id="job-1")

    assert not await guard.acquire("run-1")
    run = await store.get("run-1")
    assert not guard.is_engaged(run)
