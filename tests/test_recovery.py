import pytest

from bulk_mail_scheduler.persistence import JobStore
from bulk_mail_scheduler.recovery import RecoveryProcedure
from bulk_mail_scheduler.scheduler import Scheduler

from helpers import BASE_TS, FakeClock, make_job


async def make_recovery(tmp_path, clock):
    store = JobStore(str(tmp_path / "recovery.db"), clock=clock)
    await store.init_db()
    scheduler = Scheduler(clock=clock)
    return store, scheduler, RecoveryProcedure(store, scheduler, clock=clock)


@pytest.mark.asyncio
async def test_recover_restores_only_scheduled_jobs(tmp_path):
    clock = FakeClock()
    store, scheduler, recovery = await make_recovery(tmp_path, clock)
    await store.create(make_job("past", due_time=BASE_TS - 600))
    await store.create(make_job("present", due_time=BASE_TS))
    await store.create(make_job("future", due_time=BASE_TS + 600))
    await store.create(make_job("sent", due_time=BASE_TS + 600))
    await store.create(make_job("failed", due_time=BASE_TS - 600))
    await store.mark_sent("sent", BASE_TS - 1)
    await store.mark_failed("failed", "boom")

    restored = await recovery.recover()

    assert restored == 3
    pending = {entry.job_id: entry.due_time for entry in scheduler.pending()}
    assert pending == {"past": BASE_TS, "present": BASE_TS, "future": BASE_TS + 600}


@pytest.mark.asyncio
async def test_overdue_jobs_fire_immediately(tmp_path):
    clock = FakeClock()
    store, scheduler, recovery = await make_recovery(tmp_path, clock)
    await store.create(make_job("missed", due_time=BASE_TS - 3600))
    await store.create(make_job("future", due_time=BASE_TS + 60))
    await recovery.recover()

    due = await scheduler.dequeue_due()
    assert [entry.job_id for entry in due] == ["missed"]
    clock.advance(60)
    assert [entry.job_id for entry in await scheduler.dequeue_due()] == ["future"]


@pytest.mark.asyncio
async def test_recover_twice_does_not_duplicate(tmp_path):
    clock = FakeClock()
    store, scheduler, recovery = await make_recovery(tmp_path, clock)
    await store.create(make_job("a", due_time=BASE_TS + 10))
    await store.create(make_job("b", due_time=BASE_TS + 20))

    assert await recovery.recover() == 2
    assert await recovery.recover() == 2
    assert len(scheduler) == 2

    entries = await scheduler.dequeue_due(BASE_TS + 30)
    assert sorted(entry.job_id for entry in entries) == ["a", "b"]
    await store.mark_sent("a", BASE_TS + 30)

    # A restart after "a" was delivered only brings back "b".
    fresh = Scheduler(clock=clock)
    assert await RecoveryProcedure(store, fresh, clock=clock).recover() == 1
    assert [entry.job_id for entry in fresh.pending()] == ["b"]


@pytest.mark.asyncio
async def test_recover_on_empty_store(tmp_path):
    store, scheduler, recovery = await make_recovery(tmp_path, FakeClock())
    assert await recovery.recover() == 0
    assert len(scheduler) == 0
