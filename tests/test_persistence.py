import pytest

from bulk_mail_scheduler.errors import DuplicateJobId, JobNotFound, PersistenceError
from bulk_mail_scheduler.models import JobStatus
from bulk_mail_scheduler.persistence import JobStore

from helpers import BASE_TS, FakeClock, make_job


async def make_store(tmp_path, name="jobs.db", clock=None) -> JobStore:
    store = JobStore(str(tmp_path / name), clock=clock or FakeClock())
    await store.init_db()
    return store


@pytest.mark.asyncio
async def test_create_and_get(tmp_path):
    store = await make_store(tmp_path)
    job_id = await store.create(make_job("job-1", hourly_limit=50))
    assert job_id == "job-1"
    job = await store.get("job-1")
    assert job.status is JobStatus.SCHEDULED
    assert job.due_time == BASE_TS
    assert job.sent_at is None
    assert job.error_message is None
    assert job.attempts == 0
    assert job.hourly_limit == 50
    assert job.created_at == BASE_TS
    assert await store.get("missing") is None


@pytest.mark.asyncio
async def test_create_duplicate_raises(tmp_path):
    store = await make_store(tmp_path)
    await store.create(make_job("job-1"))
    with pytest.raises(DuplicateJobId) as info:
        await store.create(make_job("job-1", recipient="other@example.com"))
    assert info.value.job_id == "job-1"
    job = await store.get("job-1")
    assert job.recipient == "job-1@example.com"


@pytest.mark.asyncio
async def test_create_many_is_all_or_nothing(tmp_path):
    store = await make_store(tmp_path)
    await store.create(make_job("job-2"))
    with pytest.raises(DuplicateJobId):
        await store.create_many([make_job("job-1"), make_job("job-2"), make_job("job-3")])
    assert await store.existing_job_ids(["job-1", "job-2", "job-3"]) == {"job-2"}

    ids = await store.create_many([make_job("job-1"), make_job("job-3")])
    assert ids == ["job-1", "job-3"]
    assert await store.count_scheduled() == 3


@pytest.mark.asyncio
async def test_mark_sent_twice_is_a_noop(tmp_path):
    store = await make_store(tmp_path)
    await store.create(make_job("job-1"))
    assert await store.mark_sent("job-1", BASE_TS + 5) is True
    assert await store.mark_sent("job-1", BASE_TS + 9) is False
    job = await store.get("job-1")
    assert job.status is JobStatus.SENT
    assert job.sent_at == BASE_TS + 5
    assert job.error_message is None


@pytest.mark.asyncio
async def test_mark_sent_unknown_or_failed_raises(tmp_path):
    store = await make_store(tmp_path)
    with pytest.raises(JobNotFound):
        await store.mark_sent("nope", BASE_TS)
    await store.create(make_job("job-1"))
    await store.mark_failed("job-1", "boom")
    with pytest.raises(JobNotFound):
        await store.mark_sent("job-1", BASE_TS)
    job = await store.get("job-1")
    assert job.status is JobStatus.FAILED
    assert job.sent_at is None


@pytest.mark.asyncio
async def test_mark_failed_keeps_message(tmp_path):
    store = await make_store(tmp_path)
    await store.create(make_job("job-1"))
    assert await store.mark_failed("job-1", "550 mailbox unavailable") is True
    assert await store.mark_failed("job-1", "other") is False
    job = await store.get("job-1")
    assert job.error_message == "550 mailbox unavailable"
    await store.create(make_job("job-2"))
    await store.mark_sent("job-2", BASE_TS)
    with pytest.raises(JobNotFound):
        await store.mark_failed("job-2", "late failure")


@pytest.mark.asyncio
async def test_list_queries_are_ordered(tmp_path):
    store = await make_store(tmp_path)
    await store.create(make_job("late", due_time=BASE_TS + 30))
    await store.create(make_job("early", due_time=BASE_TS + 10))
    await store.create(make_job("other-user", due_time=BASE_TS, user_id="user-2"))
    await store.create(make_job("sent-first", due_time=BASE_TS))
    await store.create(make_job("sent-second", due_time=BASE_TS))
    await store.create(make_job("broken", due_time=BASE_TS))
    await store.mark_sent("sent-first", BASE_TS + 1)
    await store.mark_sent("sent-second", BASE_TS + 2)
    await store.mark_failed("broken", "boom")

    scheduled = await store.list_scheduled("user-1")
    assert [job.job_id for job in scheduled] == ["early", "late"]

    finished = await store.list_sent_or_failed("user-1")
    assert [job.job_id for job in finished][:2] == ["sent-second", "sent-first"]
    assert {job.job_id for job in finished} == {"sent-first", "sent-second", "broken"}
    assert await store.list_sent_or_failed("user-2") == []


@pytest.mark.asyncio
async def test_list_pending_future_filters_status_and_time(tmp_path):
    store = await make_store(tmp_path)
    await store.create(make_job("past", due_time=BASE_TS - 60))
    await store.create(make_job("now", due_time=BASE_TS))
    await store.create(make_job("future", due_time=BASE_TS + 60))
    await store.create(make_job("future-sent", due_time=BASE_TS + 60))
    await store.mark_sent("future-sent", BASE_TS)

    future = await store.list_pending_future(BASE_TS)
    assert [job.job_id for job in future] == ["future"]
    pending = await store.list_pending()
    assert [job.job_id for job in pending] == ["past", "now", "future"]


@pytest.mark.asyncio
async def test_reschedule_and_record_attempt(tmp_path):
    store = await make_store(tmp_path)
    await store.create(make_job("job-1"))
    assert await store.reschedule("job-1", BASE_TS + 3600) is True
    assert (await store.get("job-1")).due_time == BASE_TS + 3600

    assert await store.record_attempt("job-1", BASE_TS + 5) == 1
    assert await store.record_attempt("job-1", BASE_TS + 10) == 2
    job = await store.get("job-1")
    assert job.attempts == 2
    assert job.due_time == BASE_TS + 10

    await store.mark_sent("job-1", BASE_TS)
    assert await store.reschedule("job-1", BASE_TS) is False
    with pytest.raises(JobNotFound):
        await store.record_attempt("job-1", BASE_TS)


@pytest.mark.asyncio
async def test_admit_in_window_caps_counter(tmp_path):
    store = await make_store(tmp_path)
    results = [await store.admit_in_window("a@x.com", "2023-11-14-22", BASE_TS, 2) for _ in range(4)]
    assert results == [True, True, False, False]
    assert await store.window_count("a@x.com", "2023-11-14-22") == 2
    assert await store.window_count("b@x.com", "2023-11-14-22") == 0
    assert await store.admit_in_window("a@x.com", "2023-11-14-22", BASE_TS, 0) is False


@pytest.mark.asyncio
async def test_prune_windows_before(tmp_path):
    store = await make_store(tmp_path)
    await store.admit_in_window("a@x.com", "old", 1000, 10)
    await store.admit_in_window("a@x.com", "new", 5000, 10)
    assert await store.prune_windows_before(2000) == 1
    assert await store.window_count("a@x.com", "old") == 0
    assert await store.window_count("a@x.com", "new") == 1


@pytest.mark.asyncio
async def test_unavailable_database_raises_persistence_error(tmp_path):
    store = JobStore(str(tmp_path / "missing-dir" / "jobs.db"))
    with pytest.raises(PersistenceError):
        await store.init_db()
