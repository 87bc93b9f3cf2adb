from datetime import datetime, timedelta, timezone

import pytest

from novai_jobs.domain.enums import JobStatus, JobType
from novai_jobs.domain.errors import InvalidTransitionError, JobNotFoundError
from novai_jobs.services.job_service import CANCELLED_MESSAGE, JobService


@pytest.mark.asyncio
async def test_create_enqueues_with_retry_policy(jobs):
    training = await jobs.create(JobType.training, "model-1", {"trigger_word": "tok"})
    variant = await jobs.create(JobType.variant, "batch-1", {"batch_id": "batch-1"})

    assert training.status == JobStatus.queued
    assert training.max_attempts == 1
    assert training.progress == 0
    assert training.cost_cents is None
    assert training.output_payload == {"logs": []}
    assert variant.max_attempts == 3


@pytest.mark.asyncio
async def test_create_without_enqueue_stays_pending(jobs):
    job = await jobs.create(JobType.training, None, {}, enqueue=False)
    assert job.status == JobStatus.pending


@pytest.mark.asyncio
async def test_mark_processing_is_idempotent(jobs, start_job):
    job = await start_job()
    assert job.status == JobStatus.processing
    assert job.started_at is not None

    again = await jobs.mark_processing(job.id)
    assert again.status == JobStatus.processing
    assert again.started_at == job.started_at


@pytest.mark.asyncio
async def test_mark_completed_is_effective_once(jobs, store, start_job):
    job = await start_job()

    done = await jobs.mark_completed(job.id, {"weights_url": "https://w"}, 200)
    assert done.status == JobStatus.completed
    assert done.progress == 100
    assert done.cost_cents == 200
    assert done.output_payload["weights_url"] == "https://w"
    assert "logs" in done.output_payload

    again = await jobs.mark_completed(job.id, {"weights_url": "https://other"}, 999)
    assert again.cost_cents == 200
    assert again.completed_at == done.completed_at
    assert again.output_payload["weights_url"] == "https://w"
    assert store.costs == [(job.id, "training", 200)]


@pytest.mark.asyncio
async def test_mark_completed_clamps_negative_cost(jobs, store, start_job):
    job = await start_job()
    done = await jobs.mark_completed(job.id, {}, -5)
    assert done.cost_cents == 0
    assert store.costs == []


@pytest.mark.asyncio
async def test_mark_failed_is_effective_once(jobs, start_job):
    job = await start_job()

    failed = await jobs.mark_failed(job.id, "provider exploded")
    assert failed.status == JobStatus.failed
    assert failed.error_message == "provider exploded"
    assert failed.logs[-1].endswith("Failed: provider exploded")

    again = await jobs.mark_failed(job.id, "second message")
    assert again.error_message == "provider exploded"
    assert again.completed_at == failed.completed_at


@pytest.mark.asyncio
async def test_terminal_jobs_do_not_cross_over(jobs, start_job):
    job = await start_job()
    await jobs.mark_failed(job.id, "boom")

    after = await jobs.mark_completed(job.id, {"x": 1}, 50)
    assert after.status == JobStatus.failed
    assert after.cost_cents is None


@pytest.mark.asyncio
async def test_cancel_active_job(jobs):
    job = await jobs.create(JobType.image_generation, None, {})
    cancelled = await jobs.cancel(job.id)
    assert cancelled.status == JobStatus.failed
    assert cancelled.error_message == CANCELLED_MESSAGE


@pytest.mark.asyncio
async def test_cancel_terminal_job_is_rejected(jobs, start_job):
    job = await start_job()
    await jobs.mark_completed(job.id, {}, 0)
    with pytest.raises(InvalidTransitionError, match="Cannot cancel job with status: completed"):
        await jobs.cancel(job.id)


@pytest.mark.asyncio
async def test_cancel_unknown_job(jobs):
    with pytest.raises(JobNotFoundError):
        await jobs.cancel("does-not-exist")


@pytest.mark.asyncio
async def test_retry_failed_job_reuses_id_and_resets(jobs, store, start_job):
    job = await start_job()
    await jobs.set_external_request(job.id, "req-1", "training: IN_PROGRESS")
    await store.update(job.id, {"progress": 60})
    await jobs.mark_failed(job.id, "boom")

    retried = await jobs.retry(job.id)

    assert retried.id == job.id
    assert retried.status == JobStatus.queued
    assert retried.progress == 0
    assert retried.cost_cents is None
    assert retried.error_message is None
    assert retried.external_request_id is None
    assert retried.started_at is None
    assert retried.completed_at is None
    assert retried.input_payload == job.input_payload
    assert len(retried.logs) == 1 and retried.logs[0].endswith("Retry requested")


@pytest.mark.asyncio
async def test_retry_does_not_double_count_cost(jobs, store, start_job):
    job = await start_job()
    await jobs.mark_completed(job.id, {}, 10)

    with pytest.raises(InvalidTransitionError, match="Cannot retry job with status: completed"):
        await jobs.retry(job.id)
    assert store.costs == [(job.id, "training", 10)]


@pytest.mark.asyncio
async def test_retry_active_processing_job_is_rejected(jobs, start_job):
    job = await start_job()
    with pytest.raises(InvalidTransitionError, match="still actively processing"):
        await jobs.retry(job.id)


@pytest.mark.asyncio
async def test_retry_stuck_processing_job(store):
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    old_service = JobService(store, clock=lambda: past)
    job = await old_service.create(JobType.face_swap, None, {"video_url": "https://v"})
    await old_service.mark_processing(job.id)

    retried = await JobService(store).retry(job.id, stuck_minutes=60)
    assert retried.status == JobStatus.queued
    assert retried.started_at is None


@pytest.mark.asyncio
async def test_reschedule_puts_job_back_with_backoff(jobs, store):
    job = await jobs.create(JobType.variant, "batch-1", {"batch_id": "batch-1"})
    assert await store.claim_next("variant") == [job.id]
    await jobs.mark_processing(job.id)
    await store.update(job.id, {"progress": 40})

    before = datetime.now(timezone.utc)
    requeued = await jobs.reschedule(job.id, 5, "ffmpeg crashed")

    assert requeued.status == JobStatus.queued
    assert requeued.progress == 0
    assert requeued.attempt_count == 1
    assert requeued.next_run_at >= before + timedelta(seconds=4)
    assert requeued.logs[-1].endswith("Attempt 1/3 failed: ffmpeg crashed; retrying in 5s")
    # not claimable until the backoff passes
    assert await store.claim_next("variant") == []


@pytest.mark.asyncio
async def test_reschedule_ignores_non_processing_job(jobs):
    job = await jobs.create(JobType.variant, "batch-1", {})
    assert await jobs.reschedule(job.id, 5, "x") is None


@pytest.mark.asyncio
async def test_cleanup_stuck_jobs(store):
    past = datetime.now(timezone.utc) - timedelta(minutes=90)
    old_service = JobService(store, clock=lambda: past)
    stuck = await old_service.create(JobType.training, None, {})
    await old_service.mark_processing(stuck.id)

    service = JobService(store)
    fresh = await service.create(JobType.training, None, {})
    await service.mark_processing(fresh.id)

    assert await service.cleanup_stuck_jobs(60) == 1

    stuck_row = await store.get(stuck.id)
    assert stuck_row.status == JobStatus.failed
    assert stuck_row.error_message == "Job timed out after 60 minutes"
    assert (await store.get(fresh.id)).status == JobStatus.processing


@pytest.mark.asyncio
async def test_list_jobs_filters_by_type(jobs):
    await jobs.create(JobType.training, None, {})
    await jobs.create(JobType.image_generation, None, {})

    listed = await jobs.list_jobs(JobType.image_generation)
    assert [j.type for j in listed] == [JobType.image_generation]
