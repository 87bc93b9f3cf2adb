import pytest

from conftest import FakeFFmpeg, FakeStorage, ScriptedEngine, fake_download_bytes, fake_download_to_file
from novai_jobs.domain.enums import JobStatus, JobType
from novai_jobs.domain.errors import EngineFailedError
from novai_jobs.services.ffmpeg_service import FFmpegError
from novai_jobs.services.processors import base as processors_base
from novai_jobs.services.processors import variant as variant_module
from novai_jobs.services.processors.training import TrainingProcessor
from novai_jobs.services.processors.variant import VariantProcessor
from novai_jobs.workers.job_runner import JobRunner, retry_delay_seconds

TRAINING_INPUT = {"images_data_url": "https://src.test/images.zip", "trigger_word": "tok"}
VARIANT_INPUT = {"batch_id": "batch-1", "variant_index": 0, "video_id": "v1"}


@pytest.fixture(autouse=True)
def no_network(monkeypatch):
    monkeypatch.setattr(processors_base, "download_bytes", fake_download_bytes)
    monkeypatch.setattr(variant_module, "download_to_file", fake_download_to_file)


@pytest.fixture
def runner_for(jobs, tracker, tmp_path):
    """Build a JobRunner around the given processors."""

    def _build(processors):
        return JobRunner(jobs, tracker, processors, temp_dir=str(tmp_path / "runs"))

    return _build


def test_retry_delay_backoff():
    assert [retry_delay_seconds(n) for n in (1, 2, 3, 4, 5, 6)] == [5, 10, 20, 40, 60, 60]
    assert retry_delay_seconds(0) == 5


@pytest.mark.asyncio
async def test_training_job_completes_with_cost(jobs, store, storage, runner_for, tmp_path):
    engine = ScriptedEngine("fal:fast", {"weights_url": "https://fal/w.safetensors"}, pricing=lambda p, r: 200)
    runner = runner_for({JobType.training: TrainingProcessor(storage, engines=[engine])})
    job = await jobs.create(JobType.training, "model-1", TRAINING_INPUT)

    done = await runner.run(job.id)

    assert done.status == JobStatus.completed
    assert done.progress == 100
    assert done.cost_cents == 200
    assert done.output_payload["weights_url"] == "https://fal/w.safetensors"
    assert done.output_payload["logs"]
    assert store.costs == [(job.id, "training", 200)]
    # scratch space is removed afterwards
    assert not (tmp_path / "runs" / job.id).exists()


@pytest.mark.asyncio
async def test_invalid_input_fails_without_retry(jobs, storage, runner_for):
    runner = runner_for({JobType.training: TrainingProcessor(storage, engines=[ScriptedEngine("t")])})
    job = await jobs.create(JobType.training, None, {"trigger_word": "tok"})

    failed = await runner.run(job.id)

    assert failed.status == JobStatus.failed
    assert failed.error_message.startswith("Invalid training input: images_data_url")


@pytest.mark.asyncio
async def test_unsupported_job_type_fails(jobs, runner_for):
    job = await jobs.create(JobType.diagram_generation, None, {})
    failed = await runner_for({}).run(job.id)
    assert failed.status == JobStatus.failed
    assert failed.error_message == "Unsupported job type: diagram-generation"


@pytest.mark.asyncio
async def test_provider_failure_marks_failed_with_last_error(jobs, store, storage, runner_for):
    engines = [
        ScriptedEngine("a", EngineFailedError("a broke", "a")),
        ScriptedEngine("b", EngineFailedError("b broke", "b")),
    ]
    runner = runner_for({JobType.training: TrainingProcessor(storage, engines=engines)})
    job = await jobs.create(JobType.training, None, TRAINING_INPUT)

    failed = await runner.run(job.id)

    assert failed.status == JobStatus.failed
    assert failed.error_message == "b broke"
    assert failed.cost_cents is None
    assert store.costs == []


@pytest.mark.asyncio
async def test_terminal_job_is_not_rerun(jobs, storage, runner_for):
    engine = ScriptedEngine("t", {"weights_url": "https://fal/w.safetensors"})
    runner = runner_for({JobType.training: TrainingProcessor(storage, engines=[engine])})
    job = await jobs.create(JobType.training, None, TRAINING_INPUT)
    await runner.run(job.id)

    again = await runner.run(job.id)

    assert again.status == JobStatus.completed
    assert len(engine.calls) == 1


@pytest.mark.asyncio
async def test_cancel_during_run_wins(jobs, store, storage, runner_for):
    job = await jobs.create(JobType.training, None, TRAINING_INPUT)

    async def cancel_midway(_params):
        await jobs.cancel(job.id)

    engine = ScriptedEngine("t", {"weights_url": "https://fal/w.safetensors"}, on_call=cancel_midway, pricing=lambda p, r: 200)
    runner = runner_for({JobType.training: TrainingProcessor(storage, engines=[engine])})

    result = await runner.run(job.id)

    assert result.status == JobStatus.failed
    assert result.error_message == "Cancelled by user"
    assert result.cost_cents is None
    assert store.costs == []


@pytest.mark.asyncio
async def test_variant_render_failure_is_requeued(jobs, store, storage, media, runner_for):
    ffmpeg = FakeFFmpeg(render_error=FFmpegError("ffmpeg_failed: broken pipe"))
    runner = runner_for({JobType.variant: VariantProcessor(storage, media, ffmpeg)})
    job = await jobs.create(JobType.variant, "batch-1", VARIANT_INPUT)
    assert await store.claim_next("variant") == [job.id]

    result = await runner.run(job.id)

    assert result.status == JobStatus.queued
    assert result.attempt_count == 1
    assert result.error_message is None
    assert result.logs[-1].endswith("failed: ffmpeg_failed: broken pipe; retrying in 5s")
    assert "Attempt 1/3 failed" in result.logs[-1]


@pytest.mark.asyncio
async def test_variant_fails_when_attempts_exhausted(jobs, store, storage, media, runner_for):
    ffmpeg = FakeFFmpeg(render_error=FFmpegError("ffmpeg_failed: broken pipe"))
    runner = runner_for({JobType.variant: VariantProcessor(storage, media, ffmpeg)})
    job = await jobs.create(JobType.variant, "batch-1", VARIANT_INPUT)
    await store.update(job.id, {"attempt_count": 3})

    result = await runner.run(job.id)

    assert result.status == JobStatus.failed
    assert "ffmpeg_failed: broken pipe" in result.error_message


@pytest.mark.asyncio
async def test_variant_storage_outage_is_not_retried(jobs, store, media, runner_for):
    ffmpeg = FakeFFmpeg()
    storage = FakeStorage(fail_uploads=True)
    runner = runner_for({JobType.variant: VariantProcessor(storage, media, ffmpeg)})
    job = await jobs.create(JobType.variant, "batch-1", VARIANT_INPUT)
    assert await store.claim_next("variant") == [job.id]

    result = await runner.run(job.id)

    assert result.status == JobStatus.failed
    assert result.attempt_count == 1
    assert result.error_message.startswith("upload failed for variant-videos/")
    assert len(ffmpeg.render_calls) == 1


@pytest.mark.asyncio
async def test_variant_missing_video_is_not_retried(jobs, storage, media, runner_for):
    runner = runner_for({JobType.variant: VariantProcessor(storage, media, FakeFFmpeg())})
    job = await jobs.create(JobType.variant, "batch-1", {**VARIANT_INPUT, "video_id": "gone"})

    result = await runner.run(job.id)

    assert result.status == JobStatus.failed
    assert result.error_message == "Video not found: gone"


@pytest.mark.asyncio
async def test_variant_job_completes(jobs, storage, media, runner_for):
    runner = runner_for({JobType.variant: VariantProcessor(storage, media, FakeFFmpeg())})
    job = await jobs.create(JobType.variant, "batch-1", {**VARIANT_INPUT, "audio_id": "a2"})

    result = await runner.run(job.id)

    assert result.status == JobStatus.completed
    assert result.cost_cents == 0
    assert result.output_payload["video_url"].startswith("https://storage.test/variant-videos/variants/batch-1/")
