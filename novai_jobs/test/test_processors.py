from pathlib import Path

import pytest

from conftest import FakeFFmpeg, ScriptedEngine, fake_download_bytes, fake_download_to_file
from novai_jobs.domain.enums import ImageGenerationMode, JobType
from novai_jobs.domain.errors import CallerError, EngineFailedError
from novai_jobs.services.engines.base import require_keys
from novai_jobs.services.pipeline import PipelineContext
from novai_jobs.services.processors import base as processors_base
from novai_jobs.services.processors import face_swap as face_swap_module
from novai_jobs.services.processors import variant as variant_module
from novai_jobs.services.processors.base import first_url
from novai_jobs.services.processors.diagram import DiagramProcessor
from novai_jobs.services.processors.face_swap import FaceSwapProcessor
from novai_jobs.services.processors.image_generation import ImageGenerationProcessor, image_size_for
from novai_jobs.services.processors.training import TrainingProcessor, extract_training_result
from novai_jobs.services.processors.variant import VariantProcessor, safe_name, variant_storage_path

SOURCE_VIDEO = "https://src.test/clip.mp4"
TARGET_FACE = "https://src.test/face.png"


@pytest.fixture(autouse=True)
def no_network(monkeypatch):
    """Route every download through local fakes."""
    monkeypatch.setattr(processors_base, "download_bytes", fake_download_bytes)
    monkeypatch.setattr(face_swap_module, "download_to_file", fake_download_to_file)
    monkeypatch.setattr(variant_module, "download_to_file", fake_download_to_file)


def _ctx(job, tmp_path) -> PipelineContext:
    return PipelineContext(job_id=job.id, job_type=job.type, input=dict(job.input_payload), workdir=Path(tmp_path) / "w" / job.id)


async def _run(pipeline, processor, job, tmp_path):
    ctx = _ctx(job, tmp_path)
    stages = processor.build_stages(ctx)
    return await pipeline.run(ctx, stages, build_output=processor.build_output, deadline_minutes=processor.deadline_minutes)


# -----------------------------------------------------------------------------
# helpers
# -----------------------------------------------------------------------------

def test_first_url_shapes():
    assert first_url("https://a") == "https://a"
    assert first_url({"url": "https://b"}) == "https://b"
    assert first_url([{"url": "https://c"}, {"url": "https://d"}]) == "https://c"
    assert first_url([]) is None
    assert first_url(None) is None


def test_extract_training_result():
    raw = {
        "diffusers_lora_file": {"url": "https://fal/w.safetensors", "file_size": 1234},
        "config_file": {"url": "https://fal/config.json"},
    }
    assert extract_training_result(raw) == {
        "weights_url": "https://fal/w.safetensors",
        "config_url": "https://fal/config.json",
        "file_size": 1234,
    }


def test_image_size_for():
    assert image_size_for("16:9") == "landscape_16_9"
    assert image_size_for("7:3") == "square_hd"


def test_safe_name_and_storage_path():
    assert safe_name("Beach Clip.mp4") == "Beach-Clip"
    assert safe_name("!!!.mp4") == "video"
    assert safe_name("", fallback="clip") == "clip"
    assert variant_storage_path("batch-1", 2, 1700000000000) == "variants/batch-1/variant-2-1700000000000.mp4"


# -----------------------------------------------------------------------------
# input validation
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_invalid_input_is_a_caller_error(storage, start_job, tmp_path):
    job = await start_job(JobType.training, {"trigger_word": "tok"})
    processor = TrainingProcessor(storage, engines=[ScriptedEngine("t")])
    with pytest.raises(CallerError, match="Invalid training input: images_data_url"):
        processor.build_stages(_ctx(job, tmp_path))


@pytest.mark.asyncio
async def test_image_mode_requires_reference(storage, start_job, tmp_path):
    job = await start_job(JobType.image_generation, {"prompt": "x", "mode": "face-swap"})
    with pytest.raises(CallerError, match="face_image_url"):
        ImageGenerationProcessor(storage, engines={}).build_stages(_ctx(job, tmp_path))


# -----------------------------------------------------------------------------
# training / diagram / images
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_training_uses_fallback_trainer(pipeline, storage, start_job, tmp_path):
    job = await start_job(JobType.training, {"images_data_url": "https://src.test/images.zip", "trigger_word": "tok"})
    primary = ScriptedEngine("fal:fast", EngineFailedError("trainer crashed", "fal:fast"), pricing=lambda p, r: 200)
    fallback = ScriptedEngine(
        "fal:wan",
        {"weights_url": "https://fal/w.safetensors", "config_url": None, "file_size": 10},
        pricing=lambda p, r: 200,
        validators=[require_keys("weights_url")],
    )
    processor = TrainingProcessor(storage, engines=[primary, fallback])

    outcome = await _run(pipeline, processor, job, tmp_path)

    assert outcome.cost_cents == 200
    assert outcome.output["weights_url"] == "https://fal/w.safetensors"
    assert outcome.output["trigger_word"] == "tok"
    assert outcome.output["engine"] == "fal:wan"
    assert fallback.calls[0]["images_data_url"] == "https://src.test/images.zip"
    assert fallback.calls[0]["steps"] == 1000


@pytest.mark.asyncio
async def test_diagram_persists_generated_image(pipeline, storage, start_job, tmp_path):
    job = await start_job(JobType.diagram_generation, {"source_image_url": "https://src.test/char.png", "prompt": "knight"})
    engine = ScriptedEngine("fal:kontext", {"image_url": "https://fal/diagram.png"}, pricing=lambda p, r: 2)
    processor = DiagramProcessor(storage, engines=[engine])

    outcome = await _run(pipeline, processor, job, tmp_path)

    stored_path = f"diagrams/{job.id}/diagram.png"
    assert outcome.output["image_url"] == f"https://storage.test/generated-media/{stored_path}"
    assert outcome.output["provider_image_url"] == "https://fal/diagram.png"
    assert storage.uploads[("generated-media", stored_path)] == b"downloaded:https://fal/diagram.png"
    assert outcome.cost_cents == 2


@pytest.mark.asyncio
async def test_image_generation_falls_back_on_zero_images(pipeline, storage, start_job, tmp_path):
    job = await start_job(JobType.image_generation, {"prompt": "a lighthouse", "num_images": 2})

    def price(_p, result):
        return 3 * len(result["images"])

    empty = ScriptedEngine("fal:subscribe", {"images": []}, pricing=price, validators=[require_keys("images")])
    good = ScriptedEngine(
        "fal:queue",
        {"images": ["https://fal/1.png", "https://fal/2.png"]},
        pricing=price,
        validators=[require_keys("images")],
    )
    processor = ImageGenerationProcessor(storage, engines={ImageGenerationMode.text_to_image: [empty, good]})

    outcome = await _run(pipeline, processor, job, tmp_path)

    assert outcome.cost_cents == 6
    assert outcome.output["count"] == 2
    assert outcome.output["mode"] == "text-to-image"
    assert outcome.output["images"][0] == f"https://storage.test/generated-media/images/{job.id}/image-1.png"
    assert outcome.stage_results[0].fallback_used is True


# -----------------------------------------------------------------------------
# face swap
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_wan_replace_bills_per_second(pipeline, storage, start_job, tmp_path):
    job = await start_job(
        JobType.face_swap,
        {"video_url": SOURCE_VIDEO, "target_face_url": TARGET_FACE, "resolution": "480p", "duration_seconds": 6},
    )
    wan = ScriptedEngine(
        "fal:wan",
        {"video_url": "https://fal/out.mp4"},
        pricing=face_swap_module._wan_price,
    )
    processor = FaceSwapProcessor(storage, FakeFFmpeg(), wan_engines=[wan])

    outcome = await _run(pipeline, processor, job, tmp_path)

    assert outcome.cost_cents == 24
    assert outcome.output["method"] == "wan_replace"
    assert outcome.output["engine"] == "fal:wan"
    assert outcome.output["provider_video_url"] == "https://fal/out.mp4"
    assert outcome.output["video_url"].endswith(f"face-swaps/{job.id}/output.mp4")


@pytest.mark.asyncio
async def test_kling_without_source_audio_skips_merge(pipeline, storage, start_job, tmp_path):
    job = await start_job(JobType.face_swap, {"video_url": SOURCE_VIDEO, "target_face_url": TARGET_FACE, "method": "kling"})
    identity = ScriptedEngine("fal:face-swap", {"image_url": "https://fal/swapped.png"}, pricing=lambda p, r: 1)
    motion = ScriptedEngine("fal:motion", {"video_url": "https://fal/motion.mp4"}, pricing=lambda p, r: 40)
    processor = FaceSwapProcessor(
        storage,
        FakeFFmpeg(audio=False, duration=7.5),
        identity_engines=[identity],
        motion_engines=[motion],
    )

    outcome = await _run(pipeline, processor, job, tmp_path)

    assert outcome.cost_cents == 41
    assert outcome.skipped == ["audio-merge"]
    assert outcome.output["audio_merged"] is False
    assert outcome.output["engine"] == "fal:motion"
    assert identity.calls[0] == {
        "image_url": f"https://storage.test/generated-media/face-swaps/{job.id}/first_frame.jpg",
        "target_face_url": TARGET_FACE,
    }
    assert motion.calls[0]["duration_seconds"] == 7.5
    # finalize persisted the provider video
    assert storage.uploads[("generated-media", f"face-swaps/{job.id}/output.mp4")] == b"downloaded:https://fal/motion.mp4"


@pytest.mark.asyncio
async def test_kling_with_source_audio_uploads_merged_file(pipeline, storage, start_job, tmp_path):
    job = await start_job(JobType.face_swap, {"video_url": SOURCE_VIDEO, "target_face_url": TARGET_FACE, "method": "kling"})
    processor = FaceSwapProcessor(
        storage,
        FakeFFmpeg(audio=True),
        identity_engines=[ScriptedEngine("swap", {"image_url": "https://fal/swapped.png"})],
        motion_engines=[ScriptedEngine("motion", {"video_url": "https://fal/motion.mp4"})],
    )

    outcome = await _run(pipeline, processor, job, tmp_path)

    assert outcome.output["audio_merged"] is True
    assert storage.uploads[("generated-media", f"face-swaps/{job.id}/output.mp4")] == b"merged"


@pytest.mark.asyncio
async def test_frame_by_frame_keeps_original_on_frame_failure(pipeline, storage, start_job, tmp_path):
    job = await start_job(
        JobType.face_swap,
        {"video_url": SOURCE_VIDEO, "target_face_url": TARGET_FACE, "method": "frame_by_frame"},
    )
    frame_engine = ScriptedEngine(
        "fal:face-swap",
        {"image_url": "https://fal/f1.png"},
        EngineFailedError("no face detected", "fal:face-swap"),
        {"image_url": "https://fal/f3.png"},
    )
    processor = FaceSwapProcessor(storage, FakeFFmpeg(frames=3), frame_engine=frame_engine)
    ctx = _ctx(job, tmp_path)

    outcome = await pipeline.run(ctx, processor.build_stages(ctx), build_output=processor.build_output)

    assert outcome.output["frames_swapped"] == 2
    assert outcome.output["frames_total"] == 3
    # 3 frames at half a cent, rounded up
    assert outcome.cost_cents == 2

    swapped_dir = Path(ctx.result("frame-swap")["frames_dir"])
    assert (swapped_dir / "frame_00001.png").read_bytes() == b"downloaded:https://fal/f1.png"
    assert (swapped_dir / "frame_00002.png").read_bytes() == b"original-2"
    assert storage.uploads[("generated-media", f"face-swaps/{job.id}/output.mp4")] == b"reassembled"


@pytest.mark.asyncio
async def test_frame_by_frame_fails_when_no_frame_swapped(pipeline, storage, start_job, tmp_path):
    job = await start_job(
        JobType.face_swap,
        {"video_url": SOURCE_VIDEO, "target_face_url": TARGET_FACE, "method": "frame_by_frame"},
    )
    frame_engine = ScriptedEngine("fal:face-swap", EngineFailedError("no face detected", "fal:face-swap"))
    processor = FaceSwapProcessor(storage, FakeFFmpeg(frames=2), frame_engine=frame_engine)

    with pytest.raises(EngineFailedError, match="every frame"):
        await _run(pipeline, processor, job, tmp_path)


@pytest.mark.asyncio
async def test_frame_by_frame_fails_without_frames(pipeline, storage, start_job, tmp_path):
    job = await start_job(
        JobType.face_swap,
        {"video_url": SOURCE_VIDEO, "target_face_url": TARGET_FACE, "method": "frame_by_frame"},
    )
    processor = FaceSwapProcessor(storage, FakeFFmpeg(frames=0), frame_engine=ScriptedEngine("swap"))

    with pytest.raises(EngineFailedError, match="No frames extracted"):
        await _run(pipeline, processor, job, tmp_path)


# -----------------------------------------------------------------------------
# variants
# -----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_variant_renders_and_registers_video(pipeline, storage, media, start_job, tmp_path):
    payload = {
        "batch_id": "batch-1",
        "variant_index": 0,
        "video_id": "v1",
        "audio_id": "a1",
        "hook_id": "h1",
        "hook_duration": 3,
        "hook_position": "top",
    }
    job = await start_job(JobType.variant, payload)
    ffmpeg = FakeFFmpeg()
    processor = VariantProcessor(storage, media, ffmpeg)

    outcome = await _run(pipeline, processor, job, tmp_path)

    call = ffmpeg.render_calls[0]
    assert call["hook_text"] == "Wait for it"
    assert call["hook_position"] == "top"
    assert call["hook_duration"] == 3
    assert call["audio_path"].endswith("audio.mp3")

    out = outcome.output
    assert out["batch_id"] == "batch-1"
    assert out["variant_index"] == 0
    assert out["source_name"] == "Beach-Clip"
    assert out["storage_path"].startswith("variants/batch-1/variant-0-")
    assert out["video_url"] == f"https://storage.test/variant-videos/{out['storage_path']}"
    assert media.videos[out["video_id"]]["name"] == "variant-0-Beach-Clip.mp4"
    assert outcome.cost_cents == 0


@pytest.mark.asyncio
async def test_variant_missing_video_is_a_caller_error(pipeline, storage, media, start_job, tmp_path):
    job = await start_job(JobType.variant, {"batch_id": "batch-1", "variant_index": 0, "video_id": "gone"})
    processor = VariantProcessor(storage, media, FakeFFmpeg())

    with pytest.raises(CallerError, match="Video not found: gone"):
        await _run(pipeline, processor, job, tmp_path)
