from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httpx

from novai_jobs.config import settings
from novai_jobs.domain.enums import FaceSwapMethod, JobType
from novai_jobs.domain.errors import EngineError, EngineFailedError
from novai_jobs.domain.models import FaceSwapInput
from novai_jobs.services.cost_model import (
    KLING_FLAT_CENTS,
    SINGLE_FRAME_SWAP_CENTS,
    flat_request_cost,
    per_frame_cost,
    per_image_cost,
    per_second_video_cost,
)
from novai_jobs.services.engines.base import EngineAdapter, require_keys
from novai_jobs.services.engines.fal import FalQueueEngine, FalSubscribeEngine
from novai_jobs.services.engines.kling import KlingVideoEngine
from novai_jobs.services.engines.local import LocalEngine
from novai_jobs.services.ffmpeg_service import FFmpegService
from novai_jobs.services.pipeline import PipelineContext, Stage
from novai_jobs.services.processors.base import BaseProcessor, emit_fraction, first_url
from novai_jobs.services.storage_service import StorageService, download_to_file

logger = logging.getLogger("face_swap_processor")

WAN_REPLACE_MODEL = "fal-ai/wan/v2.2-14b/animate/replace"
FACE_SWAP_MODEL = "fal-ai/face-swap"
KLING_MOTION_MODEL = "fal-ai/kling-video/v2.6/pro/motion-control"

# billed when the caller does not pass a duration
DEFAULT_VIDEO_SECONDS = 10
FRAME_BY_FRAME_FPS = 12.0


# -----------------------------------------------------------------------------
# fal argument builders / extractors
# -----------------------------------------------------------------------------

def _wan_replace_args(p: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "video_url": p["video_url"],
        "image_url": p["target_face_url"],
        "resolution": p.get("resolution") or "720p",
        "num_inference_steps": 20,
        "video_quality": "high",
        "video_write_mode": "balanced",
        "use_turbo": True,
        "enable_safety_checker": False,
    }


def _face_swap_args(p: Dict[str, Any]) -> Dict[str, Any]:
    return {"base_image_url": p["image_url"], "swap_image_url": p["target_face_url"]}


def _motion_control_args(p: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "image_url": p["image_url"],
        "video_url": p["video_url"],
        "prompt": p.get("prompt") or "",
        "character_orientation": "video",
        "keep_original_sound": False,
    }


def extract_video(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {"video_url": first_url(raw.get("video")) or first_url(raw.get("videos"))}


def extract_swapped_image(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {"image_url": first_url(raw.get("image")) or first_url(raw.get("images"))}


def _wan_price(params: Dict[str, Any], _result: Any) -> int:
    seconds = params.get("duration_seconds") or DEFAULT_VIDEO_SECONDS
    return per_second_video_cost(seconds, params.get("resolution"))


def _single_frame_price(_params: Dict[str, Any], _result: Any) -> int:
    return per_image_cost(1, SINGLE_FRAME_SWAP_CENTS)


def _kling_price(_params: Dict[str, Any], _result: Any) -> int:
    return flat_request_cost(KLING_FLAT_CENTS)


def _frames_price(params: Dict[str, Any], _result: Any) -> int:
    return per_frame_cost(len(params.get("frames") or []))


class FaceSwapProcessor(BaseProcessor):
    """
    Video face swap. `method` picks one of three stage layouts:

      wan_replace     one fal call that re-renders the clip with the new face
      kling           swap the first frame, then drive it with the source motion
      frame_by_frame  swap every extracted frame, then re-encode
    """

    job_type = JobType.face_swap
    input_model = FaceSwapInput

    def __init__(
        self,
        storage: StorageService,
        ffmpeg: Optional[FFmpegService] = None,
        *,
        wan_engines: Optional[List[EngineAdapter]] = None,
        identity_engines: Optional[List[EngineAdapter]] = None,
        motion_engines: Optional[List[EngineAdapter]] = None,
        frame_engine: Optional[EngineAdapter] = None,
    ):
        super().__init__(storage)
        self.ffmpeg = ffmpeg or FFmpegService()

        self.wan_engines = wan_engines or [
            FalQueueEngine(WAN_REPLACE_MODEL, build_arguments=_wan_replace_args, extract_result=extract_video,
                           pricing=_wan_price, validators=[require_keys("video_url")]),
            FalSubscribeEngine(WAN_REPLACE_MODEL, build_arguments=_wan_replace_args, extract_result=extract_video,
                               pricing=_wan_price, validators=[require_keys("video_url")]),
        ]
        self.identity_engines = identity_engines or [
            FalSubscribeEngine(FACE_SWAP_MODEL, build_arguments=_face_swap_args, extract_result=extract_swapped_image,
                               pricing=_single_frame_price, validators=[require_keys("image_url")]),
            FalQueueEngine(FACE_SWAP_MODEL, build_arguments=_face_swap_args, extract_result=extract_swapped_image,
                           pricing=_single_frame_price, validators=[require_keys("image_url")]),
        ]
        self.motion_engines = motion_engines or [
            FalSubscribeEngine(KLING_MOTION_MODEL, build_arguments=_motion_control_args, extract_result=extract_video,
                               pricing=_kling_price, validators=[require_keys("video_url")]),
            KlingVideoEngine(pricing=_kling_price, validators=[require_keys("video_url")]),
        ]
        # per-frame swaps are billed once for the whole stage, not per call
        self.frame_engine = frame_engine or FalSubscribeEngine(
            FACE_SWAP_MODEL,
            build_arguments=_face_swap_args,
            extract_result=extract_swapped_image,
            validators=[require_keys("image_url")],
        )

    # ------------------------------------------------------------------
    # stage layouts
    # ------------------------------------------------------------------

    def build_stages(self, ctx: PipelineContext) -> List[Stage]:
        params = self.parse_input(ctx)
        ctx.ensure_workdir()
        if params.method == FaceSwapMethod.kling:
            return self._kling_stages()
        if params.method == FaceSwapMethod.frame_by_frame:
            return self._frame_by_frame_stages()
        return self._wan_stages()

    def _wan_stages(self) -> List[Stage]:
        return [
            Stage("video-generation", (0, 90), self.wan_engines, build_params=_input_params),
            Stage(
                "finalize",
                (90, 100),
                [self._local("finalize", self._finalize, "video_url")],
                build_params=lambda c: {"job_id": c.job_id, "video_url": c.result("video-generation")["video_url"]},
            ),
        ]

    def _kling_stages(self) -> List[Stage]:
        return [
            Stage(
                "frame-extraction",
                (0, 10),
                [self._local("first-frame", self._extract_first_frame, "frame_url")],
                build_params=lambda c: {**_input_params(c), "job_id": c.job_id, "workdir": str(c.workdir)},
            ),
            Stage(
                "identity-regeneration",
                (10, 40),
                self.identity_engines,
                build_params=lambda c: {
                    "image_url": c.result("frame-extraction")["frame_url"],
                    "target_face_url": str(c.params.target_face_url),
                },
            ),
            Stage(
                "video-generation",
                (40, 85),
                self.motion_engines,
                build_params=lambda c: {
                    "image_url": c.result("identity-regeneration")["image_url"],
                    "video_url": str(c.params.video_url),
                    "prompt": c.params.prompt,
                    "duration_seconds": c.params.duration_seconds or c.result("frame-extraction").get("duration"),
                },
            ),
            Stage(
                "audio-merge",
                (85, 95),
                [self._local("audio-merge", self._merge_audio, "video_path")],
                build_params=lambda c: {
                    "video_url": c.result("video-generation")["video_url"],
                    "source_path": c.result("frame-extraction")["video_path"],
                    "workdir": str(c.workdir),
                },
                optional=True,
            ),
            Stage(
                "finalize",
                (95, 100),
                [self._local("finalize", self._finalize, "video_url")],
                build_params=lambda c: {
                    "job_id": c.job_id,
                    "video_url": c.result("video-generation")["video_url"],
                    "video_path": (c.result("audio-merge") or {}).get("video_path"),
                },
            ),
        ]

    def _frame_by_frame_stages(self) -> List[Stage]:
        return [
            Stage(
                "frame-extraction",
                (0, 15),
                [self._local("extract-frames", self._extract_frames, "frames")],
                build_params=lambda c: {**_input_params(c), "workdir": str(c.workdir)},
            ),
            Stage(
                "frame-swap",
                (15, 85),
                [LocalEngine("frame-swap", self._swap_frames, pricing=_frames_price, validators=[require_keys("frames_dir")])],
                build_params=lambda c: {
                    "job_id": c.job_id,
                    "frames": c.result("frame-extraction")["frames"],
                    "target_face_url": str(c.params.target_face_url),
                    "workdir": str(c.workdir),
                },
            ),
            Stage(
                "reassemble",
                (85, 95),
                [self._local("reassemble", self._reassemble, "video_path")],
                build_params=lambda c: {
                    "frames_dir": c.result("frame-swap")["frames_dir"],
                    "fps": c.result("frame-extraction")["fps"],
                    "source_path": c.result("frame-extraction")["video_path"],
                    "workdir": str(c.workdir),
                },
            ),
            Stage(
                "finalize",
                (95, 100),
                [self._local("finalize", self._finalize, "video_url")],
                build_params=lambda c: {"job_id": c.job_id, "video_path": c.result("reassemble")["video_path"]},
            ),
        ]

    def _local(self, name: str, work: Callable, *required: str) -> LocalEngine:
        return LocalEngine(f"local:{name}", work, validators=[require_keys(*required)] if required else ())

    # ------------------------------------------------------------------
    # local work
    # ------------------------------------------------------------------

    async def _download_source(self, params: Dict[str, Any]) -> str:
        return await download_to_file(params["video_url"], str(Path(params["workdir"]) / "source.mp4"))

    async def _extract_first_frame(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        source = await self._download_source(params)
        frame = await self.ffmpeg.extract_first_frame(source, str(Path(params["workdir"]) / "first_frame.jpg"))
        duration = await self.ffmpeg.duration_seconds(source)
        frame_url = await self.upload_file(frame, settings.MEDIA_CONTAINER, f"face-swaps/{params['job_id']}/first_frame.jpg")
        return {"frame_url": frame_url, "video_path": source, "duration": duration or None}

    async def _extract_frames(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        source = await self._download_source(params)
        frames = await self.ffmpeg.extract_frames(source, str(Path(params["workdir"]) / "frames"), FRAME_BY_FRAME_FPS)
        if not frames:
            raise EngineFailedError("No frames extracted from source video", "local:extract-frames")
        emit_fraction(emit, 1, 1, f"extracted {len(frames)} frames")
        return {"frames": frames, "fps": FRAME_BY_FRAME_FPS, "video_path": source}

    async def _swap_frames(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        frames: List[str] = params["frames"]
        out_dir = Path(params["workdir"]) / "swapped"
        out_dir.mkdir(parents=True, exist_ok=True)

        swapped = 0
        for i, frame in enumerate(frames, start=1):
            dest = out_dir / f"frame_{i:05d}.png"
            frame_url = await self.upload_file(
                frame, settings.MEDIA_CONTAINER, f"face-swaps/{params['job_id']}/frames/{Path(frame).name}"
            )
            try:
                result = await self.frame_engine.run({"image_url": frame_url, "target_face_url": params["target_face_url"]})
                await download_to_file(result["image_url"], str(dest))
                swapped += 1
            except (EngineError, httpx.HTTPError) as e:
                # keep the original frame so the clip stays continuous
                logger.warning("frame_swap_failed", extra={"frame": i, "error": str(e)})
                shutil.copyfile(frame, dest)
            emit_fraction(emit, i, len(frames), f"swapped {swapped}/{len(frames)} frames")

        if swapped == 0:
            raise EngineFailedError("Face swap failed on every frame", "frame-swap")
        return {"frames_dir": str(out_dir), "swapped": swapped, "total": len(frames)}

    async def _reassemble(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        source = params["source_path"]
        audio = source if await self.ffmpeg.has_audio(source) else None
        out = await self.ffmpeg.assemble_frames(
            params["frames_dir"], float(params["fps"]), str(Path(params["workdir"]) / "reassembled.mp4"), audio_path=audio
        )
        if not Path(out).exists():
            raise EngineFailedError("Reassembly produced no output file", "local:reassemble")
        return {"video_path": out}

    async def _merge_audio(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        source = params["source_path"]
        if not await self.ffmpeg.has_audio(source):
            raise EngineFailedError("source video has no audio track", "local:audio-merge")
        generated = await download_to_file(params["video_url"], str(Path(params["workdir"]) / "generated.mp4"))
        merged = await self.ffmpeg.merge_audio(generated, source, str(Path(params["workdir"]) / "merged.mp4"))
        if not Path(merged).exists():
            raise EngineFailedError("Audio merge produced no output file", "local:audio-merge")
        return {"video_path": merged}

    async def _finalize(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        path = f"face-swaps/{params['job_id']}/output.mp4"
        if params.get("video_path"):
            url = await self.upload_file(params["video_path"], settings.MEDIA_CONTAINER, path)
        else:
            url = await self.persist_url(params["video_url"], settings.MEDIA_CONTAINER, path)
        return {"video_url": url}

    # ------------------------------------------------------------------

    def build_output(self, ctx: PipelineContext) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "video_url": ctx.result("finalize")["video_url"],
            "method": ctx.params.method.value,
        }
        for r in ctx.stage_results:
            if r.stage == "video-generation":
                out["engine"] = r.engine
                out["provider_video_url"] = r.result["video_url"]
        if ctx.params.method == FaceSwapMethod.kling:
            out["audio_merged"] = "audio-merge" not in ctx.skipped
        if ctx.params.method == FaceSwapMethod.frame_by_frame:
            swap = ctx.result("frame-swap")
            out["frames_swapped"] = swap["swapped"]
            out["frames_total"] = swap["total"]
        if ctx.params.video_id:
            out["video_id"] = ctx.params.video_id
        return out


def _input_params(ctx: PipelineContext) -> Dict[str, Any]:
    return ctx.params.model_dump(mode="json")
