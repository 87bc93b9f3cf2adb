from __future__ import annotations

import re
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from novai_jobs.config import settings
from novai_jobs.domain.enums import JobType
from novai_jobs.domain.errors import CallerError
from novai_jobs.domain.models import VariantInput
from novai_jobs.repos.media_repo import MediaCatalog
from novai_jobs.services.engines.base import require_keys
from novai_jobs.services.engines.local import LocalEngine
from novai_jobs.services.ffmpeg_service import FFmpegService
from novai_jobs.services.pipeline import PipelineContext, Stage
from novai_jobs.services.processors.base import BaseProcessor, emit_fraction
from novai_jobs.services.storage_service import StorageService, download_to_file

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(name: str, fallback: str = "video") -> str:
    stem = Path(name or "").stem
    cleaned = _UNSAFE.sub("-", stem).strip("-.")
    return cleaned[:60] or fallback


def variant_storage_path(batch_id: str, index: int, ts_ms: int) -> str:
    return f"variants/{batch_id}/variant-{index}-{ts_ms}.mp4"


class VariantProcessor(BaseProcessor):
    """One child job of a batch: render a video/audio/hook combination and register it."""

    job_type = JobType.variant
    input_model = VariantInput

    def __init__(self, storage: StorageService, media: MediaCatalog, ffmpeg: Optional[FFmpegService] = None):
        super().__init__(storage)
        self.media = media
        self.ffmpeg = ffmpeg or FFmpegService()
        self.render_engine = LocalEngine("ffmpeg:variant-render", self._render, validators=[require_keys("video_path")])
        self.upload_engine = LocalEngine("storage:variant-upload", self._upload, validators=[require_keys("video_id", "video_url")])

    def build_stages(self, ctx: PipelineContext) -> List[Stage]:
        self.parse_input(ctx)
        ctx.ensure_workdir()
        return [
            Stage(
                "render",
                (0, 80),
                [self.render_engine],
                build_params=lambda c: {**c.params.model_dump(mode="json"), "workdir": str(c.workdir)},
            ),
            Stage(
                "upload",
                (80, 100),
                [self.upload_engine],
                build_params=lambda c: {
                    "batch_id": c.params.batch_id,
                    "variant_index": c.params.variant_index,
                    **c.result("render"),
                },
            ),
        ]

    async def _render(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        workdir = Path(params["workdir"])

        video = await self.media.get_video(params["video_id"])
        if video is None:
            raise CallerError(f"Video not found: {params['video_id']}")

        audio = None
        if params.get("audio_id"):
            audio = await self.media.get_audio(params["audio_id"])
            if audio is None:
                raise CallerError(f"Audio not found: {params['audio_id']}")

        hook_text = None
        if params.get("hook_id"):
            hooks = await self.media.get_hooks([params["hook_id"]])
            hook_text = (hooks[0].get("text") if hooks else None) or None

        video_path = await download_to_file(video["url"], str(workdir / "source.mp4"))
        audio_path = None
        if audio is not None:
            suffix = Path(audio.get("name") or "").suffix or ".mp3"
            audio_path = await download_to_file(audio["url"], str(workdir / f"audio{suffix}"))
        emit_fraction(emit, 1, 3, "inputs downloaded")

        out = await self.ffmpeg.render_variant(
            video_path,
            str(workdir / "variant.mp4"),
            audio_path=audio_path,
            hook_text=hook_text,
            hook_position=params.get("hook_position") or "bottom",
            hook_duration=params.get("hook_duration"),
        )
        emit_fraction(emit, 3, 3, "variant rendered")
        return {"video_path": out, "source_name": safe_name(video.get("name") or "")}

    async def _upload(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        path = variant_storage_path(params["batch_id"], params["variant_index"], int(time.time() * 1000))
        url = await self.upload_file(params["video_path"], settings.VARIANT_CONTAINER, path)
        record = await self.media.create_video({
            "collection_id": None,
            "name": f"variant-{params['variant_index']}-{params['source_name']}.mp4",
            "url": url,
            "storage_path": path,
        })
        return {"video_id": record["id"], "video_url": url, "storage_path": path, "source_name": params["source_name"]}

    def build_output(self, ctx: PipelineContext) -> Dict[str, Any]:
        up = ctx.result("upload")
        return {
            "video_id": up["video_id"],
            "video_url": up["video_url"],
            "storage_path": up["storage_path"],
            "source_name": up["source_name"],
            "batch_id": ctx.params.batch_id,
            "variant_index": ctx.params.variant_index,
        }
