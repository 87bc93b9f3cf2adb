from __future__ import annotations

import asyncio
import logging
import math
import tempfile
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

import httpx

from novai_jobs.config import settings
from novai_jobs.domain.enums import HookPosition, JobStatus, JobType
from novai_jobs.domain.errors import BatchEmptyError, BatchExpiredError, NoCompletedVariantsError
from novai_jobs.domain.models import (
    BatchCreated,
    BatchInfoView,
    BatchStatusView,
    BatchZipView,
    Job,
    JobView,
    VariantInput,
)
from novai_jobs.repos.base import JobStore
from novai_jobs.repos.media_repo import MediaCatalog
from novai_jobs.services.job_service import JobService
from novai_jobs.services.processors.variant import safe_name
from novai_jobs.services.storage_service import StorageService, download_to_file

logger = logging.getLogger("variant_service")

# rough per-variant render time used for the ETA shown to callers
SECONDS_PER_VARIANT = 30


@dataclass
class Batch:
    batch_id: str
    created_at: datetime
    expires_at: datetime
    total_variants: int
    job_ids: List[str] = field(default_factory=list)
    zip_url: Optional[str] = None
    zip_path: Optional[str] = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class BatchStore:
    """
    Batch metadata held in process memory.

    Not crash-durable: a restart forgets every batch. Child jobs live in the
    job store and survive; only expiry bookkeeping and zip URLs are lost.
    """

    def __init__(self):
        self._batches: Dict[str, Batch] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, batch_id: str) -> Optional[Batch]:
        return self._batches.get(batch_id)

    def put(self, batch: Batch) -> None:
        self._batches[batch.batch_id] = batch

    def remove(self, batch_id: str) -> None:
        self._batches.pop(batch_id, None)
        self._locks.pop(batch_id, None)

    def lock_for(self, batch_id: str) -> asyncio.Lock:
        return self._locks.setdefault(batch_id, asyncio.Lock())

    def all(self) -> List[Batch]:
        return list(self._batches.values())

    def __contains__(self, batch_id: str) -> bool:
        return batch_id in self._batches


def round_robin(primary: Sequence[Any], secondary: Sequence[Any]) -> List[Optional[Any]]:
    """secondary[i % len(secondary)] for each primary item; None when secondary is empty."""
    if not secondary:
        return [None] * len(primary)
    return [secondary[i % len(secondary)] for i in range(len(primary))]


def zip_entry_name(index: int, source_name: Optional[str]) -> str:
    return f"variant-{index}-{safe_name(source_name or '', fallback='video')}.mp4"


class VariantService:
    def __init__(
        self,
        jobs: JobService,
        store: JobStore,
        media: MediaCatalog,
        storage: StorageService,
        batches: Optional[BatchStore] = None,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        ttl_hours: Optional[int] = None,
    ):
        self.jobs = jobs
        self.store = store
        self.media = media
        self.storage = storage
        self.batches = batches if batches is not None else BatchStore()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.ttl = timedelta(hours=settings.BATCH_TTL_HOURS if ttl_hours is None else ttl_hours)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def _new_batch_id(self, now: datetime) -> str:
        ms = int(now.timestamp() * 1000)
        while f"batch-{ms}" in self.batches:
            ms += 1
        return f"batch-{ms}"

    async def create_batch(
        self,
        video_collection_ids: Sequence[str],
        audio_collection_ids: Optional[Sequence[str]] = None,
        hook_ids: Optional[Sequence[str]] = None,
        hook_duration: Optional[float] = None,
        hook_position: HookPosition = HookPosition.bottom,
    ) -> BatchCreated:
        videos = await self.media.list_videos(list(video_collection_ids or []))
        if not videos:
            raise BatchEmptyError("No videos found in selected collections")

        audio = await self.media.list_audio(list(audio_collection_ids)) if audio_collection_ids else []
        hooks = await self.media.get_hooks(list(hook_ids)) if hook_ids else []

        now = self.clock()
        batch_id = self._new_batch_id(now)
        batch = Batch(
            batch_id=batch_id,
            created_at=now,
            expires_at=now + self.ttl,
            total_variants=0,
        )
        # registered up front to reserve the id; total_variants only counts
        # children that exist, so a half-built batch still expires cleanly
        self.batches.put(batch)

        audio_for = round_robin(videos, audio)
        hook_for = round_robin(videos, hooks)

        try:
            for i, video in enumerate(videos):
                payload = VariantInput(
                    batch_id=batch_id,
                    variant_index=i,
                    video_id=str(video["id"]),
                    audio_id=str(audio_for[i]["id"]) if audio_for[i] else None,
                    hook_id=str(hook_for[i]["id"]) if hook_for[i] else None,
                    hook_duration=hook_duration,
                    hook_position=hook_position,
                )
                job = await self.jobs.create(JobType.variant, batch_id, payload.model_dump(mode="json"))
                batch.job_ids.append(job.id)
                batch.total_variants = len(batch.job_ids)
        except Exception:
            logger.exception(
                "batch_partially_created",
                extra={"batch_id": batch_id, "created": len(batch.job_ids), "requested": len(videos)},
            )
            raise

        logger.info(
            "batch_created",
            extra={"batch_id": batch_id, "variants": len(videos), "audio": len(audio), "hooks": len(hooks)},
        )
        return BatchCreated(
            batch_id=batch_id,
            total_variants=len(batch.job_ids),
            job_ids=list(batch.job_ids),
            estimated_processing_minutes=math.ceil(len(batch.job_ids) * SECONDS_PER_VARIANT / 60),
            expires_at=batch.expires_at,
        )

    # ------------------------------------------------------------------
    # read
    # ------------------------------------------------------------------

    async def _children(self, batch_id: str) -> List[Job]:
        jobs = await self.store.list(job_type=JobType.variant.value, batch_id=batch_id, limit=None)
        return sorted(jobs, key=lambda j: (j.input_payload or {}).get("variant_index", 0))

    async def get_batch_status(self, batch_id: str) -> Optional[BatchStatusView]:
        jobs = await self._children(batch_id)
        if not jobs and batch_id not in self.batches:
            return None

        def count(*statuses: JobStatus) -> int:
            return sum(1 for j in jobs if j.status in statuses)

        return BatchStatusView(
            batch_id=batch_id,
            total=len(jobs),
            completed=count(JobStatus.completed),
            failed=count(JobStatus.failed),
            processing=count(JobStatus.processing),
            pending=count(JobStatus.pending, JobStatus.queued),
            jobs=[JobView.from_job(j) for j in jobs],
        )

    def get_batch_info(self, batch_id: str) -> Optional[BatchInfoView]:
        batch = self.batches.get(batch_id)
        if batch is None:
            return None
        return BatchInfoView(
            batch_id=batch.batch_id,
            created_at=batch.created_at,
            expires_at=batch.expires_at,
            total_variants=batch.total_variants,
            zip_url=batch.zip_url,
        )

    # ------------------------------------------------------------------
    # zip
    # ------------------------------------------------------------------

    def _adopt_unknown_batch(self, batch_id: str, jobs: List[Job]) -> Batch:
        # metadata was lost (restart); rebuild it from the oldest child
        created = min(j.created_at for j in jobs)
        batch = Batch(
            batch_id=batch_id,
            created_at=created,
            expires_at=created + self.ttl,
            total_variants=len(jobs),
            job_ids=[j.id for j in jobs],
        )
        self.batches.put(batch)
        logger.info("batch_metadata_rebuilt", extra={"batch_id": batch_id, "variants": len(jobs)})
        return batch

    async def create_batch_zip(self, batch_id: str) -> BatchZipView:
        async with self.batches.lock_for(batch_id):
            batch = self.batches.get(batch_id)
            if batch is not None and batch.is_expired(self.clock()):
                raise BatchExpiredError(batch_id)
            if batch is not None and batch.zip_url:
                return BatchZipView(batch_id=batch_id, zip_url=batch.zip_url, expires_at=batch.expires_at)

            jobs = await self._children(batch_id)
            completed = [
                j for j in jobs
                if j.status == JobStatus.completed and (j.output_payload or {}).get("video_url")
            ]
            if not completed:
                raise NoCompletedVariantsError(f"No completed variants in batch {batch_id}")

            if batch is None:
                batch = self._adopt_unknown_batch(batch_id, jobs)
                if batch.is_expired(self.clock()):
                    raise BatchExpiredError(batch_id)

            data, added = await self._build_zip(batch_id, completed)
            if added == 0:
                raise NoCompletedVariantsError(f"No variant files could be downloaded for batch {batch_id}")

            path = f"batch-zips/{batch_id}.zip"
            url = await self.storage.upload(settings.VARIANT_CONTAINER, path, data, "application/zip")
            batch.zip_url = url
            batch.zip_path = path
            logger.info("batch_zip_created", extra={"batch_id": batch_id, "entries": added, "bytes": len(data)})
            return BatchZipView(batch_id=batch_id, zip_url=url, expires_at=batch.expires_at)

    async def _build_zip(self, batch_id: str, completed: List[Job]) -> tuple[bytes, int]:
        added = 0
        with tempfile.TemporaryDirectory(prefix=f"{batch_id}-", dir=_temp_root()) as tmp:
            archive = Path(tmp) / "batch.zip"
            with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_STORED) as zf:
                for job in completed:
                    out = job.output_payload or {}
                    index = int((job.input_payload or {}).get("variant_index", added))
                    local = Path(tmp) / f"{job.id}.mp4"
                    try:
                        await download_to_file(out["video_url"], str(local))
                    except (httpx.HTTPError, OSError) as e:
                        logger.warning(
                            "batch_zip_item_skipped",
                            extra={"batch_id": batch_id, "job_id": job.id, "error": str(e)},
                        )
                        continue
                    await asyncio.to_thread(zf.write, local, zip_entry_name(index, out.get("source_name")))
                    local.unlink(missing_ok=True)
                    added += 1
            return archive.read_bytes(), added

    # ------------------------------------------------------------------
    # expiry
    # ------------------------------------------------------------------

    async def _delete_children(self, batch: Batch) -> None:
        for job in await self._children(batch.batch_id):
            out = job.output_payload or {}
            if out.get("storage_path"):
                try:
                    await self.storage.delete(settings.VARIANT_CONTAINER, out["storage_path"])
                except Exception as e:
                    logger.warning(
                        "batch_cleanup_blob_failed",
                        extra={"batch_id": batch.batch_id, "job_id": job.id, "error": str(e)},
                    )
            if out.get("video_id"):
                try:
                    await self.media.delete_video(out["video_id"])
                except Exception as e:
                    logger.warning(
                        "batch_cleanup_video_failed",
                        extra={"batch_id": batch.batch_id, "video_id": out["video_id"], "error": str(e)},
                    )

    async def cleanup_expired_batches(self) -> int:
        now = self.clock()
        removed = 0
        for batch in self.batches.all():
            if not batch.is_expired(now):
                continue
            async with self.batches.lock_for(batch.batch_id):
                await self._delete_children(batch)
                if batch.zip_path:
                    try:
                        await self.storage.delete(settings.VARIANT_CONTAINER, batch.zip_path)
                    except Exception as e:
                        logger.warning("batch_cleanup_zip_failed", extra={"batch_id": batch.batch_id, "error": str(e)})
            self.batches.remove(batch.batch_id)
            removed += 1
            logger.info("batch_expired_removed", extra={"batch_id": batch.batch_id})
        return removed

    async def cleanup_loop(self, interval_seconds: Optional[float] = None) -> None:
        interval = settings.BATCH_CLEANUP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_expired_batches()
            except Exception:
                logger.exception("batch_cleanup_failed")


def _temp_root() -> Optional[str]:
    root = Path(settings.TEMP_DIR)
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError:
        return None
    return str(root)
