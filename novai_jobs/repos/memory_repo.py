"""In-memory job store and media catalog for local runs and tests.

Same contract as the asyncpg repos. Nothing survives a restart.
"""
from __future__ import annotations

import asyncio
import copy
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from novai_jobs.domain.enums import JobStatus
from novai_jobs.domain.models import Job
from novai_jobs.repos.base import check_patch


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)


class InMemoryJobsRepo:
    def __init__(self):
        self._rows: Dict[str, Job] = {}
        self._lock = asyncio.Lock()
        self.costs: List[Tuple[str, str, int]] = []

    async def create(self, row: Dict[str, Any]) -> Job:
        now = _utcnow()
        job = Job(
            id=str(row.get("id") or uuid.uuid4()),
            type=row["type"],
            reference_id=row.get("reference_id"),
            status=row.get("status") or JobStatus.pending,
            input_payload=copy.deepcopy(row.get("input_payload") or {}),
            output_payload=copy.deepcopy(row.get("output_payload")),
            max_attempts=int(row.get("max_attempts") or 1),
            created_at=now,
            updated_at=now,
            next_run_at=now,
        )
        async with self._lock:
            self._rows[job.id] = job
        return job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._rows.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update(
        self,
        job_id: str,
        patch: Dict[str, Any],
        only_if_status: Optional[Sequence[str]] = None,
    ) -> Optional[Job]:
        check_patch(patch)
        async with self._lock:
            job = self._rows.get(job_id)
            if job is None:
                return None
            if only_if_status and job.status.value not in {str(_plain(s)) for s in only_if_status}:
                return None
            data = job.model_dump()
            data.update(copy.deepcopy(patch))
            data["updated_at"] = _utcnow()
            updated = Job(**data)
            self._rows[job_id] = updated
            return updated.model_copy(deep=True)

    async def list(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[Job]:
        rows = list(self._rows.values())
        if job_type:
            rows = [j for j in rows if j.type.value == _plain(job_type)]
        if status:
            rows = [j for j in rows if j.status.value == _plain(status)]
        if batch_id:
            rows = [j for j in rows if (j.input_payload or {}).get("batch_id") == batch_id]
        rows.sort(key=lambda j: j.created_at, reverse=True)
        if limit:
            rows = rows[: int(limit)]
        return [j.model_copy(deep=True) for j in rows]

    async def claim_next(self, job_type: str, limit: int = 1, lease_seconds: int = 300) -> List[str]:
        now = _utcnow()
        claimed: List[str] = []
        async with self._lock:
            ready = sorted(
                (
                    j for j in self._rows.values()
                    if j.type.value == _plain(job_type)
                    and j.status == JobStatus.queued
                    and (j.next_run_at is None or j.next_run_at <= now)
                ),
                key=lambda j: j.created_at,
            )
            for job in ready[: int(limit)]:
                self._rows[job.id] = job.model_copy(update={
                    "attempt_count": job.attempt_count + 1,
                    "next_run_at": now + timedelta(seconds=lease_seconds),
                    "updated_at": now,
                })
                claimed.append(job.id)
        return claimed

    async def record_cost(self, job_id: str, job_type: str, amount_cents: int) -> None:
        if any(c[0] == job_id for c in self.costs):
            return
        self.costs.append((job_id, str(_plain(job_type)), int(amount_cents)))


class InMemoryMediaRepo:
    def __init__(
        self,
        videos: Optional[List[Dict[str, Any]]] = None,
        audio: Optional[List[Dict[str, Any]]] = None,
        hooks: Optional[List[Dict[str, Any]]] = None,
    ):
        self.videos: Dict[str, Dict[str, Any]] = {v["id"]: dict(v) for v in videos or []}
        self.audio: Dict[str, Dict[str, Any]] = {a["id"]: dict(a) for a in audio or []}
        self.hooks: Dict[str, Dict[str, Any]] = {h["id"]: dict(h) for h in hooks or []}

    @staticmethod
    def _by_collection(items: Dict[str, Dict[str, Any]], collection_ids: Sequence[str]) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        for cid in collection_ids:
            out.extend(dict(i) for i in items.values() if i.get("collection_id") == cid)
        return out

    async def list_videos(self, collection_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self._by_collection(self.videos, collection_ids)

    async def list_audio(self, collection_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return self._by_collection(self.audio, collection_ids)

    async def get_hooks(self, hook_ids: Sequence[str]) -> List[Dict[str, Any]]:
        return [dict(self.hooks[h]) for h in hook_ids if h in self.hooks]

    async def get_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        v = self.videos.get(video_id)
        return dict(v) if v else None

    async def get_audio(self, audio_id: str) -> Optional[Dict[str, Any]]:
        a = self.audio.get(audio_id)
        return dict(a) if a else None

    async def create_video(self, row: Dict[str, Any]) -> Dict[str, Any]:
        rec = dict(row)
        rec.setdefault("id", str(uuid.uuid4()))
        rec.setdefault("created_at", _utcnow())
        self.videos[rec["id"]] = rec
        return dict(rec)

    async def delete_video(self, video_id: str) -> None:
        self.videos.pop(video_id, None)
