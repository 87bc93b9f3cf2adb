import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from novai_jobs.config import settings
from novai_jobs.domain.enums import JobType
from novai_jobs.domain.errors import InfrastructureError
from novai_jobs.repos.memory_repo import InMemoryJobsRepo, InMemoryMediaRepo
from novai_jobs.services.engines.base import Operation, SubscribeEngine
from novai_jobs.services.ffmpeg_service import FFmpegService
from novai_jobs.services.job_service import JobService
from novai_jobs.services.pipeline import StagePipeline
from novai_jobs.services.progress_tracker import ProgressTracker


class FakeStorage:
    """Records uploads in memory and hands back predictable URLs."""

    def __init__(self, fail_deletes: bool = False, fail_uploads: bool = False):
        self.uploads: Dict[tuple, bytes] = {}
        self.deleted: List[tuple] = []
        self.fail_deletes = fail_deletes
        self.fail_uploads = fail_uploads

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        if self.fail_uploads:
            raise InfrastructureError(f"upload failed for {bucket}/{path}")
        self.uploads[(bucket, path)] = data
        return f"https://storage.test/{bucket}/{path}"

    async def delete(self, bucket: str, path: str) -> None:
        if self.fail_deletes:
            raise InfrastructureError(f"delete failed for {bucket}/{path}")
        self.deleted.append((bucket, path))
        self.uploads.pop((bucket, path), None)


class ScriptedEngine(SubscribeEngine):
    """
    Plays back one outcome per call (the last one repeats). An outcome that is
    an exception is raised; anything else is returned as the result.
    """

    def __init__(
        self,
        name: str,
        *outcomes: Any,
        updates: Optional[List[Operation]] = None,
        delay: float = 0.0,
        on_call=None,
        **kwargs: Any,
    ):
        super().__init__(name=name, **kwargs)
        self.outcomes = list(outcomes) or [{"ok": True}]
        self.updates = updates or []
        self.delay = delay
        self.on_call = on_call
        self.calls: List[Dict[str, Any]] = []

    async def subscribe(self, params, emit):
        self.calls.append(dict(params))
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if self.on_call is not None:
            await self.on_call(params)
        for op in self.updates:
            emit(op)
        if self.delay:
            await asyncio.sleep(self.delay)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class FakeFFmpeg(FFmpegService):
    """Writes placeholder files instead of shelling out to ffmpeg."""

    def __init__(self, *, audio: bool = False, frames: int = 3, duration: float = 5.0, render_error: Exception = None):
        super().__init__(ffmpeg_bin="ffmpeg", ffprobe_bin="ffprobe")
        self.audio = audio
        self.frames = frames
        self.duration = duration
        self.render_error = render_error
        self.render_calls: List[Dict[str, Any]] = []

    async def run(self, cmd):
        raise AssertionError(f"unexpected ffmpeg call: {cmd}")

    async def duration_seconds(self, path):
        return self.duration

    async def has_audio(self, path):
        return self.audio

    async def extract_first_frame(self, video_path, out_path):
        Path(out_path).write_bytes(b"frame")
        return out_path

    async def extract_frames(self, video_path, out_dir, fps):
        Path(out_dir).mkdir(parents=True, exist_ok=True)
        paths = []
        for i in range(1, self.frames + 1):
            p = Path(out_dir) / f"frame_{i:05d}.png"
            p.write_bytes(f"original-{i}".encode())
            paths.append(str(p))
        return paths

    async def assemble_frames(self, frames_dir, fps, out_path, audio_path=None):
        Path(out_path).write_bytes(b"reassembled")
        return out_path

    async def merge_audio(self, video_path, audio_source_path, out_path):
        Path(out_path).write_bytes(b"merged")
        return out_path

    async def render_variant(self, video_path, out_path, **kwargs):
        self.render_calls.append({"video_path": video_path, **kwargs})
        if self.render_error is not None:
            raise self.render_error
        Path(out_path).write_bytes(b"variant")
        return out_path


async def fake_download_to_file(url: str, dest: str, timeout=None) -> str:
    Path(dest).parent.mkdir(parents=True, exist_ok=True)
    Path(dest).write_bytes(f"downloaded:{url}".encode())
    return dest


async def fake_download_bytes(url: str, timeout=None) -> bytes:
    return f"downloaded:{url}".encode()


@pytest.fixture(autouse=True)
def temp_dir(tmp_path, monkeypatch):
    """Keep scratch files under the test's tmp dir."""
    monkeypatch.setattr(settings, "TEMP_DIR", str(tmp_path / "work"))
    return tmp_path / "work"


@pytest.fixture
def store():
    return InMemoryJobsRepo()


@pytest.fixture
def media():
    return InMemoryMediaRepo(
        videos=[
            {"id": "v1", "collection_id": "c1", "name": "Beach Clip.mp4", "url": "https://media.test/v1.mp4"},
            {"id": "v2", "collection_id": "c1", "name": "city.mp4", "url": "https://media.test/v2.mp4"},
            {"id": "v3", "collection_id": "c2", "name": "forest.mp4", "url": "https://media.test/v3.mp4"},
        ],
        audio=[
            {"id": "a1", "collection_id": "ac1", "name": "track-one.mp3", "url": "https://media.test/a1.mp3"},
            {"id": "a2", "collection_id": "ac1", "name": "track-two.mp3", "url": "https://media.test/a2.mp3"},
        ],
        hooks=[
            {"id": "h1", "text": "Wait for it"},
        ],
    )


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def jobs(store):
    return JobService(store)


@pytest.fixture
def tracker(store):
    return ProgressTracker(store)


@pytest.fixture
def pipeline(tracker):
    return StagePipeline(tracker)


@pytest.fixture
def start_job(jobs):
    """Create a job and move it to processing."""

    async def _start(job_type: JobType = JobType.training, payload: Optional[dict] = None):
        job = await jobs.create(job_type, "ref-1", payload or {})
        return await jobs.mark_processing(job.id)

    return _start
