from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from novai_jobs.domain.enums import JobStatus

logger = logging.getLogger("progress")

MAX_LOG_ENTRIES = 50

_TIMESTAMP_PREFIX = re.compile(
    r"^\s*\[?\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?\]?\s*"
)
_PERCENTAGE = re.compile(r"\(?\d+(?:\.\d+)?\s*%\)?")
_SPACES = re.compile(r"\s+")


class LogAction(str, Enum):
    append = "append"
    replace = "replace"
    drop = "drop"


def strip_timestamp(line: str) -> str:
    return _TIMESTAMP_PREFIX.sub("", line or "", count=1).strip()


def base_pattern(line: str) -> str:
    """Log line with its timestamp prefix and every percentage removed."""
    s = _PERCENTAGE.sub("", strip_timestamp(line))
    return _SPACES.sub(" ", s).strip()


def classify_log(new_line: str, last_line: Optional[str]) -> LogAction:
    if last_line is None:
        return LogAction.append
    if strip_timestamp(new_line) == strip_timestamp(last_line):
        return LogAction.drop
    if base_pattern(new_line) == base_pattern(last_line):
        return LogAction.replace
    return LogAction.append


def apply_log(logs: Sequence[str], line: str, max_entries: int = MAX_LOG_ENTRIES) -> List[str]:
    out = list(logs)
    action = classify_log(line, out[-1] if out else None)
    if action == LogAction.drop:
        return out[-max_entries:]
    if action == LogAction.replace:
        out[-1] = line
    else:
        out.append(line)
    return out[-max_entries:]


def format_log_line(message: str, now: Optional[datetime] = None) -> str:
    ts = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"[{ts}] {message}"


def _clamp_percent(percent: float) -> int:
    return max(0, min(100, int(percent)))


class ProgressTracker:
    """
    Progress and log bookkeeping for running jobs.

    Progress only moves forward. Writes are guarded on status=processing, so a
    job that reached a terminal state (or was cancelled) is never touched again.
    """

    def __init__(self, store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._progress: Dict[str, int] = {}
        self._logs: Dict[str, List[str]] = {}
        self._payload: Dict[str, dict] = {}

    async def _load(self, job_id: str) -> None:
        if job_id in self._progress:
            return
        job = await self.store.get(job_id)
        payload = dict((job.output_payload or {}) if job else {})
        self._payload[job_id] = payload
        self._logs[job_id] = list(payload.get("logs") or [])
        self._progress[job_id] = job.progress if job else 0

    def progress_of(self, job_id: str) -> int:
        return self._progress.get(job_id, 0)

    def logs_of(self, job_id: str) -> List[str]:
        return list(self._logs.get(job_id, []))

    async def _write(self, job_id: str, patch: dict) -> None:
        payload = dict(self._payload.get(job_id) or {})
        payload["logs"] = self._logs[job_id]
        self._payload[job_id] = payload
        patch["output_payload"] = payload
        updated = await self.store.update(job_id, patch, only_if_status=(JobStatus.processing.value,))
        if updated is None:
            logger.info("progress_write_skipped", extra={"job_id": job_id, "reason": "job_not_processing"})

    async def set_progress(
        self,
        job_id: str,
        percent: float,
        status_label: str,
        detail: Optional[str] = None,
    ) -> int:
        """`detail` (e.g. the provider's latest log) rides on the same line."""
        await self._load(job_id)
        value = max(self._progress[job_id], _clamp_percent(percent))
        self._progress[job_id] = value
        message = f"{status_label} ({value}%)"
        if detail:
            message = f"{message} {detail}"
        self._logs[job_id] = apply_log(self._logs[job_id], format_log_line(message, self.clock()))
        await self._write(job_id, {"progress": value, "external_status": status_label})
        return value

    async def add_log(self, job_id: str, message: str) -> None:
        await self._load(job_id)
        self._logs[job_id] = apply_log(self._logs[job_id], format_log_line(message, self.clock()))
        await self._write(job_id, {})

    async def set_external(self, job_id: str, request_id: Optional[str], status: Optional[str] = None) -> None:
        await self._load(job_id)
        patch = {"external_request_id": request_id}
        if status is not None:
            patch["external_status"] = status
        await self._write(job_id, patch)

    def forget(self, job_id: str) -> None:
        self._progress.pop(job_id, None)
        self._logs.pop(job_id, None)
        self._payload.pop(job_id, None)
