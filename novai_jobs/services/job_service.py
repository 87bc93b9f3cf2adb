from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from novai_jobs.config import settings
from novai_jobs.domain.enums import ACTIVE_STATUSES, JobStatus, JobType
from novai_jobs.domain.errors import InvalidTransitionError, JobNotFoundError
from novai_jobs.domain.models import Job
from novai_jobs.services.progress_tracker import apply_log, format_log_line

logger = logging.getLogger("job_service")

CANCELLED_MESSAGE = "Cancelled by user"


def max_attempts_for(job_type: JobType) -> int:
    # only variant renders are retried at queue level
    if JobType(job_type) == JobType.variant:
        return settings.VARIANT_MAX_ATTEMPTS
    return 1


class JobService:
    """
    Job record lifecycle.

    Every transition is a single status-guarded write, so repeating a call
    (at-least-once delivery, double clicks) never moves timestamps or cost.
    Terminal rows (completed/failed) are only touched again by retry().
    """

    def __init__(self, store, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # create / read
    # ------------------------------------------------------------------

    async def create(
        self,
        job_type: JobType,
        reference_id: Optional[str],
        input_payload: Dict[str, Any],
        *,
        enqueue: bool = True,
    ) -> Job:
        job = await self.store.create({
            "id": str(uuid.uuid4()),
            "type": JobType(job_type).value,
            "reference_id": reference_id,
            "status": JobStatus.pending.value,
            "input_payload": input_payload or {},
            "output_payload": {"logs": []},
            "max_attempts": max_attempts_for(job_type),
        })
        logger.info("job_created", extra={"job_id": job.id, "job_type": job.type.value})
        if not enqueue:
            return job
        return await self.enqueue(job.id)

    async def enqueue(self, job_id: str, delay_seconds: float = 0) -> Job:
        updated = await self.store.update(
            job_id,
            {
                "status": JobStatus.queued.value,
                "next_run_at": self.clock() + timedelta(seconds=max(0.0, delay_seconds)),
            },
            only_if_status=(JobStatus.pending.value,),
        )
        if updated is not None:
            return updated
        return await self._require(job_id)

    async def get(self, job_id: str) -> Optional[Job]:
        return await self.store.get(job_id)

    async def list_jobs(self, job_type: Optional[JobType] = None, limit: int = 50) -> List[Job]:
        return await self.store.list(job_type=job_type.value if job_type else None, limit=limit)

    async def _require(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job not found: {job_id}")
        return job

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    async def mark_processing(self, job_id: str) -> Job:
        updated = await self.store.update(
            job_id,
            {"status": JobStatus.processing.value, "started_at": self.clock()},
            only_if_status=(JobStatus.pending.value, JobStatus.queued.value),
        )
        if updated is not None:
            logger.info("job_processing", extra={"job_id": job_id})
            return updated
        # already processing or terminal; leave it as is
        return await self._require(job_id)

    async def mark_completed(self, job_id: str, output_payload: Dict[str, Any], cost_cents: int) -> Job:
        current = await self._require(job_id)
        if current.is_terminal:
            logger.info("job_complete_ignored", extra={"job_id": job_id, "status": current.status.value})
            return current

        cost = max(0, int(cost_cents or 0))
        payload = dict(current.output_payload or {})
        payload.update(output_payload or {})
        payload["logs"] = list((current.output_payload or {}).get("logs") or [])

        updated = await self.store.update(
            job_id,
            {
                "status": JobStatus.completed.value,
                "progress": 100,
                "output_payload": payload,
                "cost_cents": cost,
                "error_message": None,
                "completed_at": self.clock(),
            },
            only_if_status=ACTIVE_STATUSES,
        )
        if updated is None:
            # lost a race with another terminal write
            return await self._require(job_id)

        if cost > 0:
            await self.store.record_cost(job_id, updated.type.value, cost)
        logger.info("job_completed", extra={"job_id": job_id, "cost_cents": cost})
        return updated

    async def mark_failed(self, job_id: str, message: str) -> Job:
        current = await self._require(job_id)
        if current.is_terminal:
            logger.info("job_fail_ignored", extra={"job_id": job_id, "status": current.status.value})
            return current

        message = (message or "Unknown error").strip() or "Unknown error"
        payload = dict(current.output_payload or {})
        payload["logs"] = apply_log(payload.get("logs") or [], format_log_line(f"Failed: {message}", self.clock()))

        updated = await self.store.update(
            job_id,
            {
                "status": JobStatus.failed.value,
                "error_message": message,
                "output_payload": payload,
                "completed_at": self.clock(),
            },
            only_if_status=ACTIVE_STATUSES,
        )
        if updated is None:
            return await self._require(job_id)
        logger.info("job_failed", extra={"job_id": job_id, "error": message})
        return updated

    async def set_external_request(self, job_id: str, request_id: Optional[str], status: Optional[str] = None) -> Optional[Job]:
        patch: Dict[str, Any] = {"external_request_id": request_id}
        if status is not None:
            patch["external_status"] = status
        return await self.store.update(job_id, patch, only_if_status=ACTIVE_STATUSES)

    # ------------------------------------------------------------------
    # admin operations
    # ------------------------------------------------------------------

    async def cancel(self, job_id: str) -> Job:
        current = await self._require(job_id)
        if current.status.value not in ACTIVE_STATUSES:
            raise InvalidTransitionError(f"Cannot cancel job with status: {current.status.value}")
        updated = await self.mark_failed(job_id, CANCELLED_MESSAGE)
        if updated.error_message != CANCELLED_MESSAGE:
            raise InvalidTransitionError(f"Cannot cancel job with status: {updated.status.value}")
        logger.info("job_cancelled", extra={"job_id": job_id})
        return updated

    def _is_stuck(self, job: Job, stuck_minutes: int) -> bool:
        if job.status != JobStatus.processing or job.started_at is None:
            return False
        return job.started_at < self.clock() - timedelta(minutes=stuck_minutes)

    def _reset_patch(self, logs: List[str]) -> Dict[str, Any]:
        return {
            "progress": 0,
            "cost_cents": None,
            "error_message": None,
            "external_request_id": None,
            "external_status": None,
            "started_at": None,
            "completed_at": None,
            "output_payload": {"logs": logs},
        }

    async def retry(self, job_id: str, stuck_minutes: Optional[int] = None) -> Job:
        """
        Re-run a failed (or stuck processing) job under the SAME id.

        Progress, cost, error and timestamps are reset in one guarded write;
        the input payload is kept as submitted.
        """
        stuck_minutes = settings.STUCK_JOB_MINUTES if stuck_minutes is None else stuck_minutes
        job = await self._require(job_id)

        if job.status == JobStatus.processing and not self._is_stuck(job, stuck_minutes):
            raise InvalidTransitionError(
                "Cannot retry job that is still actively processing. Wait for completion or for it to become stuck."
            )
        if job.status not in (JobStatus.failed, JobStatus.processing):
            raise InvalidTransitionError(f"Cannot retry job with status: {job.status.value}")

        patch = self._reset_patch([format_log_line("Retry requested", self.clock())])
        patch["status"] = JobStatus.pending.value
        patch["attempt_count"] = 0

        updated = await self.store.update(job_id, patch, only_if_status=(job.status.value,))
        if updated is None:
            raise InvalidTransitionError("Job changed state during retry")

        logger.info("job_retry", extra={"job_id": job_id, "previous_status": job.status.value})
        return await self.enqueue(job_id)

    async def reschedule(self, job_id: str, delay_seconds: float, message: str) -> Optional[Job]:
        """Queue-level retry: put a processing job back on the queue after a backoff."""
        job = await self._require(job_id)
        if job.status != JobStatus.processing:
            return None

        logs = list((job.output_payload or {}).get("logs") or [])
        line = f"Attempt {job.attempt_count}/{job.max_attempts} failed: {message}; retrying in {int(delay_seconds)}s"
        logs = apply_log(logs, format_log_line(line, self.clock()))

        patch = self._reset_patch(logs)
        patch["status"] = JobStatus.queued.value
        patch["next_run_at"] = self.clock() + timedelta(seconds=max(0.0, delay_seconds))

        updated = await self.store.update(job_id, patch, only_if_status=(JobStatus.processing.value,))
        if updated is not None:
            logger.info(
                "job_rescheduled",
                extra={"job_id": job_id, "delay": delay_seconds, "attempt": job.attempt_count},
            )
        return updated

    async def cleanup_stuck_jobs(self, max_age_minutes: Optional[int] = None) -> int:
        max_age_minutes = settings.STUCK_JOB_MINUTES if max_age_minutes is None else max_age_minutes
        processing = await self.store.list(status=JobStatus.processing.value, limit=None)
        count = 0
        for job in processing:
            if not self._is_stuck(job, max_age_minutes):
                continue
            updated = await self.mark_failed(job.id, f"Job timed out after {max_age_minutes} minutes")
            if updated.status == JobStatus.failed:
                count += 1
        if count:
            logger.warning("stuck_jobs_failed", extra={"count": count, "max_age_minutes": max_age_minutes})
        return count
