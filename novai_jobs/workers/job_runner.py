from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path
from typing import Dict, Optional

from novai_jobs.config import settings
from novai_jobs.domain.enums import JobStatus, JobType
from novai_jobs.domain.errors import CallerError, InfrastructureError
from novai_jobs.domain.models import Job
from novai_jobs.services.job_service import JobService
from novai_jobs.services.pipeline import PipelineContext, StagePipeline
from novai_jobs.services.processors.base import BaseProcessor
from novai_jobs.services.progress_tracker import ProgressTracker

logger = logging.getLogger("job_runner")


def retry_delay_seconds(attempt: int) -> int:
    base = settings.RETRY_BASE_DELAY_SECONDS
    cap = settings.RETRY_MAX_DELAY_SECONDS
    return int(min(cap, base * (2 ** (max(1, attempt) - 1))))


class JobRunner:
    """
    Runs one claimed job end to end. Nothing raised by a processor escapes:
    the job ends completed, failed, or back on the queue.
    """

    def __init__(
        self,
        jobs: JobService,
        tracker: ProgressTracker,
        processors: Dict[JobType, BaseProcessor],
        *,
        pipeline: Optional[StagePipeline] = None,
        temp_dir: Optional[str] = None,
    ):
        self.jobs = jobs
        self.tracker = tracker
        self.processors = processors
        self.pipeline = pipeline or StagePipeline(tracker)
        self.temp_dir = Path(temp_dir or settings.TEMP_DIR)

    async def run(self, job_id: str) -> Optional[Job]:
        job = await self.jobs.mark_processing(job_id)
        if job.status != JobStatus.processing:
            logger.info("job_run_skipped", extra={"job_id": job_id, "status": job.status.value})
            return job

        workdir = self.temp_dir / job.id
        try:
            processor = self.processors.get(job.type)
            if processor is None:
                raise CallerError(f"Unsupported job type: {job.type.value}")

            ctx = PipelineContext(
                job_id=job.id,
                job_type=job.type,
                input=dict(job.input_payload or {}),
                workdir=workdir,
            )
            stages = processor.build_stages(ctx)
            outcome = await self.pipeline.run(
                ctx,
                stages,
                build_output=processor.build_output,
                deadline_minutes=processor.deadline_minutes,
            )
            return await self.jobs.mark_completed(job.id, outcome.output, outcome.cost_cents)

        except asyncio.CancelledError:
            raise
        except Exception as e:
            return await self._handle_failure(job.id, e)

        finally:
            self.tracker.forget(job.id)
            shutil.rmtree(workdir, ignore_errors=True)

    async def _handle_failure(self, job_id: str, error: Exception) -> Optional[Job]:
        message = str(error) or error.__class__.__name__
        logger.warning(
            "job_run_failed",
            extra={"job_id": job_id, "error": message, "error_type": error.__class__.__name__},
        )

        try:
            current = await self.jobs.get(job_id)
            if current is None or current.status != JobStatus.processing:
                # cancelled or finished elsewhere while we were running
                return current

            # a run that never went through claim_next still counts as one attempt
            attempt = max(1, current.attempt_count)
            retryable = not isinstance(error, (CallerError, InfrastructureError))
            if retryable and attempt < current.max_attempts:
                delay = retry_delay_seconds(attempt)
                rescheduled = await self.jobs.reschedule(job_id, delay, message)
                if rescheduled is not None:
                    return rescheduled

            return await self.jobs.mark_failed(job_id, message)

        except Exception:
            logger.exception("job_failure_handling_failed", extra={"job_id": job_id, "error": message})
            return None
