from __future__ import annotations

import asyncio
import logging
import signal
import socket
from typing import Dict, List, Optional, Set

from novai_jobs.config import settings
from novai_jobs.db import close_pool, get_pool
from novai_jobs.domain.enums import JobType
from novai_jobs.logging import configure_logging
from novai_jobs.repos.base import JobStore
from novai_jobs.repos.jobs_repo import JobsRepo
from novai_jobs.repos.media_repo import MediaRepo
from novai_jobs.services.job_service import JobService
from novai_jobs.services.processors import build_processors
from novai_jobs.services.progress_tracker import ProgressTracker
from novai_jobs.services.storage_service import AzureBlobStorage
from novai_jobs.workers.job_runner import JobRunner

logger = logging.getLogger("job_worker")


def default_concurrency() -> Dict[JobType, int]:
    return {
        JobType.training: settings.QUEUE_CONCURRENCY_TRAINING,
        JobType.diagram_generation: settings.QUEUE_CONCURRENCY_DIAGRAM,
        JobType.face_swap: settings.QUEUE_CONCURRENCY_FACE_SWAP,
        JobType.image_generation: settings.QUEUE_CONCURRENCY_IMAGE,
        JobType.variant: settings.QUEUE_CONCURRENCY_VARIANT,
    }


class JobWorker:
    """
    One claim loop per job type, each bounded by its own semaphore, plus a
    periodic sweep that fails jobs stuck in processing.
    """

    def __init__(
        self,
        store: JobStore,
        runner: JobRunner,
        jobs: JobService,
        *,
        concurrency: Optional[Dict[JobType, int]] = None,
        worker_id: Optional[str] = None,
        idle_sleep: Optional[float] = None,
        sweep_seconds: Optional[float] = None,
    ):
        self.store = store
        self.runner = runner
        self.jobs = jobs
        self.concurrency = concurrency or default_concurrency()
        self.worker_id = worker_id or f"job-worker-{socket.gethostname()}"
        self.idle_sleep = settings.WORKER_IDLE_SLEEP_SECONDS if idle_sleep is None else idle_sleep
        self.sweep_seconds = settings.STUCK_SWEEP_SECONDS if sweep_seconds is None else sweep_seconds
        self._stop = asyncio.Event()
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    def stop_worker(self) -> None:
        self._stop.set()
        logger.info("worker_stopping", extra={"worker_id": self.worker_id})

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _run_one(self, job_id: str, sem: asyncio.Semaphore) -> None:
        try:
            job = await self.runner.run(job_id)
            if job is not None:
                logger.info(
                    "job_finished",
                    extra={"job_id": job_id, "status": job.status.value, "worker_id": self.worker_id},
                )
        except Exception:
            logger.exception("job_runner_crashed", extra={"job_id": job_id, "worker_id": self.worker_id})
        finally:
            sem.release()

    async def queue_loop(self, job_type: JobType, limit: int) -> None:
        sem = asyncio.Semaphore(max(1, limit))
        logger.info("queue_loop_started", extra={"job_type": job_type.value, "concurrency": limit})

        while self.running:
            await sem.acquire()
            if not self.running:
                sem.release()
                break

            try:
                claimed = await self.store.claim_next(job_type.value, limit=1, lease_seconds=settings.WORKER_LEASE_SECONDS)
            except Exception:
                sem.release()
                logger.exception("claim_failed", extra={"job_type": job_type.value})
                await self._sleep(self.idle_sleep)
                continue

            if not claimed:
                sem.release()
                await self._sleep(self.idle_sleep)
                continue

            task = asyncio.create_task(self._run_one(claimed[0], sem))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

        logger.info("queue_loop_stopped", extra={"job_type": job_type.value})

    async def sweep_loop(self) -> None:
        while self.running:
            try:
                await self.jobs.cleanup_stuck_jobs()
            except Exception:
                logger.exception("stuck_sweep_failed")
            await self._sleep(self.sweep_seconds)

    async def run(self) -> None:
        loops: List[asyncio.Task] = [
            asyncio.create_task(self.queue_loop(job_type, limit)) for job_type, limit in self.concurrency.items()
        ]
        loops.append(asyncio.create_task(self.sweep_loop()))
        logger.info("worker_started", extra={"worker_id": self.worker_id})
        try:
            await asyncio.gather(*loops)
        finally:
            if self._in_flight:
                # let running jobs settle their own state
                await asyncio.gather(*list(self._in_flight), return_exceptions=True)
            logger.info("worker_stopped", extra={"worker_id": self.worker_id})


async def _main() -> None:
    pool = await get_pool("worker")
    store = JobsRepo(pool)
    media = MediaRepo(pool)
    jobs = JobService(store)
    tracker = ProgressTracker(store)
    runner = JobRunner(jobs, tracker, build_processors(AzureBlobStorage(), media))
    worker = JobWorker(store, runner, jobs)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop_worker)

    try:
        await worker.run()
    finally:
        await close_pool()


def main() -> None:
    configure_logging("worker")
    asyncio.run(_main())


if __name__ == "__main__":
    main()
