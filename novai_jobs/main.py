from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from typing import Optional

from fastapi import FastAPI

from novai_jobs.api import build_router
from novai_jobs.api.deps import AppServices
from novai_jobs.config import settings
from novai_jobs.db import close_pool, init_pool
from novai_jobs.logging import configure_logging
from novai_jobs.repos.jobs_repo import JobsRepo
from novai_jobs.repos.media_repo import MediaRepo
from novai_jobs.services.job_service import JobService
from novai_jobs.services.storage_service import AzureBlobStorage
from novai_jobs.services.variant_service import VariantService

logger = logging.getLogger("novai_api")


async def build_services() -> AppServices:
    pool = await init_pool("api")
    store = JobsRepo(pool)
    media = MediaRepo(pool)
    storage = AzureBlobStorage()
    jobs = JobService(store)
    return AppServices(
        store=store,
        media=media,
        storage=storage,
        jobs=jobs,
        variants=VariantService(jobs, store, media, storage),
    )


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """
    Services passed in (tests, embedding) are used as-is; otherwise the
    lifespan builds the Postgres-backed set and owns the pool.
    """

    @contextlib.asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging("api")
        owns_pool = app.state.services is None
        if owns_pool:
            app.state.services = await build_services()

        # batch metadata lives in this process, so its expiry sweep does too
        cleanup = asyncio.create_task(app.state.services.variants.cleanup_loop())
        logger.info("api_started")
        try:
            yield
        finally:
            cleanup.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await cleanup
            if owns_pool:
                await close_pool()
            logger.info("api_stopped")

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=os.getenv("SERVICE_VERSION", os.getenv("GIT_SHA", "dev")),
        docs_url=os.getenv("DOCS_URL", "/docs"),
        redoc_url=os.getenv("REDOC_URL", "/redoc"),
        openapi_url=os.getenv("OPENAPI_URL", "/openapi.json"),
        lifespan=lifespan,
    )
    app.state.services = services
    app.include_router(build_router())

    @app.get("/")
    async def root():
        return {"service": settings.SERVICE_NAME, "status": "ok"}

    return app


app = create_app()
