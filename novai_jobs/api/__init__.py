from __future__ import annotations

from fastapi import APIRouter

from novai_jobs.api.health import router as health_router
from novai_jobs.api.routes.jobs import router as jobs_router
from novai_jobs.api.routes.variants import router as variants_router


def build_router() -> APIRouter:
    r = APIRouter()
    r.include_router(health_router)
    r.include_router(jobs_router)
    r.include_router(variants_router)
    return r
