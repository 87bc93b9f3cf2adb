from __future__ import annotations

from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from novai_jobs.domain.errors import (
    BatchExpiredError,
    CallerError,
    InvalidTransitionError,
    JobNotFoundError,
    NoCompletedVariantsError,
)
from novai_jobs.repos.base import JobStore
from novai_jobs.repos.media_repo import MediaCatalog
from novai_jobs.services.job_service import JobService
from novai_jobs.services.storage_service import StorageService
from novai_jobs.services.variant_service import VariantService


@dataclass
class AppServices:
    store: JobStore
    media: MediaCatalog
    storage: StorageService
    jobs: JobService
    variants: VariantService


def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="service_not_ready")
    return services


def get_job_service(request: Request) -> JobService:
    return get_services(request).jobs


def get_variant_service(request: Request) -> VariantService:
    return get_services(request).variants


def to_http_error(e: Exception) -> HTTPException:
    if isinstance(e, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e) or "Job not found")
    if isinstance(e, (InvalidTransitionError, BatchExpiredError, NoCompletedVariantsError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    if isinstance(e, CallerError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="internal_error")
