from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ValidationError

from novai_jobs.api.deps import get_job_service, to_http_error
from novai_jobs.domain.enums import JobType
from novai_jobs.domain.errors import InvalidTransitionError, JobNotFoundError
from novai_jobs.domain.models import (
    DiagramInput,
    FaceSwapInput,
    ImageGenerationInput,
    JobCreate,
    JobView,
    TrainingInput,
    VariantInput,
)
from novai_jobs.services.job_service import JobService

logger = logging.getLogger("jobs_api")

router = APIRouter(prefix="/jobs", tags=["jobs"])

INPUT_MODELS = {
    JobType.training: TrainingInput,
    JobType.diagram_generation: DiagramInput,
    JobType.face_swap: FaceSwapInput,
    JobType.image_generation: ImageGenerationInput,
    JobType.variant: VariantInput,
}


def _validated_payload(req: JobCreate) -> dict:
    model: type[BaseModel] = INPUT_MODELS[req.type]
    try:
        return model.model_validate(req.input_payload).model_dump(mode="json", exclude_none=True)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": f"Invalid {req.type.value} input",
                "errors": e.errors(include_url=False, include_context=False, include_input=False),
            },
        )


@router.post("", response_model=JobView)
async def create_job(req: JobCreate, jobs: JobService = Depends(get_job_service)) -> JobView:
    payload = _validated_payload(req)
    job = await jobs.create(req.type, req.reference_id, payload)
    return JobView.from_job(job)


@router.get("", response_model=List[JobView])
async def list_jobs(
    type: Optional[JobType] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    jobs: JobService = Depends(get_job_service),
) -> List[JobView]:
    return [JobView.from_job(j) for j in await jobs.list_jobs(type, limit=limit)]


@router.get("/{job_id}", response_model=JobView)
async def get_job(job_id: str, jobs: JobService = Depends(get_job_service)) -> JobView:
    job = await jobs.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobView.from_job(job)


@router.post("/{job_id}/cancel", response_model=JobView)
async def cancel_job(job_id: str, jobs: JobService = Depends(get_job_service)) -> JobView:
    try:
        job = await jobs.cancel(job_id)
    except (JobNotFoundError, InvalidTransitionError) as e:
        raise to_http_error(e)
    return JobView.from_job(job)


@router.post("/{job_id}/retry", response_model=JobView)
async def retry_job(job_id: str, jobs: JobService = Depends(get_job_service)) -> JobView:
    try:
        job = await jobs.retry(job_id)
    except (JobNotFoundError, InvalidTransitionError) as e:
        raise to_http_error(e)
    logger.info("job_retry_requested", extra={"job_id": job_id})
    return JobView.from_job(job)
