from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from novai_jobs.api.deps import get_variant_service, to_http_error
from novai_jobs.domain.errors import BatchEmptyError, BatchExpiredError, NoCompletedVariantsError
from novai_jobs.domain.models import BatchCreate, BatchCreated, BatchInfoView, BatchStatusView, BatchZipView
from novai_jobs.services.variant_service import VariantService

router = APIRouter(prefix="/variants", tags=["variants"])


@router.post("/batches", response_model=BatchCreated)
async def create_batch(req: BatchCreate, variants: VariantService = Depends(get_variant_service)) -> BatchCreated:
    try:
        return await variants.create_batch(
            req.video_collection_ids,
            audio_collection_ids=req.audio_collection_ids,
            hook_ids=req.hook_ids,
            hook_duration=req.hook_duration,
            hook_position=req.hook_position,
        )
    except BatchEmptyError as e:
        raise to_http_error(e)


@router.get("/batches/{batch_id}", response_model=BatchStatusView)
async def get_batch_status(batch_id: str, variants: VariantService = Depends(get_variant_service)) -> BatchStatusView:
    view = await variants.get_batch_status(batch_id)
    if view is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return view


@router.get("/batches/{batch_id}/info", response_model=BatchInfoView)
async def get_batch_info(batch_id: str, variants: VariantService = Depends(get_variant_service)) -> BatchInfoView:
    info = variants.get_batch_info(batch_id)
    if info is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    return info


@router.post("/batches/{batch_id}/zip", response_model=BatchZipView)
async def create_batch_zip(batch_id: str, variants: VariantService = Depends(get_variant_service)) -> BatchZipView:
    try:
        return await variants.create_batch_zip(batch_id)
    except (BatchExpiredError, NoCompletedVariantsError) as e:
        raise to_http_error(e)
