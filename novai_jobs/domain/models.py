from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, HttpUrl, model_validator

from novai_jobs.domain.enums import (
    AspectRatio,
    FaceSwapMethod,
    HookPosition,
    ImageGenerationMode,
    JobStatus,
    JobType,
)


# -----------------------------------------------------------------------------
# Job record
# -----------------------------------------------------------------------------

class Job(BaseModel):
    id: str
    type: JobType
    reference_id: Optional[str] = None
    status: JobStatus = JobStatus.pending
    progress: int = Field(default=0, ge=0, le=100)

    external_request_id: Optional[str] = None
    external_status: Optional[str] = None

    input_payload: Dict[str, Any] = Field(default_factory=dict)
    output_payload: Optional[Dict[str, Any]] = None

    cost_cents: Optional[int] = None
    error_message: Optional[str] = None

    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # queue bookkeeping
    attempt_count: int = 0
    max_attempts: int = 1
    next_run_at: Optional[datetime] = None

    @property
    def logs(self) -> List[str]:
        return list((self.output_payload or {}).get("logs") or [])

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.completed, JobStatus.failed)


class JobCreate(BaseModel):
    type: JobType
    reference_id: Optional[str] = None
    input_payload: Dict[str, Any] = Field(default_factory=dict)


class JobView(BaseModel):
    id: str
    type: str
    reference_id: Optional[str] = None
    status: str
    progress: int = 0
    external_status: Optional[str] = None
    output_payload: Optional[Dict[str, Any]] = None
    cost_cents: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobView":
        return cls(
            id=job.id,
            type=job.type.value,
            reference_id=job.reference_id,
            status=job.status.value,
            progress=job.progress,
            external_status=job.external_status,
            output_payload=job.output_payload,
            cost_cents=job.cost_cents,
            error_message=job.error_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


# -----------------------------------------------------------------------------
# Per-type input payloads (validated by processors)
# -----------------------------------------------------------------------------

class TrainingInput(BaseModel):
    images_data_url: HttpUrl
    trigger_word: str = Field(min_length=1, max_length=64)
    steps: int = Field(default=1000, ge=100, le=10000)
    is_style: bool = False


class DiagramInput(BaseModel):
    source_image_url: HttpUrl
    prompt: str = Field(min_length=1, max_length=4000)
    character_id: Optional[str] = None


class FaceSwapInput(BaseModel):
    video_url: HttpUrl
    target_face_url: HttpUrl
    method: FaceSwapMethod = FaceSwapMethod.wan_replace
    resolution: str = "720p"
    duration_seconds: Optional[float] = Field(default=None, gt=0, le=600)
    prompt: Optional[str] = None
    video_id: Optional[str] = None


class ImageGenerationInput(BaseModel):
    mode: ImageGenerationMode = ImageGenerationMode.text_to_image
    prompt: str = Field(min_length=1, max_length=4000)
    num_images: int = Field(default=1, ge=1, le=8)
    aspect_ratio: AspectRatio = AspectRatio.ar_1_1
    lora_weights_url: Optional[HttpUrl] = None
    lora_scale: float = Field(default=1.0, ge=0.0, le=2.0)
    face_image_url: Optional[HttpUrl] = None
    diagram_image_url: Optional[HttpUrl] = None

    @model_validator(mode="after")
    def validate_mode_inputs(self) -> "ImageGenerationInput":
        if self.mode == ImageGenerationMode.face_swap and not self.face_image_url:
            raise ValueError("mode=face-swap requires face_image_url")
        if self.mode == ImageGenerationMode.character_diagram_swap and not self.diagram_image_url:
            raise ValueError("mode=character-diagram-swap requires diagram_image_url")
        return self


class VariantInput(BaseModel):
    batch_id: str
    variant_index: int = Field(ge=0)
    video_id: str
    audio_id: Optional[str] = None
    hook_id: Optional[str] = None
    hook_duration: Optional[float] = Field(default=None, gt=0)
    hook_position: HookPosition = HookPosition.bottom


# -----------------------------------------------------------------------------
# Batches
# -----------------------------------------------------------------------------

class BatchCreate(BaseModel):
    video_collection_ids: List[str] = Field(min_length=1)
    audio_collection_ids: List[str] = Field(default_factory=list)
    hook_ids: List[str] = Field(default_factory=list)
    hook_duration: Optional[float] = Field(default=None, gt=0)
    hook_position: HookPosition = HookPosition.bottom


class BatchCreated(BaseModel):
    batch_id: str
    total_variants: int
    job_ids: List[str]
    estimated_processing_minutes: int
    expires_at: datetime


class BatchStatusView(BaseModel):
    batch_id: str
    total: int
    completed: int
    failed: int
    processing: int
    pending: int
    jobs: List[JobView] = Field(default_factory=list)


class BatchInfoView(BaseModel):
    batch_id: str
    created_at: datetime
    expires_at: datetime
    total_variants: int
    zip_url: Optional[str] = None


class BatchZipView(BaseModel):
    batch_id: str
    zip_url: str
    expires_at: Optional[datetime] = None
