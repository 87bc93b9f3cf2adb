from __future__ import annotations

from typing import Dict, Optional

from novai_jobs.domain.enums import JobType
from novai_jobs.repos.media_repo import MediaCatalog
from novai_jobs.services.ffmpeg_service import FFmpegService
from novai_jobs.services.processors.base import BaseProcessor
from novai_jobs.services.processors.diagram import DiagramProcessor
from novai_jobs.services.processors.face_swap import FaceSwapProcessor
from novai_jobs.services.processors.image_generation import ImageGenerationProcessor
from novai_jobs.services.processors.training import TrainingProcessor
from novai_jobs.services.processors.variant import VariantProcessor
from novai_jobs.services.storage_service import StorageService


def build_processors(
    storage: StorageService,
    media: MediaCatalog,
    ffmpeg: Optional[FFmpegService] = None,
) -> Dict[JobType, BaseProcessor]:
    ffmpeg = ffmpeg or FFmpegService()
    return {
        JobType.training: TrainingProcessor(storage),
        JobType.diagram_generation: DiagramProcessor(storage),
        JobType.face_swap: FaceSwapProcessor(storage, ffmpeg),
        JobType.image_generation: ImageGenerationProcessor(storage),
        JobType.variant: VariantProcessor(storage, media, ffmpeg),
    }


__all__ = [
    "BaseProcessor",
    "DiagramProcessor",
    "FaceSwapProcessor",
    "ImageGenerationProcessor",
    "TrainingProcessor",
    "VariantProcessor",
    "build_processors",
]
