from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError

from novai_jobs.config import settings
from novai_jobs.domain.enums import JobType, OperationStatus
from novai_jobs.domain.errors import CallerError
from novai_jobs.services.engines.base import Operation
from novai_jobs.services.pipeline import PipelineContext, Stage
from novai_jobs.services.storage_service import StorageService, content_type_for, download_bytes

logger = logging.getLogger("processors")

_DEADLINES = {
    JobType.training: lambda: settings.JOB_DEADLINE_TRAINING_MINUTES,
    JobType.diagram_generation: lambda: settings.JOB_DEADLINE_DIAGRAM_MINUTES,
    JobType.face_swap: lambda: settings.JOB_DEADLINE_FACE_SWAP_MINUTES,
    JobType.image_generation: lambda: settings.JOB_DEADLINE_IMAGE_MINUTES,
    JobType.variant: lambda: settings.JOB_DEADLINE_VARIANT_MINUTES,
}


def first_url(value: Any) -> Optional[str]:
    """Pull a URL out of the usual fal shapes: {"url"}, [{"url"}], "https://..."."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("url") or None
    if isinstance(value, list) and value:
        return first_url(value[0])
    return None


def emit_fraction(emit: Callable[[Operation], None], done: int, total: int, note: str) -> None:
    frac = (done / total) if total else 1.0
    emit(Operation(status=OperationStatus.in_progress, progress=frac, logs=[note]))


class BaseProcessor(ABC):
    job_type: JobType
    input_model: Type[BaseModel]

    def __init__(self, storage: StorageService):
        self.storage = storage

    @property
    def deadline_minutes(self) -> float:
        return float(_DEADLINES[self.job_type]())

    def parse_input(self, ctx: PipelineContext) -> Any:
        try:
            parsed = self.input_model.model_validate(ctx.input)
        except ValidationError as e:
            first = e.errors()[0] if e.errors() else {}
            where = ".".join(str(p) for p in first.get("loc", ())) or "input"
            raise CallerError(f"Invalid {self.job_type.value} input: {where}: {first.get('msg', 'invalid')}") from e
        ctx.params = parsed
        return parsed

    @abstractmethod
    def build_stages(self, ctx: PipelineContext) -> List[Stage]:
        ...

    @abstractmethod
    def build_output(self, ctx: PipelineContext) -> Dict[str, Any]:
        ...

    # ------------------------------------------------------------------
    # storage helpers shared by finalize/persist stages
    # ------------------------------------------------------------------

    async def persist_url(self, url: str, bucket: str, path: str) -> str:
        data = await download_bytes(url)
        return await self.storage.upload(bucket, path, data, content_type_for(path))

    async def upload_file(self, local_path: str, bucket: str, path: str) -> str:
        data = Path(local_path).read_bytes()
        return await self.storage.upload(bucket, path, data, content_type_for(path))
