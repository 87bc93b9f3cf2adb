from __future__ import annotations

from typing import Any, Dict, List, Optional

from novai_jobs.config import settings
from novai_jobs.domain.enums import JobType
from novai_jobs.domain.models import DiagramInput
from novai_jobs.services.cost_model import DIAGRAM_IMAGE_CENTS, per_image_cost
from novai_jobs.services.engines.base import EngineAdapter, require_keys
from novai_jobs.services.engines.fal import FalQueueEngine, FalSubscribeEngine
from novai_jobs.services.engines.local import LocalEngine
from novai_jobs.services.pipeline import PipelineContext, Stage
from novai_jobs.services.processors.base import BaseProcessor, first_url
from novai_jobs.services.storage_service import StorageService

DIAGRAM_PROMPT_SUFFIX = (
    "character reference sheet, front view, side view and back view, "
    "neutral pose, plain white background, consistent identity"
)


def _kontext_args(p: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "prompt": f"{p['prompt']}, {DIAGRAM_PROMPT_SUFFIX}",
        "image_url": p["source_image_url"],
        "num_images": 1,
        "output_format": "png",
    }


def _pulid_args(p: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "prompt": f"{p['prompt']}, {DIAGRAM_PROMPT_SUFFIX}",
        "reference_image_url": p["source_image_url"],
        "image_size": "landscape_16_9",
        "num_images": 1,
    }


def extract_single_image(raw: Dict[str, Any]) -> Dict[str, Any]:
    return {"image_url": first_url(raw.get("images")) or first_url(raw.get("image"))}


def _diagram_price(_params: Dict[str, Any], result: Any) -> int:
    return per_image_cost(1 if (result or {}).get("image_url") else 0, DIAGRAM_IMAGE_CENTS)


class DiagramProcessor(BaseProcessor):
    job_type = JobType.diagram_generation
    input_model = DiagramInput

    def __init__(self, storage: StorageService, engines: Optional[List[EngineAdapter]] = None):
        super().__init__(storage)
        self.engines = engines or [
            FalQueueEngine(
                "fal-ai/flux-pro/kontext",
                build_arguments=_kontext_args,
                extract_result=extract_single_image,
                pricing=_diagram_price,
                validators=[require_keys("image_url")],
            ),
            FalSubscribeEngine(
                "fal-ai/flux-pulid",
                build_arguments=_pulid_args,
                extract_result=extract_single_image,
                pricing=_diagram_price,
                validators=[require_keys("image_url")],
            ),
        ]
        self.persist_engine = LocalEngine("storage:persist-diagram", self._persist, validators=[require_keys("image_url")])

    async def _persist(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        url = await self.persist_url(
            params["image_url"],
            settings.MEDIA_CONTAINER,
            f"diagrams/{params['job_id']}/diagram.png",
        )
        return {"image_url": url}

    def build_stages(self, ctx: PipelineContext) -> List[Stage]:
        self.parse_input(ctx)
        return [
            Stage(
                name="generate",
                progress_range=(0, 80),
                engines=self.engines,
                build_params=lambda c: c.params.model_dump(mode="json"),
            ),
            Stage(
                name="persist",
                progress_range=(80, 100),
                engines=[self.persist_engine],
                build_params=lambda c: {"job_id": c.job_id, "image_url": c.result("generate")["image_url"]},
            ),
        ]

    def build_output(self, ctx: PipelineContext) -> Dict[str, Any]:
        return {
            "image_url": ctx.result("persist")["image_url"],
            "provider_image_url": ctx.result("generate")["image_url"],
            "character_id": ctx.params.character_id,
        }
