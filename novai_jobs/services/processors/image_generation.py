from __future__ import annotations

from typing import Any, Dict, List, Optional

from novai_jobs.config import settings
from novai_jobs.domain.enums import AspectRatio, ImageGenerationMode, JobType
from novai_jobs.domain.models import ImageGenerationInput
from novai_jobs.services.cost_model import FACE_IDENTITY_IMAGE_CENTS, TEXT_TO_IMAGE_CENTS, per_image_cost
from novai_jobs.services.engines.base import EngineAdapter, require_keys
from novai_jobs.services.engines.fal import FalQueueEngine, FalSubscribeEngine
from novai_jobs.services.engines.local import LocalEngine
from novai_jobs.services.pipeline import PipelineContext, Stage
from novai_jobs.services.processors.base import BaseProcessor, emit_fraction, first_url
from novai_jobs.services.storage_service import StorageService

IMAGE_SIZES = {
    AspectRatio.ar_1_1: "square_hd",
    AspectRatio.ar_16_9: "landscape_16_9",
    AspectRatio.ar_9_16: "portrait_16_9",
    AspectRatio.ar_4_5: "portrait_4_3",
    AspectRatio.ar_3_4: "portrait_4_3",
}


def image_size_for(aspect_ratio: str) -> str:
    try:
        return IMAGE_SIZES[AspectRatio(aspect_ratio)]
    except ValueError:
        return "square_hd"


def extract_images(raw: Dict[str, Any]) -> Dict[str, Any]:
    urls = [u for u in (first_url(i) for i in raw.get("images") or []) if u]
    return {"images": urls}


def _text_to_image_args(p: Dict[str, Any]) -> Dict[str, Any]:
    args: Dict[str, Any] = {
        "prompt": p["prompt"],
        "image_size": image_size_for(p["aspect_ratio"]),
        "num_images": p["num_images"],
        "enable_safety_checker": True,
    }
    if p.get("lora_weights_url"):
        args["loras"] = [{"path": p["lora_weights_url"], "scale": p.get("lora_scale", 1.0)}]
    return args


def _identity_args(reference_key: str):
    def _build(p: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "prompt": p["prompt"],
            "reference_image_url": p[reference_key],
            "image_size": image_size_for(p["aspect_ratio"]),
            "num_images": p["num_images"],
            "id_weight": 1.0,
        }

    return _build


def _priced_per_image(cents: int):
    def _price(_params: Dict[str, Any], result: Any) -> int:
        return per_image_cost(len((result or {}).get("images") or []), cents)

    return _price


class ImageGenerationProcessor(BaseProcessor):
    job_type = JobType.image_generation
    input_model = ImageGenerationInput

    def __init__(
        self,
        storage: StorageService,
        engines: Optional[Dict[ImageGenerationMode, List[EngineAdapter]]] = None,
    ):
        super().__init__(storage)
        self.engines = engines or self._default_engines()
        self.persist_engine = LocalEngine("storage:persist-images", self._persist, validators=[require_keys("images")])

    @staticmethod
    def _default_engines() -> Dict[ImageGenerationMode, List[EngineAdapter]]:
        common = {"extract_result": extract_images, "validators": [require_keys("images")]}
        text_price = _priced_per_image(TEXT_TO_IMAGE_CENTS)
        face_price = _priced_per_image(FACE_IDENTITY_IMAGE_CENTS)
        return {
            ImageGenerationMode.text_to_image: [
                FalSubscribeEngine("fal-ai/flux-lora", build_arguments=_text_to_image_args, pricing=text_price, **common),
                FalQueueEngine("fal-ai/flux-lora", build_arguments=_text_to_image_args, pricing=text_price, **common),
            ],
            ImageGenerationMode.face_swap: [
                FalSubscribeEngine("fal-ai/flux-pulid", build_arguments=_identity_args("face_image_url"), pricing=face_price, **common),
                FalQueueEngine("fal-ai/flux-pulid", build_arguments=_identity_args("face_image_url"), pricing=face_price, **common),
            ],
            ImageGenerationMode.character_diagram_swap: [
                FalSubscribeEngine("fal-ai/flux-pulid", build_arguments=_identity_args("diagram_image_url"), pricing=face_price, **common),
                FalQueueEngine("fal-ai/flux-pulid", build_arguments=_identity_args("diagram_image_url"), pricing=face_price, **common),
            ],
        }

    async def _persist(self, params: Dict[str, Any], emit) -> Dict[str, Any]:
        sources = params["images"]
        stored: List[str] = []
        for i, url in enumerate(sources):
            stored.append(await self.persist_url(url, settings.MEDIA_CONTAINER, f"images/{params['job_id']}/image-{i + 1}.png"))
            emit_fraction(emit, i + 1, len(sources), f"stored image {i + 1}/{len(sources)}")
        return {"images": stored}

    def build_stages(self, ctx: PipelineContext) -> List[Stage]:
        params = self.parse_input(ctx)
        return [
            Stage(
                name="generate",
                progress_range=(0, 80),
                engines=self.engines[params.mode],
                build_params=lambda c: c.params.model_dump(mode="json"),
            ),
            Stage(
                name="persist",
                progress_range=(80, 100),
                engines=[self.persist_engine],
                build_params=lambda c: {"job_id": c.job_id, "images": c.result("generate")["images"]},
            ),
        ]

    def build_output(self, ctx: PipelineContext) -> Dict[str, Any]:
        images = ctx.result("persist")["images"]
        return {
            "images": images,
            "count": len(images),
            "mode": ctx.params.mode.value,
        }
