from __future__ import annotations

from typing import Any, Dict, List, Optional

from novai_jobs.domain.enums import JobType
from novai_jobs.domain.models import TrainingInput
from novai_jobs.services.cost_model import TRAINING_FLAT_CENTS, flat_request_cost
from novai_jobs.services.engines.base import EngineAdapter, require_keys
from novai_jobs.services.engines.fal import FalQueueEngine, FalSubscribeEngine
from novai_jobs.services.pipeline import PipelineContext, Stage
from novai_jobs.services.processors.base import BaseProcessor, first_url
from novai_jobs.services.storage_service import StorageService


def _fast_training_args(p: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "images_data_url": p["images_data_url"],
        "trigger_word": p["trigger_word"],
        "steps": p["steps"],
        "is_style": p["is_style"],
        "create_masks": not p["is_style"],
    }


def _wan_trainer_args(p: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "training_data_url": p["images_data_url"],
        "trigger_phrase": p["trigger_word"],
        "steps": p["steps"],
        "learning_rate": 0.0007,
        "is_style": p["is_style"],
        "use_face_detection": True,
        "use_masks": True,
    }


def extract_training_result(raw: Dict[str, Any]) -> Dict[str, Any]:
    weights = raw.get("diffusers_lora_file") or raw.get("lora_file") or {}
    config = raw.get("config_file") or {}
    return {
        "weights_url": first_url(weights),
        "config_url": first_url(config),
        "file_size": weights.get("file_size") if isinstance(weights, dict) else None,
    }


def _training_price(_params: Dict[str, Any], _result: Any) -> int:
    return flat_request_cost(TRAINING_FLAT_CENTS)


class TrainingProcessor(BaseProcessor):
    job_type = JobType.training
    input_model = TrainingInput

    def __init__(self, storage: StorageService, engines: Optional[List[EngineAdapter]] = None):
        super().__init__(storage)
        self.engines = engines or [
            FalQueueEngine(
                "fal-ai/flux-lora-fast-training",
                name="fal:flux-lora-fast-training",
                build_arguments=_fast_training_args,
                extract_result=extract_training_result,
                poll_interval=15.0,
                max_attempts=120,
                pricing=_training_price,
                validators=[require_keys("weights_url")],
            ),
            FalSubscribeEngine(
                "fal-ai/wan-22-image-trainer",
                name="fal:wan-22-image-trainer",
                build_arguments=_wan_trainer_args,
                extract_result=extract_training_result,
                pricing=_training_price,
                validators=[require_keys("weights_url")],
            ),
        ]

    def build_stages(self, ctx: PipelineContext) -> List[Stage]:
        self.parse_input(ctx)
        return [
            Stage(
                name="training",
                progress_range=(0, 100),
                engines=self.engines,
                build_params=lambda c: c.params.model_dump(mode="json"),
            ),
        ]

    def build_output(self, ctx: PipelineContext) -> Dict[str, Any]:
        r = ctx.result("training") or {}
        return {
            "weights_url": r.get("weights_url"),
            "config_url": r.get("config_url"),
            "file_size": r.get("file_size"),
            "trigger_word": ctx.params.trigger_word,
            "engine": ctx.stage_results[0].engine if ctx.stage_results else None,
        }
