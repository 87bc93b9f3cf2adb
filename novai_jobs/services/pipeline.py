from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from novai_jobs.domain.enums import JobType, OperationStatus
from novai_jobs.domain.errors import (
    CallerError,
    EngineError,
    EngineFailedError,
    EngineTimeoutError,
    JobTimeoutError,
)
from novai_jobs.services.cost_model import total_cost
from novai_jobs.services.engines.base import EngineAdapter, Operation
from novai_jobs.services.progress_tracker import ProgressTracker

logger = logging.getLogger("pipeline")


@dataclass
class PipelineContext:
    job_id: str
    job_type: JobType
    input: Dict[str, Any]
    workdir: Path
    results: Dict[str, Any] = field(default_factory=dict)
    stage_results: List["StageResult"] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    # processor-specific parsed input, set by the processor
    params: Any = None

    def result(self, stage: str, default: Any = None) -> Any:
        return self.results.get(stage, default)

    def ensure_workdir(self) -> Path:
        self.workdir.mkdir(parents=True, exist_ok=True)
        return self.workdir


def _pass_input(ctx: PipelineContext) -> Dict[str, Any]:
    return dict(ctx.input)


@dataclass
class Stage:
    name: str
    progress_range: Tuple[int, int]
    engines: Sequence[EngineAdapter]
    build_params: Callable[[PipelineContext], Dict[str, Any]] = _pass_input
    optional: bool = False
    timeout_seconds: Optional[float] = None

    def __post_init__(self) -> None:
        lo, hi = self.progress_range
        if not (0 <= lo < hi <= 100):
            raise ValueError(f"stage {self.name}: invalid progress range {self.progress_range}")
        if not self.engines:
            raise ValueError(f"stage {self.name}: empty fallback chain")


@dataclass
class StageResult:
    stage: str
    engine: str
    result: Any
    cost_cents: int
    fallback_used: bool = False
    failures: List[str] = field(default_factory=list)


@dataclass
class PipelineOutcome:
    output: Dict[str, Any]
    cost_cents: int
    stage_results: List[StageResult]
    skipped: List[str]


def map_progress(progress_range: Tuple[int, int], op: Operation, current: int) -> int:
    """
    Map an engine status into [lo, hi). Never returns less than `current`
    and never reaches hi; hi belongs to the next stage.
    """
    lo, hi = progress_range
    top = max(lo, hi - 1)
    span = hi - lo

    if op.progress is not None:
        target = lo + max(0.0, min(1.0, float(op.progress))) * span
    elif op.status == OperationStatus.queued:
        target = lo
    elif op.status == OperationStatus.completed:
        target = top
    else:
        # no provider percentage: creep forward
        target = max(current, lo) + max(1, span // 20)

    target = int(min(top, max(lo, target)))
    return max(current, target)


class StagePipeline:
    """
    Runs one job's stages in order.

    Per stage: try each engine of the fallback chain in turn. Rejections are
    fatal; failures and timeouts move to the next engine. An optional stage
    whose chain is exhausted is skipped; any other exhausted stage fails the
    job with the last engine error. Every engine call is raced against the
    stage deadline and the remaining job budget.
    """

    def __init__(self, tracker: ProgressTracker, clock: Optional[Callable[[], float]] = None):
        self.tracker = tracker
        self.clock = clock or (lambda: asyncio.get_running_loop().time())

    async def run(
        self,
        ctx: PipelineContext,
        stages: Sequence[Stage],
        *,
        build_output: Callable[[PipelineContext], Dict[str, Any]],
        deadline_minutes: Optional[float] = None,
    ) -> PipelineOutcome:
        deadline_at = self.clock() + deadline_minutes * 60 if deadline_minutes else None

        for stage in stages:
            self._check_job_deadline(deadline_at, deadline_minutes)
            lo, _hi = stage.progress_range
            await self.tracker.set_progress(ctx.job_id, lo, f"{stage.name}: STARTING")

            stage_result = await self._run_stage(ctx, stage, deadline_at, deadline_minutes)
            if stage_result is None:
                ctx.skipped.append(stage.name)
                continue

            ctx.results[stage.name] = stage_result.result
            ctx.stage_results.append(stage_result)

        output = build_output(ctx)
        cost = total_cost(r.cost_cents for r in ctx.stage_results)
        logger.info(
            "pipeline_completed",
            extra={
                "job_id": ctx.job_id,
                "stages": [r.stage for r in ctx.stage_results],
                "skipped": ctx.skipped,
                "cost_cents": cost,
            },
        )
        return PipelineOutcome(output=output, cost_cents=cost, stage_results=list(ctx.stage_results), skipped=list(ctx.skipped))

    def _check_job_deadline(self, deadline_at: Optional[float], minutes: Optional[float]) -> None:
        if deadline_at is not None and self.clock() >= deadline_at:
            raise JobTimeoutError(minutes or 0)

    async def _run_stage(
        self,
        ctx: PipelineContext,
        stage: Stage,
        deadline_at: Optional[float],
        deadline_minutes: Optional[float],
    ) -> Optional[StageResult]:
        params = stage.build_params(ctx)
        failures: List[str] = []
        last_error: Optional[EngineError] = None

        for index, engine in enumerate(stage.engines):
            self._check_job_deadline(deadline_at, deadline_minutes)
            if index > 0:
                await self.tracker.add_log(ctx.job_id, f"{stage.name}: trying fallback engine {engine.name}")

            try:
                result = await self._attempt(ctx, stage, engine, params, deadline_at, deadline_minutes)
            except CallerError:
                # rejected input: no fallback
                raise
            except (EngineFailedError, EngineTimeoutError) as e:
                last_error = e
                failures.append(f"{engine.name}: {e}")
                logger.warning(
                    "stage_engine_failed",
                    extra={"job_id": ctx.job_id, "stage": stage.name, "engine": engine.name, "error": str(e)},
                )
                await self.tracker.add_log(ctx.job_id, f"{stage.name}: {engine.name} failed: {e}")
                continue

            cost = engine.cost(params, result)
            if index > 0:
                await self.tracker.add_log(ctx.job_id, f"{stage.name}: completed using fallback engine {engine.name}")
                logger.info(
                    "stage_fallback_succeeded",
                    extra={"job_id": ctx.job_id, "stage": stage.name, "engine": engine.name},
                )
            return StageResult(
                stage=stage.name,
                engine=engine.name,
                result=result,
                cost_cents=cost,
                fallback_used=index > 0,
                failures=failures,
            )

        if stage.optional:
            await self.tracker.add_log(ctx.job_id, f"{stage.name}: skipped ({last_error})")
            logger.warning("optional_stage_skipped", extra={"job_id": ctx.job_id, "stage": stage.name})
            return None

        assert last_error is not None
        raise last_error

    async def _attempt(
        self,
        ctx: PipelineContext,
        stage: Stage,
        engine: EngineAdapter,
        params: Dict[str, Any],
        deadline_at: Optional[float],
        deadline_minutes: Optional[float],
    ) -> Any:
        remaining = deadline_at - self.clock() if deadline_at is not None else None
        budget = stage.timeout_seconds
        job_bound = remaining is not None and (budget is None or remaining <= budget)
        timeout = remaining if job_bound else budget

        last_request: Dict[str, Optional[str]] = {"id": None}

        async def on_progress(op: Operation) -> None:
            label = f"{stage.name}: {op.status.value.upper()}"
            detail = f"[{engine.name}] {op.logs[-1]}" if op.logs else None
            current = self.tracker.progress_of(ctx.job_id)
            # one line per update so repeated polls collapse in the log
            await self.tracker.set_progress(
                ctx.job_id,
                map_progress(stage.progress_range, op, current),
                label,
                detail,
            )
            if op.request_id and op.request_id != last_request["id"]:
                last_request["id"] = op.request_id
                await self.tracker.set_external(ctx.job_id, op.request_id, label)

        try:
            if timeout is None:
                return await engine.run(params, on_progress)
            return await asyncio.wait_for(engine.run(params, on_progress), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            if job_bound:
                raise JobTimeoutError(deadline_minutes or 0)
            raise EngineTimeoutError(
                f"stage '{stage.name}' exceeded {budget:g}s on {engine.name}",
                engine.name,
            )
