from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

import httpx

from novai_jobs.domain.enums import OperationStatus
from novai_jobs.domain.errors import EngineFailedError
from novai_jobs.services.engines.base import Operation, SubscribeEngine, classify_provider_exception
from novai_jobs.services.ffmpeg_service import FFmpegError

LocalWork = Callable[[Dict[str, Any], Callable[[Operation], None]], Awaitable[Any]]


class LocalEngine(SubscribeEngine):
    """
    In-process step (ffmpeg, download/upload) behind the same adapter contract.

    ffmpeg and download failures surface as provider failures so a stage can
    fall back or be skipped; storage InfrastructureError propagates untouched.
    """

    def __init__(self, name: str, work: LocalWork, **kwargs: Any) -> None:
        super().__init__(name=name, **kwargs)
        self.work = work

    async def subscribe(self, params: Dict[str, Any], emit: Callable[[Operation], None]) -> Any:
        emit(Operation(status=OperationStatus.in_progress, logs=[f"{self.name} started"]))
        try:
            return await self.work(params, emit)
        except FFmpegError as e:
            raise EngineFailedError(f"{self.name} failed: {e}", self.name) from e
        except (httpx.HTTPStatusError, httpx.TransportError) as e:
            raise classify_provider_exception(e, self.name) from e
