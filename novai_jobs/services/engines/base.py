from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from novai_jobs.domain.enums import OperationStatus
from novai_jobs.domain.errors import (
    CallerError,
    EngineError,
    EngineFailedError,
    EngineRejectedError,
    EngineTimeoutError,
)

logger = logging.getLogger("engines")


@dataclass
class Operation:
    """Normalized status of one in-flight engine call."""

    status: OperationStatus
    result: Any = None
    logs: List[str] = field(default_factory=list)
    request_id: Optional[str] = None
    # 0..1 when the provider reports its own progress
    progress: Optional[float] = None
    error: Optional[str] = None


ProgressCallback = Callable[[Operation], Awaitable[None]]
Pricing = Callable[[Dict[str, Any], Any], int]


async def _ignore_progress(_op: Operation) -> None:
    return None


def _status_code_of(exc: BaseException) -> Optional[int]:
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    resp = getattr(exc, "response", None)
    code = getattr(resp, "status_code", None)
    return code if isinstance(code, int) else None


def classify_provider_exception(exc: BaseException, engine: str) -> EngineError:
    """
    Map a raw client exception onto the three engine failure modes:
      - 4xx (except 408/429) => rejected
      - timeouts             => timed out
      - everything else      => failed
    """
    if isinstance(exc, EngineError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
        return EngineTimeoutError(f"{engine} request timed out", engine)

    code = _status_code_of(exc)
    detail = str(exc) or exc.__class__.__name__
    if code is not None and 400 <= code < 500 and code not in (408, 429):
        return EngineRejectedError(f"{engine} rejected the request ({code}): {detail}", engine)
    return EngineFailedError(f"{engine} failed: {detail}", engine)


def require_keys(*keys: str) -> Callable[[Any], Optional[str]]:
    """Validator factory: every key must be present and truthy in a dict result."""

    def _check(result: Any) -> Optional[str]:
        if not isinstance(result, dict):
            return "result is not an object"
        missing = [k for k in keys if not result.get(k)]
        if missing:
            return f"missing {', '.join(missing)}"
        return None

    return _check


class EngineAdapter(ABC):
    """
    Uniform wrapper over one provider.

    run(params, on_progress) returns the normalized result or raises one of
    EngineRejectedError / EngineFailedError / EngineTimeoutError.
    """

    name: str = "engine"

    def __init__(
        self,
        *,
        name: Optional[str] = None,
        pricing: Optional[Pricing] = None,
        validators: Sequence[Callable[[Any], Optional[str]]] = (),
    ) -> None:
        if name:
            self.name = name
        self.pricing = pricing
        self.validators = list(validators)

    async def run(self, params: Dict[str, Any], on_progress: Optional[ProgressCallback] = None) -> Any:
        result = await self._execute(params, on_progress or _ignore_progress)
        self.validate(result)
        return result

    @abstractmethod
    async def _execute(self, params: Dict[str, Any], on_progress: ProgressCallback) -> Any:
        ...

    def validate(self, result: Any) -> None:
        if result is None or (isinstance(result, (dict, list, str)) and not result):
            raise EngineFailedError(f"{self.name} returned an empty result", self.name)
        for check in self.validators:
            problem = check(result)
            if problem:
                raise EngineFailedError(f"{self.name} returned a degenerate result: {problem}", self.name)

    def cost(self, params: Dict[str, Any], result: Any) -> int:
        if self.pricing is None:
            return 0
        return max(0, int(self.pricing(params, result)))


class PollingEngine(EngineAdapter):
    """
    Fire-and-poll shape: submit once, then fetch status until terminal.

    Subclasses may let raw httpx errors (or ValueError from a bad body) escape
    submit/status/result; they are mapped onto the engine failure modes here.
    """

    transient_errors: tuple = (httpx.TransportError,)

    def __init__(self, *, poll_interval: float = 5.0, max_attempts: int = 120, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts

    @abstractmethod
    async def submit(self, params: Dict[str, Any]) -> str:
        ...

    @abstractmethod
    async def status(self, request_id: str) -> Operation:
        ...

    @abstractmethod
    async def result(self, request_id: str, op: Operation) -> Any:
        ...

    async def _execute(self, params: Dict[str, Any], on_progress: ProgressCallback) -> Any:
        try:
            return await self._submit_and_poll(params, on_progress)
        except (EngineError, CallerError):
            raise
        except (httpx.HTTPError, ValueError) as e:
            # exhausted client retries, non-JSON bodies, bad client config
            raise classify_provider_exception(e, self.name) from e

    async def _submit_and_poll(self, params: Dict[str, Any], on_progress: ProgressCallback) -> Any:
        request_id = await self.submit(params)
        if not request_id:
            raise EngineFailedError(f"{self.name} did not return a request id", self.name)

        logger.info("engine_submitted", extra={"engine": self.name, "request_id": request_id})
        await on_progress(Operation(status=OperationStatus.queued, request_id=request_id))

        for attempt in range(1, self.max_attempts + 1):
            try:
                op = await self.status(request_id)
            except self.transient_errors as e:
                # network blips while polling are not provider failures
                logger.warning(
                    "engine_poll_transient_error",
                    extra={"engine": self.name, "request_id": request_id, "attempt": attempt, "error": str(e)},
                )
                await asyncio.sleep(self.poll_interval)
                continue

            op.request_id = request_id
            await on_progress(op)

            if op.status == OperationStatus.completed:
                return await self.result(request_id, op)
            if op.status == OperationStatus.failed:
                raise EngineFailedError(op.error or f"{self.name} reported failure", self.name)

            await asyncio.sleep(self.poll_interval)

        raise EngineTimeoutError(
            f"{self.name} did not finish after {self.max_attempts} polls",
            self.name,
        )


class SubscribeEngine(EngineAdapter):
    """
    Subscribe shape: one blocking call that reports status through a
    synchronous callback. Updates are queued and forwarded in order.
    """

    @abstractmethod
    async def subscribe(self, params: Dict[str, Any], emit: Callable[[Operation], None]) -> Any:
        ...

    async def _execute(self, params: Dict[str, Any], on_progress: ProgressCallback) -> Any:
        updates: asyncio.Queue = asyncio.Queue()

        async def _forward() -> None:
            while True:
                op = await updates.get()
                if op is None:
                    return
                await on_progress(op)

        forwarder = asyncio.create_task(_forward())
        try:
            result = await self.subscribe(params, updates.put_nowait)
        except BaseException:
            forwarder.cancel()
            raise

        updates.put_nowait(None)
        await forwarder
        return result
