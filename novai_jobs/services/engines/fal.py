from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import fal_client
import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from novai_jobs.config import settings
from novai_jobs.domain.enums import OperationStatus
from novai_jobs.domain.errors import EngineError, EngineFailedError
from novai_jobs.services.engines.base import (
    Operation,
    PollingEngine,
    SubscribeEngine,
    classify_provider_exception,
)

logger = logging.getLogger("fal_engine")

ArgumentBuilder = Callable[[Dict[str, Any]], Dict[str, Any]]
ResultExtractor = Callable[[Dict[str, Any]], Any]


def _identity(value: Dict[str, Any]) -> Any:
    return value


def _log_messages(raw_logs: Any) -> List[str]:
    out: List[str] = []
    for item in raw_logs or []:
        if isinstance(item, dict):
            msg = str(item.get("message") or "").strip()
        else:
            msg = str(item).strip()
        if msg:
            out.append(msg)
    return out


# -----------------------------------------------------------------------------
# Queue REST client (fire-and-poll)
# -----------------------------------------------------------------------------

@dataclass(frozen=True)
class FalQueueSubmitResult:
    request_id: str
    response_url: str
    status_url: str
    cancel_url: str


class FalQueueClient:
    """
    Minimal wrapper around fal Queue endpoints.

    NOTE:
      - queue.fal.run expects the model payload as TOP-LEVEL JSON (NOT wrapped in {"input": {...}}).
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = (api_key or settings.FAL_KEY or "").strip()
        self.base_url = (base_url or settings.FAL_QUEUE_BASE_URL).strip().rstrip("/")
        self.transport = transport
        self.timeout = float(timeout or settings.FAL_TIMEOUT_SECONDS)

    def _auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise EngineFailedError("missing_fal_key", "fal")
        # fal Queue auth uses Authorization: Key <FAL_KEY>
        return {"Authorization": f"Key {self.api_key}"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, follow_redirects=True, transport=self.transport)

    async def submit(self, *, model_id: str, payload: Dict[str, Any]) -> FalQueueSubmitResult:
        model_id = (model_id or "").strip().lstrip("/")
        if not model_id:
            raise ValueError("model_id_required")

        headers = dict(self._auth_headers())
        headers["Content-Type"] = "application/json"

        async with self._client() as client:
            r = await client.post(f"{self.base_url}/{model_id}", headers=headers, json=(payload or {}))
            r.raise_for_status()
            j = r.json()

        return FalQueueSubmitResult(
            request_id=str(j.get("request_id") or ""),
            response_url=str(j.get("response_url") or ""),
            status_url=str(j.get("status_url") or ""),
            cancel_url=str(j.get("cancel_url") or ""),
        )

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def status(self, *, status_url: str) -> Dict[str, Any]:
        async with self._client() as client:
            r = await client.get(status_url, headers=self._auth_headers(), params={"logs": "1"})
            # status endpoint can return 202 while queued/in-progress
            if r.status_code >= 400 and r.status_code != 202:
                r.raise_for_status()
            return r.json()

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def result(self, *, response_url: str) -> Dict[str, Any]:
        async with self._client() as client:
            r = await client.get(response_url, headers=self._auth_headers())
            r.raise_for_status()
            return r.json()


def _queue_status_to_operation(st: Dict[str, Any]) -> Operation:
    raw = str(st.get("status") or "").upper()
    logs = _log_messages(st.get("logs"))

    if raw == "COMPLETED":
        # fal reports request-level errors on the COMPLETED status payload
        if st.get("error"):
            return Operation(status=OperationStatus.failed, logs=logs, error=str(st.get("error")))
        return Operation(status=OperationStatus.completed, logs=logs)
    if raw in ("FAILED", "ERROR", "CANCELLED"):
        return Operation(status=OperationStatus.failed, logs=logs, error=str(st.get("error") or raw))
    if raw == "IN_PROGRESS":
        return Operation(status=OperationStatus.in_progress, logs=logs)

    position = st.get("queue_position")
    if position is not None:
        logs = logs or [f"queue position {position}"]
    return Operation(status=OperationStatus.queued, logs=logs)


class FalQueueEngine(PollingEngine):
    def __init__(
        self,
        model_id: str,
        *,
        build_arguments: ArgumentBuilder = _identity,
        extract_result: ResultExtractor = _identity,
        client: Optional[FalQueueClient] = None,
        poll_interval: Optional[float] = None,
        max_attempts: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("name", f"fal:{model_id}")
        super().__init__(
            poll_interval=settings.FAL_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval,
            max_attempts=settings.FAL_POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts,
            **kwargs,
        )
        self.model_id = model_id
        self.build_arguments = build_arguments
        self.extract_result = extract_result
        self.client = client or FalQueueClient()
        self._handles: Dict[str, FalQueueSubmitResult] = {}

    async def submit(self, params: Dict[str, Any]) -> str:
        handle = await self.client.submit(model_id=self.model_id, payload=self.build_arguments(params))
        if handle.request_id:
            self._handles[handle.request_id] = handle
        return handle.request_id

    def _handle(self, request_id: str) -> FalQueueSubmitResult:
        handle = self._handles.get(request_id)
        if handle is not None and handle.status_url and handle.response_url:
            return handle
        base = f"{self.client.base_url}/{self.model_id}/requests/{request_id}"
        return FalQueueSubmitResult(
            request_id=request_id,
            response_url=base,
            status_url=f"{base}/status",
            cancel_url=f"{base}/cancel",
        )

    async def status(self, request_id: str) -> Operation:
        st = await self.client.status(status_url=self._handle(request_id).status_url)
        return _queue_status_to_operation(st)

    async def result(self, request_id: str, op: Operation) -> Any:
        try:
            raw = await self.client.result(response_url=self._handle(request_id).response_url)
        finally:
            self._handles.pop(request_id, None)
        return self.extract_result(raw)


# -----------------------------------------------------------------------------
# fal_client subscribe (blocking call with queue callbacks)
# -----------------------------------------------------------------------------

def fal_status_to_operation(status: Any) -> Operation:
    if isinstance(status, fal_client.Queued):
        return Operation(status=OperationStatus.queued, logs=[f"queue position {status.position}"])
    if isinstance(status, fal_client.InProgress):
        return Operation(status=OperationStatus.in_progress, logs=_log_messages(status.logs))
    if isinstance(status, fal_client.Completed):
        return Operation(status=OperationStatus.completed, logs=_log_messages(status.logs))
    return Operation(status=OperationStatus.in_progress)


class FalSubscribeEngine(SubscribeEngine):
    def __init__(
        self,
        application: str,
        *,
        build_arguments: ArgumentBuilder = _identity,
        extract_result: ResultExtractor = _identity,
        client: Any = None,
        **kwargs: Any,
    ) -> None:
        kwargs.setdefault("name", f"fal:{application}")
        super().__init__(**kwargs)
        self.application = application
        self.build_arguments = build_arguments
        self.extract_result = extract_result
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not settings.FAL_KEY:
                raise EngineFailedError("missing_fal_key", self.name)
            self._client = fal_client.AsyncClient(key=settings.FAL_KEY)
        return self._client

    async def subscribe(self, params: Dict[str, Any], emit: Callable[[Operation], None]) -> Any:
        def _on_queue_update(status: Any) -> None:
            emit(fal_status_to_operation(status))

        try:
            raw = await self.client.subscribe(
                self.application,
                arguments=self.build_arguments(params),
                with_logs=True,
                on_queue_update=_on_queue_update,
            )
        except EngineError:
            raise
        except Exception as e:
            raise classify_provider_exception(e, self.name) from e

        logger.info("fal_subscribe_completed", extra={"engine": self.name})
        return self.extract_result(raw or {})
