from __future__ import annotations

import logging
import math
import time
from typing import Any, Dict, Optional

import httpx
from jose import jwt
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from novai_jobs.config import settings
from novai_jobs.domain.enums import OperationStatus
from novai_jobs.domain.errors import EngineFailedError, EngineRejectedError
from novai_jobs.services.engines.base import Operation, PollingEngine, classify_provider_exception

logger = logging.getLogger("kling_engine")


class KlingApiError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code


def build_token(access_key: str, secret_key: str, now: Optional[int] = None) -> str:
    """HS256 JWT the Kling API expects: iss=access key, 30 min lifetime, 5 s skew."""
    ts = int(now if now is not None else time.time())
    claims = {"iss": access_key, "exp": ts + 1800, "nbf": ts - 5}
    return jwt.encode(claims, secret_key, algorithm="HS256", headers={"typ": "JWT"})


def _normalize_status(raw_status: Any) -> OperationStatus:
    s = str(raw_status or "").strip().lower()
    if s in ("succeed", "succeeded", "completed"):
        return OperationStatus.completed
    if s == "failed":
        return OperationStatus.failed
    if s == "submitted":
        return OperationStatus.queued
    return OperationStatus.in_progress


class KlingClient:
    def __init__(
        self,
        *,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.access_key = access_key if access_key is not None else settings.KLING_ACCESS_KEY
        self.secret_key = secret_key if secret_key is not None else settings.KLING_SECRET_KEY
        self.base = (base_url or settings.KLING_BASE_URL).rstrip("/")
        self.timeout = settings.KLING_TIMEOUT_SECONDS
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        if not self.access_key or not self.secret_key:
            raise KlingApiError("KLING_ACCESS_KEY / KLING_SECRET_KEY are not set.")
        return {
            "Authorization": f"Bearer {build_token(self.access_key, self.secret_key)}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            r = await client.request(method, f"{self.base}{path}", headers=self._headers(), json=body)

        try:
            data = r.json()
        except ValueError:
            raise KlingApiError(f"Kling API returned non-JSON ({r.status_code})", status_code=r.status_code)

        if r.status_code >= 400 or data.get("code") not in (0, None):
            raise KlingApiError(
                f"Kling API error: {data.get('message') or data}",
                status_code=r.status_code,
                code=data.get("code"),
            )
        return data.get("data") or {}

    @retry(
        reraise=True,
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.6, min=0.6, max=6.0),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.TransportError)),
    )
    async def create_task(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", path, payload)

    async def get_task(self, path: str, task_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"{path}/{task_id}")


class KlingVideoEngine(PollingEngine):
    """Direct Kling image-to-video with the source clip as motion reference."""

    path = "/v1/videos/image2video"

    def __init__(
        self,
        *,
        client: Optional[KlingClient] = None,
        model_name: str = "kling-v1-6",
        mode: str = "pro",
        poll_interval: Optional[float] = None,
        max_wait_seconds: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        interval = settings.KLING_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        max_wait = settings.KLING_MAX_WAIT_SECONDS if max_wait_seconds is None else max_wait_seconds
        kwargs.setdefault("name", "kling:image2video")
        super().__init__(
            poll_interval=interval,
            max_attempts=max(1, math.ceil(max_wait / max(interval, 0.001))),
            **kwargs,
        )
        self.client = client or KlingClient()
        self.model_name = model_name
        self.mode = mode

    async def submit(self, params: Dict[str, Any]) -> str:
        payload = {
            "model_name": self.model_name,
            "image": params["image_url"],
            "prompt": params.get("prompt") or "Natural movement matching the reference video",
            "duration": "10" if float(params.get("duration_seconds") or 5) > 5 else "5",
            "mode": self.mode,
        }
        try:
            data = await self.client.create_task(self.path, payload)
        except KlingApiError as e:
            if e.status_code is not None and 400 <= e.status_code < 500 and e.status_code != 429:
                raise EngineRejectedError(f"{self.name} rejected the request: {e}", self.name) from e
            raise EngineFailedError(f"{self.name} failed: {e}", self.name) from e
        except httpx.TransportError as e:
            raise classify_provider_exception(e, self.name) from e
        return str(data.get("task_id") or "")

    async def status(self, request_id: str) -> Operation:
        try:
            data = await self.client.get_task(self.path, request_id)
        except KlingApiError as e:
            raise EngineFailedError(f"{self.name} status failed: {e}", self.name) from e

        status = _normalize_status(data.get("task_status"))
        progress = data.get("task_progress")
        op = Operation(
            status=status,
            result=data.get("task_result"),
            logs=[f"Kling {data.get('task_status') or 'processing'}"],
            progress=(float(progress) / 100.0) if isinstance(progress, (int, float)) else None,
        )
        if status == OperationStatus.failed:
            op.error = f"Kling task failed: {data.get('task_status_msg') or request_id}"
        return op

    async def result(self, request_id: str, op: Operation) -> Any:
        videos = (op.result or {}).get("videos") or []
        url = videos[0].get("url") if videos and isinstance(videos[0], dict) else None
        if not url:
            raise EngineFailedError("Kling returned no video URL", self.name)
        return {"video_url": url, "duration": videos[0].get("duration")}
