from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Protocol, Sequence

from novai_jobs.domain.models import Job

UPDATABLE_COLUMNS = frozenset({
    "status",
    "progress",
    "external_request_id",
    "external_status",
    "input_payload",
    "output_payload",
    "cost_cents",
    "error_message",
    "started_at",
    "completed_at",
    "attempt_count",
    "max_attempts",
    "next_run_at",
})

JSON_COLUMNS = frozenset({"input_payload", "output_payload"})


class JobStore(Protocol):
    """Persistent job rows keyed by id. `update` must be atomic per row."""

    async def create(self, row: Dict[str, Any]) -> Job:
        ...

    async def get(self, job_id: str) -> Optional[Job]:
        ...

    async def update(
        self,
        job_id: str,
        patch: Dict[str, Any],
        only_if_status: Optional[Sequence[str]] = None,
    ) -> Optional[Job]:
        ...

    async def list(
        self,
        job_type: Optional[str] = None,
        status: Optional[str] = None,
        batch_id: Optional[str] = None,
        limit: Optional[int] = 50,
    ) -> List[Job]:
        ...

    async def claim_next(self, job_type: str, limit: int = 1, lease_seconds: int = 300) -> List[str]:
        ...

    async def record_cost(self, job_id: str, job_type: str, amount_cents: int) -> None:
        ...


def check_patch(patch: Dict[str, Any]) -> None:
    unknown = set(patch) - UPDATABLE_COLUMNS
    if unknown:
        raise ValueError(f"not updatable: {sorted(unknown)}")


def coerce_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return default
        try:
            return json.loads(s)
        except ValueError:
            return default
    return default
