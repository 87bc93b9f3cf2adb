from __future__ import annotations

import os
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter

from novai_jobs.config import settings

router = APIRouter(prefix="/health", tags=["health"])

_STARTED_AT = time.time()


@router.get("")
async def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "version": os.getenv("SERVICE_VERSION", os.getenv("GIT_SHA", "dev")),
        "time_utc": datetime.now(timezone.utc).isoformat(),
        "uptime_s": round(time.time() - _STARTED_AT, 3),
    }
