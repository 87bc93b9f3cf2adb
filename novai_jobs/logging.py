from __future__ import annotations

import logging
import os
from pythonjsonlogger import jsonlogger

from novai_jobs.config import settings

_HANDLER_NAME = "novai-json"

# third-party loggers that are chatty at INFO; env var overrides the level
_QUIET_LOGGERS = {
    "httpx": "HTTPX_LOG_LEVEL",
    "httpcore": "HTTPX_LOG_LEVEL",
    "azure": "AZURE_LOG_LEVEL",
    "fal_client": "FAL_LOG_LEVEL",
    "asyncpg": "ASYNCPG_LOG_LEVEL",
    "uvicorn.access": "UVICORN_ACCESS_LOG_LEVEL",
}


def build_formatter(component: str) -> jsonlogger.JsonFormatter:
    """JSON lines; every record carries the service and the process role (api / worker)."""
    return jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        static_fields={"service": settings.SERVICE_NAME, "component": component},
    )


def configure_logging(component: str = "api") -> None:
    level = getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    # only our own handler counts; pytest/uvicorn may have attached theirs
    if any(h.get_name() == _HANDLER_NAME for h in root.handlers):
        return

    handler = logging.StreamHandler()
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(build_formatter(component))
    root.addHandler(handler)

    for name, env in _QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(os.getenv(env, "WARNING"))
