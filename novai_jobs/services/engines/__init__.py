from novai_jobs.services.engines.base import (
    EngineAdapter,
    Operation,
    PollingEngine,
    SubscribeEngine,
    classify_provider_exception,
    require_keys,
)

__all__ = [
    "EngineAdapter",
    "Operation",
    "PollingEngine",
    "SubscribeEngine",
    "classify_provider_exception",
    "require_keys",
]
