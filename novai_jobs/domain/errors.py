from __future__ import annotations


class CallerError(ValueError):
    """Invalid input. Fatal for the job; never triggers a fallback."""


class InfrastructureError(RuntimeError):
    """Store or storage unavailable. Always fatal."""


class EngineError(RuntimeError):
    """Provider-side error raised by an engine adapter."""

    def __init__(self, message: str, engine: str | None = None):
        super().__init__(message)
        self.engine = engine


class EngineRejectedError(EngineError, CallerError):
    """The provider refused the request as invalid. Fallback does not apply."""


class EngineFailedError(EngineError):
    """The provider accepted the request but failed it, or returned nothing usable."""


class EngineTimeoutError(EngineError):
    def __init__(self, message: str, engine: str | None = None):
        if not message.startswith("Timed out"):
            message = f"Timed out: {message}"
        super().__init__(message, engine)


class JobTimeoutError(RuntimeError):
    def __init__(self, minutes: float):
        shown = int(minutes) if float(minutes).is_integer() else round(minutes, 2)
        super().__init__(f"Job timed out after {shown} minutes")
        self.minutes = minutes


class JobNotFoundError(LookupError):
    pass


class InvalidTransitionError(RuntimeError):
    pass


class BatchExpiredError(RuntimeError):
    def __init__(self, batch_id: str):
        super().__init__("Batch has expired")
        self.batch_id = batch_id


class BatchEmptyError(CallerError):
    pass


class NoCompletedVariantsError(RuntimeError):
    pass
