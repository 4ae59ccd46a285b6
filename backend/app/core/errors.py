from fastapi import HTTPException

from agent.errors import (
    AuthRejectedError,
    ChronosError,
    GatewayError,
    IdempotencyConflictError,
    LLMError,
    LoopExhaustedError,
    StorageError,
    ToolValidationError,
)


def to_http_exception(exc: ChronosError) -> HTTPException:
    if isinstance(exc, AuthRejectedError):
        return HTTPException(status_code=401, detail=str(exc) or "unauthorized")
    if isinstance(exc, IdempotencyConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ToolValidationError, LoopExhaustedError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, GatewayError):
        return HTTPException(status_code=502, detail=f"calendar_error:{exc}")
    if isinstance(exc, LLMError):
        return HTTPException(status_code=503, detail=f"model_unavailable:{exc}")
    if isinstance(exc, StorageError):
        return HTTPException(status_code=503, detail=f"storage_unavailable:{exc}")
    return HTTPException(status_code=500, detail="internal_error")
