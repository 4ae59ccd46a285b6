import json
import logging
import re
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from agent.errors import ChronosError
from agent.idempotency import purge_expired
from agent.registry import ToolSpecValidationError, load_registry, validate_registry_on_startup
from app.core.config import get_settings
from app.core.errors import to_http_exception
from app.routes.assistant import router as assistant_router
from app.routes.inbox import router as inbox_router
from app.routes.siri import router as siri_router

settings = get_settings()
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger("chronos-backend")


def _cors_origins(raw: str, frontend_url: str) -> list[str]:
    """ALLOWED_ORIGINS is either a JSON list or a comma/newline separated string."""
    text = (raw or "").strip()
    items = None
    if text.startswith("["):
        try:
            items = json.loads(text)
        except json.JSONDecodeError:
            items = None
    if not isinstance(items, list):
        items = re.split(r"[,\n]", text)

    origins: list[str] = []
    for item in [*items, frontend_url]:
        origin = str(item or "").strip().strip("\"'").rstrip("/")
        if origin and origin not in origins:
            origins.append(origin)
    return origins


def _check_tool_catalog() -> None:
    if not settings.tool_specs_validate_on_startup:
        logger.info("tool_catalog_check skipped")
        return
    try:
        summary = validate_registry_on_startup()
    except ToolSpecValidationError as exc:
        logger.exception("tool_catalog_check failed")
        raise RuntimeError(f"tool catalog is invalid: {exc}") from exc
    logger.info("tool_catalog_check ok tools=%s versions=%s", summary["tool_count"], summary["versions"])


@asynccontextmanager
async def lifespan(_app: FastAPI):
    _check_tool_catalog()
    logger.info("idempotency_purge removed=%s", purge_expired())
    yield


app = FastAPI(title="chronos backend", version="0.1.0", lifespan=lifespan)

origins = _cors_origins(settings.allowed_origins, settings.frontend_url)
logger.info("cors_origins=%s", origins)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Authorization", "Content-Type", "Idempotency-Key", "X-CHRONOS-KEY"],
)


@app.middleware("http")
async def attach_request_id(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    return response


def _error_body(request: Request, status_code: int, message: str) -> JSONResponse:
    request_id = getattr(request.state, "request_id", "unknown")
    return JSONResponse(status_code=status_code, content={"error": {"message": message, "request_id": request_id}})


@app.exception_handler(HTTPException)
async def http_error(request: Request, exc: HTTPException):
    logger.warning(
        "http_error request_id=%s path=%s status=%s detail=%s",
        getattr(request.state, "request_id", "unknown"),
        request.url.path,
        exc.status_code,
        exc.detail,
    )
    return _error_body(request, exc.status_code, exc.detail if isinstance(exc.detail, str) else "request failed")


@app.exception_handler(ChronosError)
async def chronos_error(request: Request, exc: ChronosError):
    return await http_error(request, to_http_exception(exc))


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled_error request_id=%s path=%s", getattr(request.state, "request_id", "unknown"), request.url.path)
    return _error_body(request, 500, "internal server error, please retry later")


@app.get("/api/health")
async def health_check():
    return {"status": "ok", "tool_versions": load_registry().service_versions()}


app.include_router(assistant_router)
app.include_router(inbox_router)
app.include_router(siri_router)


def run() -> None:
    uvicorn.run("main:app", host=settings.server_host, port=settings.server_port)


if __name__ == "__main__":
    run()
