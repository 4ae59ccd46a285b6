from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from agent.errors import ChronosError
from agent.headless import execute_headless, parse_inbox_payload
from agent.llm import build_json_models
from app.core.auth import verify_inbox_key
from app.core.config import get_settings
from app.core.errors import to_http_exception
from app.integrations.google_calendar import GoogleCalendarGateway
from app.integrations.google_service_account import fetch_service_account_token

router = APIRouter(prefix="/api", tags=["inbox"])
logger = logging.getLogger("chronos-backend.routes.inbox")


@router.post("/inbox")
async def inbox_ingest(request: Request):
    verify_inbox_key(request)
    raw = await request.body()
    payload = parse_inbox_payload(raw, header_key=request.headers.get("idempotency-key"))
    if not payload.text:
        raise HTTPException(status_code=400, detail="instruction text is required")

    settings = get_settings()
    calendar_id = (settings.chronos_calendar_id or "primary").strip()
    try:
        models = build_json_models(settings)
        access_token = await fetch_service_account_token()
        gateway = GoogleCalendarGateway(access_token, timezone=settings.assistant_timezone, calendar_id=calendar_id)
        result = await execute_headless(
            text=payload.text,
            fingerprint_key=payload.outbox_id,
            gateway=gateway,
            models=models,
            calendar_id=calendar_id,
            settings=settings,
        )
    except ChronosError as exc:
        logger.warning(
            "inbox_ingest failed outbox_id=%s error_type=%s error=%s",
            payload.outbox_id,
            exc.__class__.__name__,
            exc,
        )
        raise to_http_exception(exc) from exc

    logger.info(
        "inbox_ingest ok outbox_id=%s action=%s idempotent=%s",
        result.outbox_id,
        result.action,
        result.idempotent,
    )
    return result.to_response()
