from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from agent.errors import ChronosError
from agent.llm import build_chat_model
from agent.orchestrator import execute
from agent.types import TrustContext
from app.core.auth import get_google_access_token
from app.core.config import get_settings
from app.core.errors import to_http_exception
from app.integrations.google_calendar import GoogleCalendarGateway

router = APIRouter(prefix="/api/assistant", tags=["assistant"])
logger = logging.getLogger("chronos-backend.routes.assistant")


def _parse_chat_body(payload) -> dict:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="request body must be a JSON object")
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise HTTPException(status_code=400, detail="message is required")
    history = payload.get("history") or []
    if not isinstance(history, list):
        raise HTTPException(status_code=400, detail="history must be a list")
    amend = payload.get("amend")
    if amend is not None and not isinstance(amend, dict):
        raise HTTPException(status_code=400, detail="amend must be an object")
    calendar_id = payload.get("calendar_id")
    return {
        "message": message,
        "history": history,
        "confirmed": payload.get("confirmed") is True,
        "amend": amend or None,
        "calendar_id": calendar_id.strip() if isinstance(calendar_id, str) and calendar_id.strip() else "primary",
    }


@router.post("/chat")
async def assistant_chat(request: Request):
    access_token = get_google_access_token(request)
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="request body must be JSON")
    body = _parse_chat_body(payload)

    settings = get_settings()
    timezone = settings.assistant_timezone
    gateway = GoogleCalendarGateway(access_token, timezone=timezone, calendar_id=body["calendar_id"])
    trust = TrustContext.interactive(calendar_id=body["calendar_id"], timezone=timezone)

    try:
        model = build_chat_model(settings)
        reply = await execute(
            message=body["message"],
            gateway=gateway,
            model=model,
            history=body["history"],
            trust=trust,
            pre_confirmed=body["confirmed"],
            amend=body["amend"],
            settings=settings,
        )
    except ChronosError as exc:
        logger.warning("assistant_chat failed error_type=%s error=%s", exc.__class__.__name__, exc)
        raise to_http_exception(exc) from exc

    return reply.to_dict()
