from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request

from agent.errors import StorageError
from agent.headless import parse_inbox_payload
from agent.siri_queue import pop_all_messages, push_message
from app.core.auth import get_google_access_token, verify_inbox_key
from app.core.errors import to_http_exception

router = APIRouter(prefix="/api/siri", tags=["siri"])
logger = logging.getLogger("chronos-backend.routes.siri")


@router.post("")
async def siri_push(request: Request):
    verify_inbox_key(request)
    payload = parse_inbox_payload(await request.body())
    if not payload.text:
        raise HTTPException(status_code=400, detail="text is required")
    try:
        entry = push_message(payload.text)
    except StorageError as exc:
        raise to_http_exception(exc) from exc
    logger.info("siri_push queued length=%s", len(entry["text"]))
    return {"ok": True, "queued": True}


@router.get("/pending")
async def siri_pending(request: Request):
    get_google_access_token(request)
    try:
        messages = pop_all_messages()
    except StorageError as exc:
        raise to_http_exception(exc) from exc
    return {"messages": messages}
