from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from agent import idempotency
from agent.errors import LLMError
from agent.registry import ToolRegistry
from agent.task_policy import is_task_title
from agent.time_utils import add_minutes, is_date_only, local_now, parse_datetime, window_around
from agent.tool_runner import ToolContext, execute_tool
from agent.types import CalendarEvent, CalendarGateway, HeadlessResult, ResultSummary, ToolCall
from app.core.config import get_settings


logger = logging.getLogger("chronos-backend.headless")

FINGERPRINT_PREFIX = "OUTBOX_ID="
HEADLESS_ACTIONS = ("create_task", "create_event")
_OUTBOX_LINE = re.compile(r"^\s*OUTBOX_ID\s*[:=]\s*(\S+)\s*$", re.IGNORECASE)
_DELIMITER = "---"


@dataclass(frozen=True)
class InboxPayload:
    text: str
    outbox_id: str | None = None


def _split_header(raw: str) -> InboxPayload:
    lines = raw.replace("\r\n", "\n").split("\n")
    outbox_id = None
    idx = 0
    while idx < len(lines) and not lines[idx].strip():
        idx += 1
    if idx < len(lines):
        match = _OUTBOX_LINE.match(lines[idx])
        if match:
            outbox_id = match.group(1)
            idx += 1
            while idx < len(lines) and not lines[idx].strip():
                idx += 1
            if idx < len(lines) and lines[idx].strip() == _DELIMITER:
                idx += 1
    return InboxPayload(text="\n".join(lines[idx:]).strip(), outbox_id=outbox_id)


def parse_inbox_payload(raw: str | bytes, *, header_key: str | None = None) -> InboxPayload:
    """Read an unattended instruction body.

    Accepts plain text with an optional leading ``OUTBOX_ID: <token>`` line and
    an optional ``---`` delimiter, or a JSON object ``{"text", "outbox_id"}``.
    ``header_key`` (the Idempotency-Key header) is used when the body has no id.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    text = raw or ""
    outbox_id: str | None = None

    if text.lstrip().startswith("{"):
        try:
            body = json.loads(text)
        except json.JSONDecodeError:
            body = None
        if isinstance(body, dict):
            text = str(body.get("text") or body.get("message") or "")
            value = body.get("outbox_id") or body.get("outboxId")
            outbox_id = str(value).strip() if value else None

    parsed = _split_header(text)
    outbox_id = outbox_id or parsed.outbox_id or ((header_key or "").strip() or None)
    return InboxPayload(text=parsed.text, outbox_id=outbox_id)


def fingerprint_marker(key: str) -> str:
    return f"{FINGERPRINT_PREFIX}{key}"


def append_fingerprint(notes: str | None, key: str) -> str:
    marker = fingerprint_marker(key)
    base = (notes or "").strip()
    if marker in base.splitlines():
        return base
    return f"{base}\n\n{marker}" if base else marker


def has_fingerprint(description: str, key: str) -> bool:
    marker = fingerprint_marker(key)
    return any(line.strip() == marker for line in (description or "").splitlines())


async def find_fingerprinted_event(
    gateway: CalendarGateway,
    key: str,
    *,
    calendar_id: str,
    timezone: str,
    lookback_days: int = 60,
    lookahead_days: int = 365,
) -> CalendarEvent | None:
    time_min, time_max = window_around(local_now(timezone), days_back=lookback_days, days_forward=lookahead_days)
    events = await gateway.search_events(fingerprint_marker(key), time_min, time_max, calendar_id=calendar_id)
    for event in events:
        if has_fingerprint(event.description, key):
            return event
    return None


def _classification_prompt(now: datetime, timezone: str) -> str:
    return (
        "You turn one dictated instruction into exactly one calendar write.\n"
        f"Current local time: {now.strftime('%A %Y-%m-%d %H:%M')} ({timezone}).\n"
        "Return JSON only, one of:\n"
        '{"action": "create_task", "title": "...", "due_date": "YYYY-MM-DD"}\n'
        '{"action": "create_event", "title": "...", "start": "YYYY-MM-DDTHH:MM:SS", '
        '"end": "YYYY-MM-DDTHH:MM:SS (optional)", "description": "... (optional)"}\n'
        "Use create_task for reminders and to-dos without a specific time. "
        "Use create_event when a time of day is given. Titles are short and capitalized, "
        "without words like 'remind me to'. Times are local, without a UTC offset."
    )


def _validate_decision(decision: dict[str, Any]) -> dict[str, Any]:
    action = str(decision.get("action") or "").strip()
    if action not in HEADLESS_ACTIONS:
        raise LLMError(f"headless_unsupported_action:{action or 'none'}")
    title = decision.get("title")
    if not isinstance(title, str) or not title.strip():
        raise LLMError("headless_missing_title")
    if action == "create_event":
        start = decision.get("start")
        if not isinstance(start, str) or not start.strip():
            raise LLMError("headless_missing_start")
    return decision


async def classify_instruction(text: str, models: list, *, now: datetime, timezone: str) -> dict[str, Any]:
    """Single-shot classification into create_task or create_event.

    Each model is tried in order; the first valid decision wins.
    """
    errors: list[str] = []
    for model in models:
        try:
            decision = await model.generate_json(
                system_prompt=_classification_prompt(now, timezone),
                user_prompt=text.strip(),
            )
            return _validate_decision(decision)
        except LLMError as exc:
            provider = getattr(model, "provider", "model")
            logger.warning("headless classification failed provider=%s error=%s", provider, exc)
            errors.append(f"{provider}:{exc}")
    raise LLMError("|".join(errors) if errors else "headless_no_model")


def build_headless_call(decision: dict[str, Any], key: str | None, *, timezone: str, default_minutes: int) -> ToolCall:
    action = decision["action"]
    title = decision["title"].strip()
    description = str(decision.get("description") or decision.get("notes") or "").strip()
    notes = append_fingerprint(description, key) if key else description

    if action == "create_task":
        arguments: dict[str, Any] = {"title": title}
        due = decision.get("due_date") or decision.get("date")
        if isinstance(due, str) and due.strip():
            arguments["due_date"] = due.strip()[:10]
        if notes:
            arguments["notes"] = notes
        return ToolCall(name="create_task", arguments=arguments)

    start = decision["start"].strip()
    arguments = {"title": title, "start": start}
    end = str(decision.get("end") or "").strip()
    try:
        if is_date_only(start):
            arguments["all_day"] = True
        elif not end or parse_datetime(end, timezone) <= parse_datetime(start, timezone):
            end = add_minutes(start, default_minutes, timezone)
    except ValueError as exc:
        raise LLMError("headless_invalid_time") from exc
    if end:
        arguments["end"] = end
    if notes:
        arguments["description"] = notes
    return ToolCall(name="create_event", arguments=arguments)


def _result_from_event(event: CalendarEvent, key: str | None) -> HeadlessResult:
    return HeadlessResult(
        outbox_id=key,
        idempotent=True,
        action="create_task" if is_task_title(event.summary) else "create_event",
        event_id=event.id,
        calendar_id=event.calendar_id,
        start=event.start,
        end=event.end,
    )


def _summary_of(result: HeadlessResult) -> ResultSummary:
    return ResultSummary(
        action_type=result.action,
        target_calendar_id=result.calendar_id,
        target_entity_id=result.event_id,
        start=result.start,
        end=result.end,
    )


def _replay(summary: ResultSummary, key: str) -> HeadlessResult:
    return HeadlessResult(
        outbox_id=key,
        idempotent=True,
        action=summary.action_type,
        event_id=summary.target_entity_id,
        calendar_id=summary.target_calendar_id,
        start=summary.start,
        end=summary.end,
    )


async def execute_headless(
    *,
    text: str,
    fingerprint_key: str | None,
    gateway: CalendarGateway,
    models: list,
    calendar_id: str | None = None,
    settings=None,
    registry: ToolRegistry | None = None,
) -> HeadlessResult:
    settings = settings or get_settings()
    timezone = settings.assistant_timezone
    calendar = (calendar_id or settings.chronos_calendar_id or "primary").strip()
    key = (fingerprint_key or "").strip() or None
    ledger = bool(key) and idempotency.is_available()

    if key and ledger:
        record = idempotency.get_idempotency_record(key)
        if record and record.status == idempotency.STATUS_SUCCEEDED and record.result_summary:
            logger.info("headless replay source=ledger key=%s", key)
            return _replay(record.result_summary, key)

    if key:
        existing = await find_fingerprinted_event(
            gateway,
            key,
            calendar_id=calendar,
            timezone=timezone,
            lookback_days=int(settings.fingerprint_lookback_days),
            lookahead_days=int(settings.fingerprint_lookahead_days),
        )
        if existing is not None:
            result = _result_from_event(existing, key)
            if ledger:
                idempotency.mark_succeeded(key, _summary_of(result))
            logger.info("headless replay source=fingerprint key=%s event_id=%s", key, existing.id)
            return result

    if key and ledger:
        stored = idempotency.claim_idempotency_key(key)
        if stored is not None and stored.result_summary:
            return _replay(stored.result_summary, key)

    try:
        decision = await classify_instruction(text, models, now=local_now(timezone), timezone=timezone)
        call = build_headless_call(
            decision,
            key,
            timezone=timezone,
            default_minutes=int(settings.headless_default_event_minutes),
        )
        created = await execute_tool(
            gateway,
            call,
            ToolContext(calendar_id=calendar, timezone=timezone),
            registry=registry,
            headless_only=True,
        )
    except Exception as exc:
        if key and ledger:
            idempotency.mark_failed(key, str(exc))
        logger.warning("headless execution failed key=%s error=%s", key, exc)
        raise

    result = HeadlessResult(
        outbox_id=key,
        idempotent=False,
        action=call.name,
        event_id=str(created.get("id", "")),
        calendar_id=str(created.get("calendar_id") or calendar),
        start=created.get("start"),
        end=created.get("end"),
    )
    if key and ledger:
        idempotency.mark_succeeded(key, _summary_of(result))
    logger.info("headless created action=%s event_id=%s key=%s", result.action, result.event_id, key)
    return result
