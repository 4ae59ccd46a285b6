from __future__ import annotations

from typing import Any

from agent.registry import ToolDefinition
from agent.time_utils import local_now, window_around
from agent.tool_runner import DEFAULT_LIST_DAYS_BACK, DEFAULT_LIST_DAYS_FORWARD
from agent.types import CalendarGateway, ConfirmationRequest, PendingAction, TrustContext


DEFAULT_DURATION_OPTIONS = (15, 30, 45, 60, 90, 120)
_PLACEHOLDER_EXACT = {"id", "event_id", "task_id", "unknown", "none", "null"}
_PLACEHOLDER_FRAGMENTS = ("<", ">", "your_", "_here", "placeholder")

_CONFIRM_MESSAGES = {
    "delete_event": ("Are you sure you want to remove this?", "Permanently delete this event?"),
    "delete_task": ("Are you sure you want to remove this task?", "Permanently delete this task?"),
    "clear_day": ("This removes every timed event on that day. Continue?", "Clear all timed events on {date}?"),
}


def requires_confirmation(tool: ToolDefinition, trust: TrustContext) -> bool:
    if not tool.destructive:
        return False
    if trust.kind == "automation" and trust.auto_execute_destructive and tool.trusted_auto_execute:
        return False
    return True


def needs_entity_pick(tool: ToolDefinition, arguments: dict[str, Any]) -> bool:
    if not tool.targets_entity:
        return False
    value = arguments.get("id")
    if not isinstance(value, str) or not value.strip():
        return True
    lowered = value.strip().lower()
    return lowered in _PLACEHOLDER_EXACT or any(fragment in lowered for fragment in _PLACEHOLDER_FRAGMENTS)


def needs_duration(tool_name: str, arguments: dict[str, Any]) -> bool:
    if tool_name != "create_event" or arguments.get("all_day") is True:
        return False
    start = str(arguments.get("start") or "").strip()
    if not start or len(start) == 10:
        return False
    end = str(arguments.get("end") or "").strip()
    return not end or end == start


def confirm_request(pending: PendingAction, *, destructive: bool = True) -> ConfirmationRequest:
    _, prompt = _CONFIRM_MESSAGES.get(pending.action, ("Ready to apply these changes?", "Apply this change?"))
    return ConfirmationRequest(
        kind="confirm",
        pending=pending,
        message=prompt.format(date=pending.arguments.get("date", "that day")),
        destructive=destructive,
    )


def confirm_reply_text(pending: PendingAction) -> str:
    text, _ = _CONFIRM_MESSAGES.get(pending.action, ("Ready to apply these changes?", ""))
    return text


def duration_request(pending: PendingAction, options: tuple[int, ...] | list[int] = DEFAULT_DURATION_OPTIONS) -> ConfirmationRequest:
    return ConfirmationRequest(
        kind="duration",
        pending=pending,
        message="How long should this event be?",
        options=[int(item) for item in options],
    )


def entity_pick_request(pending: PendingAction, candidates: list[dict[str, Any]]) -> ConfirmationRequest:
    verb = "delete" if pending.action.startswith("delete") else "update"
    noun = "task" if pending.action.endswith("_task") else "event"
    return ConfirmationRequest(
        kind="pick",
        pending=pending,
        message=f"I need to know which {noun} to {verb}. Please select one:",
        candidates=candidates,
    )


def _matches(label: str, needle: str) -> bool:
    return bool(needle) and needle in (label or "").lower()


async def find_candidates(
    gateway: CalendarGateway,
    pending: PendingAction,
    trust: TrustContext,
    *,
    limit: int = 10,
) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Return (matches, fallback) candidate lists for an underspecified target.

    `matches` are entities whose title contains the title/query the model
    supplied; `fallback` is the first `limit` entities in the default window.
    """
    needle = str(pending.arguments.get("title") or pending.arguments.get("query") or "").strip().lower()
    if pending.action.endswith("_task"):
        tasks = await gateway.list_tasks(show_completed=False)
        items = [task.to_dict() for task in tasks]
        matches = [item for item in items if _matches(item["title"], needle)]
        return matches, items[:limit]

    time_min, time_max = window_around(
        local_now(trust.timezone),
        days_back=DEFAULT_LIST_DAYS_BACK,
        days_forward=DEFAULT_LIST_DAYS_FORWARD,
    )
    calendar_id = str(pending.arguments.get("calendar_id") or trust.calendar_id)
    events = await gateway.list_events(time_min, time_max, calendar_id=calendar_id)
    items = [event.to_dict() for event in events]
    matches = [item for item in items if _matches(item["summary"], needle)]
    return matches, items[:limit]
