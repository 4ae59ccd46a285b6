from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from agent.errors import GatewayError, ToolValidationError
from agent.registry import ToolDefinition, ToolRegistry, load_registry
from agent.task_policy import TASK_TRANSPARENCY, build_task_event
from agent.time_utils import day_window, is_date_only, local_now, parse_date, parse_datetime, window_around
from agent.types import CalendarGateway, ToolCall


logger = logging.getLogger("chronos-backend.tool_runner")

DEFAULT_LIST_DAYS_BACK = 30
DEFAULT_LIST_DAYS_FORWARD = 30
_ARGUMENT_ALIASES = {"summary": "title", "dueDate": "due_date", "timeMin": "time_min", "timeMax": "time_max"}
_DATETIME_FIELDS = ("start", "end", "time_min", "time_max")
_DATE_FIELDS = ("date", "due_date")


@dataclass(frozen=True)
class ToolContext:
    calendar_id: str = "primary"
    timezone: str = "America/New_York"


ToolHandler = Callable[[CalendarGateway, dict[str, Any], ToolContext], Awaitable[dict[str, Any]]]


def normalize_arguments(arguments: dict[str, Any]) -> dict[str, Any]:
    normalized: dict[str, Any] = {}
    for key, value in (arguments or {}).items():
        if value is None:
            continue
        target = _ARGUMENT_ALIASES.get(key, key)
        if target in normalized and target != key:
            continue
        normalized[target] = value
    return normalized


def _validate_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "integer":
        return isinstance(value, int) and not isinstance(value, bool)
    if expected == "number":
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return True


def validate_arguments(tool: ToolDefinition, arguments: dict[str, Any]) -> None:
    schema = tool.input_schema or {}
    properties = schema.get("properties", {})

    for req in tool.required_fields:
        value = arguments.get(req)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ToolValidationError(tool.tool_name, f"VALIDATION_REQUIRED:{req}")

    for key, value in arguments.items():
        spec = properties.get(key)
        if not isinstance(spec, dict):
            continue
        expected_type = spec.get("type")
        if expected_type and not _validate_type(value, expected_type):
            raise ToolValidationError(tool.tool_name, f"VALIDATION_TYPE:{key}")
        enum_values = spec.get("enum")
        if enum_values and value not in enum_values:
            raise ToolValidationError(tool.tool_name, f"VALIDATION_ENUM:{key}")

    for key in _DATETIME_FIELDS + _DATE_FIELDS:
        value = arguments.get(key)
        if not isinstance(value, str) or not value.strip():
            continue
        try:
            if key in _DATE_FIELDS:
                parse_date(value)
            else:
                parse_datetime(value, "UTC")
        except ValueError as exc:
            raise ToolValidationError(tool.tool_name, f"VALIDATION_FORMAT:{key}") from exc


def _calendar_id(arguments: dict[str, Any], context: ToolContext) -> str:
    value = arguments.get("calendar_id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return context.calendar_id


def _event_fields(arguments: dict[str, Any]) -> dict[str, Any]:
    return {key: arguments[key] for key in ("title", "start", "end", "description", "location") if key in arguments}


async def _list_events(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    default_min, default_max = window_around(
        local_now(context.timezone),
        days_back=DEFAULT_LIST_DAYS_BACK,
        days_forward=DEFAULT_LIST_DAYS_FORWARD,
    )
    events = await gateway.list_events(
        str(arguments.get("time_min") or default_min),
        str(arguments.get("time_max") or default_max),
        calendar_id=_calendar_id(arguments, context),
        query=arguments.get("query") or None,
    )
    return {"events": [event.to_dict() for event in events], "count": len(events)}


async def _create_event(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    fields = _event_fields(arguments)
    is_all_day = bool(arguments.get("all_day")) or is_date_only(str(arguments.get("start") or ""))
    event = await gateway.create_event(
        fields,
        transparency="opaque",
        is_all_day=is_all_day,
        calendar_id=_calendar_id(arguments, context),
    )
    return event.to_dict()


async def _update_event(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    event = await gateway.update_event(
        str(arguments["id"]),
        _event_fields(arguments),
        calendar_id=_calendar_id(arguments, context),
    )
    return event.to_dict()


async def _delete_event(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    await gateway.delete_event(str(arguments["id"]), calendar_id=_calendar_id(arguments, context))
    return {"status": "success", "id": str(arguments["id"]), "message": "Event removed"}


async def _clear_day(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    day = parse_date(str(arguments["date"]))
    calendar_id = _calendar_id(arguments, context)
    time_min, time_max = day_window(day, context.timezone)
    events = await gateway.list_events(time_min, time_max, calendar_id=calendar_id)
    deleted: list[str] = []
    failed: list[dict[str, str]] = []
    for event in events:
        if event.all_day:
            continue
        try:
            await gateway.delete_event(event.id, calendar_id=calendar_id)
            deleted.append(event.id)
        except GatewayError as exc:
            failed.append({"id": event.id, "error": str(exc)})
    return {"date": day.isoformat(), "deleted": deleted, "failed": failed, "count": len(deleted)}


async def _list_tasks(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    tasks = await gateway.list_tasks(show_completed=bool(arguments.get("show_completed", True)))
    return {"tasks": [task.to_dict() for task in tasks], "count": len(tasks)}


async def _create_task(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    fields = build_task_event(arguments, context.timezone)
    event = await gateway.create_event(
        fields,
        transparency=TASK_TRANSPARENCY,
        is_all_day=True,
        calendar_id=context.calendar_id,
    )
    result = event.to_dict()
    result["task"] = True
    return result


async def _update_task(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    fields = {key: arguments[key] for key in ("title", "notes", "due_date", "completed") if key in arguments}
    task = await gateway.update_task(str(arguments["id"]), fields)
    return task.to_dict()


async def _delete_task(gateway: CalendarGateway, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
    await gateway.delete_task(str(arguments["id"]))
    return {"status": "success", "id": str(arguments["id"]), "message": "Task removed"}


_HANDLERS: dict[str, ToolHandler] = {
    "list_events": _list_events,
    "create_event": _create_event,
    "update_event": _update_event,
    "delete_event": _delete_event,
    "clear_day": _clear_day,
    "list_tasks": _list_tasks,
    "create_task": _create_task,
    "update_task": _update_task,
    "delete_task": _delete_task,
}


def registered_tool_names() -> set[str]:
    return set(_HANDLERS)


def resolve_tool(call: ToolCall, *, registry: ToolRegistry | None = None) -> ToolDefinition:
    registry = registry or load_registry()
    if not registry.has_tool(call.name):
        raise ToolValidationError(call.name, "UNKNOWN_TOOL")
    return registry.get_tool(call.name)


async def execute_tool(
    gateway: CalendarGateway,
    call: ToolCall,
    context: ToolContext,
    *,
    registry: ToolRegistry | None = None,
    headless_only: bool = False,
) -> dict[str, Any]:
    tool = resolve_tool(call, registry=registry)
    if headless_only and not tool.headless:
        raise ToolValidationError(call.name, "NOT_ALLOWED_HEADLESS")
    arguments = normalize_arguments(call.arguments)
    validate_arguments(tool, arguments)
    handler = _HANDLERS.get(tool.tool_name)
    if handler is None:
        raise ToolValidationError(call.name, "NO_HANDLER")
    result = await handler(gateway, arguments, context)
    logger.info("tool_dispatch name=%s calendar_id=%s ok=true", tool.tool_name, context.calendar_id)
    return result
