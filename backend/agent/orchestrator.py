from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from agent.confirmation import (
    confirm_reply_text,
    confirm_request,
    duration_request,
    entity_pick_request,
    find_candidates,
    needs_duration,
    needs_entity_pick,
    requires_confirmation,
)
from agent.errors import AuthRejectedError, GatewayError, LoopExhaustedError, ToolValidationError
from agent.llm import history_to_messages
from agent.pending_action import apply_amend, parse_pending_action, pending_from_tool_call
from agent.registry import ToolRegistry, load_registry
from agent.time_utils import local_now
from agent.tool_runner import ToolContext, execute_tool, normalize_arguments, resolve_tool, validate_arguments
from agent.types import AssistantReply, CalendarGateway, ConfirmationRequest, ToolCall, ToolExecution, TrustContext
from app.core.config import get_settings


logger = logging.getLogger("chronos-backend.orchestrator")

MAX_VALIDATION_RETRIES = 1
CONFIRMED_PREFIX = "User confirmed. Proceed with the tool call now: "


def build_system_prompt(trust: TrustContext, now: datetime) -> str:
    return (
        "You are Chronos, a calendar and task agent.\n"
        "Rules:\n"
        f"1. All times are {trust.timezone}. Current local time: {now.strftime('%A %Y-%m-%d %H:%M')}. "
        "Send times as local ISO-8601 (YYYY-MM-DDTHH:MM:SS) without a UTC offset.\n"
        "2. To change or remove an event, call list_events first to find its 'id', "
        "then call update_event or delete_event with that id.\n"
        "3. Give create_event an 'end' only when the user stated a duration or an end time.\n"
        "4. Use create_task for to-dos and reminders, with due_date as YYYY-MM-DD.\n"
        "5. Destructive actions are held for the user's confirmation by the system; do not ask for it yourself.\n"
        "6. Reply briefly in Markdown. If a tool call fails, explain why."
    )


def describe_execution(execution: ToolExecution) -> str:
    if not execution.ok:
        return f"Sorry, I couldn't finish that: {execution.error}"
    result: dict[str, Any] = execution.result if isinstance(execution.result, dict) else {}
    if execution.name == "delete_event":
        return "Removed the event."
    if execution.name == "delete_task":
        return "Removed the task."
    if execution.name == "update_event":
        return "Updated the event."
    if execution.name == "update_task":
        return "Updated the task."
    if execution.name == "create_event":
        return f"Created the event \"{result.get('summary') or 'Untitled'}\" at {result.get('start') or 'the scheduled time'}."
    if execution.name == "create_task":
        return f"Created task: {result.get('summary') or 'Untitled'}."
    if execution.name == "clear_day":
        return f"Cleared {result.get('count', 0)} event(s) on {result.get('date', 'that day')}."
    return "Action completed successfully."


def _confirmation_reply(confirmation: ConfirmationRequest) -> AssistantReply:
    text = confirm_reply_text(confirmation.pending) if confirmation.kind == "confirm" else confirmation.message
    logger.info(
        "confirmation_required kind=%s action=%s",
        confirmation.kind,
        confirmation.pending.action,
    )
    return AssistantReply(text=text, confirmation=confirmation)


async def _gate_call(
    call: ToolCall,
    *,
    gateway: CalendarGateway,
    trust: TrustContext,
    registry: ToolRegistry,
    settings,
    confirmed: bool,
) -> tuple[ToolCall, ConfirmationRequest | None]:
    """Validate one proposed call and decide whether it may run now."""
    tool = resolve_tool(call, registry=registry)
    arguments = normalize_arguments(call.arguments)
    call = ToolCall(name=call.name, arguments=arguments, call_id=call.call_id)

    if needs_entity_pick(tool, arguments):
        pending = pending_from_tool_call(call)
        limit = int(settings.entity_pick_limit)
        matches, fallback = await find_candidates(gateway, pending, trust, limit=limit)
        if len(matches) != 1:
            return call, entity_pick_request(pending, (matches or fallback)[:limit])
        arguments = {**arguments, "id": matches[0]["id"]}
        call = ToolCall(name=call.name, arguments=arguments, call_id=call.call_id)

    validate_arguments(tool, arguments)
    if not confirmed and needs_duration(tool.tool_name, arguments):
        return call, duration_request(pending_from_tool_call(call), settings.duration_options)
    if not confirmed and requires_confirmation(tool, trust):
        return call, confirm_request(pending_from_tool_call(call))
    return call, None


async def _dispatch(
    call: ToolCall,
    *,
    gateway: CalendarGateway,
    trust: TrustContext,
    registry: ToolRegistry,
) -> ToolExecution:
    context = ToolContext(calendar_id=trust.calendar_id, timezone=trust.timezone)
    try:
        result = await execute_tool(gateway, call, context, registry=registry)
    except AuthRejectedError:
        raise
    except (GatewayError, ToolValidationError) as exc:
        logger.warning("tool_dispatch name=%s ok=false error=%s", call.name, exc)
        return ToolExecution(name=call.name, arguments=dict(call.arguments), ok=False, error=str(exc))
    return ToolExecution(name=call.name, arguments=dict(call.arguments), ok=True, result=result)


async def _resume_pending(
    message: str,
    *,
    gateway: CalendarGateway,
    trust: TrustContext,
    registry: ToolRegistry,
    settings,
    amend: dict[str, Any] | None,
) -> AssistantReply | None:
    pending = parse_pending_action(message)
    if pending is None:
        return None
    confirmed = True
    if amend:
        try:
            pending = apply_amend(pending, amend, trust.timezone)
        except ValueError as exc:
            raise ToolValidationError(pending.action, f"INVALID_AMEND:{exc}") from exc
        # An amended action re-enters the protocol instead of skipping the gate.
        confirmed = False

    call, confirmation = await _gate_call(
        pending.to_tool_call(),
        gateway=gateway,
        trust=trust,
        registry=registry,
        settings=settings,
        confirmed=confirmed,
    )
    if confirmation is not None:
        return _confirmation_reply(confirmation)

    context = ToolContext(calendar_id=trust.calendar_id, timezone=trust.timezone)
    result = await execute_tool(gateway, call, context, registry=registry)
    execution = ToolExecution(name=call.name, arguments=dict(call.arguments), ok=True, result=result)
    logger.info("pending_action_executed action=%s amended=%s", call.name, bool(amend))
    return AssistantReply(text=describe_execution(execution), executions=[execution])


async def _run_tool_loop(
    message: str,
    *,
    history: list[dict[str, Any]] | None,
    gateway: CalendarGateway,
    model,
    trust: TrustContext,
    registry: ToolRegistry,
    settings,
) -> AssistantReply:
    system_prompt = build_system_prompt(trust, local_now(trust.timezone))
    tools = registry.list_llm_tools()
    messages = history_to_messages(history) + [{"role": "user", "content": message.strip()}]
    executions: list[ToolExecution] = []
    validation_failures = 0
    max_rounds = int(settings.assistant_max_rounds)

    for round_idx in range(max_rounds):
        turn = await model.generate(system_prompt=system_prompt, messages=messages, tools=tools)
        if not turn.tool_calls:
            text = turn.text or (describe_execution(executions[-1]) if executions else "")
            logger.info("assistant_done rounds=%s executed=%s", round_idx + 1, len(executions))
            return AssistantReply(text=text or "(no content)", executions=executions)

        messages.append({"role": "assistant", "content": turn.text, "tool_calls": turn.tool_calls, "raw": turn.raw})

        # The whole round is gated before anything in it runs.
        prepared: list[ToolCall] = []
        problems: dict[int, ToolValidationError] = {}
        for idx, call in enumerate(turn.tool_calls):
            try:
                gated, confirmation = await _gate_call(
                    call,
                    gateway=gateway,
                    trust=trust,
                    registry=registry,
                    settings=settings,
                    confirmed=False,
                )
            except ToolValidationError as exc:
                problems[idx] = exc
                prepared.append(call)
                continue
            if confirmation is not None:
                reply = _confirmation_reply(confirmation)
                reply.executions = executions
                return reply
            prepared.append(gated)

        if problems:
            validation_failures += 1
            first = problems[min(problems)]
            logger.warning("tool_validation_failed round=%s attempt=%s error=%s", round_idx + 1, validation_failures, first)
            if validation_failures > MAX_VALIDATION_RETRIES:
                raise first
            results = []
            for idx, call in enumerate(prepared):
                error = str(problems[idx]) if idx in problems else "skipped: another call in this batch was invalid"
                results.append({"call": call, "response": {"ok": False, "error": error}})
            messages.append({"role": "tool", "results": results})
            continue

        results = []
        for call in prepared:
            execution = await _dispatch(call, gateway=gateway, trust=trust, registry=registry)
            executions.append(execution)
            response = {"ok": True, "result": execution.result} if execution.ok else {"ok": False, "error": execution.error}
            results.append({"call": call, "response": response})
        messages.append({"role": "tool", "results": results})

    logger.warning("assistant_round_limit rounds=%s executed=%s", max_rounds, len(executions))
    raise LoopExhaustedError(max_rounds)


async def execute(
    *,
    message: str,
    gateway: CalendarGateway,
    model,
    history: list[dict[str, Any]] | None = None,
    trust: TrustContext | None = None,
    pre_confirmed: bool = False,
    amend: dict[str, Any] | None = None,
    settings=None,
    registry: ToolRegistry | None = None,
) -> AssistantReply:
    settings = settings or get_settings()
    registry = registry or load_registry()
    trust = trust or TrustContext.interactive(timezone=settings.assistant_timezone)

    if pre_confirmed or amend:
        reply = await _resume_pending(
            message,
            gateway=gateway,
            trust=trust,
            registry=registry,
            settings=settings,
            amend=amend,
        )
        if reply is not None:
            return reply
        if amend:
            raise ToolValidationError("pending_action", "UNPARSEABLE")
        message = f"{CONFIRMED_PREFIX}{message}"

    return await _run_tool_loop(
        message,
        history=history,
        gateway=gateway,
        model=model,
        trust=trust,
        registry=registry,
        settings=settings,
    )
