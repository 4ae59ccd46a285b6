from __future__ import annotations

import json
import re
from typing import Any

from agent.time_utils import add_minutes
from agent.types import PendingAction, ToolCall


_PENDING_PREFIX = "Executing"
_PENDING_PATTERN = re.compile(r"^\s*Executing\s+([a-z][a-z0-9_]*)\s*:\s*(\{.*\})\s*$", re.DOTALL)


def canonical_json(arguments: dict[str, Any]) -> str:
    return json.dumps(arguments, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def pending_from_tool_call(call: ToolCall) -> PendingAction:
    return PendingAction(action=call.name, arguments=dict(call.arguments))


def serialize_pending_action(pending: PendingAction) -> str:
    return f"{_PENDING_PREFIX} {pending.action}: {canonical_json(pending.arguments)}"


def parse_pending_action(text: str) -> PendingAction | None:
    match = _PENDING_PATTERN.match(text or "")
    if not match:
        return None
    try:
        arguments = json.loads(match.group(2))
    except json.JSONDecodeError:
        return None
    if not isinstance(arguments, dict):
        return None
    return PendingAction(action=match.group(1), arguments=arguments)


def apply_duration(pending: PendingAction, minutes: int, tz_name: str) -> PendingAction:
    if minutes <= 0:
        raise ValueError("duration must be positive")
    start = pending.arguments.get("start")
    if not isinstance(start, str) or not start.strip():
        raise ValueError("pending action has no start")
    arguments = dict(pending.arguments)
    arguments["end"] = add_minutes(start, minutes, tz_name)
    return PendingAction(action=pending.action, arguments=arguments)


def apply_candidate(pending: PendingAction, candidate_id: str) -> PendingAction:
    value = (candidate_id or "").strip()
    if not value:
        raise ValueError("candidate id is empty")
    arguments = dict(pending.arguments)
    arguments["id"] = value
    return PendingAction(action=pending.action, arguments=arguments)


def apply_amend(pending: PendingAction, amend: dict[str, Any], tz_name: str) -> PendingAction:
    if "duration_minutes" in amend:
        try:
            minutes = int(amend["duration_minutes"])
        except (TypeError, ValueError) as exc:
            raise ValueError("duration_minutes must be an integer") from exc
        return apply_duration(pending, minutes, tz_name)
    if "candidate_id" in amend:
        return apply_candidate(pending, str(amend["candidate_id"] or ""))
    raise ValueError("amend needs duration_minutes or candidate_id")
