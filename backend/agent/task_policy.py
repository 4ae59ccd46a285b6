from __future__ import annotations

from datetime import date, timedelta
from typing import Any

from agent.time_utils import local_now, parse_date


TASK_TITLE_PREFIX = "[Task] "
TASK_TRANSPARENCY = "transparent"


def task_title(raw_title: str) -> str:
    title = (raw_title or "").strip()
    while title.lower().startswith("[task]"):
        title = title[len("[task]") :].strip()
    return f"{TASK_TITLE_PREFIX}{title or 'Untitled'}"


def is_task_title(title: str) -> bool:
    return (title or "").startswith(TASK_TITLE_PREFIX)


def resolve_due_date(arguments: dict[str, Any], tz_name: str) -> date:
    raw = arguments.get("due_date") or arguments.get("due") or arguments.get("date")
    if isinstance(raw, str) and raw.strip():
        try:
            return parse_date(raw)
        except ValueError:
            pass
    return local_now(tz_name).date()


def build_task_event(arguments: dict[str, Any], tz_name: str) -> dict[str, Any]:
    """Translate a create_task request into calendar event fields.

    Only title, due date and notes are taken from the request. Start, end,
    transparency and all-day flags are fixed: a task is always a single
    all-day span on its due date that never blocks availability.
    """
    due = resolve_due_date(arguments, tz_name)
    fields: dict[str, Any] = {
        "title": task_title(str(arguments.get("title") or "")),
        "start": due.isoformat(),
        "end": (due + timedelta(days=1)).isoformat(),
    }
    notes = arguments.get("notes") or arguments.get("description")
    if isinstance(notes, str) and notes.strip():
        fields["description"] = notes.strip()
    return fields
