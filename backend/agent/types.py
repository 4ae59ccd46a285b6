from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class ToolCall:
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    call_id: str | None = None


@dataclass(frozen=True)
class PendingAction:
    action: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_tool_call(self) -> ToolCall:
        return ToolCall(name=self.action, arguments=dict(self.arguments))


@dataclass
class CalendarEvent:
    id: str
    summary: str
    start: str
    end: str
    description: str = ""
    location: str = ""
    all_day: bool = False
    transparency: str = "opaque"
    calendar_id: str = "primary"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "summary": self.summary,
            "start": self.start,
            "end": self.end,
            "description": self.description,
            "location": self.location,
            "all_day": self.all_day,
            "transparency": self.transparency,
            "calendar_id": self.calendar_id,
        }


@dataclass
class CalendarTask:
    id: str
    title: str
    due: str | None = None
    completed: bool = False
    notes: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "due": self.due,
            "completed": self.completed,
            "notes": self.notes,
        }


@dataclass
class ConfirmationRequest:
    kind: str  # duration | pick | confirm
    pending: PendingAction
    message: str
    options: list[int] = field(default_factory=list)
    candidates: list[dict[str, Any]] = field(default_factory=list)
    destructive: bool = False

    def to_dict(self) -> dict[str, Any]:
        from agent.pending_action import serialize_pending_action

        payload: dict[str, Any] = {
            "type": self.kind,
            "action": self.pending.action,
            "message": self.message,
            "pending": {"action": self.pending.action, "args": dict(self.pending.arguments)},
            "pending_action": serialize_pending_action(self.pending),
        }
        if self.kind == "duration":
            payload["options"] = list(self.options)
        elif self.kind == "pick":
            payload["candidates"] = list(self.candidates)
        else:
            payload["destructive"] = self.destructive
        return payload


@dataclass
class ResultSummary:
    action_type: str
    target_calendar_id: str
    target_entity_id: str
    start: str | None = None
    end: str | None = None


@dataclass
class IdempotencyRecord:
    key: str
    status: str  # processing | succeeded | failed
    result_summary: ResultSummary | None = None
    last_error: str | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    expires_at: float = 0.0


@dataclass(frozen=True)
class TrustContext:
    kind: str  # interactive | automation
    auto_execute_destructive: bool = False
    calendar_id: str = "primary"
    timezone: str = "America/New_York"

    @classmethod
    def interactive(cls, *, calendar_id: str = "primary", timezone: str = "America/New_York") -> "TrustContext":
        return cls(kind="interactive", calendar_id=calendar_id, timezone=timezone)

    @classmethod
    def automation(
        cls,
        *,
        auto_execute_destructive: bool = False,
        calendar_id: str = "primary",
        timezone: str = "America/New_York",
    ) -> "TrustContext":
        return cls(
            kind="automation",
            auto_execute_destructive=auto_execute_destructive,
            calendar_id=calendar_id,
            timezone=timezone,
        )


@dataclass
class ToolExecution:
    name: str
    arguments: dict[str, Any]
    ok: bool
    result: Any = None
    error: str | None = None


@dataclass
class AssistantReply:
    text: str
    confirmation: ConfirmationRequest | None = None
    executions: list[ToolExecution] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"text": self.text}
        if self.confirmation is not None:
            payload["confirmation"] = self.confirmation.to_dict()
        return payload


@dataclass
class HeadlessResult:
    outbox_id: str | None
    idempotent: bool
    action: str
    event_id: str
    calendar_id: str
    start: str | None = None
    end: str | None = None

    @property
    def date(self) -> str | None:
        if not self.start:
            return None
        return self.start[:10]

    def to_response(self) -> dict[str, Any]:
        return {
            "ok": True,
            "outbox_id": self.outbox_id,
            "idempotent": self.idempotent,
            "event_id": self.event_id,
            "action": self.action,
            "calendar_id": self.calendar_id,
            "date": self.date,
        }


class CalendarGateway(Protocol):
    async def list_events(
        self, time_min: str, time_max: str, *, calendar_id: str | None = None, query: str | None = None
    ) -> list[CalendarEvent]: ...

    async def search_events(
        self, text: str, time_min: str, time_max: str, *, calendar_id: str | None = None
    ) -> list[CalendarEvent]: ...

    async def create_event(
        self,
        fields: dict[str, Any],
        *,
        transparency: str = "opaque",
        is_all_day: bool = False,
        calendar_id: str | None = None,
    ) -> CalendarEvent: ...

    async def update_event(
        self, event_id: str, fields: dict[str, Any], *, calendar_id: str | None = None
    ) -> CalendarEvent: ...

    async def delete_event(self, event_id: str, *, calendar_id: str | None = None) -> bool: ...

    async def list_tasks(self, *, show_completed: bool = True) -> list[CalendarTask]: ...

    async def create_task(self, fields: dict[str, Any]) -> CalendarTask: ...

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> CalendarTask: ...

    async def delete_task(self, task_id: str) -> bool: ...
