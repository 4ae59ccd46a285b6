from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any
from urllib.parse import quote

import httpx

from agent.errors import AuthExpiredError, GatewayError
from agent.time_utils import add_minutes, format_local, is_date_only, parse_date, parse_datetime
from agent.types import CalendarEvent, CalendarTask


logger = logging.getLogger("chronos-backend.google_calendar")

CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
TASKS_API_BASE = "https://tasks.googleapis.com/tasks/v1"
DEFAULT_TASK_LIST = "@default"
DEFAULT_EVENT_MINUTES = 60
MAX_RESULTS = 250


def _error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or error.get("status") or "")
    return str(error or "")


def parse_event(item: dict[str, Any], calendar_id: str) -> CalendarEvent:
    start = item.get("start") or {}
    end = item.get("end") or {}
    return CalendarEvent(
        id=str(item.get("id", "")),
        summary=str(item.get("summary") or ""),
        start=str(start.get("dateTime") or start.get("date") or ""),
        end=str(end.get("dateTime") or end.get("date") or ""),
        description=str(item.get("description") or ""),
        location=str(item.get("location") or ""),
        all_day="date" in start and "dateTime" not in start,
        transparency=str(item.get("transparency") or "opaque"),
        calendar_id=calendar_id,
    )


def parse_task(item: dict[str, Any]) -> CalendarTask:
    due = item.get("due")
    return CalendarTask(
        id=str(item.get("id", "")),
        title=str(item.get("title") or ""),
        due=str(due)[:10] if due else None,
        completed=item.get("status") == "completed",
        notes=str(item.get("notes") or ""),
    )


class GoogleCalendarGateway:
    """Calendar v3 and Tasks v1 access with an explicitly supplied bearer token."""

    def __init__(self, access_token: str, *, timezone: str, calendar_id: str = "primary", timeout: float = 20):
        self.access_token = access_token
        self.timezone = timezone
        self.calendar_id = calendar_id
        self.timeout = timeout

    def _calendar(self, calendar_id: str | None) -> str:
        return (calendar_id or self.calendar_id or "primary").strip()

    def _events_url(self, calendar_id: str, event_id: str | None = None) -> str:
        url = f"{CALENDAR_API_BASE}/calendars/{quote(calendar_id, safe='@')}/events"
        if event_id:
            url = f"{url}/{quote(event_id, safe='')}"
        return url

    def _tasks_url(self, task_id: str | None = None) -> str:
        url = f"{TASKS_API_BASE}/lists/{DEFAULT_TASK_LIST}/tasks"
        if task_id:
            url = f"{url}/{quote(task_id, safe='')}"
        return url

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, params=params, json=json)
        except httpx.HTTPError as exc:
            logger.warning("google request transport error method=%s error=%s", method, exc.__class__.__name__)
            raise GatewayError(f"google_transport:{exc.__class__.__name__}") from exc

        if response.status_code == 401:
            raise AuthExpiredError("google_token_expired")
        if response.status_code >= 400:
            message = _error_message(response)
            logger.warning("google request failed method=%s status=%s message=%s", method, response.status_code, message)
            raise GatewayError(f"google_{response.status_code}:{message}", status_code=response.status_code)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _time_param(self, value: str) -> str:
        return parse_datetime(value, self.timezone).isoformat()

    def _time_field(self, value: str, *, all_day: bool) -> dict[str, str]:
        if all_day:
            return {"date": parse_date(value).isoformat()}
        return {"dateTime": format_local(parse_datetime(value, self.timezone), self.timezone), "timeZone": self.timezone}

    def _event_body(self, fields: dict[str, Any], *, is_all_day: bool, creating: bool) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if "title" in fields:
            body["summary"] = fields["title"]
        for key in ("description", "location"):
            if key in fields:
                body[key] = fields[key]

        start = str(fields.get("start") or "")
        end = str(fields.get("end") or "")
        all_day = is_all_day or (bool(start) and is_date_only(start))
        if start:
            body["start"] = self._time_field(start, all_day=all_day)
            if not end and creating:
                if all_day:
                    end = (parse_date(start) + timedelta(days=1)).isoformat()
                else:
                    end = add_minutes(start, DEFAULT_EVENT_MINUTES, self.timezone)
        if end:
            body["end"] = self._time_field(end, all_day=all_day)
        return body

    async def list_events(
        self, time_min: str, time_max: str, *, calendar_id: str | None = None, query: str | None = None
    ) -> list[CalendarEvent]:
        calendar = self._calendar(calendar_id)
        params: dict[str, Any] = {
            "timeMin": self._time_param(time_min),
            "timeMax": self._time_param(time_max),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": MAX_RESULTS,
        }
        if query:
            params["q"] = query
        payload = await self._request("GET", self._events_url(calendar), params=params)
        return [parse_event(item, calendar) for item in payload.get("items") or [] if isinstance(item, dict)]

    async def search_events(
        self, text: str, time_min: str, time_max: str, *, calendar_id: str | None = None
    ) -> list[CalendarEvent]:
        events = await self.list_events(time_min, time_max, calendar_id=calendar_id, query=text)
        # Full-text search is fuzzy; the fingerprint must appear verbatim.
        return [event for event in events if text in event.description]

    async def create_event(
        self,
        fields: dict[str, Any],
        *,
        transparency: str = "opaque",
        is_all_day: bool = False,
        calendar_id: str | None = None,
    ) -> CalendarEvent:
        calendar = self._calendar(calendar_id)
        body = self._event_body(fields, is_all_day=is_all_day, creating=True)
        body["transparency"] = transparency
        payload = await self._request("POST", self._events_url(calendar), json=body)
        return parse_event(payload, calendar)

    async def update_event(
        self, event_id: str, fields: dict[str, Any], *, calendar_id: str | None = None
    ) -> CalendarEvent:
        calendar = self._calendar(calendar_id)
        body = self._event_body(fields, is_all_day=False, creating=False)
        payload = await self._request("PATCH", self._events_url(calendar, event_id), json=body)
        return parse_event(payload, calendar)

    async def delete_event(self, event_id: str, *, calendar_id: str | None = None) -> bool:
        try:
            await self._request("DELETE", self._events_url(self._calendar(calendar_id), event_id))
        except GatewayError as exc:
            if exc.status_code == 410:
                return True
            raise
        return True

    async def list_tasks(self, *, show_completed: bool = True) -> list[CalendarTask]:
        params = {"showCompleted": "true" if show_completed else "false", "maxResults": 100}
        payload = await self._request("GET", self._tasks_url(), params=params)
        return [parse_task(item) for item in payload.get("items") or [] if isinstance(item, dict)]

    def _task_body(self, fields: dict[str, Any]) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if "title" in fields:
            body["title"] = fields["title"]
        if "notes" in fields:
            body["notes"] = fields["notes"]
        if fields.get("due_date"):
            body["due"] = f"{parse_date(str(fields['due_date'])).isoformat()}T00:00:00.000Z"
        if "completed" in fields:
            body["status"] = "completed" if fields["completed"] else "needsAction"
        return body

    async def create_task(self, fields: dict[str, Any]) -> CalendarTask:
        payload = await self._request("POST", self._tasks_url(), json=self._task_body(fields))
        return parse_task(payload)

    async def update_task(self, task_id: str, fields: dict[str, Any]) -> CalendarTask:
        payload = await self._request("PATCH", self._tasks_url(task_id), json=self._task_body(fields))
        return parse_task(payload)

    async def delete_task(self, task_id: str) -> bool:
        await self._request("DELETE", self._tasks_url(task_id))
        return True
