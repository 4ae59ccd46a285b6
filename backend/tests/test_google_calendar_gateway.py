import asyncio
import json

import pytest

from agent.errors import AuthExpiredError, GatewayError
from app.integrations.google_calendar import GoogleCalendarGateway


class _FakeResponse:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.text = json.dumps(payload) if payload is not None else ""
        self.content = self.text.encode("utf-8")

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class _FakeClient:
    def __init__(self, responses):
        self.responses = responses
        self.requests = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def request(self, method, url, headers=None, params=None, json=None):
        self.requests.append({"method": method, "url": url, "headers": headers, "params": params, "json": json})
        return self.responses.pop(0)


def _install(monkeypatch, *responses):
    client = _FakeClient(list(responses))
    monkeypatch.setattr("app.integrations.google_calendar.httpx.AsyncClient", lambda *args, **kwargs: client)
    return client


def _gateway():
    return GoogleCalendarGateway("ya29.token", timezone="America/New_York")


def test_list_events_sends_window_and_parses_items(monkeypatch):
    client = _install(
        monkeypatch,
        _FakeResponse(
            payload={
                "items": [
                    {
                        "id": "e1",
                        "summary": "Standup",
                        "start": {"dateTime": "2026-10-22T09:00:00-04:00"},
                        "end": {"dateTime": "2026-10-22T09:15:00-04:00"},
                    },
                    {"id": "e2", "summary": "[Task] Pay rent", "start": {"date": "2026-11-01"}, "end": {"date": "2026-11-02"}, "transparency": "transparent"},
                ]
            }
        ),
    )

    events = asyncio.run(_gateway().list_events("2026-10-22T00:00:00", "2026-10-23T00:00:00", query="stand"))

    request = client.requests[0]
    assert request["method"] == "GET"
    assert request["url"] == "https://www.googleapis.com/calendar/v3/calendars/primary/events"
    assert request["headers"] == {"Authorization": "Bearer ya29.token"}
    assert request["params"]["timeMin"] == "2026-10-22T00:00:00-04:00"
    assert request["params"]["singleEvents"] == "true"
    assert request["params"]["q"] == "stand"
    assert [event.id for event in events] == ["e1", "e2"]
    assert events[0].all_day is False
    assert events[1].all_day is True
    assert events[1].transparency == "transparent"


def test_create_timed_event_uses_local_time_and_zone(monkeypatch):
    client = _install(
        monkeypatch,
        _FakeResponse(payload={"id": "new", "summary": "Dentist", "start": {"dateTime": "x"}, "end": {"dateTime": "y"}}),
    )

    event = asyncio.run(
        _gateway().create_event(
            {"title": "Dentist", "start": "2026-10-20T15:00:00", "description": "bring card"},
            calendar_id="team@group.calendar.google.com",
        )
    )

    request = client.requests[0]
    assert request["method"] == "POST"
    assert request["url"].endswith("/calendars/team@group.calendar.google.com/events")
    assert request["json"] == {
        "summary": "Dentist",
        "description": "bring card",
        "start": {"dateTime": "2026-10-20T15:00:00", "timeZone": "America/New_York"},
        "end": {"dateTime": "2026-10-20T16:00:00", "timeZone": "America/New_York"},
        "transparency": "opaque",
    }
    assert event.calendar_id == "team@group.calendar.google.com"


def test_create_all_day_transparent_event(monkeypatch):
    client = _install(monkeypatch, _FakeResponse(payload={"id": "t1", "start": {"date": "2026-11-01"}, "end": {"date": "2026-11-02"}}))

    asyncio.run(
        _gateway().create_event(
            {"title": "[Task] Pay rent", "start": "2026-11-01", "end": "2026-11-02"},
            transparency="transparent",
            is_all_day=True,
        )
    )

    body = client.requests[0]["json"]
    assert body["start"] == {"date": "2026-11-01"}
    assert body["end"] == {"date": "2026-11-02"}
    assert body["transparency"] == "transparent"


def test_update_event_patches_only_given_fields(monkeypatch):
    client = _install(monkeypatch, _FakeResponse(payload={"id": "e1", "summary": "Renamed", "start": {}, "end": {}}))

    asyncio.run(_gateway().update_event("e1", {"title": "Renamed"}))

    assert client.requests[0]["method"] == "PATCH"
    assert client.requests[0]["url"].endswith("/events/e1")
    assert client.requests[0]["json"] == {"summary": "Renamed"}


def test_search_events_requires_verbatim_fingerprint(monkeypatch):
    _install(
        monkeypatch,
        _FakeResponse(
            payload={
                "items": [
                    {"id": "a", "description": "OUTBOX_ID=abc123", "start": {"date": "2026-11-01"}, "end": {}},
                    {"id": "b", "description": "outbox abc123", "start": {"date": "2026-11-01"}, "end": {}},
                ]
            }
        ),
    )

    events = asyncio.run(_gateway().search_events("OUTBOX_ID=abc123", "2026-09-01T00:00:00", "2027-10-01T00:00:00"))

    assert [event.id for event in events] == ["a"]


def test_unauthorized_response_raises_auth_expired(monkeypatch):
    _install(monkeypatch, _FakeResponse(status_code=401, payload={"error": {"message": "Invalid Credentials"}}))

    with pytest.raises(AuthExpiredError):
        asyncio.run(_gateway().delete_event("e1"))


def test_error_response_raises_gateway_error(monkeypatch):
    _install(monkeypatch, _FakeResponse(status_code=404, payload={"error": {"message": "Not Found"}}))

    with pytest.raises(GatewayError) as exc_info:
        asyncio.run(_gateway().delete_event("e1"))

    assert exc_info.value.status_code == 404
    assert str(exc_info.value) == "google_404:Not Found"


def test_delete_of_already_removed_event_succeeds(monkeypatch):
    _install(monkeypatch, _FakeResponse(status_code=410, payload={"error": {"message": "Resource has been deleted"}}))

    assert asyncio.run(_gateway().delete_event("e1")) is True


def test_tasks_use_default_list_and_status_mapping(monkeypatch):
    client = _install(
        monkeypatch,
        _FakeResponse(payload={"items": [{"id": "t1", "title": "Call mom", "status": "needsAction", "due": "2026-10-25T00:00:00.000Z"}]}),
        _FakeResponse(payload={"id": "t1", "title": "Call mom", "status": "completed"}),
        _FakeResponse(status_code=204),
    )
    gateway = _gateway()

    tasks = asyncio.run(gateway.list_tasks(show_completed=False))
    updated = asyncio.run(gateway.update_task("t1", {"completed": True, "due_date": "2026-10-26"}))
    removed = asyncio.run(gateway.delete_task("t1"))

    assert client.requests[0]["url"] == "https://tasks.googleapis.com/tasks/v1/lists/@default/tasks"
    assert client.requests[0]["params"]["showCompleted"] == "false"
    assert tasks[0].due == "2026-10-25"
    assert client.requests[1]["json"] == {"due": "2026-10-26T00:00:00.000Z", "status": "completed"}
    assert updated.completed is True
    assert removed is True
