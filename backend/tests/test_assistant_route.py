import asyncio
import json

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from agent.llm import ModelTurn
from app.routes.assistant import assistant_chat
from fakes import ScriptedModel, tool_turn


def _request(payload, headers=None) -> Request:
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    headers = {"Authorization": "Bearer ya29.user", "Content-Type": "application/json", **(headers or {})}
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/assistant/chat",
        "headers": [(key.lower().encode(), value.encode()) for key, value in headers.items()],
    }

    async def receive():
        return {"type": "http.request", "body": body, "more_body": False}

    return Request(scope, receive)


@pytest.fixture
def wired(monkeypatch, settings, gateway):
    state = {"model": ScriptedModel([]), "tokens": []}

    def _fake_gateway(access_token, *, timezone, calendar_id):
        state["tokens"].append((access_token, calendar_id))
        return gateway

    monkeypatch.setattr("app.routes.assistant.get_settings", lambda: settings)
    monkeypatch.setattr("app.routes.assistant.GoogleCalendarGateway", _fake_gateway)
    monkeypatch.setattr("app.routes.assistant.build_chat_model", lambda _settings: state["model"])
    return state


def test_chat_returns_confirmation_payload_for_delete(wired, gateway):
    event = gateway.add_event("Team meeting", "2026-10-20T15:00:00", "2026-10-20T16:00:00")
    wired["model"] = ScriptedModel([tool_turn(("delete_event", {"id": event.id}))])

    response = asyncio.run(assistant_chat(_request({"message": "delete my 3pm meeting", "history": []})))

    assert response["text"] == "Are you sure you want to remove this?"
    confirmation = response["confirmation"]
    assert confirmation["type"] == "confirm"
    assert confirmation["pending"] == {"action": "delete_event", "args": {"id": event.id}}
    assert confirmation["pending_action"] == f'Executing delete_event: {{"id":"{event.id}"}}'
    assert wired["tokens"] == [("ya29.user", "primary")]
    assert gateway.mutations == []

    done = asyncio.run(
        assistant_chat(_request({"message": confirmation["pending_action"], "confirmed": True, "calendar_id": "primary"}))
    )
    assert done == {"text": "Removed the event."}
    assert [name for name, _ in gateway.mutations] == ["delete_event"]


def test_chat_plain_reply(wired):
    wired["model"] = ScriptedModel([ModelTurn(text="You have nothing today.")])

    response = asyncio.run(assistant_chat(_request({"message": "what's on today?"})))

    assert response == {"text": "You have nothing today."}


def test_chat_requires_bearer_token(wired):
    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(assistant_chat(_request({"message": "hi"}, headers={"Authorization": ""})))

    assert exc_info.value.status_code == 401


@pytest.mark.parametrize(
    "payload",
    [b"not json", {"message": "  "}, {"message": "hi", "history": "nope"}, {"message": "hi", "amend": 5}],
)
def test_chat_rejects_bad_bodies(wired, payload):
    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(assistant_chat(_request(payload)))

    assert exc_info.value.status_code == 400


def test_chat_round_limit_maps_to_unprocessable(wired):
    wired["model"] = ScriptedModel([tool_turn(("list_events", {}))], repeat_last=True)

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(assistant_chat(_request({"message": "loop"})))

    assert exc_info.value.status_code == 422
    assert exc_info.value.detail == "could_not_complete:round_limit=8"
