import asyncio
from datetime import timedelta

import pytest

from agent.errors import AuthExpiredError, LoopExhaustedError, ToolValidationError
from agent.llm import ModelTurn
from agent.orchestrator import CONFIRMED_PREFIX, build_system_prompt, describe_execution, execute
from agent.pending_action import parse_pending_action
from agent.time_utils import local_now
from agent.types import ToolExecution, TrustContext
from fakes import TZ, ScriptedModel, tool_turn


def _day(offset: int = 0) -> str:
    return (local_now(TZ) + timedelta(days=offset)).date().isoformat()


def _run(**kwargs):
    return asyncio.run(execute(**kwargs))


def test_create_event_runs_immediately_without_confirmation(settings, gateway):
    start = f"{_day(1)}T15:00:00"
    end = f"{_day(1)}T16:00:00"
    model = ScriptedModel(
        [
            tool_turn(("create_event", {"title": "dentist visit", "start": start, "end": end})),
            ModelTurn(text="Booked your dentist visit for tomorrow at 3pm."),
        ]
    )

    reply = _run(message="Schedule a dentist visit tomorrow at 3pm", gateway=gateway, model=model)

    assert reply.confirmation is None
    assert reply.text == "Booked your dentist visit for tomorrow at 3pm."
    assert [name for name, _ in gateway.mutations] == ["create_event"]
    call = gateway.mutations[0][1]
    assert call["fields"]["title"] == "dentist visit"
    assert call["fields"]["start"] == start
    assert call["transparency"] == "opaque"
    assert call["is_all_day"] is False
    assert "confirmation" not in reply.to_dict()


def test_create_event_without_end_asks_for_duration(settings, gateway):
    start = f"{_day(1)}T15:00:00"
    model = ScriptedModel([tool_turn(("create_event", {"title": "dentist visit", "start": start}))])

    reply = _run(message="Schedule a dentist visit tomorrow at 3pm", gateway=gateway, model=model)

    assert reply.confirmation.kind == "duration"
    assert reply.confirmation.pending.arguments == {"title": "dentist visit", "start": start}
    assert gateway.mutations == []


def test_delete_requires_confirmation_then_preconfirmed_resubmission_deletes(settings, gateway):
    meeting = gateway.add_event("Team meeting", f"{_day()}T15:00:00", f"{_day()}T16:00:00")
    model = ScriptedModel(
        [
            tool_turn(("list_events", {})),
            tool_turn(("delete_event", {"id": meeting.id, "title": "Team meeting"})),
        ]
    )

    reply = _run(message="delete my 3pm meeting", gateway=gateway, model=model)

    assert reply.confirmation is not None
    assert reply.confirmation.kind == "confirm"
    assert reply.confirmation.pending.action == "delete_event"
    assert reply.text == "Are you sure you want to remove this?"
    assert gateway.mutations == []
    assert meeting.id in gateway.events

    payload = reply.to_dict()["confirmation"]
    assert payload["type"] == "confirm"
    assert payload["destructive"] is True
    assert payload["pending"] == {"action": "delete_event", "args": {"id": meeting.id, "title": "Team meeting"}}

    idle_model = ScriptedModel([])
    confirmed = _run(message=payload["pending_action"], gateway=gateway, model=idle_model, pre_confirmed=True)

    assert confirmed.text == "Removed the event."
    assert idle_model.requests == []
    assert gateway.mutations == [("delete_event", {"event_id": meeting.id, "calendar_id": "primary"})]


def test_preconfirmed_dispatch_matches_displayed_arguments(settings, gateway):
    start = f"{_day(2)}T09:30:00"
    model = ScriptedModel([tool_turn(("create_event", {"summary": "Café ☕ sync", "start": start}))])

    reply = _run(message="coffee sync", gateway=gateway, model=model)
    assert reply.confirmation.kind == "duration"
    shown = parse_pending_action(reply.confirmation.to_dict()["pending_action"])

    confirmed = _run(
        message=reply.confirmation.to_dict()["pending_action"],
        gateway=gateway,
        model=ScriptedModel([]),
        pre_confirmed=True,
    )

    assert confirmed.executions[0].arguments == shown.arguments
    assert gateway.mutations[0][1]["fields"]["title"] == "Café ☕ sync"


def test_destructive_call_blocks_the_whole_round(settings, gateway):
    meeting = gateway.add_event("Standup", f"{_day()}T10:00:00", f"{_day()}T10:15:00")
    model = ScriptedModel(
        [
            tool_turn(
                ("create_event", {"title": "Lunch", "start": f"{_day()}T12:00:00", "end": f"{_day()}T13:00:00"}),
                ("delete_event", {"id": meeting.id}),
            )
        ]
    )

    reply = _run(message="add lunch and drop standup", gateway=gateway, model=model)

    assert reply.confirmation.kind == "confirm"
    assert reply.confirmation.pending.action == "delete_event"
    assert gateway.mutations == []


def test_duration_choice_then_amend_sets_end(settings, gateway):
    start = f"{_day(1)}T14:00:00"
    model = ScriptedModel([tool_turn(("create_event", {"title": "Haircut", "start": start}))])

    reply = _run(message="haircut tomorrow at 2", gateway=gateway, model=model)

    assert reply.confirmation.kind == "duration"
    assert reply.confirmation.options == [15, 30, 45, 60, 90, 120]
    assert reply.text == "How long should this event be?"
    assert gateway.mutations == []

    amended = _run(
        message=reply.confirmation.to_dict()["pending_action"],
        gateway=gateway,
        model=ScriptedModel([]),
        amend={"duration_minutes": 45},
    )

    assert amended.confirmation is None
    fields = gateway.mutations[0][1]["fields"]
    assert fields["end"] == f"{_day(1)}T14:45:00"
    assert amended.text == f'Created the event "Haircut" at {start}.'


def test_entity_pick_when_several_events_match(settings, gateway):
    first = gateway.add_event("Standup", f"{_day()}T09:00:00", f"{_day()}T09:15:00")
    second = gateway.add_event("Standup review", f"{_day(1)}T09:00:00", f"{_day(1)}T09:30:00")
    gateway.add_event("Lunch", f"{_day()}T12:00:00", f"{_day()}T13:00:00")
    model = ScriptedModel([tool_turn(("delete_event", {"title": "standup"}))])

    reply = _run(message="delete standup", gateway=gateway, model=model)

    assert reply.confirmation.kind == "pick"
    assert reply.text == "I need to know which event to delete. Please select one:"
    assert [item["id"] for item in reply.confirmation.candidates] == [first.id, second.id]
    assert gateway.mutations == []

    picked = _run(
        message=reply.confirmation.to_dict()["pending_action"],
        gateway=gateway,
        model=ScriptedModel([]),
        amend={"candidate_id": second.id},
    )
    assert picked.confirmation.kind == "confirm"
    assert picked.confirmation.pending.arguments["id"] == second.id
    assert gateway.mutations == []


def test_entity_pick_falls_back_to_recent_events_when_nothing_matches(settings, gateway):
    for hour in range(9, 21):
        gateway.add_event(f"Block {hour}", f"{_day(1)}T{hour:02d}:00:00", f"{_day(1)}T{hour:02d}:30:00")
    model = ScriptedModel([tool_turn(("update_event", {"id": "<event_id>", "title": "dentist"}))])

    reply = _run(message="move the dentist", gateway=gateway, model=model)

    assert reply.confirmation.kind == "pick"
    assert reply.text == "I need to know which event to update. Please select one:"
    assert len(reply.confirmation.candidates) == 10


def test_single_match_fills_id_and_asks_for_confirmation(settings, gateway):
    dentist = gateway.add_event("Dentist", f"{_day(3)}T15:00:00", f"{_day(3)}T16:00:00")
    gateway.add_event("Gym", f"{_day(3)}T18:00:00", f"{_day(3)}T19:00:00")
    model = ScriptedModel([tool_turn(("delete_event", {"id": "event_id", "title": "dentist"}))])

    reply = _run(message="cancel the dentist", gateway=gateway, model=model)

    assert reply.confirmation.kind == "confirm"
    assert reply.confirmation.pending.arguments["id"] == dentist.id


def test_validation_error_is_fed_back_once(settings, gateway):
    start = f"{_day(1)}T08:00:00"
    end = f"{_day(1)}T09:00:00"
    model = ScriptedModel(
        [
            tool_turn(("create_event", {"start": start, "end": end})),
            tool_turn(("create_event", {"title": "Run", "start": start, "end": end})),
            ModelTurn(text="Added your run."),
        ]
    )

    reply = _run(message="run tomorrow at 8", gateway=gateway, model=model)

    assert reply.text == "Added your run."
    feedback = model.requests[1][-1]
    assert feedback["role"] == "tool"
    assert feedback["results"][0]["response"] == {"ok": False, "error": "create_event:VALIDATION_REQUIRED:title"}
    assert len(gateway.mutations) == 1


def test_unparseable_time_is_fed_back_instead_of_crashing(settings, gateway):
    model = ScriptedModel(
        [
            tool_turn(("create_task", {"title": "Pay rent", "due_date": _day(1)})),
            tool_turn(("list_events", {"time_min": "next monday"})),
            ModelTurn(text="Added the task."),
        ]
    )

    reply = _run(message="add rent and show next week", gateway=gateway, model=model)

    assert reply.text == "Added the task."
    assert [name for name, _ in gateway.mutations] == ["create_event"]
    feedback = model.requests[2][-1]["results"][0]["response"]
    assert feedback == {"ok": False, "error": "list_events:VALIDATION_FORMAT:time_min"}


def test_repeated_validation_error_is_raised(settings, gateway):
    bad = tool_turn(("create_event", {"start": f"{_day(1)}T08:00:00"}))
    model = ScriptedModel([bad, bad])

    with pytest.raises(ToolValidationError) as exc_info:
        _run(message="something", gateway=gateway, model=model)

    assert exc_info.value.code == "VALIDATION_REQUIRED:title"
    assert gateway.mutations == []


def test_invalid_call_skips_valid_siblings_in_same_round(settings, gateway):
    model = ScriptedModel(
        [
            tool_turn(("create_task", {"title": "Pay rent"}), ("create_task", {})),
            ModelTurn(text="Could not add that."),
        ]
    )

    _run(message="tasks", gateway=gateway, model=model)

    results = model.requests[1][-1]["results"]
    assert results[0]["response"]["error"].startswith("skipped")
    assert results[1]["response"]["error"] == "create_task:VALIDATION_REQUIRED:title"
    assert gateway.mutations == []


def test_round_limit_raises_loop_exhausted(settings, gateway):
    model = ScriptedModel([tool_turn(("list_events", {}))], repeat_last=True)

    with pytest.raises(LoopExhaustedError) as exc_info:
        _run(message="keep looking", gateway=gateway, model=model)

    assert exc_info.value.rounds == 8
    assert len(model.requests) == 8


def test_gateway_failure_is_reported_per_call(settings, gateway):
    model = ScriptedModel(
        [
            tool_turn(("update_event", {"id": "evt-missing", "title": "Renamed"})),
            ModelTurn(text="That event no longer exists."),
        ]
    )

    reply = _run(message="rename it", gateway=gateway, model=model)

    assert reply.text == "That event no longer exists."
    assert reply.executions[0].ok is False
    assert "google_404" in reply.executions[0].error
    assert model.requests[1][-1]["results"][0]["response"]["ok"] is False


def test_expired_credential_stops_the_loop(settings, gateway):
    gateway.fail_on["list_events"] = AuthExpiredError("google_token_expired")
    model = ScriptedModel([tool_turn(("list_events", {}))])

    with pytest.raises(AuthExpiredError):
        _run(message="what's on today", gateway=gateway, model=model)


def test_empty_model_text_falls_back_to_execution_summary(settings, gateway):
    model = ScriptedModel(
        [
            tool_turn(("create_task", {"title": "buy milk", "due_date": "2026-11-01"})),
            ModelTurn(text=""),
        ]
    )

    reply = _run(message="remind me to buy milk on nov 1", gateway=gateway, model=model)

    assert reply.text == "Created task: [Task] buy milk."


def test_unparseable_confirmation_goes_back_to_the_model(settings, gateway):
    model = ScriptedModel([ModelTurn(text="Okay.")])

    reply = _run(message="yes please", gateway=gateway, model=model, pre_confirmed=True)

    assert reply.text == "Okay."
    assert model.requests[0][-1]["content"] == f"{CONFIRMED_PREFIX}yes please"


def test_amend_without_pending_action_is_rejected(settings, gateway):
    with pytest.raises(ToolValidationError):
        _run(message="hello", gateway=gateway, model=ScriptedModel([]), amend={"duration_minutes": 30})


def test_history_is_forwarded_to_the_model(settings, gateway):
    model = ScriptedModel([ModelTurn(text="Sure.")])
    history = [{"role": "user", "content": "hi"}, {"role": "model", "content": "Hello!"}, {"role": "system", "content": "x"}]

    _run(message="thanks", gateway=gateway, model=model, history=history)

    sent = model.requests[0]
    assert [item["role"] for item in sent] == ["user", "assistant", "user"]
    assert sent[-1]["content"] == "thanks"


def test_automation_context_auto_executes_trusted_deletes_only(settings, gateway):
    event = gateway.add_event("Old sync", f"{_day()}T11:00:00", f"{_day()}T11:30:00")
    trust = TrustContext.automation(auto_execute_destructive=True, timezone=TZ)

    reply = _run(
        message="remove old sync",
        gateway=gateway,
        model=ScriptedModel([tool_turn(("delete_event", {"id": event.id})), ModelTurn(text="")]),
        trust=trust,
    )
    assert reply.confirmation is None
    assert reply.text == "Removed the event."

    cleared = _run(
        message="clear today",
        gateway=gateway,
        model=ScriptedModel([tool_turn(("clear_day", {"date": _day()}))]),
        trust=trust,
    )
    assert cleared.confirmation.kind == "confirm"
    assert cleared.confirmation.message == f"Clear all timed events on {_day()}?"


def test_system_prompt_carries_timezone_and_local_time():
    now = local_now(TZ)
    prompt = build_system_prompt(TrustContext.interactive(timezone=TZ), now)

    assert TZ in prompt
    assert now.strftime("%Y-%m-%d") in prompt


def test_describe_execution_failure_text():
    execution = ToolExecution(name="delete_event", arguments={}, ok=False, error="google_500:backend")

    assert describe_execution(execution) == "Sorry, I couldn't finish that: google_500:backend"
