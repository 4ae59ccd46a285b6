import pytest

from agent import idempotency, siri_queue
from fakes import FakeGateway, make_settings


@pytest.fixture(autouse=True)
def _reset_memory_stores():
    idempotency._RECORDS.clear()
    siri_queue._QUEUE.clear()
    yield
    idempotency._RECORDS.clear()
    siri_queue._QUEUE.clear()


@pytest.fixture
def settings(monkeypatch):
    current = make_settings()
    for target in (
        "agent.idempotency.get_settings",
        "agent.siri_queue.get_settings",
        "agent.headless.get_settings",
        "agent.orchestrator.get_settings",
    ):
        monkeypatch.setattr(target, lambda: current)
    return current


@pytest.fixture
def gateway():
    return FakeGateway()
