from kiln.llm.stream import UpdateEvent
from kiln.orchestrator import events
from kiln.orchestrator.events import CommandType, Status

def test_update_omits_tps_on_first_fragment():
    payload = events.update(UpdateEvent(text="Hel", token_count=1))
    assert payload == {"status": "update", "output": "Hel", "numTokens": 1}

def test_update_carries_tps_afterwards():
    payload = events.update(UpdateEvent(text="lo", token_count=2, tokens_per_second=12.5))
    assert payload["tps"] == 12.5
    assert payload["numTokens"] == 2

def test_event_constructors():
    assert events.loading("Loading model...") == {"status": "loading", "data": "Loading model..."}
    assert events.ready() == {"status": "ready"}
    assert events.start() == {"status": "start"}
    assert events.complete("done") == {"status": "complete", "output": "done"}
    assert events.error("boom") == {"status": "error", "error": "boom"}

def test_wire_names():
    assert [c.value for c in CommandType] == ["load", "generate", "interrupt", "reset"]
    assert Status("initiate") is Status.INITIATE
