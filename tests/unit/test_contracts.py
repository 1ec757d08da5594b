"""Tests for wire message parsing."""

import json

import pytest
from pydantic import ValidationError

from stepstream.contracts import (
    ErrorOutcome,
    QuestionsOutcome,
    StartResult,
    TextDelta,
    ThinkingDelta,
    ToolStart,
    UnknownEvent,
    parse_event,
    parse_outcome,
)


def test_parse_event_accepts_camel_case():
    event = parse_event(
        {
            "type": "tool_start",
            "sessionId": "s1",
            "toolUseId": "tu-1",
            "toolName": "Read",
            "toolInput": {"path": "/a"},
            "timestamp": 100,
        }
    )
    assert isinstance(event, ToolStart)
    assert event.session_id == "s1"
    assert event.tool_use_id == "tu-1"
    assert event.tool_input == {"path": "/a"}


def test_parse_event_from_json_text():
    event = parse_event(json.dumps({"type": "text_delta", "session_id": "s1", "delta": "hi"}))
    assert event == TextDelta(session_id="s1", delta="hi")


def test_to_json_uses_wire_keys():
    payload = json.loads(ThinkingDelta(session_id="s1", block_index=0, delta="x").to_json())
    assert payload == {"sessionId": "s1", "type": "thinking_delta", "blockIndex": 0, "delta": "x"}
    assert parse_event(payload) == ThinkingDelta(session_id="s1", block_index=0, delta="x")


def test_unknown_type_becomes_unknown_event():
    event = parse_event({"type": "file_discovered", "sessionId": "s1", "path": "a.py"})
    assert isinstance(event, UnknownEvent)
    assert event.type == "file_discovered"


@pytest.mark.parametrize(
    "raw",
    [
        "not json",
        {"sessionId": "s1"},
        {"type": "text_delta", "sessionId": "s1"},
        {"type": "port_ready", "sessionId": "s1"},
        {"type": "future", "delta": "no session"},
        ["type", "text_delta"],
    ],
)
def test_malformed_events_are_dropped(raw):
    assert parse_event(raw) is None


def test_parse_outcome_variants():
    outcome = parse_outcome(
        {
            "type": "QUESTIONS_FOR_USER",
            "questions": [{"header": "Scope", "question": "Which pages?", "options": []}],
            "assessment": {"score": 2, "reason": "vague"},
            "skipFallbackAvailable": False,
        }
    )
    assert isinstance(outcome, QuestionsOutcome)
    assert outcome.skip_fallback_available is False
    assert outcome.questions[0].header == "Scope"

    error = parse_outcome('{"type": "ERROR", "error": "boom"}')
    assert isinstance(error, ErrorOutcome)
    assert error.message == "boom"


def test_parse_outcome_rejects_unknown_type():
    with pytest.raises(ValidationError):
        parse_outcome({"type": "MAYBE"})


def test_start_result_parses_nested_outcome():
    result = StartResult.model_validate(
        {"sessionId": "s1", "outcome": {"type": "TIMEOUT", "elapsedSeconds": 120, "message": "too slow"}}
    )
    assert result.outcome.type == "TIMEOUT"
    assert result.outcome.elapsed_seconds == 120
