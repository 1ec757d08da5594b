"""Message contracts exchanged with the agent runtime.

Stream events arrive over the event channel, outcomes are returned by the
runtime's start call. Both are tagged unions keyed on ``type``. Wire payloads
use camelCase keys; the models accept either spelling.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)
from pydantic.alias_generators import to_camel

from .models import ClarificationAssessment, ClarificationQuestion, StepType

logger = logging.getLogger(__name__)


class WireModel(BaseModel):
    """Base model accepting snake_case or camelCase keys."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_json(self) -> str:
        """Serialize to JSON using wire (camelCase) keys."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


# ---------------------------------------------------------------------------
# Stream events


class StreamEventBase(WireModel):
    session_id: str
    timestamp: Optional[int] = None
    workflow_id: Optional[int] = None


class PortReady(StreamEventBase):
    """Handshake carrying the first authoritative session id."""

    type: Literal["port_ready"] = "port_ready"
    timestamp: int


class PhaseChange(StreamEventBase):
    type: Literal["phase_change"] = "phase_change"
    phase: str


class TextDelta(StreamEventBase):
    type: Literal["text_delta"] = "text_delta"
    delta: str


class ThinkingStart(StreamEventBase):
    type: Literal["thinking_start"] = "thinking_start"
    block_index: int


class ThinkingDelta(StreamEventBase):
    type: Literal["thinking_delta"] = "thinking_delta"
    block_index: Optional[int] = None
    delta: str


class ToolStart(StreamEventBase):
    type: Literal["tool_start"] = "tool_start"
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None


class ToolUpdate(StreamEventBase):
    type: Literal["tool_update"] = "tool_update"
    tool_use_id: Optional[str] = None
    tool_name: Optional[str] = None
    tool_input: Optional[Dict[str, Any]] = None


class ToolStop(StreamEventBase):
    type: Literal["tool_stop"] = "tool_stop"
    tool_use_id: Optional[str] = None


class ExtendedThinkingHeartbeat(StreamEventBase):
    """Periodic progress signal while live text streaming is suspended."""

    type: Literal["extended_thinking_heartbeat"] = "extended_thinking_heartbeat"
    elapsed_ms: int
    max_thinking_tokens: Optional[int] = None
    estimated_progress: Optional[float] = None


class Usage(StreamEventBase):
    type: Literal["usage"] = "usage"
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None
    estimated_cost: Optional[float] = None


class UnknownEvent(StreamEventBase):
    """Event with a type this version does not know. Folds to a no-op."""

    model_config = ConfigDict(extra="allow")

    type: str


KnownStreamEvent = Annotated[
    Union[
        PortReady,
        PhaseChange,
        TextDelta,
        ThinkingStart,
        ThinkingDelta,
        ToolStart,
        ToolUpdate,
        ToolStop,
        ExtendedThinkingHeartbeat,
        Usage,
    ],
    Field(discriminator="type"),
]

StreamEvent = Union[
    PortReady,
    PhaseChange,
    TextDelta,
    ThinkingStart,
    ThinkingDelta,
    ToolStart,
    ToolUpdate,
    ToolStop,
    ExtendedThinkingHeartbeat,
    Usage,
    UnknownEvent,
]

_event_adapter: TypeAdapter = TypeAdapter(KnownStreamEvent)

KNOWN_EVENT_TYPES = frozenset(
    {
        "port_ready",
        "phase_change",
        "text_delta",
        "thinking_start",
        "thinking_delta",
        "tool_start",
        "tool_update",
        "tool_stop",
        "extended_thinking_heartbeat",
        "usage",
    }
)


def parse_event(data: Union[str, bytes, Dict[str, Any]]) -> Optional[StreamEvent]:
    """Parse a raw channel message into a stream event.

    Returns ``None`` for malformed messages (bad JSON, missing type, or missing
    required fields). Unrecognised types become :class:`UnknownEvent`.
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            logger.debug(f"Dropping undecodable stream message: {e}")
            return None

    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        logger.debug(f"Dropping stream message without a type: {data!r}")
        return None

    try:
        if data["type"] in KNOWN_EVENT_TYPES:
            return _event_adapter.validate_python(data)
        return UnknownEvent.model_validate(data)
    except ValidationError as e:
        logger.debug(f"Dropping malformed {data['type']} message: {e}")
        return None


# ---------------------------------------------------------------------------
# Outcomes


class UsageStats(WireModel):
    """Token usage and cost reported with an outcome."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    estimated_cost: float = 0.0
    duration_ms: Optional[int] = None


class OutcomeBase(WireModel):
    skip_fallback_available: Optional[bool] = None
    retry_count: Optional[int] = None
    usage: Optional[UsageStats] = None


class SuccessOutcome(OutcomeBase):
    type: Literal["SUCCESS"] = "SUCCESS"
    payload: Dict[str, Any] = Field(default_factory=dict)


class QuestionsOutcome(OutcomeBase):
    type: Literal["QUESTIONS_FOR_USER"] = "QUESTIONS_FOR_USER"
    questions: List[ClarificationQuestion]
    assessment: Optional[ClarificationAssessment] = None


class SkipOutcome(OutcomeBase):
    type: Literal["SKIP_CLARIFICATION"] = "SKIP_CLARIFICATION"
    reason: str
    assessment: Optional[ClarificationAssessment] = None


class ErrorOutcome(OutcomeBase):
    type: Literal["ERROR"] = "ERROR"
    message: str = Field(validation_alias=AliasChoices("message", "error"))
    stack: Optional[str] = None


class TimeoutOutcome(OutcomeBase):
    type: Literal["TIMEOUT"] = "TIMEOUT"
    elapsed_seconds: float
    message: str = Field(validation_alias=AliasChoices("message", "error"))


class CancelledOutcome(OutcomeBase):
    type: Literal["CANCELLED"] = "CANCELLED"
    reason: Optional[str] = None


Outcome = Annotated[
    Union[
        SuccessOutcome,
        QuestionsOutcome,
        SkipOutcome,
        ErrorOutcome,
        TimeoutOutcome,
        CancelledOutcome,
    ],
    Field(discriminator="type"),
]

FAILURE_OUTCOMES = (ErrorOutcome, TimeoutOutcome)

_outcome_adapter: TypeAdapter = TypeAdapter(Outcome)


def parse_outcome(data: Union[str, Dict[str, Any]]) -> Outcome:
    """Validate a raw outcome payload. Raises ``ValidationError`` if invalid."""
    if isinstance(data, str):
        return _outcome_adapter.validate_json(data)
    return _outcome_adapter.validate_python(data)


# ---------------------------------------------------------------------------
# Start call


class SessionInput(WireModel):
    """What a caller provides to start a phase session for a step."""

    step_id: int
    workflow_id: int
    feature_request: str
    repository_path: str
    agent_id: Optional[int] = None
    agent_name: Optional[str] = None
    max_thinking_tokens: Optional[int] = None
    timeout_seconds: Optional[int] = None


class StartRequest(WireModel):
    """Request sent to the agent runtime to start one session."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    step_id: int
    workflow_id: int
    step_type: StepType
    feature_request: str
    repository_path: str
    agent_id: Optional[int] = None
    timeout_seconds: int


class StartResult(WireModel):
    """Terminal response of the agent runtime's start call."""

    session_id: str
    outcome: Outcome
