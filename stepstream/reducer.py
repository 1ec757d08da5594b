"""Fold activity entries into the renderable view of a session.

The same fold serves the live stream and the persisted activity log: the
orchestrator converts every admitted stream event into an
:class:`~stepstream.persistence.models.ActivityEntry` (stamping explicit
timestamps), stores it, and folds the stored entry. Replaying the log therefore
runs the same function over the same data.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .constants import UNKNOWN_TOOL_NAME
from .contracts import (
    ExtendedThinkingHeartbeat,
    PhaseChange,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ThinkingStart,
    ToolStart,
    ToolStop,
    ToolUpdate,
    Usage,
)
from .models import ActivityEventType
from .persistence.models import ActivityEntry

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


class ToolEvent(BaseModel):
    tool_use_id: str
    tool_name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    started_at: int
    stopped_at: Optional[int] = None


class UsageSummary(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0
    estimated_cost: float = 0.0


class ViewState(BaseModel):
    """Aggregate view of a session's streamed content."""

    text_content: str = ""
    thinking: List[str] = Field(default_factory=list)
    tool_events: List[ToolEvent] = Field(default_factory=list)
    usage_summary: Optional[UsageSummary] = None

    @property
    def thinking_content(self) -> str:
        return "\n\n".join(block for block in self.thinking if block)


class _Fold:
    """Mutable accumulator behind the public, copy-returning API."""

    def __init__(self, seed: Optional[ViewState], clock: Clock) -> None:
        self.state = seed.model_copy(deep=True) if seed else ViewState()
        self.clock = clock
        # latest tool event per tool_use_id
        self.tools: Dict[str, ToolEvent] = {
            event.tool_use_id: event for event in self.state.tool_events
        }

    def apply(self, entry: ActivityEntry) -> None:
        state = self.state
        kind = entry.event_type

        if kind == ActivityEventType.TEXT_DELTA:
            if entry.text_delta:
                state.text_content += entry.text_delta

        elif kind == ActivityEventType.THINKING_START:
            index = entry.thinking_block_index
            if index is None:
                state.thinking.append("")
            else:
                self._grow_thinking(index)

        elif kind == ActivityEventType.THINKING_DELTA:
            if not entry.text_delta:
                return
            index = entry.thinking_block_index
            if index is None:
                if not state.thinking:
                    state.thinking.append("")
                index = len(state.thinking) - 1
            else:
                self._grow_thinking(index)
            state.thinking[index] += entry.text_delta

        elif kind == ActivityEventType.TOOL_START:
            if not entry.tool_use_id:
                return
            current = self.tools.get(entry.tool_use_id)
            if current is not None and current.stopped_at is None:
                return
            event = ToolEvent(
                tool_use_id=entry.tool_use_id,
                tool_name=entry.tool_name or UNKNOWN_TOOL_NAME,
                input=dict(entry.tool_input or {}),
                started_at=entry.started_at if entry.started_at is not None else self.clock(),
            )
            state.tool_events.append(event)
            self.tools[entry.tool_use_id] = event

        elif kind == ActivityEventType.TOOL_UPDATE:
            current = self.tools.get(entry.tool_use_id) if entry.tool_use_id else None
            if current is not None and current.stopped_at is None and entry.tool_input is not None:
                current.input = dict(entry.tool_input)

        elif kind == ActivityEventType.TOOL_STOP:
            current = self.tools.get(entry.tool_use_id) if entry.tool_use_id else None
            if current is not None:
                current.stopped_at = (
                    entry.stopped_at if entry.stopped_at is not None else self.clock()
                )

        elif kind == ActivityEventType.USAGE:
            state.usage_summary = UsageSummary(
                input_tokens=entry.input_tokens or 0,
                output_tokens=entry.output_tokens or 0,
                cache_creation_input_tokens=entry.cache_creation_input_tokens or 0,
                cache_read_input_tokens=entry.cache_read_input_tokens or 0,
                estimated_cost=entry.estimated_cost or 0.0,
            )

        # phase_change, heartbeat and unknown types do not touch the view

    def _grow_thinking(self, index: int) -> None:
        while len(self.state.thinking) <= index:
            self.state.thinking.append("")


def reduce_entries(
    entries: Iterable[ActivityEntry],
    seed: Optional[ViewState] = None,
    clock: Clock = now_ms,
) -> ViewState:
    """Fold ``entries`` in order over ``seed`` (empty by default).

    ``seed`` is never modified.
    """
    fold = _Fold(seed, clock)
    for entry in entries:
        fold.apply(entry)
    return fold.state


class LiveReducer:
    """Incremental form of :func:`reduce_entries` for a streaming session."""

    def __init__(self, clock: Clock = now_ms) -> None:
        self._clock = clock
        self._fold = _Fold(None, clock)

    @property
    def view(self) -> ViewState:
        return self._fold.state.model_copy(deep=True)

    def apply(self, entry: ActivityEntry) -> ViewState:
        self._fold.apply(entry)
        return self.view

    def reset(self) -> None:
        self._fold = _Fold(None, self._clock)


def entry_from_event(
    event: StreamEvent,
    session_id: Optional[str] = None,
    clock: Clock = now_ms,
) -> Optional[ActivityEntry]:
    """Convert a stream event into the activity entry recorded for it.

    Tool start and stop times are fixed here, from the event timestamp or the
    clock, so that folding the stored entry later gives the same result.
    Returns ``None`` for events that are not recorded (handshakes and unknown
    types).
    """
    session_id = session_id or event.session_id

    if isinstance(event, TextDelta):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.TEXT_DELTA.value,
            text_delta=event.delta,
        )
    if isinstance(event, ThinkingStart):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.THINKING_START.value,
            thinking_block_index=event.block_index,
        )
    if isinstance(event, ThinkingDelta):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.THINKING_DELTA.value,
            text_delta=event.delta,
            thinking_block_index=event.block_index,
        )
    if isinstance(event, ToolStart):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.TOOL_START.value,
            tool_use_id=event.tool_use_id,
            tool_name=event.tool_name,
            tool_input=event.tool_input,
            started_at=event.timestamp if event.timestamp is not None else clock(),
        )
    if isinstance(event, ToolUpdate):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.TOOL_UPDATE.value,
            tool_use_id=event.tool_use_id,
            tool_name=event.tool_name,
            tool_input=event.tool_input,
        )
    if isinstance(event, ToolStop):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.TOOL_STOP.value,
            tool_use_id=event.tool_use_id,
            stopped_at=event.timestamp if event.timestamp is not None else clock(),
        )
    if isinstance(event, Usage):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.USAGE.value,
            input_tokens=event.input_tokens,
            output_tokens=event.output_tokens,
            cache_creation_input_tokens=event.cache_creation_input_tokens,
            cache_read_input_tokens=event.cache_read_input_tokens,
            estimated_cost=event.estimated_cost,
        )
    if isinstance(event, PhaseChange):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.PHASE_CHANGE.value,
            phase=event.phase,
        )
    if isinstance(event, ExtendedThinkingHeartbeat):
        return ActivityEntry(
            session_id=session_id,
            event_type=ActivityEventType.HEARTBEAT.value,
            elapsed_ms=event.elapsed_ms,
            max_thinking_tokens=event.max_thinking_tokens,
        )
    return None
