"""Shared fixtures: a scripted agent runtime and in-memory collaborators."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import pytest

from stepstream.channels.base import BaseEventChannel, step_topic
from stepstream.channels.inmemory import InMemoryEventChannel
from stepstream.config import RetryConfig, StepStreamConfig
from stepstream.contracts import (
    ErrorOutcome,
    Outcome,
    SessionInput,
    StartRequest,
    StartResult,
    SuccessOutcome,
    parse_event,
)
from stepstream.models import StepType
from stepstream.orchestrator import SessionOrchestrator
from stepstream.persistence.inmemory import InMemoryStepRepository
from stepstream.phases import CLARIFICATION, PhaseConfig


@dataclass
class Script:
    """What the runtime does for one start call."""

    events: List[Dict[str, Any]] = field(default_factory=list)
    outcome: Optional[Outcome] = None
    error: Optional[Exception] = None
    hold: bool = False


class ScriptedRuntime:
    """Agent runtime double that replays scripted events and outcomes.

    Events are dicts without a session id; the id of the request is filled in
    before publishing on the step's topic.
    """

    def __init__(self, channel: BaseEventChannel) -> None:
        self.channel = channel
        self.scripts: List[Script] = []
        self.requests: List[StartRequest] = []
        self.cancelled: List[str] = []
        self.release = asyncio.Event()
        self.holding = asyncio.Event()

    def script(self, events=(), outcome=None, error=None, hold=False) -> "ScriptedRuntime":
        self.scripts.append(
            Script(events=list(events), outcome=outcome, error=error, hold=hold)
        )
        return self

    async def start(self, request: StartRequest) -> StartResult:
        self.requests.append(request)
        script = self.scripts.pop(0) if self.scripts else Script(outcome=SuccessOutcome())
        topic = step_topic(request.step_id)
        for raw in script.events:
            event = parse_event({"session_id": request.session_id, **raw})
            await self.channel.publish(topic, event)
            await asyncio.sleep(0)
        if script.hold:
            self.holding.set()
            await self.release.wait()
        if script.error is not None:
            raise script.error
        return StartResult(
            session_id=request.session_id,
            outcome=script.outcome or ErrorOutcome(message="no outcome scripted"),
        )

    async def cancel(self, session_id: str) -> None:
        self.cancelled.append(session_id)


@pytest.fixture
def channel() -> InMemoryEventChannel:
    return InMemoryEventChannel()


@pytest.fixture
def repository() -> InMemoryStepRepository:
    return InMemoryStepRepository()


@pytest.fixture
def runtime(channel) -> ScriptedRuntime:
    return ScriptedRuntime(channel)


@pytest.fixture
def config() -> StepStreamConfig:
    return StepStreamConfig(retry=RetryConfig(max_retries=3, base_delay_seconds=0))


@pytest.fixture
def make_orchestrator(runtime, repository, channel, config):
    def _make(phase: PhaseConfig = CLARIFICATION, **kwargs) -> SessionOrchestrator:
        return SessionOrchestrator(
            phase,
            runtime,
            kwargs.pop("repository", repository),
            channel,
            config=config,
            **kwargs,
        )

    return _make


@pytest.fixture
def make_step(repository):
    async def _make(step_type: StepType = StepType.CLARIFICATION, **kwargs):
        return await repository.create_step(1, step_type, agent_id=3, **kwargs)

    return _make


def _session_input(step_id: int, **overrides) -> SessionInput:
    data = {
        "step_id": step_id,
        "workflow_id": 1,
        "feature_request": "Add dark mode to the settings page",
        "repository_path": "/repos/app",
        "agent_id": 3,
        "agent_name": "clarifier",
    }
    data.update(overrides)
    return SessionInput(**data)


@pytest.fixture
def make_input():
    return _session_input
