"""Boundary to the external agent runtime."""

from __future__ import annotations

from typing import Protocol

from .contracts import StartRequest, StartResult


class AgentRuntime(Protocol):
    """Process that runs the agent and streams its events.

    While :meth:`start` is pending the runtime publishes the session's stream
    events on the event channel topic of the request's step, in order.
    """

    async def start(self, request: StartRequest) -> StartResult:
        """Run one session to completion and return its terminal outcome."""

    async def cancel(self, session_id: str) -> None:
        """Ask the runtime to stop a running session."""
