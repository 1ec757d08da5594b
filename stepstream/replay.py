"""Rebuild a step's view from its persisted activity log."""

from __future__ import annotations

import logging
from typing import Iterable, List

from .errors import StepNotFoundError
from .persistence.models import ActivityEntry
from .persistence.repository import StepRepository
from .reducer import Clock, ViewState, now_ms, reduce_entries

logger = logging.getLogger(__name__)


def _ordered(entries: Iterable[ActivityEntry]) -> List[ActivityEntry]:
    return sorted(
        entries,
        key=lambda e: (e.sequence if e.sequence is not None else 0, e.id or 0),
    )


def replay_entries(entries: Iterable[ActivityEntry], clock: Clock = now_ms) -> ViewState:
    """Fold entries in log order, whatever order they are given in."""
    return reduce_entries(_ordered(entries), clock=clock)


def latest_session_entries(entries: Iterable[ActivityEntry]) -> List[ActivityEntry]:
    """Entries of the session that recorded the last entry of the log."""
    ordered = _ordered(entries)
    if not ordered:
        return []
    session_id = ordered[-1].session_id
    return [e for e in ordered if e.session_id == session_id]


async def replay_step(
    repository: StepRepository, step_id: int, clock: Clock = now_ms
) -> ViewState:
    """Return the view the most recent session on ``step_id`` ended with.

    The log keeps every session of the step; earlier ones (failed attempts,
    cancelled runs) are not part of the view. Does not contact the agent
    runtime.
    """
    if await repository.get_step(step_id) is None:
        raise StepNotFoundError(step_id)
    entries = latest_session_entries(await repository.list_activity(step_id))
    logger.debug(f"Replaying {len(entries)} activity entries for step {step_id}")
    return replay_entries(entries, clock=clock)
