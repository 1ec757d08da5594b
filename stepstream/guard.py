"""Session-identity filtering for inbound stream events."""

from __future__ import annotations

import logging
from typing import Optional

from .contracts import PortReady, StreamEvent
from .models import SessionPhase

logger = logging.getLogger(__name__)


class SessionIdentityGuard:
    """Admit only the events that belong to the currently bound session.

    A ``port_ready`` handshake may bind the guard while the orchestrator is
    loading the agent and nothing is bound yet, or rebind it to the id it
    already holds. Every other event must carry the bound session id.
    """

    def __init__(self) -> None:
        self._session_id: Optional[str] = None

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id

    def bind(self, session_id: str) -> None:
        self._session_id = session_id

    def unbind(self) -> None:
        self._session_id = None

    def admit(self, event: StreamEvent, phase: SessionPhase) -> bool:
        if isinstance(event, PortReady):
            if self._session_id is None and phase == SessionPhase.LOADING_AGENT:
                self._session_id = event.session_id
                logger.debug(f"Bound session {event.session_id} from handshake")
                return True
            if self._session_id == event.session_id:
                return True
            logger.debug(
                f"Dropping port_ready for {event.session_id} "
                f"(bound={self._session_id}, phase={phase.value})"
            )
            return False

        if self._session_id is not None and event.session_id == self._session_id:
            return True
        logger.debug(
            f"Dropping {event.type} for session {event.session_id} "
            f"(bound={self._session_id})"
        )
        return False
