"""stepstream: streaming session engine for multi-phase agent workflows."""

from .channels import get_channel
from .contracts import Outcome, SessionInput, StartRequest, StartResult, parse_event
from .orchestrator import OrchestratorState, SessionOrchestrator
from .persistence import get_repository
from .phases import CLARIFICATION, DISCOVERY, REFINEMENT, PhaseConfig
from .reducer import ViewState, reduce_entries
from .replay import replay_step

__version__ = "0.1.0"
__all__ = [
    "CLARIFICATION",
    "DISCOVERY",
    "REFINEMENT",
    "OrchestratorState",
    "Outcome",
    "PhaseConfig",
    "SessionInput",
    "SessionOrchestrator",
    "StartRequest",
    "StartResult",
    "ViewState",
    "get_channel",
    "get_repository",
    "parse_event",
    "reduce_entries",
    "replay_step",
]
