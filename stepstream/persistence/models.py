"""Data models for persisted step state and activity."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from ..models import StepStatus, StepType


class WorkflowStep(BaseModel):
    """One phase execution of a feature workflow."""

    id: int
    workflow_id: int
    step_type: StepType
    status: StepStatus = StepStatus.PENDING
    agent_id: Optional[int] = None
    input_text: Optional[str] = None
    output_text: Optional[str] = None
    output_structured: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ActivityEntry(BaseModel):
    """Append-only record of one observed stream event.

    ``id``, ``step_id``, ``sequence`` and ``created_at`` are assigned by the
    repository on append.
    """

    id: Optional[int] = None
    step_id: Optional[int] = None
    sequence: Optional[int] = None
    session_id: Optional[str] = None
    event_type: str
    text_delta: Optional[str] = None
    thinking_block_index: Optional[int] = None
    tool_name: Optional[str] = None
    tool_use_id: Optional[str] = None
    tool_input: Optional[dict[str, Any]] = None
    started_at: Optional[int] = None
    stopped_at: Optional[int] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None
    estimated_cost: Optional[float] = None
    elapsed_ms: Optional[int] = None
    max_thinking_tokens: Optional[int] = None
    phase: Optional[str] = None
    created_at: Optional[datetime] = None


STEP_PATCH_FIELDS = frozenset(WorkflowStep.model_fields) - {"id"}

ACTIVITY_PAYLOAD_FIELDS = tuple(
    name
    for name in ActivityEntry.model_fields
    if name not in {"id", "step_id", "sequence", "created_at"}
)


def validate_step_patch(patch: dict[str, Any]) -> dict[str, Any]:
    """Reject patches touching fields a step does not have."""
    unknown = set(patch) - STEP_PATCH_FIELDS
    if unknown:
        raise ValueError(f"Unknown workflow step fields: {sorted(unknown)}")
    return patch
