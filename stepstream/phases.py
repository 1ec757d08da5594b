"""Per-phase parameters for the session orchestrator."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .contracts import WireModel
from .errors import InvalidOutputError
from .models import StepType


class RefinementOutput(WireModel):
    refined_text: str


class DiscoveredFile(WireModel):
    action: Literal["create", "modify", "delete", "reference"]
    file_path: str = Field(min_length=1)
    priority: Literal["high", "medium", "low"]
    relevance_explanation: str = Field(min_length=1)
    role: str = Field(min_length=1)


class DiscoveryOutput(WireModel):
    discovered_files: List[DiscoveredFile] = Field(default_factory=list)
    summary: str = ""


SuccessNormalizer = Callable[[Dict[str, Any]], Dict[str, Any]]


def normalize_generic_success(payload: Dict[str, Any]) -> Dict[str, Any]:
    """``text`` becomes the output text, everything else structured output."""
    rest = {k: v for k, v in payload.items() if k != "text"}
    patch: Dict[str, Any] = {}
    if isinstance(payload.get("text"), str):
        patch["output_text"] = payload["text"]
    if rest:
        patch["output_structured"] = rest
    return patch


def normalize_refinement_success(payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        output = RefinementOutput.model_validate(payload)
    except ValidationError as e:
        raise InvalidOutputError(
            'Agent output missing required "refined_text" field'
        ) from e
    if not output.refined_text.strip():
        raise InvalidOutputError('Agent output "refined_text" field is empty')
    return {"output_text": output.refined_text}


def normalize_discovery_success(payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        output = DiscoveryOutput.model_validate(payload)
    except ValidationError as e:
        raise InvalidOutputError(f"Invalid discovery output: {e}") from e
    files = [f.model_dump() for f in output.discovered_files]
    return {
        "output_structured": {
            "discovered_files": files,
            "summary": output.summary,
            "total_count": len(files),
        }
    }


class PhaseConfig(BaseModel):
    """What differs between the clarification, refinement and discovery runs."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    step_type: StepType
    display_name: str
    requires_confirmation: bool = False
    supports_skip: bool = True
    skip_reason: str
    timeout_seconds: Optional[int] = None
    normalize_success: SuccessNormalizer = normalize_generic_success


CLARIFICATION = PhaseConfig(
    step_type=StepType.CLARIFICATION,
    display_name="Clarification",
    skip_reason="User skipped clarification",
)

REFINEMENT = PhaseConfig(
    step_type=StepType.REFINEMENT,
    display_name="Refinement",
    requires_confirmation=True,
    skip_reason="User skipped refinement",
    normalize_success=normalize_refinement_success,
)

DISCOVERY = PhaseConfig(
    step_type=StepType.DISCOVERY,
    display_name="File discovery",
    skip_reason="User skipped file discovery",
    normalize_success=normalize_discovery_success,
)

PHASES: Dict[StepType, PhaseConfig] = {
    phase.step_type: phase for phase in (CLARIFICATION, REFINEMENT, DISCOVERY)
}
