"""Domain enums and clarification payload models."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class StepType(str, Enum):
    """Kinds of workflow steps."""

    CLARIFICATION = "clarification"
    REFINEMENT = "refinement"
    DISCOVERY = "discovery"
    PLANNING = "planning"
    IMPLEMENTATION = "implementation"


class StepStatus(str, Enum):
    """Lifecycle status of a persisted workflow step."""

    PENDING = "pending"
    RUNNING = "running"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SessionPhase(str, Enum):
    """Phase of a session orchestrator."""

    IDLE = "idle"
    LOADING_AGENT = "loading_agent"
    EXECUTING = "executing"
    EXECUTING_EXTENDED_THINKING = "executing_extended_thinking"
    PROCESSING_RESPONSE = "processing_response"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETE = "complete"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


STREAMING_PHASES = frozenset(
    {
        SessionPhase.LOADING_AGENT,
        SessionPhase.EXECUTING,
        SessionPhase.EXECUTING_EXTENDED_THINKING,
        SessionPhase.PROCESSING_RESPONSE,
    }
)

TERMINAL_PHASES = frozenset(
    {
        SessionPhase.WAITING_FOR_USER,
        SessionPhase.COMPLETE,
        SessionPhase.ERROR,
        SessionPhase.TIMEOUT,
        SessionPhase.CANCELLED,
    }
)


class ActivityEventType(str, Enum):
    """Event types stored in the activity log."""

    TEXT_DELTA = "text_delta"
    THINKING_DELTA = "thinking_delta"
    THINKING_START = "thinking_start"
    TOOL_START = "tool_start"
    TOOL_UPDATE = "tool_update"
    TOOL_STOP = "tool_stop"
    USAGE = "usage"
    PHASE_CHANGE = "phase_change"
    HEARTBEAT = "heartbeat"


QuestionType = Literal["radio", "checkbox", "text"]


class ClarificationOption(BaseModel):
    """A selectable option for a clarification question."""

    label: str = Field(min_length=1)
    description: str = ""


class ClarificationQuestion(BaseModel):
    """A question the clarification agent asks the user."""

    header: str
    question: str
    options: List[ClarificationOption] = Field(default_factory=list)
    question_type: Optional[QuestionType] = None
    allow_other: Optional[bool] = None


class ClarificationAssessment(BaseModel):
    """Clarity score (1-5) the agent assigned to the feature request."""

    score: int = Field(ge=1, le=5)
    reason: str


class RadioAnswer(BaseModel):
    type: Literal["radio"] = "radio"
    selected: str
    other: Optional[str] = None


class CheckboxAnswer(BaseModel):
    type: Literal["checkbox"] = "checkbox"
    selected: List[str] = Field(default_factory=list)
    other: Optional[str] = None


class TextAnswer(BaseModel):
    type: Literal["text"] = "text"
    text: str


ClarificationAnswer = Annotated[
    Union[RadioAnswer, CheckboxAnswer, TextAnswer], Field(discriminator="type")
]


class ClarificationStepOutput(BaseModel):
    """Shape of ``output_structured`` for clarification steps."""

    questions: List[ClarificationQuestion] = Field(default_factory=list)
    answers: Optional[Dict[str, ClarificationAnswer]] = None
    assessment: Optional[ClarificationAssessment] = None
    raw_output: Optional[str] = None
    skipped: Optional[bool] = None
    skip_reason: Optional[str] = None


def normalize_question(question: ClarificationQuestion) -> ClarificationQuestion:
    """Fill in the question type (default radio) and the allow-other flag."""
    question_type = question.question_type or "radio"
    return question.model_copy(
        update={
            "question_type": question_type,
            "allow_other": question_type != "text",
        }
    )


def format_answer_text(answer: RadioAnswer | CheckboxAnswer | TextAnswer) -> str:
    """Render one answer the way it is shown in summaries and prompts."""
    if isinstance(answer, RadioAnswer):
        if answer.other:
            return f"Other: {answer.other}"
        return answer.selected
    if isinstance(answer, CheckboxAnswer):
        parts = list(answer.selected)
        if answer.other:
            parts.append(f"Other: {answer.other}")
        return ", ".join(parts)
    return answer.text


def format_clarification_context(output: ClarificationStepOutput | None) -> str | None:
    """Format answered questions as context for a follow-up clarification run.

    Returns ``None`` when there are no questions or no answers.
    """
    if output is None or not output.questions or not output.answers:
        return None

    lines: List[str] = []
    for index, question in enumerate(output.questions):
        answer = output.answers.get(str(index))
        if answer is None:
            continue
        answer_text = format_answer_text(answer)
        lines.append(f"{index + 1}. {question.header}")
        lines.append(f"Question: {question.question}")

        description = None
        if isinstance(answer, RadioAnswer):
            description = next(
                (o.description for o in question.options if o.label == answer.selected),
                None,
            )
        if description:
            lines.append(f"Answer: {answer_text} - {description}")
        else:
            lines.append(f"Answer: {answer_text}")
        lines.append("")

    return "\n".join(lines).strip() or None
