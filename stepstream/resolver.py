"""Map terminal session outcomes to workflow step mutations."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from pydantic import TypeAdapter, ValidationError

from .contracts import (
    ErrorOutcome,
    Outcome,
    QuestionsOutcome,
    SkipOutcome,
    SuccessOutcome,
    TimeoutOutcome,
)
from .errors import (
    InvalidAnswersError,
    InvalidOutputError,
    PersistenceError,
    StepNotFoundError,
    StepStateError,
)
from .models import (
    ClarificationAnswer,
    ClarificationAssessment,
    ClarificationStepOutput,
    StepStatus,
    normalize_question,
)
from .persistence.models import WorkflowStep
from .persistence.repository import StepRepository
from .phases import PhaseConfig

logger = logging.getLogger(__name__)

_answers_adapter: TypeAdapter = TypeAdapter(Dict[str, ClarificationAnswer])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OutcomeResolver:
    """The single writer of :class:`WorkflowStep` records for one phase.

    Only the last resolved session of each step is remembered; a repeated
    terminal outcome for that session is ignored.
    """

    def __init__(self, repository: StepRepository, phase: PhaseConfig) -> None:
        self.repository = repository
        self.phase = phase
        self._last_resolved: Dict[int, str] = {}

    # ------------------------------------------------------------------
    # Outcome mapping
    def build_patch(self, outcome: Outcome) -> Dict[str, Any]:
        """Return the step fields ``outcome`` changes.

        Raises :class:`InvalidOutputError` if a SUCCESS payload does not fit
        the phase.
        """
        if isinstance(outcome, SuccessOutcome):
            patch = dict(self.phase.normalize_success(outcome.payload))
            patch["error_message"] = None
            if self.phase.requires_confirmation:
                patch["status"] = StepStatus.WAITING_FOR_USER
            else:
                patch["status"] = StepStatus.COMPLETED
                patch["completed_at"] = _utcnow()
            return patch

        if isinstance(outcome, QuestionsOutcome):
            output = ClarificationStepOutput(
                questions=[normalize_question(q) for q in outcome.questions],
                assessment=outcome.assessment,
            )
            return {
                "status": StepStatus.WAITING_FOR_USER,
                "output_structured": output.model_dump(exclude_none=True),
                "error_message": None,
            }

        if isinstance(outcome, SkipOutcome):
            return {
                "status": StepStatus.SKIPPED,
                "output_structured": self._skip_output(outcome.reason, outcome.assessment),
                "error_message": None,
                "completed_at": _utcnow(),
            }

        if isinstance(outcome, ErrorOutcome):
            return {"error_message": outcome.message}

        if isinstance(outcome, TimeoutOutcome):
            return {
                "error_message": (
                    f"{outcome.message} (timed out after {outcome.elapsed_seconds:.0f}s)"
                )
            }

        # cancelled: the caller decides whether to offer start again
        return {}

    @staticmethod
    def _skip_output(
        reason: str, assessment: Optional[ClarificationAssessment] = None
    ) -> Dict[str, Any]:
        output = ClarificationStepOutput(
            questions=[], skipped=True, skip_reason=reason, assessment=assessment
        )
        return output.model_dump(exclude_none=True)

    async def resolve(self, step_id: int, session_id: str, outcome: Outcome) -> Outcome:
        """Persist ``outcome`` for the session and return the outcome applied.

        A SUCCESS payload the phase cannot accept is applied as an ERROR.
        """
        previous = self._last_resolved.get(step_id)
        if previous == session_id:
            logger.debug(f"Outcome for step {step_id} session {session_id} already applied")
            return outcome
        self._last_resolved[step_id] = session_id

        try:
            patch = self.build_patch(outcome)
        except InvalidOutputError as e:
            logger.error(f"{self.phase.display_name} output rejected for step {step_id}: {e}")
            outcome = ErrorOutcome(
                message=str(e),
                skip_fallback_available=outcome.skip_fallback_available,
                retry_count=outcome.retry_count,
                usage=outcome.usage,
            )
            patch = self.build_patch(outcome)

        try:
            if patch:
                await self._write(step_id, patch)
        except Exception:
            if previous is None:
                self._last_resolved.pop(step_id, None)
            else:
                self._last_resolved[step_id] = previous
            raise

        logger.info(f"Step {step_id} resolved with {outcome.type}")
        return outcome

    # ------------------------------------------------------------------
    # Control surface writes
    async def mark_started(self, step_id: int, agent_id: Optional[int] = None) -> WorkflowStep:
        patch: Dict[str, Any] = {
            "status": StepStatus.RUNNING,
            "started_at": _utcnow(),
            "completed_at": None,
            "error_message": None,
        }
        if agent_id is not None:
            patch["agent_id"] = agent_id
        return await self._write(step_id, patch)

    async def reset_for_rerun(self, step_id: int, input_text: Optional[str]) -> WorkflowStep:
        return await self._write(
            step_id,
            {
                "status": StepStatus.RUNNING,
                "input_text": input_text,
                "output_text": None,
                "output_structured": None,
                "error_message": None,
                "completed_at": None,
            },
        )

    async def submit_answers(
        self, step_id: int, answers: Mapping[str, Any]
    ) -> WorkflowStep:
        """Store the user's answers and complete the step.

        ``answers`` maps the question index (as a string) to an answer. Every
        question must be answered.
        """
        step = await self._get(step_id)
        output = ClarificationStepOutput.model_validate(step.output_structured or {})
        if step.status != StepStatus.WAITING_FOR_USER or not output.questions:
            raise StepStateError(f"Step {step_id} is not waiting for answers")

        try:
            parsed = _answers_adapter.validate_python(dict(answers))
        except ValidationError as e:
            raise InvalidAnswersError(f"Malformed answers: {e}") from e

        expected = {str(i) for i in range(len(output.questions))}
        missing = sorted(expected - set(parsed), key=int)
        if missing:
            raise InvalidAnswersError(f"Unanswered questions: {', '.join(missing)}")
        unknown = sorted(set(parsed) - expected)
        if unknown:
            raise InvalidAnswersError(f"Answers for unknown questions: {', '.join(unknown)}")
        for index, question in enumerate(output.questions):
            expected_type = question.question_type or "radio"
            if parsed[str(index)].type != expected_type:
                raise InvalidAnswersError(
                    f"Question {index} expects a {expected_type} answer"
                )

        merged = output.model_copy(update={"answers": parsed})
        return await self._write(
            step_id,
            {
                "status": StepStatus.COMPLETED,
                "output_structured": merged.model_dump(exclude_none=True),
                "completed_at": _utcnow(),
            },
        )

    async def confirm(self, step_id: int, output_text: Optional[str] = None) -> WorkflowStep:
        """Complete a step whose output was waiting for the user's approval."""
        step = await self._get(step_id)
        if step.status != StepStatus.WAITING_FOR_USER:
            raise StepStateError(f"Step {step_id} has no output awaiting confirmation")
        patch: Dict[str, Any] = {
            "status": StepStatus.COMPLETED,
            "completed_at": _utcnow(),
        }
        if output_text is not None:
            patch["output_text"] = output_text
        return await self._write(step_id, patch)

    async def skip(self, step_id: int, reason: str) -> WorkflowStep:
        return await self._write(
            step_id,
            {
                "status": StepStatus.SKIPPED,
                "output_structured": self._skip_output(
                    reason, ClarificationAssessment(score=5, reason=reason)
                ),
                "error_message": None,
                "completed_at": _utcnow(),
            },
        )

    # ------------------------------------------------------------------
    async def _get(self, step_id: int) -> WorkflowStep:
        step = await self.repository.get_step(step_id)
        if step is None:
            raise StepNotFoundError(step_id)
        return step

    async def _write(self, step_id: int, patch: Dict[str, Any]) -> WorkflowStep:
        try:
            return await self.repository.create_or_update_step(step_id, patch)
        except StepNotFoundError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to update step {step_id}: {e}") from e
