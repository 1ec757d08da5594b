"""Exceptions raised by the stepstream session engine."""

from __future__ import annotations


class StepStreamError(Exception):
    """Base class for stepstream errors."""


class SessionActiveError(StepStreamError):
    """Raised when an operation needs the step to have no live session."""

    def __init__(self, step_id: int | None, session_id: str | None) -> None:
        self.step_id = step_id
        self.session_id = session_id
        super().__init__(
            f"Step {step_id} already has a live session ({session_id})"
        )


class MissingContextError(StepStreamError):
    """Raised when a session is started without its required context."""


class RetryLimitReachedError(StepStreamError):
    """Raised when retry is requested after the retry budget is spent."""

    def __init__(self, max_retries: int) -> None:
        self.max_retries = max_retries
        super().__init__(
            f"Maximum retry attempts ({max_retries}) reached. "
            "Skip the step or try again later."
        )


class SkipUnavailableError(StepStreamError):
    """Raised when skip is requested but no skip fallback is offered."""


class StepNotFoundError(StepStreamError):
    """Raised when a workflow step does not exist in the repository."""

    def __init__(self, step_id: int) -> None:
        self.step_id = step_id
        super().__init__(f"Workflow step {step_id} not found")


class PersistenceError(StepStreamError):
    """Raised when writing step state or activity to the repository fails."""


class InvalidAnswersError(StepStreamError, ValueError):
    """Raised when submitted clarification answers do not match the questions."""


class InvalidOutputError(StepStreamError, ValueError):
    """Raised when a SUCCESS payload lacks what its phase requires."""


class StepStateError(StepStreamError):
    """Raised when a step is not in the status an operation needs."""
