"""Session orchestrator: one phase state machine per workflow phase.

An orchestrator starts a session against the agent runtime, folds the events
the runtime streams over the event channel into a :class:`ViewState`, records
each of them in the step's activity log, and hands the terminal outcome to the
:class:`OutcomeResolver`. It also exposes the control surface used by callers:
retry, skip, cancel, rerun, answer submission and confirmation.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
import uuid
from typing import Optional, Set

from pydantic import BaseModel, Field

from .channels.base import BaseEventChannel, Subscription, step_topic
from .config import StepStreamConfig, load_config
from .constants import CONTEXT_SEPARATOR
from .contracts import (
    CancelledOutcome,
    ErrorOutcome,
    ExtendedThinkingHeartbeat,
    Outcome,
    PhaseChange,
    PortReady,
    QuestionsOutcome,
    SessionInput,
    SkipOutcome,
    StartRequest,
    StreamEvent,
    SuccessOutcome,
    TimeoutOutcome,
    UnknownEvent,
)
from .errors import (
    MissingContextError,
    PersistenceError,
    RetryLimitReachedError,
    SessionActiveError,
    SkipUnavailableError,
    StepNotFoundError,
    StepStreamError,
)
from .guard import SessionIdentityGuard
from .models import (
    STREAMING_PHASES,
    ClarificationAssessment,
    ClarificationStepOutput,
    SessionPhase,
    format_clarification_context,
)
from .persistence.models import ActivityEntry, WorkflowStep
from .persistence.repository import StepRepository
from .phases import PhaseConfig
from .reducer import Clock, LiveReducer, ViewState, entry_from_event, now_ms
from .resolver import OutcomeResolver
from .runtime import AgentRuntime
from .utils.retry import is_transient_error, schedule_retry

logger = logging.getLogger(__name__)


class OrchestratorState(BaseModel):
    """Everything a presentation layer needs to render one phase."""

    phase: SessionPhase = SessionPhase.IDLE
    step_id: Optional[int] = None
    session_id: Optional[str] = None
    agent_name: Optional[str] = None
    view: ViewState = Field(default_factory=ViewState)
    outcome: Optional[Outcome] = None
    error: Optional[str] = None
    retry_count: int = 0
    consecutive_failures: int = 0
    skip_fallback_available: bool = True
    extended_thinking_elapsed_ms: Optional[int] = None
    max_thinking_tokens: Optional[int] = None

    @property
    def is_streaming(self) -> bool:
        return self.phase in STREAMING_PHASES


class _Run:
    """Bookkeeping for the one live session of an orchestrator."""

    def __init__(self, session_id: str, step_id: int) -> None:
        self.session_id = session_id
        self.step_id = step_id
        self.subscription: Optional[Subscription] = None
        self.pump: Optional[asyncio.Task] = None
        self.call: Optional[asyncio.Task] = None
        self.cancelled = asyncio.Event()
        self.cancel_reason: Optional[str] = None


def _log_call_result(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Runtime call ended with {task.exception()!r}")


class SessionOrchestrator:
    """Drive sessions of one phase (clarification, refinement or discovery)."""

    def __init__(
        self,
        phase: PhaseConfig,
        runtime: AgentRuntime,
        repository: StepRepository,
        channel: BaseEventChannel,
        config: Optional[StepStreamConfig] = None,
        resolver: Optional[OutcomeResolver] = None,
        clock: Clock = now_ms,
    ) -> None:
        self.phase = phase
        self.runtime = runtime
        self.repository = repository
        self.channel = channel
        self.config = config or load_config()
        self.resolver = resolver or OutcomeResolver(repository, phase)
        self.guard = SessionIdentityGuard()
        self.state = OrchestratorState()
        self._clock = clock
        self._reducer = LiveReducer(clock)
        self._run: Optional[_Run] = None
        self._last_input: Optional[SessionInput] = None
        self._background: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Introspection
    @property
    def view(self) -> ViewState:
        return self.state.view

    @property
    def session_id(self) -> Optional[str]:
        """Id of the live session, if any."""
        return self._run.session_id if self._run else None

    @property
    def has_live_session(self) -> bool:
        return self._run is not None

    @property
    def max_retries(self) -> int:
        return self.config.retry.max_retries

    @property
    def effective_retry_count(self) -> int:
        """Retries used so far; the runtime's own count wins when it reports one."""
        outcome = self.state.outcome
        if outcome is not None and outcome.retry_count is not None:
            return outcome.retry_count
        return self.state.consecutive_failures

    @property
    def can_retry(self) -> bool:
        return (
            self._run is None
            and self._last_input is not None
            and self.effective_retry_count < self.max_retries
        )

    @property
    def can_skip(self) -> bool:
        return (
            self._run is None
            and self.phase.supports_skip
            and self.state.skip_fallback_available
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    async def start(self, session_input: SessionInput) -> Outcome:
        """Run one session for ``session_input.step_id`` and return its outcome.

        The session id is assigned and bound before anything is awaited, and
        the channel subscription exists before the runtime is called, so no
        event of the session can be missed or misattributed.
        """
        if self._run is not None:
            raise SessionActiveError(self._run.step_id, self._run.session_id)
        self._check_context(session_input)

        run = _Run(str(uuid.uuid4()), session_input.step_id)
        self._begin(run, session_input)
        logger.info(
            f"Starting {self.phase.display_name} session {run.session_id} "
            f"for step {run.step_id}"
        )

        try:
            step = await self.resolver.mark_started(run.step_id, session_input.agent_id)
            if run.cancelled.is_set():
                return CancelledOutcome(reason=run.cancel_reason)

            run.subscription = await self.channel.subscribe(step_topic(run.step_id))
            if run.cancelled.is_set():
                await run.subscription.close()
                return CancelledOutcome(reason=run.cancel_reason)
            run.pump = asyncio.create_task(self._pump(run))

            request = self._build_request(run, session_input, step)
            outcome = await self._call_runtime(run, request)
            await self._dispose(run)
        except BaseException as e:
            await self._abort(run)
            if isinstance(e, StepStreamError) and not run.cancelled.is_set():
                self._fail(str(e))
            raise

        if run.cancelled.is_set():
            logger.info(f"Session {run.session_id} cancelled")
            return CancelledOutcome(reason=run.cancel_reason)

        self._release(run)
        try:
            applied = await self.resolver.resolve(run.step_id, run.session_id, outcome)
        except StepStreamError as e:
            self._fail(str(e))
            raise
        self._apply_outcome(applied)
        return applied

    def _check_context(self, session_input: SessionInput) -> None:
        missing = []
        if not session_input.feature_request.strip():
            missing.append("feature_request")
        if not session_input.repository_path.strip():
            missing.append("repository_path")
        if session_input.agent_id is None:
            missing.append("agent_id")
        if missing:
            raise MissingContextError(
                f"Cannot start {self.phase.display_name.lower()}: missing {', '.join(missing)}"
            )

    def _begin(self, run: _Run, session_input: SessionInput) -> None:
        if self.state.step_id != session_input.step_id:
            self.state = OrchestratorState(step_id=session_input.step_id)
        self._run = run
        self._last_input = session_input
        self.guard.bind(run.session_id)
        self._reducer.reset()

        state = self.state
        state.phase = SessionPhase.LOADING_AGENT
        state.session_id = run.session_id
        state.agent_name = session_input.agent_name
        state.view = ViewState()
        state.outcome = None
        state.error = None
        state.extended_thinking_elapsed_ms = None
        state.max_thinking_tokens = session_input.max_thinking_tokens

    def _build_request(
        self, run: _Run, session_input: SessionInput, step: WorkflowStep
    ) -> StartRequest:
        feature_request = session_input.feature_request
        if step.input_text and step.input_text.strip():
            feature_request = f"{feature_request}{CONTEXT_SEPARATOR}{step.input_text}"
        return StartRequest(
            session_id=run.session_id,
            step_id=run.step_id,
            workflow_id=session_input.workflow_id,
            step_type=self.phase.step_type,
            feature_request=feature_request,
            repository_path=session_input.repository_path,
            agent_id=session_input.agent_id,
            timeout_seconds=(
                session_input.timeout_seconds
                or self.phase.timeout_seconds
                or self.config.timeout_seconds
            ),
        )

    async def _call_runtime(self, run: _Run, request: StartRequest) -> Outcome:
        run.call = asyncio.create_task(self.runtime.start(request))
        run.call.add_done_callback(_log_call_result)
        cancel_wait = asyncio.create_task(run.cancelled.wait())
        try:
            done, _ = await asyncio.wait(
                {run.call, cancel_wait, run.pump},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancel_wait.cancel()

        if run.cancelled.is_set():
            run.call.cancel()
            return CancelledOutcome(reason=run.cancel_reason)

        if run.pump in done and not run.call.done():
            # recording an event failed; stop the session
            run.call.cancel()
            self._request_cancel(run.session_id)
            run.pump.result()

        try:
            result = await run.call
        except Exception as e:
            return self._error_outcome(e)

        if result.session_id != run.session_id:
            logger.warning(
                f"Runtime answered session {run.session_id} with id {result.session_id}"
            )
        return result.outcome

    def _error_outcome(self, error: Exception) -> ErrorOutcome:
        message = str(error) or type(error).__name__
        if is_transient_error(error):
            logger.warning(f"{self.phase.display_name} runtime call failed: {message}")
        else:
            logger.error(f"{self.phase.display_name} runtime call failed: {message}")
        return ErrorOutcome(message=message, stack=traceback.format_exc())

    async def _dispose(self, run: _Run) -> None:
        """Close the subscription and fold whatever it already delivered."""
        if run.subscription is not None:
            await run.subscription.close()
        if run.pump is not None:
            await run.pump

    async def _abort(self, run: _Run) -> None:
        if run.call is not None and not run.call.done():
            run.call.cancel()
        if run.subscription is not None:
            await run.subscription.close()
        if run.pump is not None and not run.pump.done():
            run.pump.cancel()
        self._release(run)

    def _release(self, run: _Run) -> None:
        if self._run is run:
            self._run = None
            self.guard.unbind()

    def _fail(self, message: str) -> None:
        self.state.phase = SessionPhase.ERROR
        self.state.error = message

    # ------------------------------------------------------------------
    # Event handling
    async def _pump(self, run: _Run) -> None:
        async for event in run.subscription:
            if self._run is not run or not self.guard.admit(event, self.state.phase):
                continue
            await self._observe(run, event)

    async def _observe(self, run: _Run, event: StreamEvent) -> None:
        if isinstance(event, PortReady):
            return

        state = self.state
        if isinstance(event, PhaseChange):
            self._change_phase(event.phase)
        elif isinstance(event, ExtendedThinkingHeartbeat):
            state.phase = SessionPhase.EXECUTING_EXTENDED_THINKING
            state.extended_thinking_elapsed_ms = event.elapsed_ms
            if event.max_thinking_tokens is not None:
                state.max_thinking_tokens = event.max_thinking_tokens
        elif state.phase == SessionPhase.LOADING_AGENT and not isinstance(event, UnknownEvent):
            state.phase = SessionPhase.EXECUTING

        entry = entry_from_event(event, run.session_id, self._clock)
        if entry is None:
            return
        stored = await self._record(run.step_id, entry)
        if self._run is run:
            state.view = self._reducer.apply(stored)

    def _change_phase(self, value: str) -> None:
        try:
            phase = SessionPhase(value)
        except ValueError:
            logger.debug(f"Ignoring unknown phase {value!r}")
            return
        if phase in STREAMING_PHASES:
            self.state.phase = phase
        else:
            # terminal phases come from the outcome
            logger.debug(f"Ignoring streamed phase {value!r}")

    async def _record(self, step_id: int, entry: ActivityEntry) -> ActivityEntry:
        try:
            return await self.repository.append_activity(step_id, entry)
        except StepNotFoundError:
            raise
        except Exception as e:
            raise PersistenceError(
                f"Failed to record {entry.event_type} for step {step_id}: {e}"
            ) from e

    def _apply_outcome(self, outcome: Outcome) -> None:
        state = self.state
        state.outcome = outcome
        if outcome.skip_fallback_available is not None:
            state.skip_fallback_available = outcome.skip_fallback_available

        if isinstance(outcome, SuccessOutcome):
            state.phase = (
                SessionPhase.WAITING_FOR_USER
                if self.phase.requires_confirmation
                else SessionPhase.COMPLETE
            )
            state.consecutive_failures = 0
        elif isinstance(outcome, QuestionsOutcome):
            state.phase = SessionPhase.WAITING_FOR_USER
            state.consecutive_failures = 0
        elif isinstance(outcome, SkipOutcome):
            state.phase = SessionPhase.COMPLETE
            state.consecutive_failures = 0
        elif isinstance(outcome, ErrorOutcome):
            state.phase = SessionPhase.ERROR
            state.error = outcome.message
            state.consecutive_failures += 1
        elif isinstance(outcome, TimeoutOutcome):
            state.phase = SessionPhase.TIMEOUT
            state.error = outcome.message
            state.consecutive_failures += 1
        elif isinstance(outcome, CancelledOutcome):
            state.phase = SessionPhase.CANCELLED

        logger.info(
            f"{self.phase.display_name} session {state.session_id} ended with "
            f"{outcome.type} (phase={state.phase.value})"
        )

    # ------------------------------------------------------------------
    # Control surface
    async def retry(self) -> Outcome:
        """Start the last session again after the backoff delay.

        If the new session cannot be started, the previous outcome is restored
        and the error propagates.
        """
        if self._run is not None:
            raise SessionActiveError(self._run.step_id, self._run.session_id)
        if self._last_input is None:
            raise MissingContextError("No previous session to retry")
        if self.effective_retry_count >= self.max_retries:
            raise RetryLimitReachedError(self.max_retries)

        previous_outcome = self.state.outcome
        previous_phase = self.state.phase
        previous_error = self.state.error
        self.state.retry_count += 1
        attempt = self.state.retry_count
        logger.info(
            f"Retrying {self.phase.display_name.lower()} for step "
            f"{self._last_input.step_id} (attempt {attempt}/{self.max_retries})"
        )
        await schedule_retry(
            attempt,
            self.config.retry.base_delay_seconds,
            self.config.retry.jitter_seconds,
        )
        try:
            return await self.start(self._last_input)
        except Exception:
            self.state.outcome = previous_outcome
            self.state.phase = previous_phase
            self.state.error = previous_error
            raise

    async def skip(
        self, step_id: Optional[int] = None, reason: Optional[str] = None
    ) -> WorkflowStep:
        """Mark the step skipped without contacting the runtime."""
        if not self.can_skip:
            raise SkipUnavailableError(
                f"Skipping {self.phase.display_name.lower()} is not available"
            )
        step_id = step_id if step_id is not None else self.state.step_id
        if step_id is None:
            raise MissingContextError("No step to skip")

        reason = reason or self.phase.skip_reason
        step = await self.resolver.skip(step_id, reason)

        self.guard.unbind()
        if self.state.step_id != step_id:
            self.state = OrchestratorState(step_id=step_id)
        self.state.phase = SessionPhase.COMPLETE
        self.state.session_id = None
        self.state.error = None
        self.state.outcome = SkipOutcome(
            reason=reason, assessment=ClarificationAssessment(score=5, reason=reason)
        )
        logger.info(f"Step {step_id} skipped: {reason}")
        return step

    async def cancel(self, reason: Optional[str] = None) -> None:
        """Cancel the live session and return to idle immediately.

        The runtime is asked to stop in the background; its acknowledgement
        is not awaited. Events of the cancelled session that still arrive are
        dropped.
        """
        run = self._run
        if run is None:
            logger.debug("Cancel requested with no live session")
            return

        run.cancel_reason = reason
        run.cancelled.set()
        self._release(run)
        self._request_cancel(run.session_id)

        self._reducer.reset()
        state = self.state
        state.phase = SessionPhase.IDLE
        state.session_id = None
        state.view = ViewState()
        state.outcome = None
        state.error = None
        state.extended_thinking_elapsed_ms = None
        logger.info(f"Cancelled session {run.session_id} for step {run.step_id}")

        if run.subscription is not None:
            await run.subscription.close()

    def _request_cancel(self, session_id: str) -> None:
        task = asyncio.create_task(self._send_cancel(session_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_cancel(self, session_id: str) -> None:
        try:
            await self.runtime.cancel(session_id)
        except Exception as e:
            logger.warning(f"Cancellation request for session {session_id} failed: {e}")

    async def rerun(self, session_input: SessionInput, more: bool = False) -> Outcome:
        """Reset the step and run it again.

        With ``more`` the previous answers are carried into the new session as
        context so the agent can ask follow-up questions.
        """
        if self._run is not None:
            raise SessionActiveError(self._run.step_id, self._run.session_id)
        step = await self.repository.get_step(session_input.step_id)
        if step is None:
            raise StepNotFoundError(session_input.step_id)

        input_text = None
        if more:
            answered = format_clarification_context(
                ClarificationStepOutput.model_validate(step.output_structured or {})
            )
            parts = [p for p in (step.input_text, answered) if p]
            input_text = "\n\n".join(parts) or None

        await self.resolver.reset_for_rerun(step.id, input_text)
        if self.state.step_id == step.id:
            self.state.retry_count = 0
            self.state.consecutive_failures = 0
        return await self.start(session_input)

    async def submit_answers(
        self, answers: dict, step_id: Optional[int] = None
    ) -> WorkflowStep:
        """Record answers to the step's clarification questions and complete it."""
        if self._run is not None:
            raise SessionActiveError(self._run.step_id, self._run.session_id)
        step_id = step_id if step_id is not None else self.state.step_id
        if step_id is None:
            raise MissingContextError("No step to answer")
        step = await self.resolver.submit_answers(step_id, answers)
        if self.state.step_id == step_id:
            self.state.phase = SessionPhase.COMPLETE
        return step

    async def confirm(
        self, output_text: Optional[str] = None, step_id: Optional[int] = None
    ) -> WorkflowStep:
        """Accept (optionally edited) output awaiting the user's approval."""
        if self._run is not None:
            raise SessionActiveError(self._run.step_id, self._run.session_id)
        step_id = step_id if step_id is not None else self.state.step_id
        if step_id is None:
            raise MissingContextError("No step to confirm")
        step = await self.resolver.confirm(step_id, output_text)
        if self.state.step_id == step_id:
            self.state.phase = SessionPhase.COMPLETE
        return step
