"""Clarification session example using stepstream.

Runs one clarification session against a demo runtime that streams a few
events and asks a question, answers it, then rebuilds the streamed view from
the activity log.
"""

import asyncio

from stepstream import CLARIFICATION, SessionInput, SessionOrchestrator, StartResult
from stepstream import get_channel, get_repository, replay_step
from stepstream.channels import step_topic
from stepstream.contracts import QuestionsOutcome, parse_event
from stepstream.models import ClarificationOption, ClarificationQuestion, StepType


class DemoRuntime:
    """Stands in for the agent runtime; no model is called."""

    def __init__(self, channel):
        self.channel = channel

    async def start(self, request):
        topic = step_topic(request.step_id)
        for raw in [
            {"type": "port_ready"},
            {"type": "phase_change", "phase": "executing"},
            {"type": "thinking_delta", "delta": "The request does not say where the toggle lives."},
            {"type": "tool_start", "toolUseId": "tu-1", "toolName": "Read", "toolInput": {"path": "settings.py"}},
            {"type": "tool_stop", "toolUseId": "tu-1"},
            {"type": "text_delta", "delta": "One question before refining."},
        ]:
            await self.channel.publish(topic, parse_event({"sessionId": request.session_id, **raw}))
            await asyncio.sleep(0.05)

        question = ClarificationQuestion(
            header="Placement",
            question="Where should the dark mode toggle go?",
            options=[
                ClarificationOption(label="Settings page"),
                ClarificationOption(label="Header menu"),
            ],
            question_type="radio",
        )
        return StartResult(
            session_id=request.session_id,
            outcome=QuestionsOutcome(questions=[question]),
        )

    async def cancel(self, session_id):
        print(f"Cancel requested for {session_id}")


async def main():
    print("Running a clarification session with stepstream...")
    channel = get_channel("inmemory")
    repository = get_repository()
    step = await repository.create_step(1, StepType.CLARIFICATION, agent_id=1)

    orchestrator = SessionOrchestrator(CLARIFICATION, DemoRuntime(channel), repository, channel)
    session = SessionInput(
        step_id=step.id,
        workflow_id=1,
        feature_request="Add dark mode to the settings page",
        repository_path=".",
        agent_id=1,
        agent_name="clarifier",
    )

    outcome = await orchestrator.start(session)
    print(f"Outcome: {outcome.type}, phase: {orchestrator.state.phase.value}")
    print(f"Streamed text: {orchestrator.view.text_content}")

    await orchestrator.submit_answers({"0": {"type": "radio", "selected": "Settings page"}})
    stored = await repository.get_step(step.id)
    print(f"Step status after answering: {stored.status.value}")

    replayed = await replay_step(repository, step.id)
    print(f"Replay matches live view: {replayed == orchestrator.view}")


if __name__ == "__main__":
    asyncio.run(main())
