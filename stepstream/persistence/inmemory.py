"""In-memory implementation of the step repository."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List

from ..errors import StepNotFoundError
from ..models import StepStatus, StepType
from .models import ActivityEntry, WorkflowStep, validate_step_patch
from .repository import StepRepository


class InMemoryStepRepository(StepRepository):
    """Store steps and activity in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._steps: Dict[int, WorkflowStep] = {}
        self._activity: Dict[int, List[ActivityEntry]] = {}
        self._step_id = 0
        self._activity_id = 0

    # ------------------------------------------------------------------
    async def create_step(
        self,
        workflow_id: int,
        step_type: StepType,
        *,
        agent_id: int | None = None,
        input_text: str | None = None,
        status: StepStatus = StepStatus.PENDING,
    ) -> WorkflowStep:
        self._step_id += 1
        step = WorkflowStep(
            id=self._step_id,
            workflow_id=workflow_id,
            step_type=step_type,
            status=status,
            agent_id=agent_id,
            input_text=input_text,
        )
        self._steps[step.id] = step
        return step.model_copy(deep=True)

    async def get_step(self, step_id: int) -> WorkflowStep | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, workflow_id: int) -> list[WorkflowStep]:
        return [
            step.model_copy(deep=True)
            for step_id, step in sorted(self._steps.items())
            if step.workflow_id == workflow_id
        ]

    async def create_or_update_step(
        self, step_id: int, patch: dict[str, Any]
    ) -> WorkflowStep:
        validate_step_patch(patch)
        step = self._steps.get(step_id)
        if step is None:
            if "workflow_id" not in patch or "step_type" not in patch:
                raise StepNotFoundError(step_id)
            step = WorkflowStep.model_validate({**patch, "id": step_id})
            self._step_id = max(self._step_id, step_id)
        else:
            step = WorkflowStep.model_validate(
                {**step.model_dump(), **patch, "id": step_id}
            )
        self._steps[step_id] = step
        return step.model_copy(deep=True)

    async def append_activity(
        self, step_id: int, entry: ActivityEntry
    ) -> ActivityEntry:
        if step_id not in self._steps:
            raise StepNotFoundError(step_id)
        log = self._activity.setdefault(step_id, [])
        self._activity_id += 1
        stored = entry.model_copy(
            deep=True,
            update={
                "id": self._activity_id,
                "step_id": step_id,
                "sequence": len(log) + 1,
                "created_at": datetime.now(timezone.utc),
            },
        )
        log.append(stored)
        return stored.model_copy(deep=True)

    async def list_activity(self, step_id: int) -> list[ActivityEntry]:
        return [e.model_copy(deep=True) for e in self._activity.get(step_id, [])]

    async def mark_skipped(self, step_id: int) -> WorkflowStep:
        if step_id not in self._steps:
            raise StepNotFoundError(step_id)
        return await self.create_or_update_step(
            step_id,
            {
                "status": StepStatus.SKIPPED,
                "completed_at": datetime.now(timezone.utc),
            },
        )
