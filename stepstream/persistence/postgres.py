"""PostgreSQL implementation of the step repository."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import asyncpg

from ..errors import StepNotFoundError
from ..models import StepStatus, StepType
from .models import (
    ACTIVITY_PAYLOAD_FIELDS,
    ActivityEntry,
    WorkflowStep,
    validate_step_patch,
)
from .repository import StepRepository

_STEP_COLUMNS = (
    "id, workflow_id, step_type, status, agent_id, input_text, output_text, "
    "output_structured, error_message, started_at, completed_at"
)


def _encode(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in {"output_structured", "tool_input"}:
        return json.dumps(value)
    if isinstance(value, (StepStatus, StepType)):
        return value.value
    return value


class PostgresStepRepository(StepRepository):
    """Persist steps and activity using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id SERIAL PRIMARY KEY,
                workflow_id INTEGER NOT NULL,
                step_type TEXT NOT NULL,
                status TEXT NOT NULL,
                agent_id INTEGER,
                input_text TEXT,
                output_text TEXT,
                output_structured JSONB,
                error_message TEXT,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_activity (
                id SERIAL PRIMARY KEY,
                step_id INTEGER NOT NULL REFERENCES workflow_steps(id),
                sequence INTEGER NOT NULL,
                session_id TEXT,
                event_type TEXT NOT NULL,
                text_delta TEXT,
                thinking_block_index INTEGER,
                tool_name TEXT,
                tool_use_id TEXT,
                tool_input JSONB,
                started_at BIGINT,
                stopped_at BIGINT,
                input_tokens INTEGER,
                output_tokens INTEGER,
                cache_creation_input_tokens INTEGER,
                cache_read_input_tokens INTEGER,
                estimated_cost DOUBLE PRECISION,
                elapsed_ms BIGINT,
                max_thinking_tokens INTEGER,
                phase TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                UNIQUE (step_id, sequence)
            )
            """
        )

    @staticmethod
    def _row_to_step(row: asyncpg.Record) -> WorkflowStep:
        structured = row["output_structured"]
        return WorkflowStep(
            id=row["id"],
            workflow_id=row["workflow_id"],
            step_type=row["step_type"],
            status=row["status"],
            agent_id=row["agent_id"],
            input_text=row["input_text"],
            output_text=row["output_text"],
            output_structured=json.loads(structured) if structured else None,
            error_message=row["error_message"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _row_to_entry(row: asyncpg.Record) -> ActivityEntry:
        data = dict(row)
        data["tool_input"] = json.loads(data["tool_input"]) if data["tool_input"] else None
        return ActivityEntry(**data)

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
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                INSERT INTO workflow_steps (workflow_id, step_type, status, agent_id, input_text)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING {_STEP_COLUMNS}
                """,
                workflow_id,
                StepType(step_type).value,
                StepStatus(status).value,
                agent_id,
                input_text,
            )
        finally:
            await conn.close()
        return self._row_to_step(row)

    async def get_step(self, step_id: int) -> WorkflowStep | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE id = $1",
                step_id,
            )
        finally:
            await conn.close()
        return self._row_to_step(row) if row else None

    async def list_steps(self, workflow_id: int) -> list[WorkflowStep]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE workflow_id = $1 ORDER BY id",
                workflow_id,
            )
        finally:
            await conn.close()
        return [self._row_to_step(r) for r in rows]

    async def create_or_update_step(
        self, step_id: int, patch: dict[str, Any]
    ) -> WorkflowStep:
        validate_step_patch(patch)
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE id = $1 FOR UPDATE",
                    step_id,
                )
                if row is None:
                    if "workflow_id" not in patch or "step_type" not in patch:
                        raise StepNotFoundError(step_id)
                    step = WorkflowStep.model_validate({**patch, "id": step_id})
                    values = {
                        field: _encode(field, getattr(step, field))
                        for field in WorkflowStep.model_fields
                    }
                    columns = ", ".join(values)
                    placeholders = ", ".join(f"${i}" for i in range(1, len(values) + 1))
                    row = await conn.fetchrow(
                        f"INSERT INTO workflow_steps ({columns}) VALUES ({placeholders}) RETURNING {_STEP_COLUMNS}",
                        *values.values(),
                    )
                    # keep the serial ahead of explicitly chosen ids
                    await conn.execute(
                        "SELECT setval(pg_get_serial_sequence('workflow_steps', 'id'), "
                        "GREATEST((SELECT MAX(id) FROM workflow_steps), 1))"
                    )
                elif patch:
                    existing = self._row_to_step(row)
                    WorkflowStep.model_validate({**existing.model_dump(), **patch})
                    fields = list(patch)
                    assignments = ", ".join(
                        f"{field} = ${i}" for i, field in enumerate(fields, start=1)
                    )
                    row = await conn.fetchrow(
                        f"UPDATE workflow_steps SET {assignments} WHERE id = ${len(fields) + 1} RETURNING {_STEP_COLUMNS}",
                        *(_encode(f, patch[f]) for f in fields),
                        step_id,
                    )
        finally:
            await conn.close()
        return self._row_to_step(row)

    async def append_activity(
        self, step_id: int, entry: ActivityEntry
    ) -> ActivityEntry:
        values: dict[str, Any] = {"step_id": step_id}
        for field in ACTIVITY_PAYLOAD_FIELDS:
            values[field] = _encode(field, getattr(entry, field))
        values["created_at"] = datetime.now(timezone.utc)
        columns = ", ".join(values)
        placeholders = ", ".join(f"${i}" for i in range(1, len(values) + 1))
        seq_param = len(values) + 1
        conn = await self._connect()
        try:
            async with conn.transaction():
                # serialize sequence allocation per step
                step = await conn.fetchrow(
                    "SELECT id FROM workflow_steps WHERE id = $1 FOR UPDATE", step_id
                )
                if step is None:
                    raise StepNotFoundError(step_id)
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO agent_activity ({columns}, sequence)
                    VALUES ({placeholders}, ${seq_param})
                    RETURNING *
                    """,
                    *values.values(),
                    await conn.fetchval(
                        "SELECT COALESCE(MAX(sequence), 0) + 1 FROM agent_activity WHERE step_id = $1",
                        step_id,
                    ),
                )
        finally:
            await conn.close()
        return self._row_to_entry(row)

    async def list_activity(self, step_id: int) -> list[ActivityEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM agent_activity WHERE step_id = $1 ORDER BY sequence",
                step_id,
            )
        finally:
            await conn.close()
        return [self._row_to_entry(r) for r in rows]

    async def mark_skipped(self, step_id: int) -> WorkflowStep:
        if await self.get_step(step_id) is None:
            raise StepNotFoundError(step_id)
        return await self.create_or_update_step(
            step_id,
            {
                "status": StepStatus.SKIPPED,
                "completed_at": datetime.now(timezone.utc),
            },
        )
