"""SQLite implementation of the step repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

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

_JSON_STEP_FIELDS = {"output_structured"}
_DATETIME_STEP_FIELDS = {"started_at", "completed_at"}


def _encode_step_value(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field in _JSON_STEP_FIELDS:
        return json.dumps(value)
    if field in _DATETIME_STEP_FIELDS:
        return value.isoformat() if isinstance(value, datetime) else str(value)
    if isinstance(value, (StepStatus, StepType)):
        return value.value
    return value


class SQLiteStepRepository(StepRepository):
    """Persist steps and activity using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id INTEGER NOT NULL,
                step_type TEXT NOT NULL,
                status TEXT NOT NULL,
                agent_id INTEGER,
                input_text TEXT,
                output_text TEXT,
                output_structured TEXT,
                error_message TEXT,
                started_at TEXT,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS agent_activity (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                step_id INTEGER NOT NULL REFERENCES workflow_steps(id),
                sequence INTEGER NOT NULL,
                session_id TEXT,
                event_type TEXT NOT NULL,
                text_delta TEXT,
                thinking_block_index INTEGER,
                tool_name TEXT,
                tool_use_id TEXT,
                tool_input TEXT,
                started_at INTEGER,
                stopped_at INTEGER,
                input_tokens INTEGER,
                output_tokens INTEGER,
                cache_creation_input_tokens INTEGER,
                cache_read_input_tokens INTEGER,
                estimated_cost REAL,
                elapsed_ms INTEGER,
                max_thinking_tokens INTEGER,
                phase TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (step_id, sequence)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_activity(self, step_id: int, values: dict[str, Any]) -> int:
        # sequence allocation and insert must not interleave
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT COALESCE(MAX(sequence), 0) + 1 FROM agent_activity WHERE step_id = ?",
                (step_id,),
            )
            values["sequence"] = cur.fetchone()[0]
            columns = ", ".join(values)
            placeholders = ", ".join("?" for _ in values)
            cur.execute(
                f"INSERT INTO agent_activity ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
            self._conn.commit()
            return cur.lastrowid

    @staticmethod
    def _row_to_step(row: sqlite3.Row) -> WorkflowStep:
        return WorkflowStep(
            id=row["id"],
            workflow_id=row["workflow_id"],
            step_type=row["step_type"],
            status=row["status"],
            agent_id=row["agent_id"],
            input_text=row["input_text"],
            output_text=row["output_text"],
            output_structured=json.loads(row["output_structured"])
            if row["output_structured"]
            else None,
            error_message=row["error_message"],
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            completed_at=datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None,
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> ActivityEntry:
        data = {key: row[key] for key in row.keys()}
        data["tool_input"] = json.loads(data["tool_input"]) if data["tool_input"] else None
        data["created_at"] = datetime.fromisoformat(data["created_at"])
        return ActivityEntry(**data)

    # ------------------------------------------------------------------
    # Repository API
    async def create_step(
        self,
        workflow_id: int,
        step_type: StepType,
        *,
        agent_id: int | None = None,
        input_text: str | None = None,
        status: StepStatus = StepStatus.PENDING,
    ) -> WorkflowStep:
        step_id = await asyncio.to_thread(
            self._execute,
            "INSERT INTO workflow_steps (workflow_id, step_type, status, agent_id, input_text) VALUES (?, ?, ?, ?, ?)",
            workflow_id,
            StepType(step_type).value,
            StepStatus(status).value,
            agent_id,
            input_text,
        )
        return await self.get_step(step_id)

    async def get_step(self, step_id: int) -> WorkflowStep | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE id = ?",
            step_id,
        )
        return self._row_to_step(row) if row else None

    async def list_steps(self, workflow_id: int) -> list[WorkflowStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM workflow_steps WHERE workflow_id = ? ORDER BY id",
            workflow_id,
        )
        return [self._row_to_step(r) for r in rows]

    async def create_or_update_step(
        self, step_id: int, patch: dict[str, Any]
    ) -> WorkflowStep:
        validate_step_patch(patch)
        existing = await self.get_step(step_id)
        if existing is None:
            if "workflow_id" not in patch or "step_type" not in patch:
                raise StepNotFoundError(step_id)
            step = WorkflowStep.model_validate({**patch, "id": step_id})
            values = {
                field: _encode_step_value(field, getattr(step, field))
                for field in WorkflowStep.model_fields
            }
            columns = ", ".join(values)
            placeholders = ", ".join("?" for _ in values)
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO workflow_steps ({columns}) VALUES ({placeholders})",
                *values.values(),
            )
        elif patch:
            # validate the merged record before writing
            WorkflowStep.model_validate({**existing.model_dump(), **patch})
            assignments = ", ".join(f"{field} = ?" for field in patch)
            await asyncio.to_thread(
                self._execute,
                f"UPDATE workflow_steps SET {assignments} WHERE id = ?",
                *(_encode_step_value(f, v) for f, v in patch.items()),
                step_id,
            )
        return await self.get_step(step_id)

    async def append_activity(
        self, step_id: int, entry: ActivityEntry
    ) -> ActivityEntry:
        if await self.get_step(step_id) is None:
            raise StepNotFoundError(step_id)
        values: dict[str, Any] = {"step_id": step_id}
        for field in ACTIVITY_PAYLOAD_FIELDS:
            value = getattr(entry, field)
            if field == "tool_input" and value is not None:
                value = json.dumps(value)
            values[field] = value
        values["created_at"] = datetime.now(timezone.utc).isoformat()
        entry_id = await asyncio.to_thread(self._insert_activity, step_id, values)
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM agent_activity WHERE id = ?", entry_id
        )
        return self._row_to_entry(row)

    async def list_activity(self, step_id: int) -> list[ActivityEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM agent_activity WHERE step_id = ? ORDER BY sequence",
            step_id,
        )
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
