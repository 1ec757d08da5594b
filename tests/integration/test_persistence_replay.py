"""Sessions recorded in SQLite replay to the view they ended with."""

import asyncio
import json

import pytest
from typer.testing import CliRunner

from stepstream.cli import app
from stepstream.contracts import ErrorOutcome, SuccessOutcome
from stepstream.models import StepType
from stepstream.persistence import SQLiteStepRepository
from stepstream.phases import DISCOVERY
from stepstream.replay import replay_entries, replay_step

EVENTS = [
    {"type": "port_ready", "timestamp": 1},
    {"type": "phase_change", "phase": "executing"},
    {"type": "thinking_start", "blockIndex": 0},
    {"type": "thinking_delta", "blockIndex": 0, "delta": "Scanning "},
    {"type": "thinking_delta", "blockIndex": 0, "delta": "the tree"},
    {"type": "tool_start", "toolUseId": "g1", "toolName": "Glob", "toolInput": {}},
    {"type": "tool_update", "toolUseId": "g1", "toolInput": {"pattern": "**/*.py"}},
    {"type": "tool_stop", "toolUseId": "g1"},
    {"type": "text_delta", "delta": "Two files "},
    {"type": "text_delta", "delta": "matter."},
    {"type": "usage", "inputTokens": 1200, "outputTokens": 80, "cacheReadInputTokens": 400},
]

PAYLOAD = {
    "discoveredFiles": [
        {
            "action": "modify",
            "filePath": "app/settings.py",
            "priority": "high",
            "relevanceExplanation": "settings view",
            "role": "view",
        },
        {
            "action": "reference",
            "filePath": "app/theme.py",
            "priority": "low",
            "relevanceExplanation": "palette",
            "role": "utility",
        },
    ],
    "summary": "Two files matter.",
}


@pytest.mark.asyncio
async def test_sqlite_replay_matches_live_view(tmp_path, make_orchestrator, make_input, runtime):
    repo = SQLiteStepRepository(tmp_path / "steps.db")
    step = await repo.create_step(1, StepType.DISCOVERY, agent_id=3)
    runtime.script(events=EVENTS, outcome=SuccessOutcome(payload=PAYLOAD))
    orchestrator = make_orchestrator(DISCOVERY, repository=repo)

    await orchestrator.start(make_input(step.id))

    live = orchestrator.view
    assert live.text_content == "Two files matter."
    assert live.thinking_content == "Scanning the tree"
    assert live.tool_events[0].input == {"pattern": "**/*.py"}

    reopened = SQLiteStepRepository(tmp_path / "steps.db")
    assert await replay_step(reopened, step.id) == live
    stored = await reopened.get_step(step.id)
    assert stored.output_structured["total_count"] == 2


@pytest.mark.asyncio
async def test_replay_shows_only_the_latest_session(tmp_path, make_orchestrator, make_input, runtime):
    repo = SQLiteStepRepository(tmp_path / "steps.db")
    step = await repo.create_step(1, StepType.CLARIFICATION, agent_id=3)
    runtime.script(events=[{"type": "text_delta", "delta": "first try"}], outcome=ErrorOutcome(message="x"))
    runtime.script(events=[{"type": "text_delta", "delta": "second try"}], outcome=SuccessOutcome())
    orchestrator = make_orchestrator(repository=repo)

    await orchestrator.start(make_input(step.id))
    await orchestrator.retry()

    log = await repo.list_activity(step.id)
    assert len({e.session_id for e in log}) == 2
    assert [e.sequence for e in log] == [1, 2]
    replayed = await replay_step(repo, step.id)
    assert replayed.text_content == "second try"
    assert replayed == orchestrator.view
    assert replay_entries(log).text_content == "first trysecond try"


def test_cli_replay_and_activity(tmp_path, make_orchestrator, make_input, runtime, monkeypatch):
    monkeypatch.delenv("STEPSTREAM_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    db_path = tmp_path / "steps.db"
    repo = SQLiteStepRepository(db_path)
    runtime.script(events=EVENTS, outcome=SuccessOutcome(payload=PAYLOAD))

    async def record_session():
        step = await repo.create_step(1, StepType.DISCOVERY, agent_id=3)
        await make_orchestrator(DISCOVERY, repository=repo).start(make_input(step.id))
        return step

    # the CLI runs its own event loop
    step = asyncio.run(record_session())

    runner = CliRunner()
    url = f"sqlite://{db_path}"

    result = runner.invoke(app, ["--database-url", url, "step", "replay", str(step.id)])
    assert result.exit_code == 0
    view = json.loads(result.stdout)
    assert view["text_content"] == "Two files matter."
    assert view["usage_summary"]["cache_read_input_tokens"] == 400

    result = runner.invoke(app, ["--database-url", url, "step", "activity", str(step.id)])
    assert result.exit_code == 0
    assert "tool_start\tGlob (g1)" in result.stdout

    result = runner.invoke(app, ["--database-url", url, "step", "show", str(step.id)])
    assert result.exit_code == 0
    assert "discovery): completed" in result.stdout

    result = runner.invoke(app, ["--database-url", url, "step", "replay", "999"])
    assert result.exit_code == 1
