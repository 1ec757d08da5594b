"""Command line interface for inspecting workflow steps."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

import typer

from stepstream.errors import StepNotFoundError
from stepstream.persistence import get_repository
from stepstream.persistence.repository import StepRepository
from stepstream.replay import replay_step

app = typer.Typer(help="CLI for stepstream workflow steps")

step_app = typer.Typer(help="Commands for inspecting workflow steps")

app.add_typer(step_app, name="step")

_state: dict = {"database_url": None}


@app.callback()
def main(
    database_url: Optional[str] = typer.Option(
        None, "--database-url", help="Database URL (sqlite://path or postgresql://...)"
    ),
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """stepstream CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _state["database_url"] = database_url


def _repository() -> StepRepository:
    return get_repository(_state["database_url"])


@step_app.command("list")
def step_list(workflow_id: int) -> None:
    """
    List the steps of a workflow with their status.

    Example:
        stepstream step list 7
        # Output: 12    clarification    completed
        #         13    refinement       waiting_for_user
    """
    steps = asyncio.run(_repository().list_steps(workflow_id))
    if not steps:
        typer.echo("No steps found")
        return
    for step in steps:
        typer.echo(f"{step.id}\t{step.step_type.value}\t{step.status.value}")


@step_app.command("show")
def step_show(step_id: int) -> None:
    """
    Show a workflow step record.

    Displays status, timestamps, error message and output of the step.

    Example:
        stepstream step show 12
    """
    step = asyncio.run(_repository().get_step(step_id))
    if step is None:
        typer.echo("Step not found")
        raise typer.Exit(code=1)
    typer.echo(f"Step {step.id} ({step.step_type.value}): {step.status.value}")
    if step.started_at:
        completed = step.completed_at.isoformat() if step.completed_at else "-"
        typer.echo(f"Started: {step.started_at.isoformat()}  Completed: {completed}")
    if step.error_message:
        typer.echo(f"Error: {step.error_message}")
    if step.input_text:
        typer.echo(f"Input: {step.input_text}")
    if step.output_text:
        typer.echo(f"Output: {step.output_text}")
    if step.output_structured:
        typer.echo(json.dumps(step.output_structured, indent=2))


@step_app.command("activity")
def step_activity(step_id: int) -> None:
    """
    Print the activity log of a step in recorded order.

    Example:
        stepstream step activity 12
        # Output: 1    text_delta    Hello
        #         2    tool_start    Read (tu-1)
    """
    entries = asyncio.run(_repository().list_activity(step_id))
    if not entries:
        typer.echo("No activity recorded")
        return
    for entry in entries:
        if entry.event_type in ("text_delta", "thinking_delta"):
            detail = entry.text_delta or ""
        elif entry.tool_use_id:
            detail = f"{entry.tool_name or ''} ({entry.tool_use_id})".strip()
        elif entry.event_type == "phase_change":
            detail = entry.phase or ""
        elif entry.event_type == "heartbeat":
            detail = f"{entry.elapsed_ms}ms"
        elif entry.event_type == "usage":
            detail = f"in={entry.input_tokens or 0} out={entry.output_tokens or 0}"
        else:
            detail = ""
        typer.echo(f"{entry.sequence}\t{entry.event_type}\t{detail}")


@step_app.command("replay")
def step_replay(step_id: int) -> None:
    """
    Rebuild the streamed view of a step from its activity log.

    Prints the view as JSON. The agent runtime is not contacted.

    Example:
        stepstream step replay 12
    """
    try:
        view = asyncio.run(replay_step(_repository(), step_id))
    except StepNotFoundError:
        typer.echo("Step not found")
        raise typer.Exit(code=1)
    data = view.model_dump()
    data["thinking_content"] = view.thinking_content
    typer.echo(json.dumps(data, indent=2))


if __name__ == "__main__":
    app()
