"""CLI commands for running and inspecting Ralph loops."""

from __future__ import annotations

import asyncio
import logging
import re
import signal
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from ralph_loop.fsm.loop_state import Decision, FinalResult, LoopStatus
from ralph_loop.loop.agent_runner import AgentRunner
from ralph_loop.loop.claude_cli import ClaudeCliAgentRunner
from ralph_loop.loop.constants import get_logs_dir, get_loops_dir
from ralph_loop.loop.contracts import LoopConfig, LoopState
from ralph_loop.loop.errors import RalphLoopError
from ralph_loop.loop.logging_utils import setup_logging
from ralph_loop.loop.registry import TaskRegistry
from ralph_loop.loop.streaming import LoopEvent, LoopEventType
from ralph_loop.loop.utils.config import LoopSettings, load_settings
from ralph_loop.loop.utils.state_store import FileStateStore

console = Console()
logger = logging.getLogger(__name__)

_STATUS_COLORS = {
    LoopStatus.WORKER_RUNNING.value: "cyan",
    LoopStatus.REVIEWER_RUNNING.value: "magenta",
    LoopStatus.PAUSED.value: "yellow",
    LoopStatus.COMPLETED.value: "green",
    LoopStatus.FAILED.value: "red",
}

_DECISION_COLORS = {
    Decision.APPROVE.value: "green",
    Decision.REJECT.value: "yellow",
    Decision.CRITICAL_FAILURE.value: "red",
}


def default_project_id(project_dir: Path) -> str:
    """Derive a store-safe project id from a directory name."""
    name = re.sub(r"[^A-Za-z0-9._-]+", "-", project_dir.resolve().name).strip(".-")
    return name[:128] or "default"


def build_registry(
    project_dir: Path,
    settings: LoopSettings,
    runner: Optional[AgentRunner] = None,
) -> TaskRegistry:
    """Wire a registry for one project directory."""
    if runner is None:
        runner = ClaudeCliAgentRunner(
            project_dir,
            command=settings.claude_command,
            timeout_seconds=settings.agent_timeout_seconds,
        )
    return TaskRegistry(FileStateStore(get_loops_dir(project_dir)), runner, settings=settings)


class EventPrinter:
    """Renders loop events on the console as they arrive."""

    def __init__(self, show_output: bool = True) -> None:
        self.show_output = show_output
        self._mid_line = False

    def _newline(self) -> None:
        if self._mid_line:
            console.out("")
            self._mid_line = False

    def __call__(self, event: LoopEvent) -> None:
        data = event.data
        if event.event_type == LoopEventType.OUTPUT:
            if self.show_output:
                console.out(data["content"], end="", highlight=False)
                self._mid_line = not data["content"].endswith("\n")
            return

        self._newline()
        if event.event_type == LoopEventType.STATUS:
            color = _STATUS_COLORS.get(data["status"], "white")
            console.print(
                f"[{color}]\\[{data['status']}][/{color}] "
                f"[dim]iteration {data['currentIteration']}/{data['maxTurns']}[/dim]"
            )
        elif event.event_type == LoopEventType.ITERATION:
            console.print(f"\n[bold]Iteration {data['iteration']}[/bold]")
        elif event.event_type == LoopEventType.TOOL_USE:
            console.print(f"[dim]\\[{data['source']}] tool: {escape(data['tool']['toolName'])}[/dim]")
        elif event.event_type == LoopEventType.WORKER_COMPLETE:
            summary = data["summary"]
            console.print(
                f"[cyan]\\[worker][/cyan] Finished iteration {summary['iterationNumber']} "
                f"[dim]({len(summary['filesModified'])} file(s) modified)[/dim]"
            )
        elif event.event_type == LoopEventType.REVIEWER_COMPLETE:
            feedback = data["feedback"]
            color = _DECISION_COLORS.get(feedback["decision"], "white")
            console.print(f"[magenta]\\[reviewer][/magenta] [{color}]{feedback['decision'].upper()}[/{color}]")
            if feedback["feedback"]:
                console.print(f"  {feedback['feedback']}", style="dim", markup=False, highlight=False)
        elif event.event_type == LoopEventType.ERROR:
            console.print(f"[red]Error: {escape(data['error'])}[/red]")


def print_final_summary(state: LoopState) -> None:
    console.print()
    if state.final_result == FinalResult.APPROVED:
        console.print(f"[green]✅ Approved after {len(state.iterations)} iteration(s)[/green]")
    elif state.final_result == FinalResult.MAX_TURNS_REACHED:
        console.print(f"[yellow]⚠️  Stopped at the turn limit ({state.max_turns}) without approval[/yellow]")
    elif state.final_result == FinalResult.CRITICAL_FAILURE:
        console.print(f"[red]⛔ Critical failure: {escape(state.error or '')}[/red]")
    else:
        console.print(f"[red]Loop {state.status.value}: {escape(state.error or '')}[/red]")
    console.print(f"[dim]Task: {state.task_id}[/dim]")


async def _run_loop(
    registry: TaskRegistry,
    project_id: str,
    config: LoopConfig,
) -> LoopState:
    state = await registry.start(project_id, config)
    task_id = state.task_id

    async def stop() -> None:
        try:
            await registry.stop(project_id, task_id)
        except RalphLoopError as e:
            logger.debug(f"Stop request ignored: {e}")

    def request_stop() -> None:
        console.print("\n[yellow]Stopping loop...[/yellow]")
        asyncio.ensure_future(stop())

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, request_stop)
    except (NotImplementedError, RuntimeError, ValueError):
        logger.debug("SIGINT handler unavailable; Ctrl-C will abort without finalizing")

    try:
        return await registry.wait(project_id, task_id)
    finally:
        await registry.shutdown()


@click.group()
@click.option(
    "--project-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=".",
    help="Project directory the agents work in (default: current directory)",
)
@click.pass_context
def cli(ctx: click.Context, project_dir: Path) -> None:
    """Run a Worker agent and a Reviewer agent in a loop until the work is approved."""
    ctx.ensure_object(dict)
    ctx.obj["project_dir"] = project_dir.resolve()


def _settings(project_dir: Path) -> LoopSettings:
    try:
        return load_settings(project_dir)
    except ValueError as e:
        raise click.ClickException(f"Invalid configuration: {e}")


def _store(project_dir: Path) -> FileStateStore:
    return FileStateStore(get_loops_dir(project_dir))


@cli.command()
@click.argument("task")
@click.option("--project-id", default=None, help="Project id (default: project directory name)")
@click.option("--max-turns", type=int, default=None, help="Maximum Worker/Reviewer iterations")
@click.option("--worker-model", default=None, help="Model for the Worker agent")
@click.option("--reviewer-model", default=None, help="Model for the Reviewer agent")
@click.option("--worker-system-prompt", default=None, help="Extra system prompt for the Worker")
@click.option("--reviewer-system-prompt", default=None, help="Extra system prompt for the Reviewer")
@click.option("--no-stream", is_flag=True, help="Do not print agent output as it streams")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def run(
    ctx: click.Context,
    task: str,
    project_id: Optional[str],
    max_turns: Optional[int],
    worker_model: Optional[str],
    reviewer_model: Optional[str],
    worker_system_prompt: Optional[str],
    reviewer_system_prompt: Optional[str],
    no_stream: bool,
    verbose: bool,
) -> None:
    """Start a loop for TASK and follow it until it finishes.

    Pass "-" as TASK to read the task description from stdin. Ctrl-C stops
    the loop; the stopped loop is still recorded. Exits with status 0 only
    when the Reviewer approved the work.
    """
    project_dir: Path = ctx.obj["project_dir"]
    setup_logging(verbose, log_file=get_logs_dir(project_dir) / "ralph-loop.log")
    settings = _settings(project_dir)

    if task == "-":
        task = click.get_text_stream("stdin").read()
    project_id = project_id or default_project_id(project_dir)
    config = LoopConfig(
        task_description=task,
        max_turns=max_turns,
        worker_model=worker_model,
        reviewer_model=reviewer_model,
        worker_system_prompt=worker_system_prompt,
        reviewer_system_prompt=reviewer_system_prompt,
    )

    registry = build_registry(project_dir, settings)
    registry.broadcaster.add_listener(EventPrinter(show_output=not no_stream))

    console.print("[cyan]Starting Ralph loop...[/cyan]")
    console.print(f"[dim]Project: {project_id} ({escape(str(project_dir))})[/dim]")

    try:
        final = asyncio.run(_run_loop(registry, project_id, config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Loop interrupted[/yellow]")
        sys.exit(130)
    except RalphLoopError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        raise click.ClickException(str(e))

    print_final_summary(final)
    if final.final_result != FinalResult.APPROVED:
        sys.exit(1)


@cli.command(name="list")
@click.option("--project-id", default=None, help="Project id (default: project directory name)")
@click.pass_context
def list_loops(ctx: click.Context, project_id: Optional[str]) -> None:
    """List recorded loops, newest first."""
    project_dir: Path = ctx.obj["project_dir"]
    project_id = project_id or default_project_id(project_dir)
    try:
        states = asyncio.run(_store(project_dir).list(project_id))
    except RalphLoopError as e:
        raise click.ClickException(str(e))

    if not states:
        console.print(f"[dim]No loops recorded for {project_id}[/dim]")
        return

    table = Table(title=f"Ralph loops: {project_id}")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Iteration")
    table.add_column("Result")
    table.add_column("Created")
    table.add_column("Description")
    for state in states:
        color = _STATUS_COLORS.get(state.status.value, "white")
        table.add_row(
            state.task_id,
            f"[{color}]{state.status.value}[/{color}]",
            f"{state.current_iteration}/{state.max_turns}",
            state.final_result.value if state.final_result else "-",
            state.created_at.strftime("%Y-%m-%d %H:%M"),
            escape(state.task_description.splitlines()[0][:60]) if state.task_description else "",
        )
    console.print(table)


@cli.command()
@click.argument("task_id")
@click.option("--project-id", default=None, help="Project id (default: project directory name)")
@click.option("--json", "as_json", is_flag=True, help="Print the raw persisted record")
@click.pass_context
def show(ctx: click.Context, task_id: str, project_id: Optional[str], as_json: bool) -> None:
    """Show one loop and its iteration history."""
    project_dir: Path = ctx.obj["project_dir"]
    project_id = project_id or default_project_id(project_dir)
    try:
        state = asyncio.run(_store(project_dir).get(project_id, task_id))
    except RalphLoopError as e:
        raise click.ClickException(str(e))
    if state is None:
        raise click.ClickException(f"Loop {project_id}/{task_id} not found")

    if as_json:
        click.echo(state.to_json())
        return

    console.print(f"[bold]{state.task_id}[/bold] [dim]({state.project_id})[/dim]")
    console.print(f"Status: {state.status.value}  Iteration: {state.current_iteration}/{state.max_turns}")
    if state.final_result:
        console.print(f"Result: {state.final_result.value}")
    if state.error:
        console.print(f"[red]Error: {escape(state.error)}[/red]")
    console.print(f"[dim]Worker: {state.worker_model}  Reviewer: {state.reviewer_model}[/dim]")
    console.print()
    console.print(state.task_description, markup=False)
    for iteration in state.iterations:
        console.print()
        decision = iteration.decision.value if iteration.decision else "pending"
        color = _DECISION_COLORS.get(decision, "white")
        console.print(f"[bold]Iteration {iteration.number}[/bold] [{color}]{decision}[/{color}]")
        if iteration.worker_output.files_modified:
            console.print(f"  [dim]Files: {escape(', '.join(iteration.worker_output.files_modified))}[/dim]")
        if iteration.reviewer_feedback and iteration.reviewer_feedback.feedback:
            console.print(f"  {iteration.reviewer_feedback.feedback}", markup=False)


@cli.command()
@click.argument("task_id")
@click.option("--project-id", default=None, help="Project id (default: project directory name)")
@click.pass_context
def delete(ctx: click.Context, task_id: str, project_id: Optional[str]) -> None:
    """Delete a finished loop's record."""
    project_dir: Path = ctx.obj["project_dir"]
    project_id = project_id or default_project_id(project_dir)
    try:
        asyncio.run(_store(project_dir).delete(project_id, task_id))
    except RalphLoopError as e:
        raise click.ClickException(str(e))
    console.print(f"[green]✓[/green] Deleted {project_id}/{task_id}")


if __name__ == "__main__":
    cli()
