"""Command-line entry point for codecrew."""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

import typer
import yaml
from rich.console import Console
from rich.table import Table

from codecrew.agent_loop import AgentTurnResult, TurnOptions, execute_turn, format_abort_summary
from codecrew.checkpoints import CheckpointStore
from codecrew.config import Config, get_config, set_config
from codecrew.confirmation import ConsoleConfirmationService
from codecrew.coordinator import Coordinator, RunResult
from codecrew.exceptions import CodeCrewError
from codecrew.llm import get_provider
from codecrew.logging import configure_logging, get_logger
from codecrew.planner import ExecutionStrategy, plan_execution
from codecrew.recovery import RecoverySystem
from codecrew.session import SessionManager
from codecrew.tools import register_default_tools
from codecrew.trust import TrustStore

log = get_logger(__name__)

app = typer.Typer(help="codecrew - plan and run coordinated coding agents")
console = Console()
err_console = Console(stderr=True)

STRATEGY_CHOICES = ", ".join(item.value for item in ExecutionStrategy)


def _setup(config: str = "", verbose: bool = False, model: str = "", provider: str = "") -> Config:
    """Configure logging and install the process-wide config."""
    if config:
        try:
            cfg = Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", path=config, error=str(e))
            cfg = Config.load()
    else:
        cfg = Config.load()

    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    set_config(cfg)
    configure_logging("DEBUG" if verbose else None)
    return cfg


def load_task_file(path: Path) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    """Read tasks from a YAML or JSON file.

    The file is either a list of tasks or a mapping with a ``tasks`` list
    plus optional ``strategy`` and ``aggregation`` keys.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or []

    if isinstance(data, list):
        return [dict(item) for item in data], {}
    if isinstance(data, dict) and isinstance(data.get("tasks"), list):
        options = {key: value for key, value in data.items() if key != "tasks"}
        return [dict(item) for item in data["tasks"]], options
    raise typer.BadParameter(f"{path} must contain a task list or a mapping with 'tasks'")


def _print_results(result: RunResult) -> None:
    table = Table(title=f"Run {result.session_id}")
    table.add_column("Task")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("Turns", justify="right")
    table.add_column("Tools")
    for task_id in result.plan.order:
        item = result.results.get(task_id)
        if item is None:
            status = "blocked" if task_id in result.blocked_tasks else "not run"
            table.add_row(task_id, "-", status, "-", "")
            continue
        table.add_row(
            task_id,
            item.role,
            item.status.value,
            str(item.turns),
            ", ".join(item.tools_used),
        )
    err_console.print(table)
    for message in result.escalations:
        err_console.print(f"[red]Escalated:[/red] {message}")


@app.command()
def plan(
    task_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML/JSON task file"),
    strategy: str = typer.Option("", "-s", "--strategy", help=f"One of: {STRATEGY_CHOICES}"),
    as_json: bool = typer.Option(False, "--json", help="Print the plan as JSON"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """Print the execution plan for a task file."""
    cfg = _setup(config)
    tasks, options = load_task_file(task_file)
    chosen = strategy or options.get("strategy") or cfg.orchestrator.default_strategy

    try:
        execution_plan = plan_execution(tasks, chosen)
    except (CodeCrewError, ValueError) as e:
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    if as_json:
        console.print_json(json.dumps(execution_plan.to_dict()))
        return

    table = Table(title=f"Plan ({execution_plan.strategy.value})")
    table.add_column("#", justify="right")
    table.add_column("Task")
    for idx, task_id in enumerate(execution_plan.order, start=1):
        table.add_row(str(idx), task_id)
    console.print(table)
    console.print(
        f"max parallelism: {execution_plan.max_parallelism}  "
        f"estimated time: {execution_plan.estimated_time_ms} ms"
    )
    for item in execution_plan.unresolved_dependencies:
        console.print(f"[yellow]Unresolved:[/yellow] {item.task_id} -> {item.dependency}")


def _install_abort_handler(abort_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, abort_event.set)
    except (NotImplementedError, RuntimeError):
        pass


async def _ask(
    message: str,
    session_name: str,
    session_id: str,
    project_path: str,
    skip_confirmation: bool,
) -> AgentTurnResult:
    cfg = get_config()
    abort_event = asyncio.Event()
    _install_abort_handler(abort_event)

    manager = SessionManager()
    provider = get_provider()
    try:
        if session_id:
            session = await manager.require_session(session_id)
        else:
            session = await manager.get_or_create_session(session_name, project_path=project_path)
        session.project_path = project_path or session.project_path

        options = TurnOptions(
            abort_event=abort_event,
            skip_confirmation=True if skip_confirmation else None,
            confirmation=ConsoleConfirmationService(),
            trust_store=TrustStore(),
            on_text=lambda text: console.print(text, end="", markup=False, highlight=False),
        )
        result = await execute_turn(session, message, provider, register_default_tools(), options)
        console.print()
        if cfg.session.auto_save:
            await manager.save_session(session)
        log.info(
            "Turn finished",
            session_id=session.id,
            iterations=result.iterations,
            tools=len(result.tool_calls),
            aborted=result.aborted,
        )
        return result
    finally:
        await manager.close()
        close = getattr(provider, "close", None)
        if close is not None:
            await close()


@app.command()
def ask(
    message: str = typer.Argument(..., help="Message for the agent"),
    session_name: str = typer.Option("default", "--session", help="Session name to continue or create"),
    session_id: str = typer.Option("", "--session-id", help="Continue an existing session by ID"),
    project: str = typer.Option("", "--project", help="Project path handed to tools"),
    yes: bool = typer.Option(False, "-y", "--yes", help="Run tools without confirmation"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run one agent turn in a persistent session, confirming risky tools."""
    _setup(config, verbose, model, provider)

    try:
        result = asyncio.run(_ask(
            message,
            session_name=session_name,
            session_id=session_id,
            project_path=project or str(Path.cwd()),
            skip_confirmation=yes,
        ))
    except CodeCrewError as e:
        log.error("Turn failed", error=str(e))
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    for call in result.skipped_calls:
        err_console.print(f"[yellow]Skipped:[/yellow] {call.name} ({call.reason})")
    if result.aborted:
        summary = format_abort_summary(result.tool_calls)
        err_console.print("[yellow]Turn aborted[/yellow]" + (f": {summary}" if summary else ""))
        raise typer.Exit(code=130)
    if not result.converged:
        err_console.print("[yellow]Stopped at the tool iteration limit[/yellow]")


async def _run(
    tasks: list[dict[str, Any]],
    strategy: str,
    aggregation: str,
    session_id: str,
    project_path: str,
) -> RunResult:
    cfg = get_config()
    abort_event = asyncio.Event()
    _install_abort_handler(abort_event)

    store = CheckpointStore() if cfg.checkpoints.enabled else None
    coordinator = Coordinator(
        provider=get_provider(),
        tool_registry=register_default_tools(),
        recovery=RecoverySystem(),
        checkpoint_store=store,
        project_path=project_path,
    )
    try:
        return await coordinator.run(
            tasks,
            strategy=strategy or None,
            aggregation=aggregation or None,
            session_id=session_id or None,
            abort_event=abort_event,
        )
    finally:
        if store is not None:
            await store.close()
        close = getattr(coordinator.provider, "close", None)
        if close is not None:
            await close()


@app.command()
def run(
    task_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="YAML/JSON task file"),
    strategy: str = typer.Option("", "-s", "--strategy", help=f"One of: {STRATEGY_CHOICES}"),
    aggregation: str = typer.Option(
        "", "-a", "--aggregation", help="merge, vote, best or summary"
    ),
    session_id: str = typer.Option("", "--session", help="Resume or name a checkpointed run"),
    project: str = typer.Option("", "--project", help="Project path handed to tools"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Coordinate agents over a task file."""
    _setup(config, verbose, model, provider)
    tasks, options = load_task_file(task_file)

    try:
        result = asyncio.run(_run(
            tasks,
            strategy=strategy or options.get("strategy", ""),
            aggregation=aggregation or options.get("aggregation", ""),
            session_id=session_id,
            project_path=project or str(Path.cwd()),
        ))
    except (CodeCrewError, ValueError) as e:
        log.error("Run failed", error=str(e))
        err_console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    _print_results(result)
    if result.aggregated_output:
        console.print(result.aggregated_output)
    if result.aborted:
        err_console.print("[yellow]Run aborted; resume with --session[/yellow] " + result.session_id)
        raise typer.Exit(code=130)
    if result.failed_tasks or result.blocked_tasks:
        raise typer.Exit(code=1)


async def _list_checkpoints(session_id: str, limit: int) -> list[dict[str, Any]]:
    store = CheckpointStore()
    try:
        items = await store.list_checkpoints(session_id or None, limit=limit)
    finally:
        await store.close()
    return [item.to_dict() for item in items]


@app.command()
def checkpoints(
    session_id: str = typer.Option("", "--session", help="Only this session"),
    limit: int = typer.Option(20, "-n", "--limit", help="Maximum rows"),
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List stored orchestration checkpoints."""
    _setup(config)
    items = asyncio.run(_list_checkpoints(session_id, limit))
    if not items:
        console.print("No checkpoints.")
        return

    table = Table(title="Checkpoints")
    table.add_column("Session")
    table.add_column("Phase")
    table.add_column("Completed", justify="right")
    table.add_column("Tasks", justify="right")
    table.add_column("Created")
    for item in items:
        table.add_row(
            item["session_id"],
            item["phase"],
            str(len(item["completed_tasks"])),
            str(len(item["tasks"])),
            item["created_at"],
        )
    console.print(table)


@app.command()
def version() -> None:
    """Show version information."""
    from codecrew import __version__
    print(f"codecrew v{__version__}")


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(130)


if __name__ == "__main__":
    main()
