"""Command line interface for inspecting and maintaining workflow executions."""

from __future__ import annotations

import asyncio
import importlib
import logging
from datetime import timedelta
from typing import Optional

import typer

from sagaflow.config import load_config
from sagaflow.engine import WorkflowEngine
from sagaflow.errors import ExecutionNotFoundError, IllegalExecutionStateError
from sagaflow.locks import get_lock_store
from sagaflow.maintenance import WorkflowMaintenance
from sagaflow.persistence import get_repository
from sagaflow.persistence.models import utcnow

app = typer.Typer(help="CLI for sagaflow workflow executions")

# Command groups
execution_app = typer.Typer(help="Commands for inspecting workflow executions")
maintenance_app = typer.Typer(help="Commands for execution maintenance")

app.add_typer(execution_app, name="execution")
app.add_typer(maintenance_app, name="maintenance")

APP_OPTION_HELP = (
    "Import path 'module:attribute' of the WorkflowEngine holding your registered "
    "workflows. Defaults to an engine built from configuration."
)


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level for sagaflow output"),
) -> None:
    """sagaflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_engine(app_path: Optional[str]) -> WorkflowEngine:
    if app_path:
        module_name, _, attribute = app_path.partition(":")
        module = importlib.import_module(module_name)
        engine = getattr(module, attribute or "engine")
        if not isinstance(engine, WorkflowEngine):
            typer.secho(f"{app_path} is not a WorkflowEngine", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        return engine

    config = load_config()
    return WorkflowEngine(
        repository=get_repository(),
        lock_store=get_lock_store(config=config),
        config=config.engine,
    )


@execution_app.command("list")
def execution_list(
    workflow_name: str,
    page: int = typer.Option(0, help="Zero-based page number"),
    size: int = typer.Option(20, help="Executions per page"),
) -> None:
    """
    List executions of a workflow, newest first.

    Example:
        sagaflow execution list order.create --page 0 --size 20
        # Output: 5f0c...    COMPLETED    2024-01-01T10:00:00+00:00
    """
    repo = get_repository()
    result = asyncio.run(repo.find_executions_by_workflow(workflow_name, page, size))
    if not result.items:
        typer.echo("No executions found")
        return
    for execution in result.items:
        typer.echo(
            f"{execution.id}\t{execution.status.value}\t{execution.created_at.isoformat()}"
        )
    typer.echo(f"Page {result.page + 1}/{max(result.total_pages, 1)} ({result.total} total)")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show an execution record and its step timeline.

    Example:
        sagaflow execution show 5f0c...
        # Output: Execution 5f0c... (order.create): COMPENSATED
        #         - [0] reserve-stock: COMPLETED (12ms)
        #         - [1] charge-card: FAILED (40ms) CardDeclined: insufficient funds
    """
    repo = get_repository()
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id} ({execution.workflow_name}): {execution.status.value}")
    typer.echo(f"Retries: {execution.retry_count}/{execution.max_retries}")
    if execution.parent_execution_id:
        typer.echo(f"Parent: {execution.parent_execution_id}")
    if execution.correlation_id:
        typer.echo(f"Correlation: {execution.correlation_id}")
    if execution.input_data:
        typer.echo(f"Input: {execution.input_data}")
    if execution.output_data:
        typer.echo(f"Output: {execution.output_data}")
    if execution.error_message:
        typer.echo(f"Error: {execution.error_type}: {execution.error_message}")

    steps = asyncio.run(repo.list_step_events(execution_id))
    for step in steps:
        line = f"- [{step.step_index}] {step.step_name}: {step.status.value}"
        if step.duration_ms is not None:
            line += f" ({step.duration_ms}ms)"
        if step.error_message:
            line += f" {step.error_type}: {step.error_message}"
        typer.echo(line)


@execution_app.command("stats")
def execution_stats(
    workflow_name: str,
    since_hours: float = typer.Option(24.0, help="Only count executions created in this window"),
) -> None:
    """Count executions of a workflow per status."""
    repo = get_repository()
    since = utcnow() - timedelta(hours=since_hours)
    stats = asyncio.run(repo.count_executions_by_status(workflow_name, since))
    if not stats:
        typer.echo("No executions found")
        return
    for entry in sorted(stats, key=lambda s: s.status.value):
        typer.echo(f"{entry.status.value}\t{entry.count}")


@execution_app.command("cancel")
def execution_cancel(execution_id: str) -> None:
    """Mark an execution CANCELLED. A run still in flight is not interrupted."""
    engine = _load_engine(None)
    try:
        execution = asyncio.run(engine.cancel_execution(execution_id))
    except ExecutionNotFoundError:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    except IllegalExecutionStateError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status.value}")


@app.command("health")
def health(app_path: Optional[str] = typer.Option(None, "--app", help=APP_OPTION_HELP)) -> None:
    """Ping the lock store; exit code 1 when unhealthy."""
    engine = _load_engine(app_path)
    if asyncio.run(engine.is_healthy()):
        typer.echo("healthy")
        return
    typer.secho("unhealthy", fg=typer.colors.RED)
    raise typer.Exit(code=1)


@maintenance_app.command("run")
def maintenance_run(
    app_path: Optional[str] = typer.Option(None, "--app", help=APP_OPTION_HELP),
    forever: bool = typer.Option(False, help="Keep sweeping until interrupted"),
    interval: Optional[float] = typer.Option(None, help="Seconds between sweeps with --forever"),
) -> None:
    """
    Run the timeout, stale-step and auto-retry sweeps.

    Auto-retry needs the registered workflows, so pass --app to retry anything.

    Example:
        sagaflow maintenance run --app myservice.workflows:engine
        sagaflow maintenance run --forever --interval 60
    """
    engine = _load_engine(app_path)
    maintenance = WorkflowMaintenance(engine, load_config().maintenance)

    if forever:
        try:
            asyncio.run(maintenance.run_forever(interval, auto_retry=app_path is not None))
        except KeyboardInterrupt:
            typer.echo("Stopped")
        return

    async def _sweep() -> None:
        timed_out = await maintenance.handle_timed_out_executions()
        stale = await maintenance.detect_stale_running_steps()
        retried = await maintenance.auto_retry_failed_executions() if app_path else []
        typer.echo(f"Timed out: {len(timed_out)}")
        typer.echo(f"Stale steps: {len(stale)}")
        typer.echo(f"Retried: {len(retried)}")

    asyncio.run(_sweep())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
