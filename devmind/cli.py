"""Command line interface.

Every command recovers state from ``--state-dir`` first, so commands can be
chained across processes::

    devmind submit "todo app" --timeout 30
    devmind status <batch>
    devmind approve <batch>:task-2
    devmind serve --port 8080

Exit codes: 0 ok, 1 validation error, 2 not found, 3 conflict, 4 storage error.
"""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import click

from devmind import __version__
from devmind.config.settings import Settings
from devmind.di_container import init_container, shutdown_container
from devmind.enhanced_logging import configure_logging
from devmind.exceptions_unified import (
    ConflictError,
    DevMindException,
    NotFoundError,
    StorageError,
    ValidationError,
)
from devmind.orchestration.planner import load_plan

EXIT_VALIDATION = 1
EXIT_NOT_FOUND = 2
EXIT_CONFLICT = 3
EXIT_STORAGE = 4

STATUS_COLORS = {
    "completed": "green",
    "in_progress": "cyan",
    "review": "yellow",
    "blocked": "yellow",
    "error": "red",
    "cancelled": "red",
}


def exit_code_for(error: DevMindException) -> int:
    if isinstance(error, ValidationError):
        return EXIT_VALIDATION
    if isinstance(error, NotFoundError):
        return EXIT_NOT_FOUND
    if isinstance(error, ConflictError):
        return EXIT_CONFLICT
    if isinstance(error, StorageError):
        return EXIT_STORAGE
    return EXIT_VALIDATION


def _run(ctx: click.Context, action: Callable[[Any], Awaitable[Any]]) -> Any:
    """Recover the orchestrator, run ``action`` on it, shut down. Maps errors to exit codes."""
    settings: Settings = ctx.obj["settings"]

    async def _main():
        container = init_container(settings)
        try:
            orchestrator = await container.ready_orchestrator()
            return await action(orchestrator)
        finally:
            await shutdown_container()

    try:
        return asyncio.run(_main())
    except DevMindException as e:
        click.echo(click.style(f"error: {e.kind}: {e.message}", fg="red"), err=True)
        if e.task_id:
            click.echo(f"task: {e.task_id}", err=True)
        ctx.exit(exit_code_for(e))


def _print_status(status: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(status, indent=2, default=str))
        return
    click.echo(f"Batch {status['batch_id']}: {click.style(status['state'], bold=True)}")
    if status["description"]:
        click.echo(f"  {status['description']}")
    budget = status["budget"]
    click.echo(f"  invocations: {status['invocations']}" + (f"/{budget}" if budget is not None else ""))
    for task in status["tasks"]:
        line = f"  {task['task_id']:<28} {task['capability']:<10} "
        line += click.style(f"{task['status']:<12}", fg=STATUS_COLORS.get(task["status"]))
        line += f" attempt {task['attempt']}/{task['max_attempts']}"
        if task["waiting_on"]:
            line += f"  waiting on {', '.join(task['waiting_on'])}"
        if task["error"]:
            line += f"  [{task['error']['kind']}] {task['error']['message']}"
        click.echo(line)


@click.group()
@click.version_option(__version__, prog_name="devmind")
@click.option("--state-dir", envvar="DEVMIND_STATE_DIR", default=None, help="State directory (journal and checkpoints)")
@click.option("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
@click.pass_context
def cli(ctx: click.Context, state_dir: Optional[str], log_level: Optional[str]) -> None:
    """DevMind orchestration core."""
    overrides: Dict[str, Any] = {}
    if state_dir:
        overrides["state_dir"] = state_dir
    if log_level:
        overrides["log_level"] = log_level
    settings = Settings(**overrides)
    configure_logging(settings)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


@cli.command()
@click.argument("description")
@click.option("--plan", "plan_path", type=click.Path(exists=True, dir_okay=False), help="project-plan.json to submit")
@click.option("--budget", type=int, default=None, help="Maximum worker invocations for the batch")
@click.option("--deadline", type=float, default=None, help="Batch deadline as a unix timestamp")
@click.option("--timeout", type=float, default=None, help="Stop waiting after this many seconds")
@click.option("--wait/--no-wait", default=True, help="Run the batch until it is idle")
@click.option("--json", "as_json", is_flag=True, help="Print status as JSON")
@click.pass_context
def submit(ctx, description, plan_path, budget, deadline, timeout, wait, as_json):
    """Plan DESCRIPTION and submit it as a new batch."""
    constraints = {"budget": budget, "deadline": deadline}

    async def action(orchestrator):
        plan = load_plan(plan_path) if plan_path else None
        batch_id = orchestrator.submit_project(description, constraints=constraints, plan=plan)
        if wait:
            finished = await orchestrator.run_until_idle(timeout)
            if not finished:
                click.echo(click.style("timed out; the batch keeps its state", fg="yellow"), err=True)
        return orchestrator.status(batch_id).to_dict()

    _print_status(_run(ctx, action), as_json)


@cli.command()
@click.option("--timeout", type=float, default=None, help="Stop waiting after this many seconds")
@click.pass_context
def run(ctx, timeout):
    """Resume every unfinished batch until nothing can progress."""

    async def action(orchestrator):
        finished = await orchestrator.run_until_idle(timeout)
        return finished, [orchestrator.status(b.batch_id).to_dict() for b in orchestrator.store.list_batches()]

    finished, statuses = _run(ctx, action)
    for status in statuses:
        click.echo(f"{status['batch_id']}: {status['state']}")
    if not finished:
        click.echo(click.style("timed out", fg="yellow"), err=True)


@cli.command()
@click.argument("batch_id")
@click.option("--json", "as_json", is_flag=True, help="Print status as JSON")
@click.pass_context
def status(ctx, batch_id, as_json):
    """Show a batch's tasks and state."""

    async def action(orchestrator):
        return orchestrator.status(batch_id).to_dict()

    _print_status(_run(ctx, action), as_json)


@cli.command()
@click.argument("batch_id")
@click.pass_context
def cancel(ctx, batch_id):
    """Cancel every unfinished task of a batch."""

    async def action(orchestrator):
        return await orchestrator.cancel(batch_id)

    cancelled = _run(ctx, action)
    click.echo(f"cancelled {len(cancelled)} tasks")


@cli.command()
@click.argument("task_id")
@click.option("--rationale", default="approved", help="Recorded in the decision log")
@click.option("--timeout", type=float, default=None, help="Stop waiting after this many seconds")
@click.option("--wait/--no-wait", default=True, help="Continue running the batch after approval")
@click.pass_context
def approve(ctx, task_id, rationale, timeout, wait):
    """Approve a task waiting in review."""

    async def action(orchestrator):
        record = await orchestrator.approve(task_id, rationale)
        if wait:
            await orchestrator.run_until_idle(timeout)
        return orchestrator.status(record.batch_id).to_dict()

    _print_status(_run(ctx, action), as_json=False)


@cli.command()
@click.argument("task_id")
@click.option("--reason", required=True, help="Feedback for the next attempt")
@click.option("--timeout", type=float, default=None, help="Stop waiting after this many seconds")
@click.option("--wait/--no-wait", default=True, help="Re-run the task after rejection")
@click.pass_context
def reject(ctx, task_id, reason, timeout, wait):
    """Send a task in review back for another attempt."""

    async def action(orchestrator):
        record = await orchestrator.reject(task_id, reason)
        if wait:
            await orchestrator.run_until_idle(timeout)
        return orchestrator.status(record.batch_id).to_dict()

    _print_status(_run(ctx, action), as_json=False)


@cli.command()
@click.argument("task_id")
@click.option("--note", default="precondition resolved", help="Recorded in the decision log")
@click.option("--timeout", type=float, default=None, help="Stop waiting after this many seconds")
@click.option("--wait/--no-wait", default=True, help="Re-run the task after unblocking")
@click.pass_context
def unblock(ctx, task_id, note, timeout, wait):
    """Retry a task blocked on a missing precondition."""

    async def action(orchestrator):
        record = await orchestrator.unblock(task_id, note)
        if wait:
            await orchestrator.run_until_idle(timeout)
        return orchestrator.status(record.batch_id).to_dict()

    _print_status(_run(ctx, action), as_json=False)


@cli.command()
@click.argument("batch_id")
@click.option("--after", type=int, default=0, help="Only events after this sequence number")
@click.pass_context
def events(ctx, batch_id, after):
    """Print a batch's events as JSON lines."""

    async def action(orchestrator):
        return [e.to_dict() for e in orchestrator.events.events(batch_id, after)]

    for event in _run(ctx, action):
        click.echo(json.dumps(event, default=str))


@cli.command()
@click.option("--host", default=None, help="Bind address (default: DEVMIND_API_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: DEVMIND_API_PORT)")
@click.pass_context
def serve(ctx, host, port):
    """Serve the HTTP API with the scheduling loop running."""
    from devmind.api.devmind_api import run_server

    settings: Settings = ctx.obj["settings"]
    click.echo(f"Serving DevMind API on http://{host or settings.api_host}:{port or settings.api_port}")
    run_server(settings, host, port)


def main() -> None:
    cli(obj={})

