"""Command line interface for waypoint workers, runs and hooks."""

from __future__ import annotations

import asyncio
import importlib
import importlib.util
import json
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, List, Optional, TypeVar

import typer
from pydantic import ValidationError

from waypoint import RunScheduler, get_repository, get_transport
from waypoint.errors import HookValidationError, WaypointError
from waypoint.persistence.models import RunStatus

app = typer.Typer(help="CLI for waypoint durable workflows")

# Command groups
run_app = typer.Typer(help="Commands for inspecting and restarting runs")
hook_app = typer.Typer(help="Commands for resolving and expiring hooks")

app.add_typer(run_app, name="run")
app.add_typer(hook_app, name="hook")

T = TypeVar("T")

ModuleOption = typer.Option(
    None,
    "--module",
    "-m",
    help="Module name or .py path that defines workflows/hooks (repeatable)",
)


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v")) -> None:
    """waypoint CLI entry point."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_modules(modules: Optional[List[str]]) -> None:
    """Import user modules so their @workflow and define_hook calls register."""
    for module in modules or []:
        path = Path(module)
        if path.suffix == ".py":
            if not path.exists():
                typer.secho(f"Module file not found: {module}", fg=typer.colors.RED)
                raise typer.Exit(code=1)
            spec = importlib.util.spec_from_file_location(path.stem, path)
            loaded = importlib.util.module_from_spec(spec)
            sys.modules[path.stem] = loaded
            spec.loader.exec_module(loaded)
        else:
            importlib.import_module(module)


def _parse_json(value: Optional[str], what: str) -> Any:
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as exc:
        typer.secho(f"Invalid {what} JSON: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _scheduler() -> RunScheduler:
    return RunScheduler(repository=get_repository(), transport=get_transport())


def _run(scheduler: RunScheduler, operation: Awaitable[T]) -> T:
    """Run one scheduler call, then release its transport connection."""

    async def _call() -> T:
        try:
            return await operation
        finally:
            await scheduler.close()

    return asyncio.run(_call())


def _fail(exc: Exception) -> None:
    typer.secho(str(exc), fg=typer.colors.RED)
    raise typer.Exit(code=1)


@app.command("worker")
def worker(
    module: Optional[List[str]] = ModuleOption,
    lifespan: Optional[float] = None,
    recover: bool = typer.Option(True, help="Re-drive interrupted runs on startup"),
) -> None:
    """
    Run a worker that executes runs from the run queue.

    Args:
        module: Modules defining the workflows this worker can execute
        lifespan: Worker timeout in seconds (default: run indefinitely)
        recover: Re-enqueue runs left pending, running or due by a previous worker

    Example:
        waypoint worker -m waypoint.workflows.renewal
        waypoint worker -m ./my_workflows.py --lifespan 300
    """
    _load_modules(module)
    scheduler = _scheduler()

    async def _serve() -> None:
        if recover:
            await scheduler.recover()
        try:
            await scheduler.serve(lifespan=lifespan)
        finally:
            await scheduler.close()

    typer.echo(f"Starting worker on queue: {scheduler.config.scheduler.queue}")
    asyncio.run(_serve())


@app.command("start")
def start(
    workflow_name: str,
    input_json: Optional[str] = typer.Option(None, "--input", "-i", help="Workflow input as JSON"),
    module: Optional[List[str]] = ModuleOption,
    wait: Optional[float] = typer.Option(
        None, help="Execute in-process and wait up to this many seconds for a result"
    ),
) -> None:
    """
    Start a run of a registered workflow and print its run id.

    Example:
        waypoint start procurement -m waypoint.workflows.procurement \\
            --input '{"employeeId": "e-7", "itemDescription": "laptop", "quantity": 2,
                      "department": "eng", "requesterEmail": "e-7@company.com"}'
    """
    _load_modules(module)
    workflow_input = _parse_json(input_json, "input")
    scheduler = _scheduler()

    async def _start():
        handle = await scheduler.start(workflow_name, workflow_input)
        if wait is None:
            return handle.run_id, None
        worker_task = asyncio.create_task(scheduler.serve())
        try:
            run = await handle.wait(
                statuses=(RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.WAITING),
                timeout=wait,
            )
        except asyncio.TimeoutError:
            run = await scheduler.get_run(handle.run_id)
        finally:
            worker_task.cancel()
            await asyncio.gather(worker_task, return_exceptions=True)
        return handle.run_id, run

    try:
        run_id, run = _run(scheduler, _start())
    except (WaypointError, ValidationError) as exc:
        _fail(exc)
    typer.echo(f"Run started: {run_id}")
    if run is not None:
        typer.echo(f"Status: {run.status.value}")
        if run.output is not None:
            typer.echo(f"Output: {json.dumps(run.output)}")


@run_app.command("list")
def run_list(
    status: Optional[RunStatus] = typer.Option(None, help="Only show runs in this status"),
) -> None:
    """
    List runs with their workflow and current status.

    Example:
        waypoint run list --status waiting
        # Output: 9b1c...    renewal    waiting
    """
    repo = get_repository()
    runs = asyncio.run(repo.list_runs(status=status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.run_id}\t{run.workflow_name}\t{run.status.value}")


@run_app.command("show")
def run_show(run_id: str) -> None:
    """
    Show a run and the steps recorded in its durable log.

    Example:
        waypoint run show 9b1c...
        # Output: Run 9b1c... (renewal): waiting
        #         - 1:extract_sov: completed (attempts=1, generation=1)
    """
    repo = get_repository()

    async def _load():
        return await repo.get_run(run_id), await repo.list_steps(run_id)

    run, steps = asyncio.run(_load())
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    typer.echo(f"Run {run.run_id} ({run.workflow_name}): {run.status.value}")
    if run.input_args is not None:
        typer.echo(f"Input: {json.dumps(run.input_args)}")
    if run.waiting_on:
        typer.echo(f"Waiting on hook: {run.waiting_on}")
    if run.resume_at:
        typer.echo(f"Resumes at: {run.resume_at.isoformat()}")
    if run.output is not None:
        typer.echo(f"Output: {json.dumps(run.output)}")
    if run.error:
        typer.echo(f"Error: {run.error.get('type')}: {run.error.get('message')}")
    for record in steps:
        typer.echo(
            f"- {record.step_key}: {record.status.value} "
            f"(attempts={record.attempts}, generation={record.generation})"
        )


@run_app.command("restart")
def run_restart(run_id: str) -> None:
    """
    Restart a failed run. Completed steps are replayed, not re-executed.

    Example:
        waypoint run restart 9b1c...
    """
    scheduler = _scheduler()
    try:
        run = _run(scheduler, scheduler.restart(run_id))
    except WaypointError as exc:
        _fail(exc)
    typer.echo(f"Run {run.run_id} restarted (generation {run.generation})")


@hook_app.command("resolve")
def hook_resolve(
    token: str,
    payload: str = typer.Option("{}", help="Resolution payload as JSON"),
    module: Optional[List[str]] = ModuleOption,
) -> None:
    """
    Resolve a pending hook and resume the run waiting on it.

    Example:
        waypoint hook resolve renewal:acct-1:2025-01-01 \\
            --payload '{"approved": true, "by": "broker@example.com"}'
    """
    _load_modules(module)
    data = _parse_json(payload, "payload")
    scheduler = _scheduler()
    try:
        run_id = _run(scheduler, scheduler.resolve_hook(token, data))
    except HookValidationError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        for error in exc.errors:
            typer.echo(f"  {'.'.join(str(p) for p in error['loc'])}: {error['msg']}")
        raise typer.Exit(code=1)
    except WaypointError as exc:
        _fail(exc)
    typer.echo(f"Hook {token} resolved; resuming run {run_id}")


@hook_app.command("expire")
def hook_expire(token: str) -> None:
    """Expire a pending hook so the waiting run takes its timeout path."""
    scheduler = _scheduler()
    try:
        run_id = _run(scheduler, scheduler.expire_hook(token))
    except WaypointError as exc:
        _fail(exc)
    typer.echo(f"Hook {token} expired; resuming run {run_id}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
