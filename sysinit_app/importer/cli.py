"""
CLI commands for the initialization importer.

``flask importer`` wraps the ``ImportOrchestrator`` facade. Validation
sessions live in the configured session store, so ``validate`` followed by a
separate ``commit`` invocation requires ``IMPORTER_SESSION_BACKEND=redis``;
with the in-memory backend use ``validate --commit``.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo, with_appcontext

from sysinit_app.utils.importer import get_importer_modules, is_importer_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .errors import ImporterError
from .pipeline.execution import CommitOptions
from .pipeline.ledger import serialize_entry
from .service import ImportOrchestrator, get_orchestrator


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    Initialization importer commands.

    Lists configured module packages when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. " "Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        paths = get_importer_modules(app)
        if not paths:
            click.echo("No importer module packages configured.")
        else:
            click.echo("Configured importer module packages:")
            for path in paths:
                click.echo(f"  - {path}")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


def _orchestrator() -> ImportOrchestrator:
    try:
        return get_orchestrator()
    except ImporterError as exc:
        raise click.ClickException(exc.message) from exc


def _fail(exc: ImporterError) -> click.ClickException:
    return click.ClickException(f"[{exc.code}] {exc.message}")


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


def _resolve_celery(app) -> Optional[Celery]:
    """
    Retrieve the registered Celery instance, raising a helpful error if missing.
    """
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


@importer_cli.command("modules")
@click.option("--json", "as_json", is_flag=True, help="Emit the module list as JSON.")
@with_appcontext
def list_modules_command(as_json: bool):
    """List registered modules in import order with their readiness."""
    modules = _orchestrator().list_modules()
    if as_json:
        _echo_json(modules)
        return
    for module in modules:
        state = "imported" if module["imported"] else ("ready" if module["can_import"] else "blocked")
        deps = ", ".join(module["dependencies"]) or "-"
        click.echo(f"{module['position']:>3}. {module['id']:<24} {state:<9} depends on: {deps}")


@importer_cli.command("order")
@with_appcontext
def import_order_command():
    """Show the resolved import order and what each module still waits for."""
    for entry in _orchestrator().import_plan():
        line = f"{entry.position}. {entry.descriptor.id}"
        if entry.missing_dependencies:
            line += f" (waiting for: {', '.join(entry.missing_dependencies)})"
        elif entry.imported:
            line += " (imported)"
        click.echo(line)


@importer_cli.command("template")
@click.argument("module_id")
@click.option("--format", "template_format", type=click.Choice(["csv", "xlsx"]), default="csv", show_default=True)
@click.option(
    "--output",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Where to write the template. Defaults to <module>-import-template.<format>.",
)
@click.option("--spec", "spec_only", is_flag=True, help="Print the column specification as JSON instead.")
@with_appcontext
def template_command(module_id: str, template_format: str, output: Optional[Path], spec_only: bool):
    """Generate an upload template for MODULE_ID."""
    orchestrator = _orchestrator()
    try:
        if spec_only:
            _echo_json(orchestrator.get_template(module_id, template_format).as_dict())
            return
        rendered = orchestrator.render_template(module_id, template_format)
    except ImporterError as exc:
        raise _fail(exc) from exc
    target = output or Path(rendered.file_name)
    target.write_bytes(rendered.content)
    click.echo(f"Template written to {target}")


# ---------------------------------------------------------------------------
# Validate / commit
# ---------------------------------------------------------------------------


def _commit_options(
    continue_on_error: Optional[bool],
    dry_run: bool,
    chunk_size: Optional[int],
    actor: Optional[str],
) -> CommitOptions:
    try:
        return CommitOptions.coerce(
            continue_on_error=continue_on_error,
            dry_run=dry_run,
            chunk_size=chunk_size,
            actor=actor,
        )
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc


_commit_flags = [
    click.option(
        "--continue-on-error/--stop-on-error",
        default=None,
        help="Keep going after a failed chunk. Defaults to IMPORTER_CONTINUE_ON_ERROR.",
    ),
    click.option("--dry-run", is_flag=True, help="Run every chunk and roll it back."),
    click.option("--chunk-size", type=int, help="Rows per chunk transaction."),
    click.option("--actor", help="Recorded on the job and ledger entry."),
]


def commit_flags(func):
    for option in reversed(_commit_flags):
        func = option(func)
    return func


@importer_cli.command("validate")
@click.argument("module_id")
@click.option(
    "--file",
    "file_path",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="CSV or XLSX file to validate.",
)
@click.option("--commit", "commit_now", is_flag=True, help="Commit the session immediately when it can proceed.")
@commit_flags
@with_appcontext
def validate_command(
    module_id: str,
    file_path: Path,
    commit_now: bool,
    continue_on_error: Optional[bool],
    dry_run: bool,
    chunk_size: Optional[int],
    actor: Optional[str],
):
    """Validate FILE for MODULE_ID and stage a validation session."""
    orchestrator = _orchestrator()
    options = _commit_options(continue_on_error, dry_run, chunk_size, actor)
    try:
        with file_path.open("rb") as handle:
            session = orchestrator.validate(module_id, file=handle, file_name=file_path.name, actor=actor)
    except ImporterError as exc:
        raise _fail(exc) from exc

    summary = session.summary()
    if not commit_now:
        _echo_json(summary)
        return
    try:
        receipt = orchestrator.commit(session.session_id, options)
    except ImporterError as exc:
        _echo_json(summary)
        raise _fail(exc) from exc
    _echo_json({"session": summary, "job": receipt.as_dict()})


@importer_cli.command("commit")
@click.argument("session_id")
@commit_flags
@with_appcontext
def commit_command(
    session_id: str,
    continue_on_error: Optional[bool],
    dry_run: bool,
    chunk_size: Optional[int],
    actor: Optional[str],
):
    """Commit validation session SESSION_ID into an import job."""
    orchestrator = _orchestrator()
    options = _commit_options(continue_on_error, dry_run, chunk_size, actor)
    try:
        receipt = orchestrator.commit(session_id, options)
    except ImporterError as exc:
        raise _fail(exc) from exc
    _echo_json(receipt.as_dict())


@importer_cli.command("discard")
@click.argument("session_id")
@with_appcontext
def discard_command(session_id: str):
    """Drop validation session SESSION_ID without committing it."""
    removed = _orchestrator().discard(session_id)
    click.echo(f"Session {session_id} {'discarded' if removed else 'was not found'}.")


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


@importer_cli.command("execute")
@click.argument("job_id")
@with_appcontext
def execute_command(job_id: str):
    """Run pending job JOB_ID in this process."""
    orchestrator = _orchestrator()
    try:
        job = orchestrator.execute(job_id)
        _echo_json(orchestrator.status(job.job_id).as_dict())
    except ImporterError as exc:
        raise _fail(exc) from exc


@importer_cli.command("status")
@click.argument("job_id")
@click.option("--rows", "row_limit", default=20, show_default=True, help="Failed rows to include.")
@with_appcontext
def status_command(job_id: str, row_limit: int):
    """Show status and progress for JOB_ID."""
    try:
        view = _orchestrator().status(job_id, row_limit=row_limit)
    except ImporterError as exc:
        raise _fail(exc) from exc
    _echo_json(view.as_dict())


@importer_cli.command("jobs")
@click.option("--module", "module_id", help="Only show jobs for this module.")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice(["pending", "processing", "completed", "failed", "cancelled"]),
    help="Filter by status; repeatable.",
)
@click.option("--limit", default=25, show_default=True)
@with_appcontext
def jobs_command(module_id: Optional[str], statuses: tuple[str, ...], limit: int):
    """List import jobs, newest first."""
    try:
        jobs = _orchestrator().list_jobs(module_id, statuses=statuses, limit=limit)
    except ImporterError as exc:
        raise _fail(exc) from exc
    if not jobs:
        click.echo("No import jobs found.")
        return
    for job in jobs:
        status = getattr(job.status, "value", job.status)
        mode = " (dry run)" if job.dry_run else ""
        click.echo(
            f"{job.job_id}  {job.module_id:<16} {status:<10} "
            f"{job.success_rows}/{job.total_rows} ok, {job.failed_rows} failed{mode}"
        )


@importer_cli.command("cancel")
@click.argument("job_id")
@with_appcontext
def cancel_command(job_id: str):
    """Cancel JOB_ID (immediately when pending, at the next chunk when processing)."""
    try:
        job = _orchestrator().cancel(job_id)
    except ImporterError as exc:
        raise _fail(exc) from exc
    if job.is_terminal:
        click.echo(f"Job {job_id} cancelled.")
    else:
        click.echo(f"Cancellation requested for job {job_id}; it stops after the current chunk.")


@importer_cli.command("rollback")
@click.argument("job_id")
@click.option("--cascade", is_flag=True, help="Also roll back later imports of dependent modules.")
@click.option("--actor", help="Recorded on the ledger entry.")
@with_appcontext
def rollback_command(job_id: str, cascade: bool, actor: Optional[str]):
    """Reverse the rows written by completed job JOB_ID."""
    try:
        result = _orchestrator().rollback(job_id, cascade=cascade, actor=actor)
    except ImporterError as exc:
        raise _fail(exc) from exc
    _echo_json(result.as_dict())


@importer_cli.command("history")
@click.option("--module", "module_id", help="Only show entries for this module.")
@click.option("--limit", default=20, show_default=True)
@click.option("--exclude-dry-runs", is_flag=True)
@with_appcontext
def history_command(module_id: Optional[str], limit: int, exclude_dry_runs: bool):
    """Show the import history ledger, newest first."""
    try:
        entries = _orchestrator().history(module_id, limit=limit, include_dry_runs=not exclude_dry_runs)
    except ImporterError as exc:
        raise _fail(exc) from exc
    _echo_json([serialize_entry(entry) for entry in entries])


@importer_cli.command("sweep-sessions")
@with_appcontext
def sweep_sessions_command():
    """Remove expired validation sessions."""
    removed = _orchestrator().sweep_sessions()
    click.echo(f"Removed {removed} expired validation session(s).")


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but committed jobs execute inline until the flag is enabled.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option(
    "--pool",
    type=str,
    help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').",
)
@click.option(
    "--queues",
    default=DEFAULT_QUEUE_NAME,
    show_default=True,
    help="Comma-separated queue list to consume.",
)
@click.option("--beat", is_flag=True, help="Also run the periodic session sweep.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str, beat: bool):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])
    if beat:
        argv.append("--beat")

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc
    except Exception as exc:  # pragma: no cover - surfacing unexpected errors
        raise click.ClickException(f"Worker ping failed: {exc}") from exc

    click.echo(json.dumps(payload, indent=2))
