from __future__ import annotations

import asyncio
from pathlib import Path

import click

from fast_staged import __version__
from fast_staged.config import DEFAULT_CONFIG_NAME, default_config, save_config
from fast_staged.errors import FastStagedError
from fast_staged.logging_setup import setup_logging
from fast_staged.pool import TaskPool
from fast_staged.render import DEFAULT_INTERVAL, ProgressObserver
from fast_staged.runner import RunSummary, execute_plan, plan_staged

INTERRUPTED_EXIT_CODE = 130


def _resolve_config_path(directory: Path, config_value: str | None) -> Path | None:
    if not config_value:
        return None
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = directory / config_path
    return config_path.resolve()


def _echo_problem_output(summary: RunSummary) -> None:
    for task in summary.problem_tasks:
        header = f"{task.file}: {task.command} [{task.status.value}]"
        if task.error:
            header += f" {task.error}"
        click.echo("")
        click.secho(header, fg="red", bold=True, err=True)
        output = (task.output or "").rstrip()
        if output:
            click.echo(output, err=True)


@click.group(invoke_without_command=True)
@click.version_option(__version__, prog_name="fast-staged")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Run configured commands against git-staged files."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(run_command)


@cli.command("run")
@click.option("--config", "config_value", default=None, help="Explicit configuration file.")
@click.option("--quiet", is_flag=True, default=False, help="Only report failures.")
@click.option("--verbose", is_flag=True, default=False, help="Enable debug logging on stderr.")
@click.option(
    "--show-output/--no-show-output",
    default=True,
    show_default=True,
    help="Print captured output of failed and timed-out commands.",
)
@click.option(
    "--interval",
    type=float,
    default=DEFAULT_INTERVAL,
    show_default=True,
    help="Progress refresh interval in seconds.",
)
def run_command(
    config_value: str | None,
    quiet: bool,
    verbose: bool,
    show_output: bool,
    interval: float,
) -> None:
    setup_logging(verbose=verbose)
    directory = Path.cwd().resolve()
    try:
        plan = plan_staged(directory, _resolve_config_path(directory, config_value))
    except FastStagedError as exc:
        raise click.ClickException(str(exc)) from exc

    def _observer(pool: TaskPool, total_files: int) -> ProgressObserver:
        return ProgressObserver(pool, total_files, interval=interval, quiet=quiet)

    try:
        summary = asyncio.run(execute_plan(plan, observer_factory=_observer))
    except KeyboardInterrupt:
        click.echo("Interrupted.", err=True)
        raise SystemExit(INTERRUPTED_EXIT_CODE) from None
    except FastStagedError as exc:
        raise click.ClickException(str(exc)) from exc

    if show_output:
        _echo_problem_output(summary)
    for error in summary.join_errors:
        click.secho(f"Internal error: {error}", fg="red", err=True)

    if not summary.ok:
        raise click.ClickException(
            f"{summary.failed} failed, {summary.timed_out} timed out "
            f"of {summary.total_tasks} task(s)."
        )
    if quiet:
        return
    click.echo(f"All {summary.total_tasks} task(s) passed.")


@cli.command("check")
@click.option("--config", "config_value", default=None, help="Explicit configuration file.")
def check_command(config_value: str | None) -> None:
    """Show which commands would run for the staged files, without running them."""
    directory = Path.cwd().resolve()
    try:
        plan = plan_staged(directory, _resolve_config_path(directory, config_value))
        TaskPool.preflight(plan.work_items)
    except FastStagedError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Config: {plan.config.source}")
    for item in plan.work_items:
        click.echo(f"{item.group} [{item.order.value}] {item.file}: {item.command}")
    click.echo(
        f"{len(plan.work_items)} task(s) for {len(plan.changed_files)} staged file(s)."
    )


@cli.command("init")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_NAME, show_default=True)
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing file.")
def init_command(config_value: str, force: bool) -> None:
    """Write a starter configuration file."""
    directory = Path.cwd().resolve()
    config_path = _resolve_config_path(directory, config_value) or directory / DEFAULT_CONFIG_NAME
    if config_path.exists() and not force:
        raise click.ClickException(f"{config_path} already exists. Use --force to overwrite.")
    save_config(config_path, default_config())
    click.echo(f"Wrote {config_path}")
