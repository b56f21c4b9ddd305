"""
hostplan — CLI entrypoint.

Usage:
    hostplan --help
    hostplan validate --plan plans/monitoring.yml
    hostplan apply --plan plans/monitoring.yml --dry-run
    hostplan runs list
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import click

from hostplan import __version__
from hostplan.core.observability.logging_config import resolve_level, setup_logging

_STATE_COLORS = {
    "satisfied": "green",
    "applied": "green",
    "planned": "cyan",
    "failed": "red",
    "blocked": "yellow",
}
_STATE_ICONS = {
    "satisfied": "✓",
    "applied": "✓",
    "planned": "○",
    "failed": "✗",
    "blocked": "⊘",
}


@click.group()
@click.version_option(version=__version__, prog_name="hostplan")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--state-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory for run logs, the run lock and the audit ledger.",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to hostplan.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    state_dir: str | None,
    config_path: str | None,
) -> None:
    """hostplan — declarative, idempotent host provisioning."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["state_dir"] = state_dir

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(debug, verbose, quiet, os.environ.get("HOSTPLAN_LOG_LEVEL")),
        log_file=os.environ.get("HOSTPLAN_LOG_FILE"),
        log_file_level=os.environ.get("HOSTPLAN_LOG_FILE_LEVEL"),
    )


def load_cli_settings(ctx: click.Context, **overrides):
    """Resolve settings for a command, exiting 2 on a bad configuration."""
    from hostplan.core.config.settings import load_settings
    from hostplan.core.errors import ConfigError

    overrides.setdefault("state_dir", ctx.obj.get("state_dir"))
    try:
        return load_settings(ctx.obj.get("config_path"), overrides)
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)


@cli.command()
@click.option("--plan", "plan_path", required=True, type=click.Path(dir_okay=False), help="Plan YAML file.")
@click.option(
    "--on-failure",
    type=click.Choice(["abort", "continue"]),
    default=None,
    help="Failure policy for steps without their own (default: the plan's).",
)
@click.option("--dry-run", is_flag=True, help="Probe only; report what would change.")
@click.option("--var", "variables", multiple=True, metavar="KEY=VALUE", help="Bind a plan variable.")
@click.option("--mock", is_flag=True, help="Run against an in-memory host (no real changes).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def apply(
    ctx: click.Context,
    plan_path: str,
    on_failure: str | None,
    dry_run: bool,
    variables: tuple[str, ...],
    mock: bool,
    as_json: bool,
) -> None:
    """Bring this host to the state a plan describes.

    Exit codes: 0 ok, 1 a step failed (after rollback), 2 invalid plan
    or settings, 3 another run holds the lock.

    Examples:

        hostplan apply --plan plans/monitoring.yml --var DOMAIN=mon.example.com

        hostplan apply --plan plans/n8n.yml --dry-run

        hostplan apply --plan site.yml --on-failure continue
    """
    from hostplan.core.config.loader import parse_var_overrides
    from hostplan.core.errors import InvalidStepSpec
    from hostplan.core.models.step import FailurePolicy
    from hostplan.core.use_cases.apply import apply_plan

    settings = load_cli_settings(ctx)
    try:
        cli_vars = parse_var_overrides(variables)
    except InvalidStepSpec as e:
        _fail(str(e), as_json, 2)

    quiet = ctx.obj.get("quiet", False)
    verbose = ctx.obj.get("verbose", False)

    if not as_json and not quiet:
        mode_label = "[dry-run] " if dry_run else "[mock] " if mock else ""
        click.secho(f"\n⚡ {mode_label}apply — {plan_path}", fg="cyan", bold=True)
        click.echo()

    def show_step(step) -> None:
        if as_json:
            return
        state = step.state.value
        if quiet and state not in ("failed", "blocked"):
            return
        click.secho(f"   {_STATE_ICONS.get(state, '•')} {step.step_id}", fg=_STATE_COLORS.get(state), nl=False)
        timing = f" ({step.duration_ms}ms)" if step.duration_ms else ""
        click.echo(f"  {state}{timing}")
        if step.detail and (verbose or state in ("failed", "blocked", "planned")):
            for line in step.detail.split("\n")[:5]:
                click.echo(f"     │ {line}")

    result = apply_plan(
        Path(plan_path),
        settings,
        on_failure=FailurePolicy(on_failure) if on_failure else None,
        dry_run=dry_run,
        cli_vars=cli_vars,
        mock=mock,
        on_step=show_step,
    )

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(result.exit_code)

    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(result.exit_code)

    report = result.report
    assert report is not None

    if report.rollbacks:
        click.echo()
        click.secho("   Rollback:", fg="white", bold=True)
        for rb in report.rollbacks:
            color = "green" if rb.outcome.value == "rolled_back" else "red" if not rb.ok else "yellow"
            click.secho(f"     ↩ {rb.step_id}", fg=color, nl=False)
            click.echo(f"  {rb.outcome.value} — {rb.detail}")

    click.echo()
    counts = ", ".join(f"{n} {state}" for state, n in sorted(report.counts.items()))
    status_color = {"ok": "green", "failed": "red", "cancelled": "yellow"}.get(report.status, "white")
    click.secho(f"   Result: {report.status} ({counts or 'no steps'})", fg=status_color, bold=True)
    if not quiet:
        click.echo(f"   Run: {report.run_id}")
        if report.checkpoint:
            click.echo(f"   Log: {report.checkpoint}")
    click.echo()
    sys.exit(report.exit_code)


@cli.command()
@click.option("--plan", "plan_path", required=True, type=click.Path(dir_okay=False), help="Plan YAML file.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
def validate(plan_path: str, as_json: bool) -> None:
    """Validate a plan file and show its execution order."""
    from hostplan.core.use_cases.validate import check_plan

    result = check_plan(Path(plan_path))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        sys.exit(0 if result.valid else 2)

    if result.valid:
        assert result.plan is not None
        click.secho("✅ Plan is valid", fg="green", bold=True)
        click.echo(f"   Plan: {result.plan.name}")
        click.echo(f"   Steps: {len(result.plan.steps)}")
        click.echo()
        click.secho("   Order:", fg="white", bold=True)
        for i, step_id in enumerate(result.order, start=1):
            step = result.plan.get_step(step_id)
            click.echo(f"     {i:>2}. {step_id}  [{step.kind.value}]")
    else:
        click.secho("❌ Plan errors:", fg="red", bold=True)
        for err in result.errors:
            click.echo(f"   • {err}")

    if result.warnings:
        click.echo()
        click.secho("⚠️  Warnings:", fg="yellow")
        for warn in result.warnings:
            click.echo(f"   • {warn}")

    click.echo()
    if not result.valid:
        sys.exit(2)


@cli.command()
@click.option("--plan", "plan_path", required=True, type=click.Path(dir_okay=False), help="Plan YAML file.")
@click.option("--write", is_flag=True, help="Rewrite the file in place.")
def fmt(plan_path: str, write: bool) -> None:
    """Print a plan in canonical form."""
    from hostplan.core.config.loader import dump_plan, load_plan
    from hostplan.core.errors import InvalidStepSpec

    path = Path(plan_path)
    try:
        text = dump_plan(load_plan(path))
    except InvalidStepSpec as e:
        _fail(str(e), False, 2)

    if write:
        path.write_text(text, encoding="utf-8")
        click.secho(f"✅ Formatted {path}", fg="green")
    else:
        click.echo(text, nl=False)


def _fail(message: str, as_json: bool, code: int) -> None:
    if as_json:
        click.echo(json.dumps({"error": message, "exit_code": code}, indent=2))
    else:
        click.secho(f"❌ {message}", fg="red", err=True)
    sys.exit(code)


# ── Register sub-command groups from hostplan/ui/cli/ ─────────────

from hostplan.ui.cli.runs import runs  # noqa: E402

cli.add_command(runs)


if __name__ == "__main__":
    cli()
