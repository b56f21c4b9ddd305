"""
CLI commands for run history — persisted checkpoint logs.

Usage::

    hostplan runs list
    hostplan runs list --json
    hostplan runs show <run-id>
"""

from __future__ import annotations

import json
import sys

import click


def _settings(ctx: click.Context):
    from hostplan.core.config.settings import load_settings
    from hostplan.core.errors import ConfigError

    try:
        return load_settings(ctx.obj.get("config_path"), {"state_dir": ctx.obj.get("state_dir")})
    except ConfigError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(2)


@click.group()
def runs() -> None:
    """Runs — inspect past runs on this host."""


@runs.command("list")
@click.option("-n", "limit", default=20, show_default=True, help="Number of runs to show.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, limit: int, as_json: bool) -> None:
    """List recent runs, newest last."""
    from hostplan.core.persistence.audit import AuditWriter
    from hostplan.core.persistence.checkpoint import list_runs

    settings = _settings(ctx)
    run_ids = list_runs(settings.state_dir)[-limit:]
    summaries = {e.run_id: e for e in AuditWriter(settings.audit_path).read_all()}

    if as_json:
        rows = []
        for run_id in run_ids:
            entry = summaries.get(run_id)
            rows.append(entry.model_dump(mode="json") if entry else {"run_id": run_id, "status": "unknown"})
        click.echo(json.dumps({"runs": rows}, indent=2))
        return

    if not run_ids:
        click.echo("No runs recorded.")
        return

    click.secho(f"\n📋 Runs in {settings.state_dir}", fg="cyan", bold=True)
    for run_id in run_ids:
        entry = summaries.get(run_id)
        if entry is None:
            # Interrupted before the summary was written.
            click.echo(f"   • {run_id}  ", nl=False)
            click.secho("incomplete", fg="yellow")
            continue
        color = {"ok": "green", "failed": "red", "cancelled": "yellow"}.get(entry.status, "white")
        click.echo(f"   • {run_id}  {entry.plan}  ", nl=False)
        click.secho(entry.status, fg=color, nl=False)
        counts = ", ".join(f"{n} {state}" for state, n in sorted(entry.counts.items()))
        click.echo(f"  ({counts})" if counts else "")
    click.echo()


@runs.command("show")
@click.argument("run_id")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def show(ctx: click.Context, run_id: str, as_json: bool) -> None:
    """Show the checkpoint log of one run."""
    from hostplan.core.persistence.checkpoint import CheckpointLog, checkpoint_path

    settings = _settings(ctx)
    path = checkpoint_path(settings.state_dir, run_id)
    if not path.is_file():
        click.secho(f"❌ No run '{run_id}' in {settings.state_dir}", fg="red", err=True)
        sys.exit(1)

    records = CheckpointLog.open(path).records

    if as_json:
        click.echo(json.dumps({
            "run_id": run_id,
            "records": [r.model_dump(mode="json") for r in records],
        }, indent=2))
        return

    click.secho(f"\n📜 {run_id}", fg="cyan", bold=True)
    for record in records:
        outcome = record.outcome.value
        color = {
            "satisfied": "green", "applied": "green", "rolled_back": "green",
            "failed": "red", "rollback_failed": "red", "blocked": "yellow",
        }.get(outcome, "white")
        click.echo(f"   {record.timestamp}  {record.step_id:<24} ", nl=False)
        click.secho(outcome, fg=color, nl=False)
        click.echo(f"  {record.detail}" if record.detail else "")
    click.echo()
