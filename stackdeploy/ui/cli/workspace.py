"""
CLI commands for workspaces — one isolated state slot per environment.

Thin wrappers over ``stackdeploy.core.services.workspace``.
"""

from __future__ import annotations

import json
import sys

import click


def _session(ctx: click.Context):
    from stackdeploy.core.use_cases.session import open_session

    return open_session(ctx.obj.get("config_path"), mock=ctx.obj.get("mock", False))


@click.group()
def workspace() -> None:
    """Workspaces — list, create and select environment state slots."""


@workspace.command("list")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_cmd(ctx: click.Context, as_json: bool) -> None:
    """List declared environments and whether their workspace exists."""
    from stackdeploy.core.errors import StackDeployError

    try:
        session = _session(ctx)
        backend = session.backend()
        known = session.workspaces().list() if backend.container_exists() else []
    except StackDeployError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    declared = session.project.environment_names
    if as_json:
        click.echo(json.dumps({"declared": declared, "workspaces": known}, indent=2))
        return

    if not declared:
        click.secho("⚠️  No environments declared in stackdeploy.yml", fg="yellow")
        return

    default = session.project.default_environment_name()
    click.secho(f"🗂  Workspaces — {session.project.name}", fg="cyan", bold=True)
    for name in declared:
        marker = " (default)" if name == default else ""
        if name in known:
            click.secho(f"   ✓ {name}{marker}", fg="green")
        else:
            click.echo(f"   · {name}{marker}  (not created)")
    for name in known:
        if name not in declared:
            click.secho(f"   ? {name}  (no longer declared)", fg="yellow")


@workspace.command("new")
@click.argument("name")
@click.pass_context
def new(ctx: click.Context, name: str) -> None:
    """Create the workspace for environment NAME (bootstraps if needed)."""
    from stackdeploy.core.use_cases.bootstrap import run_bootstrap

    result = run_bootstrap(
        name,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
    )
    if result.error:
        click.secho(f"❌ {result.error}", fg="red", err=True)
        sys.exit(1)

    assert result.workspace is not None
    click.secho(f"✅ Workspace {result.workspace.name} ready", fg="green")
    click.echo(f"   State key:   {result.workspace.state_key}")
    click.echo(f"   Name prefix: {result.workspace.name_prefix}")


@workspace.command("select")
@click.argument("name")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def select(ctx: click.Context, name: str, as_json: bool) -> None:
    """Show the state slot of an existing workspace NAME."""
    from stackdeploy.core.errors import StackDeployError

    try:
        selected = _session(ctx).workspaces(name).select(name)
    except StackDeployError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps(selected.to_dict(), indent=2))
        return

    click.secho(f"→ {selected.name}", fg="cyan", bold=True)
    click.echo(f"   State key:   {selected.state_key}")
    click.echo(f"   Lock id:     {selected.lock_id}")
    click.echo(f"   Name prefix: {selected.name_prefix}")
    for key, value in selected.overlay.items():
        click.echo(f"   var.{key} = {value}")
