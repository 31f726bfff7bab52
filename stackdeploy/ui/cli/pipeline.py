"""
CLI commands for pipeline generation.

Thin wrappers over ``stackdeploy.core.services.pipeline``.
"""

from __future__ import annotations

import json
import sys

import click


@click.group()
def pipeline() -> None:
    """Pipeline — generate deploy and destroy workflows."""


@pipeline.command("generate")
@click.option("--branch", default="main", show_default=True, help="Branch whose pushes deploy.")
@click.option("--python", "python_version", default="3.12", show_default=True, help="Runner Python version.")
@click.option("--build-command", default="", help="Command that builds artifacts before deploying.")
@click.option("--force", is_flag=True, help="Overwrite existing workflow files.")
@click.option("--dry-run", is_flag=True, help="Print the workflows instead of writing them.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def generate(
    ctx: click.Context,
    branch: str,
    python_version: str,
    build_command: str,
    force: bool,
    dry_run: bool,
    as_json: bool,
) -> None:
    """Write .github/workflows/deploy.yml and destroy.yml."""
    from stackdeploy.core.errors import StackDeployError
    from stackdeploy.core.services.pipeline import generate_workflows
    from stackdeploy.core.use_cases.session import open_session

    try:
        session = open_session(ctx.obj.get("config_path"))
    except StackDeployError as e:
        click.secho(f"❌ {e}", fg="red", err=True)
        sys.exit(1)

    files = generate_workflows(
        session.project,
        branch=branch,
        python_version=python_version,
        build_command=build_command,
    )

    if dry_run:
        if as_json:
            click.echo(json.dumps([f.model_dump() for f in files], indent=2))
            return
        for f in files:
            click.secho(f"# ── {f.path} ──", fg="cyan")
            click.echo(f.content)
        return

    written = {f.path: f.write(session.root, force=force) for f in files}
    if as_json:
        click.echo(json.dumps({"written": written}, indent=2))
        return

    for path, wrote in written.items():
        if wrote:
            click.secho(f"   ✅ {path}", fg="green")
        else:
            click.secho(f"   ⊘ {path} exists (use --force to overwrite)", fg="yellow")
