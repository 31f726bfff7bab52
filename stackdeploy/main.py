"""
stackdeploy — CLI entrypoint.

Usage:
    stackdeploy --help
    stackdeploy bootstrap dev
    stackdeploy deploy dev
    stackdeploy destroy dev --confirm=dev

Exit codes (deploy / destroy):
    0  success
    1  config, build, credential, backend or node failure
    2  environment locked by another run
    3  destroy confirmation mismatch
"""

from __future__ import annotations

import json
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any

import click

from stackdeploy import __version__
from stackdeploy.core.observability.logging_config import (
    ENV_LOG_FILE,
    ENV_LOG_FILE_LEVEL,
    resolve_level,
    setup_logging,
)

_ACTION_STYLE = {
    "create": ("+", "green"),
    "update": ("~", "yellow"),
    "delete": ("-", "red"),
    "read": ("<", "cyan"),
    "unchanged": ("=", "white"),
}


@click.group()
@click.version_option(version=__version__, prog_name="stackdeploy")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False),
    default=None,
    help="Path to stackdeploy.yml (default: auto-detect).",
)
@click.option("--mock", is_flag=True, help="Use the mock provider and mock credentials.")
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: str | None,
    mock: bool,
) -> None:
    """stackdeploy — provision and tear down isolated stack environments."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet
    ctx.obj["debug"] = debug
    ctx.obj["config_path"] = Path(config_path) if config_path else None
    ctx.obj["mock"] = mock

    # ── Logging setup (once, at process start) ──────────────────
    setup_logging(
        level=resolve_level(verbose=verbose, quiet=quiet, debug=debug),
        log_file=os.environ.get(ENV_LOG_FILE),
        log_file_level=os.environ.get(ENV_LOG_FILE_LEVEL),
        quiet_third_party=not debug,
    )


# ── Helpers ─────────────────────────────────────────────────────────


def _parse_vars(pairs: tuple[str, ...], as_json: bool = False) -> dict[str, str]:
    """Parse repeated ``--var key=value`` options.

    A malformed pair is a build error (exit 1), reported before any run starts.
    """
    from stackdeploy.core.use_cases.deploy import EXIT_ERROR

    overrides: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            message = f"Invalid --var: expected key=value, got {pair!r}"
            if as_json:
                _echo_json({"error": message, "exit_code": EXIT_ERROR})
            else:
                _print_error(message)
            sys.exit(EXIT_ERROR)
        overrides[key.strip()] = value
    return overrides


def _cancel_on_sigterm() -> threading.Event:
    """An event set when the process receives SIGTERM (e.g. a cancelled job)."""
    event = threading.Event()
    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGTERM, lambda *_: event.set())
    return event


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _print_error(error: Any) -> None:
    click.secho(f"❌ {error}", fg="red", err=True)


def _print_outcomes(report: Any, verbose: bool) -> None:
    for outcome in report.outcomes:
        action = outcome.action.value if outcome.action else "?"
        symbol, color = _ACTION_STYLE.get(action, ("?", "white"))
        if not outcome.ok:
            click.secho(f"   ✗ {outcome.node_id} ", fg="red", nl=False)
            click.echo(f"({action})")
            if outcome.error:
                for line in outcome.error.split("\n")[:5]:
                    click.echo(f"     │ {line}")
            continue
        if action == "unchanged" and not verbose:
            continue
        click.secho(f"   {symbol} {outcome.node_id}", fg=color, nl=False)
        reasons = f"  ({'; '.join(outcome.reasons)})" if verbose and outcome.reasons else ""
        click.echo(reasons)


def _print_outputs(outputs: dict[str, Any]) -> None:
    if not outputs:
        return
    click.echo()
    click.secho("   Outputs:", fg="white", bold=True)
    for name, value in outputs.items():
        click.echo(f"     {name} = {json.dumps(value, default=str)}")


def _print_deployment(result: Any, ctx: click.Context) -> None:
    verbose = ctx.obj.get("verbose", False)
    quiet = ctx.obj.get("quiet", False)
    mode = result.run.mode.value
    mode_label = "[mock] " if ctx.obj.get("mock") else ""

    if not quiet:
        click.secho(
            f"\n🚀 {mode_label}{mode} {result.run.environment or '?'} — {result.project_name or '?'}",
            fg="cyan",
            bold=True,
        )
        click.echo(f"   Operation: {result.run.operation_id} ({result.run.trigger.value})")
        if result.bootstrap and result.bootstrap.changed:
            click.echo(f"   Bootstrapped state store {result.bootstrap.bucket_ref}")
        if result.bootstrap and result.bootstrap.degraded:
            click.secho("   ⚠️  Lock table unavailable — locking via lock objects in the state container", fg="yellow")
        click.echo()

    report = result.report
    if report is not None:
        _print_outcomes(report, verbose)
        if report.placeholders:
            click.secho(
                f"   ⚠️  Used placeholder artifacts for: {', '.join(report.placeholders)}",
                fg="yellow",
            )
        counts = ", ".join(f"{k} {v}" for k, v in report.counts().items() if v)
        click.echo()
        color = "green" if result.ok else "red"
        click.secho(f"   Result: {report.status} — {counts or 'no changes'}", fg=color, bold=True)

    if result.error:
        _print_error(result.error)
    elif result.run.mode.value == "apply" and report is not None:
        _print_outputs(report.public_outputs())
    click.echo()


# ═══════════════════════════════════════════════════════════════════
#  Deploy / Destroy
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@click.argument("environment")
@click.argument("project", required=False)
@click.option("--var", "variables", multiple=True, help="Override a variable (key=value).")
@click.option(
    "--parallelism", "-p", type=click.IntRange(min=1), default=1,
    help="Max concurrent node actions within one level.",
)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def deploy(
    ctx: click.Context,
    environment: str,
    project: str | None,
    variables: tuple[str, ...],
    parallelism: int,
    as_json: bool,
) -> None:
    """Deploy the stack to ENVIRONMENT.

    Examples:

        stackdeploy deploy dev

        stackdeploy deploy prod chat-app --var use_cdn=true
    """
    from stackdeploy.core.models.run import RunMode
    from stackdeploy.core.use_cases.deploy import run_deployment

    result = run_deployment(
        environment,
        RunMode.APPLY,
        project_name=project,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
        overrides=_parse_vars(variables, as_json),
        parallelism=parallelism,
        cancel_event=_cancel_on_sigterm(),
    )

    if as_json:
        _echo_json(result.to_dict())
    else:
        _print_deployment(result, ctx)
    sys.exit(result.exit_code)


@cli.command()
@click.argument("environment")
@click.argument("project", required=False)
@click.option("--confirm", "confirmation", default=None, help="Repeat the environment name.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def destroy(
    ctx: click.Context,
    environment: str,
    project: str | None,
    confirmation: str | None,
    as_json: bool,
) -> None:
    """Destroy every resource recorded for ENVIRONMENT.

    Requires --confirm=ENVIRONMENT.
    """
    from stackdeploy.core.models.run import RunMode
    from stackdeploy.core.use_cases.deploy import run_deployment

    result = run_deployment(
        environment,
        RunMode.DESTROY,
        confirmation=confirmation,
        project_name=project,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
        cancel_event=_cancel_on_sigterm(),
    )

    if as_json:
        _echo_json(result.to_dict())
    else:
        _print_deployment(result, ctx)
    sys.exit(result.exit_code)


@cli.command()
@click.argument("environment", required=False)
@click.argument("project", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def bootstrap(
    ctx: click.Context,
    environment: str | None,
    project: str | None,
    as_json: bool,
) -> None:
    """Create the shared state store (and ENVIRONMENT's workspace)."""
    from stackdeploy.core.use_cases.bootstrap import run_bootstrap

    result = run_bootstrap(
        environment,
        project_name=project,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
    )

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(result.exit_code)

    if result.error:
        _print_error(result.error)
        sys.exit(result.exit_code)

    boot = result.bootstrap
    assert boot is not None
    click.secho(f"\n🧱 State store: {boot.bucket_ref} ({boot.backend})", fg="cyan", bold=True)
    click.echo(f"   Container: {'created' if boot.created_container else 'exists'}")
    if boot.hardened:
        click.echo("   Hardening: " + ", ".join(sorted(boot.hardening)))
    if boot.degraded:
        click.secho("   ⚠️  Lock table unavailable — locking via lock objects in the state container", fg="yellow")
    else:
        click.echo(
            f"   Lock table: {boot.lock_table_ref} "
            f"({'created' if boot.created_lock_table else 'exists'})"
        )
    if result.workspace:
        click.echo(f"   Workspace: {result.workspace.name} → {result.workspace.state_key}")
    click.echo()


# ═══════════════════════════════════════════════════════════════════
#  Read-only views
# ═══════════════════════════════════════════════════════════════════


@cli.command()
@click.argument("environment", required=False)
@click.option("--destroy", "destroy_mode", is_flag=True, help="Preview a destroy instead.")
@click.option("--var", "variables", multiple=True, help="Override a variable (key=value).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(
    ctx: click.Context,
    environment: str | None,
    destroy_mode: bool,
    variables: tuple[str, ...],
    as_json: bool,
) -> None:
    """Preview what deploy (or destroy) would change."""
    from stackdeploy.core.models.run import RunMode
    from stackdeploy.core.use_cases.plan import plan_deployment

    result = plan_deployment(
        environment,
        RunMode.DESTROY if destroy_mode else RunMode.APPLY,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
        overrides=_parse_vars(variables, as_json),
    )

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(result.exit_code)

    if result.error:
        _print_error(result.error)
        sys.exit(result.exit_code)

    verbose = ctx.obj.get("verbose", False)
    click.secho(f"\n📝 Plan: {result.mode.value} {result.environment}", fg="cyan", bold=True)
    if result.serial is not None:
        click.echo(f"   Current serial: {result.serial}")
    click.echo()
    for change in result.changes:
        symbol, color = _ACTION_STYLE.get(change.action.value, ("?", "white"))
        if change.action.value == "unchanged" and not verbose:
            continue
        click.secho(f"   {symbol} {change.node_id}", fg=color, nl=False)
        detail = f"  ({'; '.join(change.reasons)})" if change.reasons else ""
        click.echo(detail)
    if result.missing_artifacts:
        click.echo()
        click.secho("   ⚠️  Artifacts not built yet:", fg="yellow")
        for nid in result.missing_artifacts:
            click.echo(f"     • {nid}")
    click.echo()
    summary = ", ".join(f"{k} {v}" for k, v in result.summary().items())
    click.secho(f"   {summary or 'no changes'}", bold=True)
    click.echo()


@cli.command()
@click.argument("environment", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def status(ctx: click.Context, environment: str | None, as_json: bool) -> None:
    """Show environments, state serials and lock holders."""
    from stackdeploy.core.use_cases.status import get_status

    result = get_status(
        environment,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
    )

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(result.exit_code)

    if result.error:
        _print_error(result.error)
        sys.exit(result.exit_code)

    project = result.project
    assert project is not None
    click.secho(f"\n📋 {project.name}", fg="cyan", bold=True)
    if project.description:
        click.echo(f"   {project.description}")
    exists = "ready" if result.container_exists else "not bootstrapped"
    click.echo(f"   State store: {result.container_ref} ({result.backend}, {exists})")
    if result.locking_mode:
        click.echo(f"   Locking: {result.locking_mode}")
    click.echo()

    click.secho(f"   Environments: {len(result.environments)}", fg="white", bold=True)
    for env in result.environments:
        default = " (default)" if env.default else ""
        if not env.workspace:
            click.echo(f"     • {env.name}{default}  — no workspace")
            continue
        serial = f"serial {env.serial}" if env.serial is not None else "no state"
        click.echo(f"     • {env.name}{default}  — {serial}, {env.instances} instance(s)")
        if env.lock:
            click.secho(
                f"       🔒 locked by {env.lock.holder_id} ({env.lock.operation} by "
                f"{env.lock.who}, since {env.lock.acquired_at})",
                fg="yellow",
            )

    if result.recent:
        click.echo()
        click.secho("   Recent runs:", fg="white", bold=True)
        for entry in result.recent:
            color = "green" if entry.status == "succeeded" else "red"
            click.echo(f"     {entry.timestamp[:19]} {entry.operation_type} {entry.environment} — ", nl=False)
            click.secho(entry.status, fg=color)
    click.echo()


@cli.command()
@click.argument("environment", required=False)
@click.option("--show-sensitive", is_flag=True, help="Reveal outputs marked sensitive.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def outputs(ctx: click.Context, environment: str | None, show_sensitive: bool, as_json: bool) -> None:
    """Print the outputs recorded for ENVIRONMENT."""
    from stackdeploy.core.use_cases.status import get_outputs

    result = get_outputs(
        environment,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
    )

    if as_json:
        _echo_json(result.to_dict(show_sensitive))
        sys.exit(result.exit_code)

    if result.error:
        _print_error(result.error)
        sys.exit(result.exit_code)

    values = result.visible(show_sensitive)
    if not values:
        click.echo(f"No outputs recorded for {result.environment}")
        return
    for name, value in values.items():
        click.echo(f"{name} = {json.dumps(value, default=str)}")


@cli.command()
@click.argument("environment", required=False)
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def drift(ctx: click.Context, environment: str | None, as_json: bool) -> None:
    """Report recorded resources that no longer exist (exit 1 on drift)."""
    from stackdeploy.core.use_cases.plan import check_drift

    result = check_drift(
        environment,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
    )

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(result.exit_code)

    if result.error:
        _print_error(result.error)
        sys.exit(result.exit_code)

    report = result.report
    assert report is not None
    if not report.drifted:
        click.secho(f"✅ No drift in {result.environment} ({len(report.checked)} checked)", fg="green")
    else:
        click.secho(f"⚠️  Drift in {result.environment}:", fg="yellow", bold=True)
        for nid in report.missing:
            click.echo(f"   • {nid} — missing")
    for nid, error in report.errors.items():
        click.secho(f"   ? {nid}: {error}", fg="yellow")
    sys.exit(result.exit_code)


@cli.command("force-unlock")
@click.argument("environment")
@click.option("--holder", "holder_id", default=None, help="Only unlock if held by this run id.")
@click.option("--yes", "-y", is_flag=True, help="Skip the confirmation prompt.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def force_unlock_cmd(
    ctx: click.Context,
    environment: str,
    holder_id: str | None,
    yes: bool,
    as_json: bool,
) -> None:
    """Remove a stuck lock on ENVIRONMENT."""
    from stackdeploy.core.use_cases.status import force_unlock

    if not yes and not as_json:
        click.confirm(
            f"Remove the lock on '{environment}'? Only do this if no run is active",
            abort=True,
        )

    result = force_unlock(
        environment,
        holder_id=holder_id,
        config_path=ctx.obj.get("config_path"),
        mock=ctx.obj.get("mock", False),
    )

    if as_json:
        _echo_json(result.to_dict())
        sys.exit(result.exit_code)

    if result.error:
        _print_error(result.error)
        sys.exit(result.exit_code)

    if result.removed:
        click.secho(f"🔓 Released {result.lock_id} (was held by {result.removed.holder_id})", fg="green")
    else:
        click.echo(f"Lock {result.lock_id} was not held")


# ── Sub-groups ──────────────────────────────────────────────────────

from stackdeploy.ui.cli.pipeline import pipeline  # noqa: E402
from stackdeploy.ui.cli.workspace import workspace  # noqa: E402

cli.add_command(workspace)
cli.add_command(pipeline)


if __name__ == "__main__":
    cli()
