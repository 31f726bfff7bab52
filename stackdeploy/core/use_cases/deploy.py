"""
Deploy use case — the externally-triggered entry point.

    confirm (destroy only) → load project → credentials → bootstrap
        → workspace → build graph → apply / destroy → audit + summary

The destroy confirmation is checked before anything else: a mismatch
loads nothing, exchanges nothing and locks nothing. Every other failure
is captured on the result and mapped to an exit code:

    0  success
    1  config, build, credential, backend or node failure
    2  environment lock held by another run
    3  destroy confirmation mismatch
"""

from __future__ import annotations

import logging
import threading
import time
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from botocore.exceptions import BotoCoreError

from stackdeploy.adapters.registry import ProviderRegistry
from stackdeploy.core.engine.executor import (
    RunContext,
    RunReport,
    execute_apply,
    execute_destroy,
    generate_operation_id,
)
from stackdeploy.core.engine.graph import build_for_environment
from stackdeploy.core.errors import (
    BackendError,
    ConfirmationMismatchError,
    LockConflictError,
    StackDeployError,
)
from stackdeploy.core.models.run import DeploymentRun, RunMode, ShortLivedCredential, Trigger
from stackdeploy.core.persistence.audit import AuditEntry
from stackdeploy.core.persistence.backend import StateBackend
from stackdeploy.core.services.bootstrap import BootstrapResult, ensure_backend
from stackdeploy.core.services.credentials import CredentialSource
from stackdeploy.core.services.pipeline import resolve_trigger
from stackdeploy.core.services.workspace import Workspace
from stackdeploy.core.use_cases.session import Session, open_session

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_LOCKED = 2
EXIT_CONFIRMATION = 3


def exit_code_for(error: BaseException | None) -> int:
    if error is None:
        return EXIT_OK
    if isinstance(error, ConfirmationMismatchError):
        return EXIT_CONFIRMATION
    if isinstance(error, LockConflictError):
        return EXIT_LOCKED
    return EXIT_ERROR


@dataclass
class DeploymentResult:
    """Result of one deploy or destroy invocation."""

    run: DeploymentRun
    project_name: str = ""
    project_root: Path | None = None
    bootstrap: BootstrapResult | None = None
    workspace: Workspace | None = None
    report: RunReport | None = None
    credential: ShortLivedCredential | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    error: StackDeployError | None = None

    @property
    def exit_code(self) -> int:
        return exit_code_for(self.error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "operation_id": self.run.operation_id,
            "project": self.project_name,
            "environment": self.run.environment,
            "mode": self.run.mode.value,
            "trigger": self.run.trigger.value,
            "exit_code": self.exit_code,
        }
        if self.error:
            result["error"] = self.error.to_dict()
        if self.credential:
            result["credential"] = self.credential.redacted()
        if self.bootstrap:
            result["bootstrap"] = self.bootstrap.to_dict()
        if self.workspace:
            result["workspace"] = self.workspace.to_dict()
        if self.report:
            result["report"] = self.report.to_dict()
            result["outputs"] = self.report.public_outputs()
        return result


def run_deployment(
    environment: str | None,
    mode: RunMode = RunMode.APPLY,
    trigger: Trigger | None = None,
    confirmation: str | None = None,
    *,
    project_name: str | None = None,
    config_path: Path | None = None,
    mock: bool = False,
    overrides: dict[str, Any] | None = None,
    parallelism: int = 1,
    environ: Mapping[str, str] | None = None,
    credential_source: CredentialSource | None = None,
    backend: StateBackend | None = None,
    registry: ProviderRegistry | None = None,
    cancel_event: threading.Event | None = None,
) -> DeploymentResult:
    """Deploy or destroy one environment.

    Args:
        environment: Target environment (default environment when None,
            apply only).
        mode: apply or destroy.
        trigger: auto or manual; derived from the pipeline event if None.
        confirmation: Destroy only; must equal ``environment``.
        project_name: Optional guard that the project file is the expected one.
        config_path: Explicit stackdeploy.yml.
        mock: Route every resource type to the mock provider and use
            mock credentials.
        overrides: Variable overrides (``--var k=v``).
        parallelism: Max concurrent node actions within one level.
        environ: Environment mapping (pipeline detection, tests).
        credential_source / backend / registry: Injected collaborators.
        cancel_event: Set to cancel between node actions.

    Returns:
        DeploymentResult (never raises StackDeployError).
    """
    start = time.monotonic()
    run = DeploymentRun(
        operation_id=generate_operation_id(),
        environment=environment or "",
        mode=mode,
        trigger=trigger or resolve_trigger(environ),
        confirmation_token=confirmation,
    )
    result = DeploymentResult(run=run)

    # ── Safety gate ─────────────────────────────────────────────
    if mode == RunMode.DESTROY and (not environment or confirmation != environment):
        result.error = ConfirmationMismatchError(environment or "", confirmation)
        logger.error("%s", result.error)
        return result

    session: Session | None = None
    try:
        session = open_session(
            config_path,
            project_name,
            mock=mock,
            environ=environ,
            credential_source=credential_source,
            backend=backend,
            registry=registry,
        )
        result.project_name = session.project.name
        result.project_root = session.root
        run.environment = session.environment(environment)

        result.credential = run.credential = session.credential(run.environment)

        with warnings.catch_warnings(record=True):
            warnings.simplefilter("always")
            result.bootstrap = ensure_backend(session.backend(run.environment))

        manager = session.workspaces(run.environment)
        if mode == RunMode.APPLY:
            workspace = manager.select_or_create(run.environment)
        else:
            workspace = manager.select(run.environment)
        result.workspace = workspace

        ctx = RunContext(
            project=session.project.name,
            environment=workspace.name,
            state_key=workspace.state_key,
            lock_id=workspace.lock_id,
            backend=session.backend(),
            registry=session.registry(),
            operation_id=run.operation_id,
            who=session.who,
            artifacts_root=session.artifacts_root,
            parallelism=parallelism,
            env=result.credential.as_env(),
        )
        if cancel_event is not None:
            ctx.cancel_event = cancel_event

        if mode == RunMode.APPLY:
            graph = build_for_environment(
                session.project,
                workspace.name,
                workspace.name_prefix,
                overlay=workspace.overlay,
                overrides=overrides,
            )
            result.report = execute_apply(graph, ctx)
        else:
            result.report = execute_destroy(ctx)

        result.error = result.report.error
        if result.report.succeeded:
            result.outputs = dict(result.report.outputs)

    except StackDeployError as e:
        result.error = e
    except BotoCoreError as e:
        result.error = BackendError(f"AWS request failed: {e}")

    if result.error:
        logger.error("%s %s failed: %s", mode.value, run.environment, result.error)

    if session is not None:
        _write_audit(session, result, int((time.monotonic() - start) * 1000))
        write_step_summary(result, session.environ)
    return result


def _write_audit(session: Session, result: DeploymentResult, duration_ms: int) -> None:
    report = result.report
    counts = report.counts() if report else {}
    entry = AuditEntry(
        operation_id=result.run.operation_id,
        operation_type="deploy" if result.run.mode == RunMode.APPLY else "destroy",
        project=result.project_name,
        environment=result.run.environment,
        trigger=result.run.trigger.value,
        who=session.who,
        status="succeeded" if result.ok else "failed",
        exit_code=result.exit_code,
        nodes_total=len(report.outcomes) if report else 0,
        nodes_succeeded=(len(report.outcomes) - report.failed) if report else 0,
        nodes_failed=report.failed if report else 0,
        duration_ms=duration_ms,
        errors=[str(result.error)] if result.error else [],
        context={
            "counts": counts,
            "serial": report.state.serial if report and report.state else None,
            "lock_mode": report.lock_mode if report else None,
            "degraded": result.bootstrap.degraded if result.bootstrap else None,
        },
    )
    session.audit().write(entry)


def render_summary(result: DeploymentResult) -> str:
    """Markdown run summary for the pipeline's job page."""
    status = "✅ succeeded" if result.ok else "❌ failed"
    lines = [
        f"## {result.run.mode.value.title()} `{result.run.environment}` — {status}",
        "",
        f"- Project: `{result.project_name}`",
        f"- Trigger: {result.run.trigger.value}",
        f"- Operation: `{result.run.operation_id}`",
    ]
    if result.report:
        counts = ", ".join(f"{k} {v}" for k, v in result.report.counts().items() if v)
        lines.append(f"- Nodes: {counts or 'no changes'}")
    if result.error:
        lines.append(f"- Error: `{result.error}`")
    if result.report and result.ok and result.report.outputs:
        lines += ["", "| Output | Value |", "|---|---|"]
        for name, value in result.report.public_outputs().items():
            lines.append(f"| {name} | `{value}` |")
    return "\n".join(lines) + "\n"


def write_step_summary(result: DeploymentResult, environ: Mapping[str, str]) -> None:
    """Append the run summary to $GITHUB_STEP_SUMMARY when it is set."""
    path = environ.get("GITHUB_STEP_SUMMARY")
    if not path:
        return
    try:
        with open(path, "a", encoding="utf-8") as f:
            f.write(render_summary(result))
    except OSError as e:
        logger.warning("Could not write step summary to %s: %s", path, e)
