"""
Bootstrap use case — create the shared state store, optionally a workspace.

    stackdeploy bootstrap               container + lock table only
    stackdeploy bootstrap dev           ... and the 'dev' workspace

Safe to run any number of times; nothing here ever touches resources.
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from botocore.exceptions import BotoCoreError

from stackdeploy.core.engine.executor import generate_operation_id
from stackdeploy.core.errors import BackendError, BootstrapDegradedWarning, StackDeployError
from stackdeploy.core.persistence.audit import AuditEntry
from stackdeploy.core.persistence.backend import StateBackend
from stackdeploy.core.services.bootstrap import BootstrapResult, ensure_backend
from stackdeploy.core.services.credentials import CredentialSource
from stackdeploy.core.services.workspace import Workspace
from stackdeploy.core.use_cases.session import Session, open_session

logger = logging.getLogger(__name__)


@dataclass
class BootstrapRunResult:
    """Outcome of ``stackdeploy bootstrap``."""

    operation_id: str = ""
    project_name: str = ""
    environment: str | None = None
    bootstrap: BootstrapResult | None = None
    workspace: Workspace | None = None
    warnings: list[str] = field(default_factory=list)
    error: StackDeployError | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.error is None else 1

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "operation_id": self.operation_id,
            "project": self.project_name,
            "environment": self.environment,
            "exit_code": self.exit_code,
        }
        if self.error:
            result["error"] = self.error.to_dict()
        if self.bootstrap:
            result["bootstrap"] = self.bootstrap.to_dict()
        if self.workspace:
            result["workspace"] = self.workspace.to_dict()
        if self.warnings:
            result["warnings"] = self.warnings
        return result


def run_bootstrap(
    environment: str | None = None,
    *,
    project_name: str | None = None,
    config_path: Path | None = None,
    mock: bool = False,
    environ: Mapping[str, str] | None = None,
    credential_source: CredentialSource | None = None,
    backend: StateBackend | None = None,
) -> BootstrapRunResult:
    """Ensure the state container and lock table; create a workspace if named."""
    start = time.monotonic()
    result = BootstrapRunResult(operation_id=generate_operation_id(), environment=environment)

    session: Session | None = None
    try:
        session = open_session(
            config_path,
            project_name,
            mock=mock,
            environ=environ,
            credential_source=credential_source,
            backend=backend,
        )
        result.project_name = session.project.name

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result.bootstrap = ensure_backend(session.backend(environment or ""))
        result.warnings = [
            str(w.message) for w in caught if issubclass(w.category, BootstrapDegradedWarning)
        ]

        if environment:
            result.workspace = session.workspaces(environment).create(environment)

    except StackDeployError as e:
        result.error = e
    except BotoCoreError as e:
        result.error = BackendError(f"AWS request failed: {e}")

    if result.error:
        logger.error("bootstrap failed: %s", result.error)

    if session is not None:
        bootstrap = result.bootstrap
        session.audit().write(AuditEntry(
            operation_id=result.operation_id,
            operation_type="bootstrap",
            project=result.project_name,
            environment=environment or "",
            who=session.who,
            status="succeeded" if result.error is None else "failed",
            exit_code=result.exit_code,
            duration_ms=int((time.monotonic() - start) * 1000),
            errors=[str(result.error)] if result.error else [],
            context=bootstrap.to_dict() if bootstrap else {},
        ))
    return result
