"""
Plan and drift use cases — read-only views of an environment.

Neither takes the environment lock nor writes state: a plan reads the
current record and classifies every node, a drift check asks the
provider whether each recorded instance still exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from botocore.exceptions import BotoCoreError

from stackdeploy.adapters.registry import ProviderRegistry
from stackdeploy.core.engine.diff import PlannedChange, plan_apply, plan_destroy
from stackdeploy.core.engine.executor import DriftReport, RunContext, detect_drift
from stackdeploy.core.engine.graph import build_for_environment
from stackdeploy.core.errors import BackendError, StackDeployError
from stackdeploy.core.models.action import NodeAction
from stackdeploy.core.models.resource import ResourceNode
from stackdeploy.core.models.run import RunMode
from stackdeploy.core.models.state import StateRecord
from stackdeploy.core.persistence.backend import StateBackend
from stackdeploy.core.services.artifacts import artifact_digest, resolve_artifact
from stackdeploy.core.services.credentials import CredentialSource
from stackdeploy.core.services.workspace import Workspace
from stackdeploy.core.use_cases.session import Session, open_session

logger = logging.getLogger(__name__)


@dataclass
class PlanResult:
    """Preview of what a deploy or destroy would do."""

    environment: str = ""
    mode: RunMode = RunMode.APPLY
    changes: list[PlannedChange] = field(default_factory=list)
    serial: int | None = None
    missing_artifacts: list[str] = field(default_factory=list)
    error: StackDeployError | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.error is None else 1

    @property
    def has_changes(self) -> bool:
        return any(c.action not in (NodeAction.UNCHANGED, NodeAction.READ) for c in self.changes)

    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for change in self.changes:
            counts[change.action.value] = counts.get(change.action.value, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "mode": self.mode.value,
            "serial": self.serial,
            "summary": self.summary(),
            "changes": [c.to_dict() for c in self.changes],
            "missing_artifacts": self.missing_artifacts,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class DriftResult:
    """Outcome of ``stackdeploy drift``."""

    environment: str = ""
    report: DriftReport | None = None
    error: StackDeployError | None = None

    @property
    def exit_code(self) -> int:
        if self.error is not None:
            return 1
        return 1 if self.report and self.report.drifted else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "drift": self.report.to_dict() if self.report else None,
            "error": self.error.to_dict() if self.error else None,
        }


def _read_record(session: Session, workspace: Workspace) -> StateRecord | None:
    backend = session.backend(workspace.name)
    if not backend.container_exists():
        return None
    return backend.read_state(workspace.state_key)


def _artifact_hashes(
    session: Session, nodes: dict[str, ResourceNode], result: PlanResult
) -> dict[str, str]:
    hashes: dict[str, str] = {}
    for nid, node in nodes.items():
        if not node.artifact:
            continue
        path = resolve_artifact(session.artifacts_root, node.artifact)
        if path.exists():
            hashes[nid] = artifact_digest(path)
        else:
            result.missing_artifacts.append(nid)
    return hashes


def plan_deployment(
    environment: str | None,
    mode: RunMode = RunMode.APPLY,
    *,
    project_name: str | None = None,
    config_path: Path | None = None,
    mock: bool = False,
    overrides: dict[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    credential_source: CredentialSource | None = None,
    backend: StateBackend | None = None,
) -> PlanResult:
    """Classify every node against the recorded state, without acting."""
    result = PlanResult(environment=environment or "", mode=mode)
    try:
        session = open_session(
            config_path,
            project_name,
            mock=mock,
            environ=environ,
            credential_source=credential_source,
            backend=backend,
        )
        result.environment = session.environment(environment)
        workspace = session.workspaces(result.environment).describe(result.environment)
        record = _read_record(session, workspace)
        result.serial = record.serial if record else None

        if mode == RunMode.DESTROY:
            result.changes = plan_destroy(record)
        else:
            graph = build_for_environment(
                session.project,
                workspace.name,
                workspace.name_prefix,
                overlay=workspace.overlay,
                overrides=overrides,
            )
            hashes = _artifact_hashes(session, graph.nodes, result)
            result.changes = plan_apply(graph, record, hashes)
    except StackDeployError as e:
        result.error = e
    except BotoCoreError as e:
        result.error = BackendError(f"AWS request failed: {e}")

    if result.error:
        logger.error("plan %s failed: %s", result.environment, result.error)
    return result


def check_drift(
    environment: str | None,
    *,
    project_name: str | None = None,
    config_path: Path | None = None,
    mock: bool = False,
    environ: Mapping[str, str] | None = None,
    credential_source: CredentialSource | None = None,
    backend: StateBackend | None = None,
    registry: ProviderRegistry | None = None,
) -> DriftResult:
    """Report recorded instances that no longer exist. Changes nothing."""
    result = DriftResult(environment=environment or "")
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
        result.environment = session.environment(environment)
        workspace = session.workspaces(result.environment).describe(result.environment)
        record = _read_record(session, workspace)
        if record is None:
            result.report = DriftReport(environment=workspace.name)
            return result

        credential = session.credential(workspace.name)
        ctx = RunContext(
            project=session.project.name,
            environment=workspace.name,
            state_key=workspace.state_key,
            lock_id=workspace.lock_id,
            backend=session.backend(),
            registry=session.registry(),
            who=session.who,
            artifacts_root=session.artifacts_root,
            env=credential.as_env(),
        )
        result.report = detect_drift(record, ctx.registry, ctx)
    except StackDeployError as e:
        result.error = e
    except BotoCoreError as e:
        result.error = BackendError(f"AWS request failed: {e}")

    if result.error:
        logger.error("drift check %s failed: %s", result.environment, result.error)
    return result
