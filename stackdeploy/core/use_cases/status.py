"""
Status use cases — what is deployed where, and who holds which lock.

    get_status     per-environment workspace, serial, instances, lock holder
                   plus the most recent audit entries
    get_outputs    recorded outputs of one environment (sensitive ones masked)
    force_unlock   remove a stuck lock after a crashed run
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from botocore.exceptions import BotoCoreError

from stackdeploy.core.errors import BackendError, StackDeployError
from stackdeploy.core.models.project import ProjectConfig
from stackdeploy.core.models.state import LockRecord
from stackdeploy.core.persistence.audit import AuditEntry
from stackdeploy.core.persistence.backend import StateBackend
from stackdeploy.core.services.credentials import CredentialSource
from stackdeploy.core.use_cases.session import open_session

logger = logging.getLogger(__name__)

SENSITIVE_MASK = "(sensitive)"


@dataclass
class EnvironmentStatus:
    """Recorded state of one environment."""

    name: str
    default: bool = False
    workspace: bool = False
    serial: int | None = None
    instances: int = 0
    last_applied_at: str | None = None
    lock: LockRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "default": self.default,
            "workspace": self.workspace,
            "serial": self.serial,
            "instances": self.instances,
            "last_applied_at": self.last_applied_at,
            "lock": self.lock.model_dump(mode="json") if self.lock else None,
        }


@dataclass
class StatusResult:
    """Aggregated project status."""

    project: ProjectConfig | None = None
    project_root: Path | None = None
    backend: str = ""
    container_ref: str = ""
    container_exists: bool = False
    locking_mode: str | None = None
    environments: list[EnvironmentStatus] = field(default_factory=list)
    recent: list[AuditEntry] = field(default_factory=list)
    error: StackDeployError | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.error is None else 1

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {"error": self.error.to_dict()}
        return {
            "project": self.project.name if self.project else "",
            "backend": {
                "type": self.backend,
                "container": self.container_ref,
                "exists": self.container_exists,
                "locking_mode": self.locking_mode,
            },
            "environments": [e.to_dict() for e in self.environments],
            "recent": [e.model_dump(mode="json") for e in self.recent],
        }


def get_status(
    environment: str | None = None,
    *,
    config_path: Path | None = None,
    mock: bool = False,
    recent: int = 5,
    environ: Mapping[str, str] | None = None,
    credential_source: CredentialSource | None = None,
    backend: StateBackend | None = None,
) -> StatusResult:
    """Get per-environment status, or one environment's when named."""
    result = StatusResult()
    try:
        session = open_session(
            config_path,
            mock=mock,
            environ=environ,
            credential_source=credential_source,
            backend=backend,
        )
        project = session.project
        result.project = project
        result.project_root = session.root

        store = session.backend(environment or "")
        result.backend = store.name
        result.container_ref = store.container_ref
        result.container_exists = store.container_exists()

        names = [environment] if environment else project.environment_names
        default = project.default_environment_name()
        manager = session.workspaces(environment or "")
        known = manager.list() if result.container_exists else []
        if result.container_exists:
            result.locking_mode = store.locking_mode

        for name in names:
            workspace = manager.describe(name)
            status = EnvironmentStatus(
                name=name,
                default=name == default,
                workspace=name in known,
            )
            if status.workspace:
                record = store.read_state(workspace.state_key)
                if record is not None:
                    status.serial = record.serial
                    status.instances = len(record.resource_instances)
                    status.last_applied_at = record.last_applied_at
                status.lock = store.read_lock(workspace.lock_id)
            result.environments.append(status)

        result.recent = session.audit().read_recent(recent, environment=environment)
    except StackDeployError as e:
        result.error = e
    except BotoCoreError as e:
        result.error = BackendError(f"AWS request failed: {e}")
    return result


# ── Outputs ─────────────────────────────────────────────────────────


@dataclass
class OutputsResult:
    """Recorded outputs of one environment."""

    environment: str = ""
    outputs: dict[str, Any] = field(default_factory=dict)
    sensitive: set[str] = field(default_factory=set)
    serial: int | None = None
    error: StackDeployError | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.error is None else 1

    def visible(self, show_sensitive: bool = False) -> dict[str, Any]:
        if show_sensitive:
            return dict(self.outputs)
        return {k: (SENSITIVE_MASK if k in self.sensitive else v) for k, v in self.outputs.items()}

    def to_dict(self, show_sensitive: bool = False) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "serial": self.serial,
            "outputs": self.visible(show_sensitive),
            "error": self.error.to_dict() if self.error else None,
        }


def get_outputs(
    environment: str | None,
    *,
    config_path: Path | None = None,
    mock: bool = False,
    environ: Mapping[str, str] | None = None,
    credential_source: CredentialSource | None = None,
    backend: StateBackend | None = None,
) -> OutputsResult:
    """Read the outputs recorded by the last successful apply."""
    result = OutputsResult(environment=environment or "")
    try:
        session = open_session(
            config_path,
            mock=mock,
            environ=environ,
            credential_source=credential_source,
            backend=backend,
        )
        result.environment = session.environment(environment)
        result.sensitive = {
            name for name, spec in session.project.outputs.items() if spec.sensitive
        }
        workspace = session.workspaces(result.environment).select(result.environment)
        record = session.backend().read_state(workspace.state_key)
        if record is not None:
            result.outputs = dict(record.outputs)
            result.serial = record.serial
    except StackDeployError as e:
        result.error = e
    except BotoCoreError as e:
        result.error = BackendError(f"AWS request failed: {e}")
    return result


# ── Force unlock ────────────────────────────────────────────────────


@dataclass
class UnlockResult:
    environment: str = ""
    lock_id: str = ""
    removed: LockRecord | None = None
    error: StackDeployError | None = None

    @property
    def exit_code(self) -> int:
        return 0 if self.error is None else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "lock_id": self.lock_id,
            "removed": self.removed.model_dump(mode="json") if self.removed else None,
            "error": self.error.to_dict() if self.error else None,
        }


def force_unlock(
    environment: str,
    *,
    holder_id: str | None = None,
    config_path: Path | None = None,
    mock: bool = False,
    environ: Mapping[str, str] | None = None,
    credential_source: CredentialSource | None = None,
    backend: StateBackend | None = None,
) -> UnlockResult:
    """Remove an environment's lock regardless of its holder.

    When ``holder_id`` is given the lock is only removed if that run
    still holds it.
    """
    result = UnlockResult(environment=environment)
    try:
        session = open_session(
            config_path,
            mock=mock,
            environ=environ,
            credential_source=credential_source,
            backend=backend,
        )
        workspace = session.workspaces(environment).describe(environment)
        result.lock_id = workspace.lock_id
        store = session.backend()

        held = store.read_lock(workspace.lock_id)
        if held is None:
            logger.info("Lock %s is not held", workspace.lock_id)
            return result
        if holder_id and held.holder_id != holder_id:
            raise BackendError(
                f"Lock {workspace.lock_id} is held by {held.holder_id}, not {holder_id}"
            )
        result.removed = store.force_unlock(workspace.lock_id)
    except StackDeployError as e:
        result.error = e
    except BotoCoreError as e:
        result.error = BackendError(f"AWS request failed: {e}")
    return result
