"""
Workspace manager — one isolated state slot per environment.

A workspace maps an environment name to:

    state_key     <project>/<env>/state.json
    lock_id       <project>/<env>
    name_prefix   <project>-<env>     (prepended to external names)
    overlay       the environment's variable values

Names are restricted so that keys and prefixes can never overlap: no
declared environment may be another one followed by ``-...``, otherwise
``app-dev`` + ``2-api`` and ``app-dev-2`` + ``api`` would collide.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from stackdeploy.core.errors import UnknownWorkspaceError, WorkspaceError
from stackdeploy.core.models.project import ProjectConfig
from stackdeploy.core.persistence.backend import StateBackend

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[a-z][a-z0-9-]*$")
STATE_FILE = "state.json"


@dataclass(frozen=True)
class Workspace:
    """The isolated slot for one environment."""

    project: str
    name: str
    overlay: dict[str, Any] = field(default_factory=dict, hash=False)

    @property
    def state_key(self) -> str:
        return f"{self.project}/{self.name}/{STATE_FILE}"

    @property
    def lock_id(self) -> str:
        return f"{self.project}/{self.name}"

    @property
    def name_prefix(self) -> str:
        return f"{self.project}-{self.name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "project": self.project,
            "name": self.name,
            "state_key": self.state_key,
            "lock_id": self.lock_id,
            "name_prefix": self.name_prefix,
            "overlay": self.overlay,
        }


def validate_name(name: str) -> None:
    """Raise WorkspaceError unless ``name`` is a valid workspace name."""
    if not _NAME_RE.match(name or ""):
        raise WorkspaceError(
            f"Invalid workspace name '{name}': use lowercase letters, digits "
            "and '-', starting with a letter"
        )


def check_collisions(names: list[str]) -> None:
    """Reject environment sets whose prefixes could produce equal names."""
    for name in names:
        for other in names:
            if other != name and other.startswith(f"{name}-"):
                raise WorkspaceError(
                    f"Environment names '{name}' and '{other}' can produce colliding "
                    "resource names; rename one of them"
                )


class WorkspaceManager:
    """Create, select and list workspaces for one project."""

    def __init__(self, project: ProjectConfig, backend: StateBackend):
        self._project = project
        self._backend = backend
        names = project.environment_names
        for name in names:
            validate_name(name)
        check_collisions(names)

    def _workspace(self, name: str) -> Workspace:
        env = self._project.get_environment(name)
        return Workspace(
            project=self._project.name,
            name=name,
            overlay=dict(env.variables) if env else {},
        )

    def _require_declared(self, name: str) -> None:
        validate_name(name)
        if self._project.get_environment(name) is None:
            declared = ", ".join(self._project.environment_names) or "(none)"
            raise WorkspaceError(
                f"Environment '{name}' is not declared in the project "
                f"(declared: {declared})"
            )

    def describe(self, name: str) -> Workspace:
        """The workspace for a declared environment, without registering it."""
        self._require_declared(name)
        return self._workspace(name)

    def list(self) -> list[str]:
        """Workspaces created so far."""
        return self._backend.list_workspaces(self._project.name)

    def exists(self, name: str) -> bool:
        return name in self.list()

    def create(self, name: str) -> Workspace:
        """Create a workspace; creating an existing one is a no-op."""
        self._require_declared(name)
        if self._backend.register_workspace(self._project.name, name):
            logger.info("Created workspace %s/%s", self._project.name, name)
        else:
            logger.debug("Workspace %s/%s already exists", self._project.name, name)
        return self._workspace(name)

    def select(self, name: str) -> Workspace:
        """Select an existing workspace.

        Raises:
            UnknownWorkspaceError: If it has never been created.
        """
        validate_name(name)
        known = self.list()
        if name not in known:
            raise UnknownWorkspaceError(name, known)
        return self._workspace(name)

    def select_or_create(self, name: str) -> Workspace:
        """``workspace select <name> || workspace new <name>``."""
        try:
            return self.select(name)
        except UnknownWorkspaceError:
            return self.create(name)
