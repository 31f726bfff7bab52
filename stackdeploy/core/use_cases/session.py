"""
Session — one loaded project plus the collaborators every use case needs.

Credentials, backend and registry are built lazily, in that order, so a
use case that fails early (bad config, rejected confirmation) never
performs a credential exchange.
"""

from __future__ import annotations

import getpass
import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from stackdeploy.adapters.registry import ProviderRegistry, registry_for_project
from stackdeploy.core.config.loader import find_project_file, load_project, project_root
from stackdeploy.core.errors import ConfigError
from stackdeploy.core.models.project import ProjectConfig
from stackdeploy.core.models.run import ShortLivedCredential
from stackdeploy.core.persistence.audit import AuditWriter
from stackdeploy.core.persistence.backend import StateBackend
from stackdeploy.core.persistence.factory import create_backend
from stackdeploy.core.persistence.local import LocalStateBackend
from stackdeploy.core.services.credentials import (
    CredentialSource,
    in_pipeline,
    pipeline_claims,
    resolve_credential_source,
)
from stackdeploy.core.services.workspace import WorkspaceManager

logger = logging.getLogger(__name__)

MOCK_WORLD_FILE = ".stackdeploy/mock-world.json"
MOCK_BACKEND_DIR = ".stackdeploy/mock-backend"


@dataclass
class Session:
    """A loaded project and its lazily-built collaborators."""

    project: ProjectConfig
    root: Path
    config_path: Path
    mock: bool = False
    environ: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    credential_source: CredentialSource | None = None
    _credential: ShortLivedCredential | None = None
    _backend: StateBackend | None = None
    _registry: ProviderRegistry | None = None

    @property
    def artifacts_root(self) -> Path:
        path = Path(self.project.artifacts_dir)
        return path if path.is_absolute() else self.root / path

    @property
    def who(self) -> str:
        """Who is running: pipeline identity or user@host."""
        if in_pipeline(self.environ):
            claims = pipeline_claims(self.environ)
            return f"{claims.get('actor', 'pipeline')}@{claims.get('repository', '')}#{claims.get('run_id', '')}"
        try:
            user = getpass.getuser()
        except (KeyError, OSError):
            user = "unknown"
        return f"{user}@{socket.gethostname()}"

    def credential(self, environment: str = "") -> ShortLivedCredential:
        """Exchange for short-lived credentials (once per session).

        Raises:
            CredentialError: If the exchange fails.
        """
        if self._credential is None:
            source = self.credential_source or resolve_credential_source(
                self.project.credentials,
                mock=self.mock,
                region=self.project.region,
                environ=self.environ,
            )
            self.credential_source = source
            claims = pipeline_claims(self.environ)
            if environment:
                claims["environment"] = environment
            self._credential = source.exchange(self.project.credentials.audience, claims)
            logger.debug("Credential obtained via %s: %s", source.name, self._credential.redacted())
        return self._credential

    def backend(self, environment: str = "") -> StateBackend:
        """The state backend; mock runs never leave the project directory."""
        if self._backend is None and self.mock and self.project.backend.type != "local":
            self._backend = LocalStateBackend(self.root / MOCK_BACKEND_DIR)
        if self._backend is None:
            credential = None if self.project.backend.type == "local" else self.credential(environment)
            self._backend = create_backend(self.project, self.root, credential)
        return self._backend

    def registry(self) -> ProviderRegistry:
        if self._registry is None:
            world = self.root / MOCK_WORLD_FILE if self.mock else None
            self._registry = registry_for_project(self.project, self.root, mock=self.mock, world_file=world)
        return self._registry

    def workspaces(self, environment: str = "") -> WorkspaceManager:
        return WorkspaceManager(self.project, self.backend(environment))

    def audit(self) -> AuditWriter:
        return AuditWriter(project_root=self.root)

    def environment(self, name: str | None) -> str:
        """The named environment, or the project's default.

        Raises:
            ConfigError: If no environment is given and none is declared.
        """
        resolved = name or self.project.default_environment_name()
        if not resolved:
            raise ConfigError("No environment given and the project declares none")
        return resolved


def open_session(
    config_path: Path | None = None,
    project_name: str | None = None,
    *,
    mock: bool = False,
    environ: Mapping[str, str] | None = None,
    credential_source: CredentialSource | None = None,
    backend: StateBackend | None = None,
    registry: ProviderRegistry | None = None,
) -> Session:
    """Load the project file and wrap it in a Session.

    Raises:
        ConfigError: If the file is missing or invalid, or names a
            different project than ``project_name``.
    """
    if config_path is None:
        config_path = find_project_file()
    project = load_project(config_path)
    assert config_path is not None

    if project_name and project_name != project.name:
        raise ConfigError(
            f"Project '{project_name}' does not match '{project.name}' in {config_path}"
        )

    return Session(
        project=project,
        root=project_root(config_path),
        config_path=config_path,
        mock=mock,
        environ=dict(os.environ) if environ is None else environ,
        credential_source=credential_source,
        _backend=backend,
        _registry=registry,
    )
