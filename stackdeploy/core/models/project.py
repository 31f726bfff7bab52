"""
Project model — the declarative description of the stack.

Loaded from stackdeploy.yml, this is the canonical truth about which
environments exist, where state lives, how credentials are obtained,
which provider adapter handles each resource type, and what resources
make up the stack.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from stackdeploy.core.models.resource import (
    DataSpec,
    OutputSpec,
    ResourceSpec,
    VariableSpec,
)


class EnvironmentSpec(BaseModel):
    """A deployment target (dev, test, prod) and its variable overlay."""

    name: str
    description: str = ""
    default: bool = False
    variables: dict[str, Any] = Field(default_factory=dict)


class BackendConfig(BaseModel):
    """Where state documents and lock records live."""

    type: Literal["local", "s3"] = "local"
    path: str = ".stackdeploy/backend"   # local: container directory
    bucket: str = ""                      # s3: derived from account id when empty
    lock_table: str = ""                  # s3: derived from project when empty
    region: str = ""


class CredentialConfig(BaseModel):
    """How short-lived credentials are obtained."""

    source: Literal["mock", "web-identity", "operator"] = "operator"
    role_arn: str = ""
    audience: str = "sts.amazonaws.com"
    duration_seconds: int = 900
    profile: str = ""
    repository: str = ""   # expected OIDC repository claim


class ProviderConfig(BaseModel):
    """Adapter binding for one resource type."""

    adapter: str = "mock"
    commands: dict[str, str] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    timeout: float = 300.0
    poll_interval: float = 5.0


class ProjectConfig(BaseModel):
    """Root project description — loaded from stackdeploy.yml."""

    version: int = 1

    name: str
    description: str = ""
    region: str = "us-east-1"
    default_environment: str = ""
    artifacts_dir: str = "."

    environments: list[EnvironmentSpec] = Field(default_factory=list)
    backend: BackendConfig = Field(default_factory=BackendConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    providers: dict[str, ProviderConfig] = Field(default_factory=dict)

    variables: dict[str, VariableSpec] = Field(default_factory=dict)
    resources: list[ResourceSpec] = Field(default_factory=list)
    data: list[DataSpec] = Field(default_factory=list)
    outputs: dict[str, OutputSpec] = Field(default_factory=dict)

    def get_environment(self, name: str) -> EnvironmentSpec | None:
        """Look up an environment by name."""
        for env in self.environments:
            if env.name == name:
                return env
        return None

    def default_environment_name(self) -> str | None:
        """The configured default, the one flagged default, or the first."""
        if self.default_environment:
            return self.default_environment
        for env in self.environments:
            if env.default:
                return env.name
        return self.environments[0].name if self.environments else None

    @property
    def environment_names(self) -> list[str]:
        return [env.name for env in self.environments]

    def get_resource(self, node_id: str) -> ResourceSpec | None:
        """Look up a declared resource by ``type.name``."""
        for res in self.resources:
            if res.id == node_id:
                return res
        return None
