"""
Pipeline generator — GitHub Actions workflows for deploy and destroy.

    deploy.yml    push to main → default environment (trigger: auto)
                  manual dispatch with an environment choice (trigger: manual)
    destroy.yml   manual dispatch only, with environment + confirmation inputs

Both request ``id-token: write`` so the run can exchange its OIDC token
for short-lived credentials; no long-lived secret is referenced.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel

from stackdeploy.core.models.project import ProjectConfig
from stackdeploy.core.models.run import Trigger

logger = logging.getLogger(__name__)

WORKFLOWS_DIR = ".github/workflows"


class GeneratedFile(BaseModel):
    """A file produced by a generator.

    Attributes:
        path:      Relative path from project root.
        content:   Full file content.
        overwrite: Whether to overwrite if already exists.
        reason:    Why this file was generated.
    """

    path: str
    content: str
    overwrite: bool = False
    reason: str = ""

    def write(self, root: Path, force: bool = False) -> bool:
        """Write under ``root``. Returns False if an existing file was kept."""
        target = root / self.path
        if target.exists() and not (self.overwrite or force):
            logger.info("Keeping existing %s", self.path)
            return False
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.content, encoding="utf-8")
        logger.info("Wrote %s", self.path)
        return True


def resolve_trigger(environ: Mapping[str, str] | None = None) -> Trigger:
    """Map the pipeline event to a trigger: push → auto, anything else → manual."""
    environ = os.environ if environ is None else environ
    return Trigger.AUTO if environ.get("GITHUB_EVENT_NAME") == "push" else Trigger.MANUAL


def _setup_steps(python_version: str) -> str:
    return f"""\
      - uses: actions/checkout@v4

      - name: Setup Python
        uses: actions/setup-python@v5
        with:
          python-version: "{python_version}"

      - name: Install stackdeploy
        run: pip install stackdeploy
"""


def _environment_choices(project: ProjectConfig) -> str:
    return "\n".join(f"          - {name}" for name in project.environment_names)


def generate_deploy_workflow(
    project: ProjectConfig,
    *,
    branch: str = "main",
    python_version: str = "3.12",
    build_command: str = "",
) -> GeneratedFile:
    """deploy.yml — auto on push to ``branch``, manual dispatch otherwise."""
    default_env = project.default_environment_name() or "dev"
    build_step = ""
    if build_command:
        build_step = f"""
      - name: Build artifacts
        run: {build_command}
"""

    content = f"""\
# Generated by stackdeploy
name: {project.name} deploy

on:
  push:
    branches: [{branch}]
  workflow_dispatch:
    inputs:
      environment:
        description: Environment to deploy
        type: choice
        required: true
        default: {default_env}
        options:
{_environment_choices(project)}

permissions:
  id-token: write
  contents: read

concurrency:
  group: deploy-${{{{ github.event.inputs.environment || '{default_env}' }}}}
  cancel-in-progress: false

jobs:
  deploy:
    name: Deploy
    runs-on: ubuntu-latest
    environment: ${{{{ github.event.inputs.environment || '{default_env}' }}}}

    steps:
{_setup_steps(python_version)}{build_step}
      - name: Deploy
        run: stackdeploy deploy "${{{{ github.event.inputs.environment || '{default_env}' }}}}" {project.name}
"""
    return GeneratedFile(
        path=f"{WORKFLOWS_DIR}/deploy.yml",
        content=content,
        reason=f"Deploy {project.name} on push to {branch} or manual dispatch",
    )


def generate_destroy_workflow(
    project: ProjectConfig,
    *,
    python_version: str = "3.12",
) -> GeneratedFile:
    """destroy.yml — manual dispatch with a typed confirmation."""
    content = f"""\
# Generated by stackdeploy
name: {project.name} destroy

on:
  workflow_dispatch:
    inputs:
      environment:
        description: Environment to destroy
        type: choice
        required: true
        options:
{_environment_choices(project)}
      confirm:
        description: Type the environment name again to confirm
        type: string
        required: true

permissions:
  id-token: write
  contents: read

concurrency:
  group: deploy-${{{{ github.event.inputs.environment }}}}
  cancel-in-progress: false

jobs:
  destroy:
    name: Destroy
    runs-on: ubuntu-latest
    environment: ${{{{ github.event.inputs.environment }}}}

    steps:
{_setup_steps(python_version)}
      - name: Destroy
        run: >-
          stackdeploy destroy "${{{{ github.event.inputs.environment }}}}"
          --confirm="${{{{ github.event.inputs.confirm }}}}"
"""
    return GeneratedFile(
        path=f"{WORKFLOWS_DIR}/destroy.yml",
        content=content,
        reason=f"Destroy a {project.name} environment on confirmed manual dispatch",
    )


def generate_workflows(project: ProjectConfig, **kwargs: str) -> list[GeneratedFile]:
    """Both workflows for a project."""
    python_version = kwargs.get("python_version", "3.12")
    return [
        generate_deploy_workflow(
            project,
            branch=kwargs.get("branch", "main"),
            python_version=python_version,
            build_command=kwargs.get("build_command", ""),
        ),
        generate_destroy_workflow(project, python_version=python_version),
    ]
