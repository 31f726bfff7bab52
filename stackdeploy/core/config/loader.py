"""
Configuration loader — reads stackdeploy.yml into domain models.

This is the primary entry point for loading the stack description.
It reads YAML, validates against Pydantic schemas, and returns a
typed ProjectConfig. Resource declarations may be split out into
``resources/*.yml`` next to the project file; those are appended in
sorted file order, after the resources declared inline.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from stackdeploy.core.errors import ConfigError
from stackdeploy.core.models.project import ProjectConfig

logger = logging.getLogger(__name__)

# Default config filename
PROJECT_CONFIG_FILE = "stackdeploy.yml"
RESOURCES_DIR = "resources"

__all__ = [
    "ConfigError",
    "PROJECT_CONFIG_FILE",
    "find_project_file",
    "load_project",
    "project_root",
]


def find_project_file(start_dir: Path | None = None) -> Path | None:
    """Search for stackdeploy.yml starting from the given directory, walking up.

    Args:
        start_dir: Directory to start searching from (default: cwd).

    Returns:
        Path to stackdeploy.yml, or None if not found.
    """
    current = (start_dir or Path.cwd()).resolve()

    for _ in range(20):  # safety limit
        candidate = current / PROJECT_CONFIG_FILE
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            break  # filesystem root
        current = parent

    return None


def _read_yaml(path: Path) -> Any:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e


def _load_resource_files(resources_dir: Path) -> dict[str, list]:
    """Collect resources/data from resources/*.yml in sorted order."""
    merged: dict[str, list] = {"resources": [], "data": []}
    if not resources_dir.is_dir():
        return merged

    for child in sorted(resources_dir.iterdir()):
        if child.suffix not in (".yml", ".yaml") or not child.is_file():
            continue
        data = _read_yaml(child)
        if data is None:
            continue
        if isinstance(data, list):
            merged["resources"].extend(data)
        elif isinstance(data, dict):
            merged["resources"].extend(data.get("resources") or [])
            merged["data"].extend(data.get("data") or [])
        else:
            raise ConfigError(f"Expected a list or mapping in {child}")
        logger.debug("Loaded resource file %s", child)

    return merged


def load_project(path: Path | None = None) -> ProjectConfig:
    """Load and validate the project description.

    Args:
        path: Explicit path to stackdeploy.yml. If None, searches upward.

    Returns:
        Validated ProjectConfig model.

    Raises:
        ConfigError: If the file is missing or invalid.
    """
    if path is None:
        path = find_project_file()

    if path is None:
        raise ConfigError(
            f"No {PROJECT_CONFIG_FILE} found. Specify one with --config."
        )

    if not path.is_file():
        raise ConfigError(f"Config file not found: {path}")

    logger.debug("Loading project config from %s", path)

    data = _read_yaml(path)
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {path}, got {type(data).__name__}")

    # The YAML may wrap everything under a "project" key or be flat
    if isinstance(data.get("project"), dict):
        project_data = dict(data["project"])
        for key, value in data.items():
            if key != "project" and key not in project_data:
                project_data[key] = value
    else:
        project_data = dict(data)
        if "name" not in project_data and isinstance(data.get("project"), str):
            project_data["name"] = project_data.pop("project")

    extra = _load_resource_files(path.parent / RESOURCES_DIR)
    if extra["resources"]:
        project_data["resources"] = list(project_data.get("resources") or []) + extra["resources"]
    if extra["data"]:
        project_data["data"] = list(project_data.get("data") or []) + extra["data"]

    try:
        project = ProjectConfig.model_validate(project_data)
    except Exception as e:
        raise ConfigError(f"Invalid project configuration: {e}") from e

    _check_declarations(project)

    logger.info(
        "Loaded project '%s' with %d resources, %d environments",
        project.name, len(project.resources), len(project.environments),
    )
    return project


def _check_declarations(project: ProjectConfig) -> None:
    """Reject duplicate ids and an unknown default environment."""
    seen: set[str] = set()
    for decl in [*project.resources, *project.data]:
        if decl.id in seen:
            raise ConfigError(f"Duplicate declaration: {decl.id}")
        seen.add(decl.id)

    names = project.environment_names
    if len(set(names)) != len(names):
        raise ConfigError("Duplicate environment names")
    default = project.default_environment
    if default and default not in names:
        raise ConfigError(f"default_environment '{default}' is not a declared environment")


def project_root(config_path: Path) -> Path:
    """Get the project root directory from a config file path."""
    return config_path.parent.resolve()
