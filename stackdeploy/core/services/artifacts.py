"""
Artifacts — deployables built outside the engine (function bundles, sites).

Apply requires every declared artifact to exist; its SHA-256 is recorded
so a rebuilt bundle shows up as an update. Destroy only needs something
to hand the provider, so a missing artifact is replaced by a throwaway
placeholder archive that lives for the duration of the run.
"""

from __future__ import annotations

import hashlib
import logging
import tempfile
import zipfile
from pathlib import Path

from stackdeploy.core.errors import ArtifactMissingError

logger = logging.getLogger(__name__)

_CHUNK = 1024 * 1024


def artifact_digest(path: Path) -> str:
    """SHA-256 of a file, or of every file under a directory."""
    digest = hashlib.sha256()
    files = [path] if path.is_file() else sorted(p for p in path.rglob("*") if p.is_file())
    for file in files:
        if path.is_dir():
            digest.update(file.relative_to(path).as_posix().encode("utf-8"))
        with file.open("rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK), b""):
                digest.update(chunk)
    return digest.hexdigest()


def resolve_artifact(root: Path, artifact: str) -> Path:
    path = Path(artifact)
    return path if path.is_absolute() else root / path


def require_artifact(node_id: str, root: Path, artifact: str) -> tuple[Path, str]:
    """Locate an artifact for apply.

    Returns:
        (path, sha256)

    Raises:
        ArtifactMissingError: If the artifact has not been produced.
    """
    path = resolve_artifact(root, artifact)
    if not path.exists():
        raise ArtifactMissingError(
            f"artifact {artifact} not found (looked in {path}); build it before deploying",
            node_id=node_id,
            operation="artifact",
        )
    return path, artifact_digest(path)


class PlaceholderArtifacts:
    """Transient stand-ins for missing artifacts during destroy.

    Use as a context manager; the placeholders are removed on exit.
    """

    def __init__(self) -> None:
        self._tmp: tempfile.TemporaryDirectory | None = None
        self.created: dict[str, Path] = {}

    def __enter__(self) -> PlaceholderArtifacts:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cleanup()

    def cleanup(self) -> None:
        if self._tmp is not None:
            self._tmp.cleanup()
            self._tmp = None

    def get(self, node_id: str, artifact: str) -> Path:
        """Path to a placeholder archive named like the missing artifact."""
        if node_id in self.created:
            return self.created[node_id]
        if self._tmp is None:
            self._tmp = tempfile.TemporaryDirectory(prefix="stackdeploy-placeholder-")

        path = Path(self._tmp.name) / node_id.replace("/", "_") / Path(artifact).name
        path.parent.mkdir(parents=True, exist_ok=True)
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("PLACEHOLDER", f"placeholder for {node_id} during destroy\n")
        self.created[node_id] = path
        logger.warning(
            "Artifact %s for %s is missing; using a placeholder for destroy", artifact, node_id,
        )
        return path

    def for_destroy(self, node_id: str, root: Path, artifact: str) -> Path:
        """The real artifact when present, otherwise a placeholder."""
        path = resolve_artifact(root, artifact)
        return path if path.exists() else self.get(node_id, artifact)
