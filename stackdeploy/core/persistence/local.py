"""
Local state backend — a directory acting as the shared state container.

Layout::

    <root>/
        .container.json                   container marker + hardening
        .locks/<project>--<env>.lock      lock table (one file per lock)
        <project>/<env>/.workspace        workspace marker
        <project>/<env>/.lock             lock object (degraded locking)
        <project>/<env>/state.json        current state document
        <project>/<env>/state.json.versions/000007.json

Writes are atomic (write to temp file, then rename) so a crash mid-write
never leaves a torn document. Lock files are created with O_EXCL, which
is the conditional put of this backend, for the lock table and for the
lock objects used when the table is unavailable.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from stackdeploy.core.errors import BackendError, LockTableUnavailableError
from stackdeploy.core.models.state import LockRecord
from stackdeploy.core.persistence.backend import StateBackend

logger = logging.getLogger(__name__)

CONTAINER_MARKER = ".container.json"
LOCKS_DIR = ".locks"
WORKSPACE_MARKER = ".workspace"
LOCK_OBJECT = ".lock"
VERSIONS_SUFFIX = ".versions"


def _atomic_write(path: Path, content: str) -> None:
    """Write-to-temp-then-rename in the target directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    _fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".state_", suffix=".tmp")
    os.close(_fd)
    tmp = Path(tmp_path)
    try:
        tmp.write_text(content, encoding="utf-8")
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


class LocalStateBackend(StateBackend):
    """State container on the local filesystem."""

    def __init__(self, root: Path):
        super().__init__()
        self._root = Path(root)

    @property
    def name(self) -> str:
        return "local"

    @property
    def root(self) -> Path:
        return self._root

    @property
    def container_ref(self) -> str:
        return str(self._root)

    @property
    def lock_table_ref(self) -> str:
        return str(self._root / LOCKS_DIR)

    # ── Bootstrap primitives ─────────────────────────────────────

    def container_exists(self) -> bool:
        return (self._root / CONTAINER_MARKER).is_file()

    def create_container(self) -> bool:
        self._root.mkdir(parents=True, exist_ok=True)
        marker = self._root / CONTAINER_MARKER
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump({"created_at": datetime.now(UTC).isoformat()}, f)
        logger.info("Created state container %s", self._root)
        return True

    def container_settings(self) -> dict[str, Any]:
        marker = self._root / CONTAINER_MARKER
        if not marker.is_file():
            return {}
        try:
            return json.loads(marker.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}

    def harden_container(self) -> dict[str, Any]:
        os.chmod(self._root, 0o700)
        settings = self.container_settings()
        settings.update({
            "versioning": "enabled",
            "encryption": "filesystem",
            "public_access": "blocked",
            "hardened_at": datetime.now(UTC).isoformat(),
        })
        _atomic_write(self._root / CONTAINER_MARKER, json.dumps(settings, indent=2) + "\n")
        return settings

    def lock_table_exists(self) -> bool:
        return (self._root / LOCKS_DIR).is_dir()

    def create_lock_table(self) -> bool:
        table = self._root / LOCKS_DIR
        try:
            table.mkdir(mode=0o700)
        except FileExistsError:
            return False
        except PermissionError as e:
            raise LockTableUnavailableError(f"Cannot create lock table {table}: {e}") from e
        return True

    # ── State documents ──────────────────────────────────────────

    def _path(self, key: str) -> Path:
        return self._root / key

    def _read_document(self, key: str) -> str | None:
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as e:
            raise BackendError(f"Cannot read {path}: {e}") from e

    def _write_document(self, key: str, content: str, serial: int) -> None:
        path = self._path(key)
        try:
            _atomic_write(path, content)
            if self.container_settings().get("versioning") == "enabled":
                versions = path.with_name(path.name + VERSIONS_SUFFIX)
                _atomic_write(versions / f"{serial:06d}.json", content)
        except OSError as e:
            logger.error("Failed to save state to %s: %s", path, e)
            raise BackendError(f"Cannot write {path}: {e}") from e

    def delete_state(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)
        logger.info("Deleted state document %s", key)

    def list_versions(self, key: str) -> list[str]:
        path = self._path(key)
        versions = path.with_name(path.name + VERSIONS_SUFFIX)
        if not versions.is_dir():
            return []
        return sorted(p.stem for p in versions.glob("*.json"))

    # ── Workspaces ───────────────────────────────────────────────

    def list_workspaces(self, project: str) -> list[str]:
        base = self._root / project
        if not base.is_dir():
            return []
        return sorted(
            child.name for child in base.iterdir()
            if (child / WORKSPACE_MARKER).is_file()
        )

    def register_workspace(self, project: str, environment: str) -> bool:
        marker = self._root / project / environment / WORKSPACE_MARKER
        marker.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(marker, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(datetime.now(UTC).isoformat() + "\n")
        return True

    # ── Lock files ───────────────────────────────────────────────

    @staticmethod
    def _create_lock_file(path: Path, lock: LockRecord) -> bool:
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError:
            return False
        except OSError as e:
            raise BackendError(f"Cannot write lock {path}: {e}") from e
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(lock.model_dump_json())
        return True

    @staticmethod
    def _read_lock_file(path: Path, lock_id: str) -> LockRecord | None:
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LockRecord.model_validate_json(raw)
        except ValueError:
            # Half-written by a concurrent acquirer
            return LockRecord(lock_id=lock_id, holder_id="unknown")

    @classmethod
    def _remove_lock_file(cls, path: Path, lock_id: str, holder_id: str | None) -> bool:
        held = cls._read_lock_file(path, lock_id)
        if held is None:
            return False
        if holder_id is not None and held.holder_id != holder_id:
            return False
        path.unlink(missing_ok=True)
        return True

    # ── Table lock primitives ────────────────────────────────────

    def _lock_path(self, lock_id: str) -> Path:
        return self._root / LOCKS_DIR / (lock_id.replace("/", "--") + ".lock")

    def _put_lock(self, lock: LockRecord) -> bool:
        return self._create_lock_file(self._lock_path(lock.lock_id), lock)

    def _get_lock(self, lock_id: str) -> LockRecord | None:
        return self._read_lock_file(self._lock_path(lock_id), lock_id)

    def _delete_lock(self, lock_id: str, holder_id: str | None) -> bool:
        return self._remove_lock_file(self._lock_path(lock_id), lock_id, holder_id)

    # ── Lock object primitives (degraded mode) ───────────────────

    def _lock_object_path(self, lock_id: str) -> Path:
        return self._root / lock_id / LOCK_OBJECT

    def _put_lock_object(self, lock: LockRecord) -> bool:
        path = self._lock_object_path(lock.lock_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackendError(f"Cannot write lock {path}: {e}") from e
        return self._create_lock_file(path, lock)

    def _get_lock_object(self, lock_id: str) -> LockRecord | None:
        return self._read_lock_file(self._lock_object_path(lock_id), lock_id)

    def _delete_lock_object(self, lock_id: str, holder_id: str | None) -> bool:
        return self._remove_lock_file(self._lock_object_path(lock_id), lock_id, holder_id)
