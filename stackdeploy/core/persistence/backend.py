"""
State backend protocol — durable, versioned state documents plus locks.

A backend is one shared container (a directory, a bucket) holding one
state document per (project, environment), and a keyed lock table
holding one lock record per (project, environment).

Locking has two modes:

    table     → lock records live in the lock table; exclusive across
                processes and machines.
    degraded  → the lock table could not be created; each lock is a
                conditionally-created object inside the state container,
                beside the state document it guards.

Concrete backends implement the storage primitives; the mode switch,
serial numbering and JSON encoding live here.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Literal

from stackdeploy.core.errors import BackendError, LockConflictError
from stackdeploy.core.models.state import LockRecord, StateRecord

logger = logging.getLogger(__name__)

LockingMode = Literal["table", "degraded"]


def encode_state(record: StateRecord) -> str:
    """Serialize a state record as stable, human-readable JSON."""
    data = record.model_dump(mode="json")
    return json.dumps(data, indent=2, ensure_ascii=False, sort_keys=True) + "\n"


def decode_state(raw: str | bytes, source: str) -> StateRecord:
    """Parse a state document. Corruption is an error, never a fresh start."""
    try:
        data = json.loads(raw)
        return StateRecord.model_validate(data)
    except (json.JSONDecodeError, ValueError) as e:
        raise BackendError(f"Corrupt state document {source}: {e}") from e


class StateBackend(ABC):
    """Abstract base class for state stores.

    To create a new backend:
        1. Subclass StateBackend
        2. Implement the container, document, workspace and lock primitives
        3. Return it from ``stackdeploy.core.persistence.factory.create_backend``
    """

    def __init__(self) -> None:
        self._locking_mode: LockingMode | None = None

    # ── Identity ─────────────────────────────────────────────────

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend type identifier ('local', 's3')."""

    @property
    @abstractmethod
    def container_ref(self) -> str:
        """Reference to the shared state container."""

    @property
    @abstractmethod
    def lock_table_ref(self) -> str:
        """Reference to the lock table."""

    # ── Bootstrap primitives ─────────────────────────────────────

    @abstractmethod
    def container_exists(self) -> bool:
        """Whether the shared state container exists."""

    @abstractmethod
    def create_container(self) -> bool:
        """Create the container. Returns False if it already existed."""

    @abstractmethod
    def harden_container(self) -> dict[str, Any]:
        """Apply versioning, encryption at rest and public-access denial."""

    @abstractmethod
    def lock_table_exists(self) -> bool:
        """Whether the lock table exists."""

    @abstractmethod
    def create_lock_table(self) -> bool:
        """Create the lock table. Returns False if it already existed.

        Raises:
            LockTableUnavailableError: If the platform refuses.
        """

    # ── State documents ──────────────────────────────────────────

    @abstractmethod
    def _read_document(self, key: str) -> str | None:
        """Raw document at key, or None."""

    @abstractmethod
    def _write_document(self, key: str, content: str, serial: int) -> None:
        """Durably replace the document at key (keeping prior versions)."""

    @abstractmethod
    def delete_state(self, key: str) -> None:
        """Remove the current document at key."""

    @abstractmethod
    def list_versions(self, key: str) -> list[str]:
        """Identifiers of retained prior versions, oldest first."""

    def read_state(self, key: str) -> StateRecord | None:
        """Load the state record at key, or None if there is none yet."""
        raw = self._read_document(key)
        if raw is None:
            return None
        record = decode_state(raw, f"{self.container_ref}/{key}")
        logger.debug("Loaded state %s (serial=%d)", key, record.serial)
        return record

    def write_state(self, key: str, record: StateRecord) -> int:
        """Persist a new version of the state record. Returns its serial."""
        record.serial += 1
        record.touch()
        self._write_document(key, encode_state(record), record.serial)
        logger.debug("State %s written (serial=%d)", key, record.serial)
        return record.serial

    # ── Workspaces ───────────────────────────────────────────────

    @abstractmethod
    def list_workspaces(self, project: str) -> list[str]:
        """Names of workspaces created for a project."""

    @abstractmethod
    def register_workspace(self, project: str, environment: str) -> bool:
        """Record a workspace. Returns False if it already existed."""

    # ── Table lock primitives ────────────────────────────────────

    @abstractmethod
    def _put_lock(self, lock: LockRecord) -> bool:
        """Conditionally write a lock record. False if one already exists."""

    @abstractmethod
    def _get_lock(self, lock_id: str) -> LockRecord | None:
        """Read the lock record for lock_id."""

    @abstractmethod
    def _delete_lock(self, lock_id: str, holder_id: str | None) -> bool:
        """Delete the lock record (only if held by holder_id, when given)."""

    # ── Lock object primitives (degraded mode) ───────────────────

    @abstractmethod
    def _put_lock_object(self, lock: LockRecord) -> bool:
        """Conditionally create ``<lock_id>/.lock`` in the container. False if present."""

    @abstractmethod
    def _get_lock_object(self, lock_id: str) -> LockRecord | None:
        """Read the lock object for lock_id."""

    @abstractmethod
    def _delete_lock_object(self, lock_id: str, holder_id: str | None) -> bool:
        """Delete the lock object (only if held by holder_id, when given)."""

    # ── Locking ──────────────────────────────────────────────────

    @property
    def locking_mode(self) -> LockingMode:
        if self._locking_mode is None:
            self._locking_mode = "table" if self.lock_table_exists() else "degraded"
            if self._locking_mode == "degraded":
                logger.warning(
                    "Lock table %s unavailable; locking falls back to lock objects in %s "
                    "(single writer per environment)",
                    self.lock_table_ref,
                    self.container_ref,
                )
        return self._locking_mode

    def set_locking_mode(self, mode: LockingMode) -> None:
        self._locking_mode = mode

    def _lock_primitives(self):
        if self.locking_mode == "degraded":
            return self._put_lock_object, self._get_lock_object, self._delete_lock_object
        return self._put_lock, self._get_lock, self._delete_lock

    def acquire_lock(self, lock: LockRecord) -> LockRecord:
        """Take the lock or fail fast.

        Raises:
            LockConflictError: If another holder has it. Never blocks.
        """
        lock.mode = self.locking_mode
        put, get, _ = self._lock_primitives()
        if not put(lock):
            raise LockConflictError(lock.lock_id, get(lock.lock_id))

        logger.info("Lock %s acquired by %s (%s)", lock.lock_id, lock.holder_id, lock.mode)
        return lock

    def release_lock(self, lock_id: str, holder_id: str) -> None:
        """Release a lock held by holder_id."""
        _, _, delete = self._lock_primitives()
        if delete(lock_id, holder_id):
            logger.info("Lock %s released by %s", lock_id, holder_id)
        else:
            logger.warning("Lock %s was not held by %s at release", lock_id, holder_id)

    def read_lock(self, lock_id: str) -> LockRecord | None:
        """Current holder of a lock, if any."""
        _, get, _ = self._lock_primitives()
        return get(lock_id)

    def force_unlock(self, lock_id: str) -> LockRecord | None:
        """Remove a lock regardless of holder. Returns the removed record."""
        _, get, delete = self._lock_primitives()
        held = get(lock_id)
        if held is not None:
            delete(lock_id, None)
            logger.warning("Lock %s force-released (was held by %s)", lock_id, held.holder_id)
        return held

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} container={self.container_ref!r}>"
