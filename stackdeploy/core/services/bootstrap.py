"""
Bootstrap reconciler — make sure the state store itself exists.

Runs before any environment is touched and is safe to run any number
of times, concurrently from several environments:

    container   created if absent; "already exists" races count as success
    hardening   versioning + encryption + public-access block, applied
                only when this call created the container
    lock table  created if absent; if the platform refuses, the backend
                drops to degraded locking (lock objects in the container)
                with a warning
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field
from typing import Any

from stackdeploy.core.errors import BootstrapDegradedWarning, LockTableUnavailableError
from stackdeploy.core.persistence.backend import StateBackend

logger = logging.getLogger(__name__)


@dataclass
class BootstrapResult:
    """What the reconciler found and did."""

    backend: str = ""
    bucket_ref: str = ""
    lock_table_ref: str | None = None
    created_container: bool = False
    created_lock_table: bool = False
    hardened: bool = False
    degraded: bool = False
    hardening: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.created_container or self.created_lock_table

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "bucket_ref": self.bucket_ref,
            "lock_table_ref": self.lock_table_ref,
            "created_container": self.created_container,
            "created_lock_table": self.created_lock_table,
            "hardened": self.hardened,
            "degraded": self.degraded,
            "hardening": self.hardening,
            "warnings": self.warnings,
        }


def ensure_backend(backend: StateBackend) -> BootstrapResult:
    """Idempotently ensure the shared state container and lock table.

    Returns:
        BootstrapResult. ``degraded`` is set when the lock table could
        not be created; the backend's locking mode is switched to match.

    Raises:
        BackendError: If the container cannot be checked or created.
    """
    result = BootstrapResult(backend=backend.name, bucket_ref=backend.container_ref)

    # ── Container ───────────────────────────────────────────────
    if backend.container_exists():
        logger.debug("State container %s already exists", backend.container_ref)
    else:
        result.created_container = backend.create_container()
        if not result.created_container:
            logger.info("State container %s was created concurrently", backend.container_ref)

    if result.created_container:
        result.hardening = backend.harden_container()
        result.hardened = True
        logger.info("Hardened state container %s", backend.container_ref)

    # ── Lock table ──────────────────────────────────────────────
    try:
        if backend.lock_table_exists():
            logger.debug("Lock table %s already exists", backend.lock_table_ref)
        else:
            result.created_lock_table = backend.create_lock_table()
    except LockTableUnavailableError as e:
        message = (
            f"Lock table {backend.lock_table_ref} unavailable ({e}); "
            "falling back to lock objects in the state container (single writer per environment)"
        )
        result.degraded = True
        result.warnings.append(message)
        backend.set_locking_mode("degraded")
        logger.warning(message)
        warnings.warn(message, BootstrapDegradedWarning, stacklevel=2)
        return result

    backend.set_locking_mode("table")
    result.lock_table_ref = backend.lock_table_ref
    return result
