"""
Error taxonomy — every failure the engine can surface to the controller.

The controller maps these onto exit codes:

    BuildError, ProviderActionError, ConfigError, ...  → 1
    LockConflictError                                  → 2
    ConfirmationMismatchError                          → 3

Each error carries the identity needed to act on it (node id, lock
holder, confirmation value) so the CLI can print something useful.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from stackdeploy.core.models.state import LockRecord


class StackDeployError(Exception):
    """Base class for all stackdeploy errors."""

    retryable: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"type": type(self).__name__, "message": str(self)}


class ConfigError(StackDeployError):
    """Raised when the project file is invalid or missing."""


# ── Graph build ─────────────────────────────────────────────────────


class BuildError(StackDeployError):
    """The declared resource set cannot be turned into a valid graph."""


class CycleError(BuildError):
    """The dependency relation contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle: {' -> '.join(cycle)}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "cycle": self.cycle}


class UnresolvedReferenceError(BuildError):
    """A node references a node, attribute or variable that does not exist."""

    def __init__(self, node: str, path: str, detail: str = ""):
        self.node = node
        self.path = path
        msg = f"{node}: unresolved reference '{path}'"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "node": self.node, "path": self.path}


class ConditionMismatchError(BuildError):
    """A consumer of a conditional producer is not gated by the same toggle."""

    def __init__(self, node: str, producer: str, expected: str | None, actual: str | None):
        self.node = node
        self.producer = producer
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{node} references conditional '{producer}' (when: {expected}) "
            f"but is gated by when: {actual}"
        )


# ── Workspaces ──────────────────────────────────────────────────────


class WorkspaceError(StackDeployError):
    """Invalid workspace name or colliding environment prefixes."""


class UnknownWorkspaceError(WorkspaceError):
    """Selecting a workspace that has never been created."""

    def __init__(self, name: str, known: list[str]):
        self.name = name
        self.known = known
        listing = ", ".join(known) if known else "(none)"
        super().__init__(f"Unknown workspace '{name}'. Known workspaces: {listing}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "workspace": self.name, "known": self.known}


# ── State store ─────────────────────────────────────────────────────


class BackendError(StackDeployError):
    """The state store failed to read or write."""


class LockTableUnavailableError(BackendError):
    """The platform refused to create the lock table."""


class LockConflictError(StackDeployError):
    """The environment lock is held by another run."""

    retryable = True

    def __init__(self, lock_id: str, holder: LockRecord | None = None):
        self.lock_id = lock_id
        self.holder = holder
        if holder is not None:
            msg = (
                f"Lock '{lock_id}' is held by {holder.holder_id} "
                f"({holder.operation or 'run'} by {holder.who or 'unknown'}, "
                f"since {holder.acquired_at})"
            )
        else:
            msg = f"Lock '{lock_id}' is held by another run"
        super().__init__(msg)

    def to_dict(self) -> dict[str, Any]:
        data = {**super().to_dict(), "lock_id": self.lock_id, "retryable": True}
        if self.holder is not None:
            data["holder"] = self.holder.model_dump(mode="json")
        return data


# ── Execution ───────────────────────────────────────────────────────


class ProviderActionError(StackDeployError):
    """A provider adapter failed to act on a node."""

    def __init__(self, message: str, node_id: str = "", operation: str = ""):
        self.node_id = node_id
        self.operation = operation
        self.detail = message
        prefix = f"{node_id}: " if node_id else ""
        suffix = f" [{operation}]" if operation else ""
        super().__init__(f"{prefix}{message}{suffix}")

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "node": self.node_id,
            "operation": self.operation,
        }


class OperationTimeoutError(ProviderActionError, TimeoutError):
    """A bounded wait inside a provider action ran out of time."""


class ArtifactMissingError(ProviderActionError):
    """A deployable artifact required by an apply action is not present."""


class RunCancelledError(StackDeployError):
    """The run was cancelled between node actions."""


# ── Controller ──────────────────────────────────────────────────────


class ConfirmationMismatchError(StackDeployError):
    """Destroy confirmation does not name the target environment."""

    def __init__(self, environment: str, confirmation: str | None):
        self.environment = environment
        self.confirmation = confirmation
        super().__init__(
            f"Refusing to destroy '{environment}': confirmation "
            f"{confirmation!r} does not match the environment name"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "environment": self.environment,
            "confirmation": self.confirmation,
        }


class CredentialError(StackDeployError):
    """Short-lived credentials could not be obtained."""


# ── Warnings ────────────────────────────────────────────────────────


class BootstrapDegradedWarning(UserWarning):
    """The lock table is unavailable; locks fall back to objects in the state container."""
