"""
Provider adapter base — the protocol contract between executor and cloud.

The executor only talks to providers through this protocol, never
directly to SDKs or CLIs. One adapter handles one or more resource
types; the ProviderRegistry decides which adapter gets a node.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from stackdeploy.core.models.action import Receipt


class ActionContext(BaseModel):
    """Everything an adapter needs to act on one node.

    ``inputs`` are the node's attributes with every reference already
    resolved; ``prior`` holds what was recorded for the node at the
    last successful apply (empty on create).
    """

    node_id: str
    type: str
    name: str
    external_name: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)
    prior: dict[str, Any] = Field(default_factory=dict)
    stateful: bool = False

    project: str = ""
    environment: str = ""
    operation_id: str = ""

    artifact_path: str | None = None
    artifact_hash: str | None = None

    timeout: float = 300.0
    poll_interval: float = 5.0
    env: dict[str, str] = Field(default_factory=dict)


class ProviderAdapter(ABC):
    """Abstract base class for provider adapters.

    Adapters perform external side effects and return receipts.
    They NEVER raise exceptions — failures are captured in the Receipt.

    To create a new adapter:
        1. Subclass ProviderAdapter
        2. Implement name, is_available, create, update, delete, exists
        3. Register it in the ProviderRegistry and bind resource types to it
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The adapter identifier (e.g., 'mock', 'shell')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the adapter's underlying tool is usable. Never raises."""

    def validate(self, context: ActionContext) -> tuple[bool, str]:
        """Validate that the node can be acted on.

        Returns:
            (is_valid, error_message). error_message is empty if valid.
        """
        return True, ""

    @abstractmethod
    def create(self, context: ActionContext) -> Receipt:
        """Create the resource. The receipt carries its attributes."""

    @abstractmethod
    def update(self, context: ActionContext) -> Receipt:
        """Update the resource in place."""

    @abstractmethod
    def delete(self, context: ActionContext) -> Receipt:
        """Delete the resource. Deleting an absent resource succeeds."""

    @abstractmethod
    def exists(self, context: ActionContext) -> bool:
        """Whether the resource currently exists at the provider."""

    def read(self, context: ActionContext) -> Receipt:
        """Perform a data lookup."""
        return Receipt.failure(
            adapter=self.name,
            node_id=context.node_id,
            error=f"Adapter '{self.name}' does not support data lookups",
            operation="read",
        )

    def empty(self, context: ActionContext) -> Receipt:
        """Remove durable contents before deletion (stateful nodes)."""
        return Receipt.skip(
            adapter=self.name,
            node_id=context.node_id,
            reason="nothing to empty",
            operation="empty",
        )

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
