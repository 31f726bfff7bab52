"""
Node actions and receipts — the execution contract.

The executor classifies each node into a NodeAction and dispatches it
to a provider adapter. Adapters answer with a Receipt. Never exceptions.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, Field


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class NodeAction(StrEnum):
    """What the executor decided to do with a node."""

    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    DELETE = "delete"
    READ = "read"


class Receipt(BaseModel):
    """Result of a provider operation on one node.

    Receipts capture the full outcome of an action. The adapter
    NEVER raises exceptions — failures are captured here.
    ``attributes`` carries what the provider reports back after a
    create/update/read (ids, addresses, ...).
    """

    adapter: str
    node_id: str
    operation: str = ""
    status: Literal["ok", "skipped", "failed"] = "ok"

    started_at: str = Field(default_factory=_now_iso)
    ended_at: str = Field(default_factory=_now_iso)
    duration_ms: int = 0

    attributes: dict[str, Any] = Field(default_factory=dict)
    output: str = ""
    error: str | None = None

    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """Whether the action succeeded."""
        return self.status == "ok"

    @property
    def failed(self) -> bool:
        """Whether the action failed."""
        return self.status == "failed"

    @property
    def timed_out(self) -> bool:
        return bool(self.metadata.get("timeout"))

    @classmethod
    def success(
        cls,
        adapter: str,
        node_id: str,
        attributes: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> Receipt:
        """Create a success receipt."""
        return cls(
            adapter=adapter,
            node_id=node_id,
            status="ok",
            attributes=attributes or {},
            **kwargs,
        )

    @classmethod
    def failure(
        cls,
        adapter: str,
        node_id: str,
        error: str,
        **kwargs: Any,
    ) -> Receipt:
        """Create a failure receipt."""
        return cls(
            adapter=adapter,
            node_id=node_id,
            status="failed",
            error=error,
            **kwargs,
        )

    @classmethod
    def skip(
        cls,
        adapter: str,
        node_id: str,
        reason: str = "",
        **kwargs: Any,
    ) -> Receipt:
        """Create a skip receipt."""
        return cls(
            adapter=adapter,
            node_id=node_id,
            status="skipped",
            output=reason,
            **kwargs,
        )
