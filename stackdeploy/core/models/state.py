"""
StateRecord — the durable record of what is provisioned in one environment.

One document per (project, environment), stored under the shared state
container at the workspace's state key. The executor is its only writer
and only writes while holding the environment lock.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

SCHEMA_VERSION = 1


def _now_iso() -> str:
    """Current UTC time as ISO string."""
    return datetime.now(UTC).isoformat()


class ResourceInstance(BaseModel):
    """What was recorded for one provisioned node."""

    type: str
    name: str
    external_name: str = ""
    inputs: dict[str, Any] = Field(default_factory=dict)
    attributes: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    stateful: bool = False
    artifact: str | None = None
    artifact_hash: str | None = None
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)

    @property
    def id(self) -> str:
        return f"{self.type}.{self.name}"


class StateRecord(BaseModel):
    """Root state document for one environment."""

    # ── Schema ───────────────────────────────────────────────────
    schema_version: int = SCHEMA_VERSION

    # ── Identity ─────────────────────────────────────────────────
    project: str = ""
    environment: str = ""
    serial: int = 0
    lineage: str = Field(default_factory=lambda: uuid.uuid4().hex)

    # ── Timestamps ───────────────────────────────────────────────
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
    last_applied_at: str | None = None

    # ── Recorded reality ─────────────────────────────────────────
    resource_instances: dict[str, ResourceInstance] = Field(default_factory=dict)
    data_sources: dict[str, dict[str, Any]] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = _now_iso()

    def set_instance(self, instance: ResourceInstance) -> None:
        """Record a created or updated instance."""
        prior = self.resource_instances.get(instance.id)
        if prior is not None:
            instance.created_at = prior.created_at
        instance.updated_at = _now_iso()
        self.resource_instances[instance.id] = instance

    def remove_instance(self, node_id: str) -> ResourceInstance | None:
        """Forget a destroyed instance."""
        return self.resource_instances.pop(node_id, None)

    def attribute_table(self) -> dict[str, dict[str, Any]]:
        """Node id → recorded attributes, including data lookups."""
        table: dict[str, dict[str, Any]] = {
            node_id: dict(inst.attributes)
            for node_id, inst in self.resource_instances.items()
        }
        for node_id, attrs in self.data_sources.items():
            table[node_id] = dict(attrs)
        return table

    @property
    def is_empty(self) -> bool:
        return not self.resource_instances


class LockRecord(BaseModel):
    """Exclusive lock on one environment's state."""

    lock_id: str
    project: str = ""
    environment: str = ""
    holder_id: str
    acquired_at: str = Field(default_factory=_now_iso)
    operation: str = ""     # apply, destroy
    who: str = ""           # user@host or pipeline run
    mode: Literal["table", "degraded"] = "table"
