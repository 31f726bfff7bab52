"""
Diffing — desired node vs. recorded instance.

References are resolved against the attribute table of the state
record (recorded resource attributes plus last data-lookup values).
During a real run the producers are already applied, so every
reference resolves. During a preview some producers may not exist
yet; those values are shown as ``(known after apply)``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from stackdeploy.core.engine.graph import ResourceGraph, graph_from_state
from stackdeploy.core.errors import ProviderActionError
from stackdeploy.core.models.action import NodeAction
from stackdeploy.core.models.resource import Reference, ResourceNode
from stackdeploy.core.models.state import StateRecord

UNKNOWN = "(known after apply)"


def _lookup(attributes: dict[str, Any], path: str) -> Any:
    """Walk a dotted path through nested dicts and lists."""
    current: Any = attributes
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise KeyError(path)
    return current


def resolve_value(
    value: Any,
    table: dict[str, dict[str, Any]],
    node_id: str = "",
    *,
    strict: bool = True,
) -> Any:
    """Replace every Reference in ``value`` with the producer's attribute.

    Args:
        value: Attribute value, possibly nested.
        table: Node id → recorded attributes.
        node_id: Consumer id, for error messages.
        strict: Raise on a missing producer attribute instead of
            substituting the UNKNOWN marker.

    Raises:
        ProviderActionError: In strict mode, when a producer has not
            reported the referenced attribute.
    """
    if isinstance(value, Reference):
        producer = table.get(value.target)
        try:
            if producer is None:
                raise KeyError(value.target)
            return _lookup(producer, value.attribute)
        except KeyError:
            if not strict:
                return UNKNOWN
            raise ProviderActionError(
                f"producer {value.target} did not report attribute '{value.attribute}'",
                node_id=node_id,
                operation="resolve",
            ) from None
    if isinstance(value, dict):
        return {k: resolve_value(v, table, node_id, strict=strict) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_value(v, table, node_id, strict=strict) for v in value]
    return value


def normalize(value: Any) -> Any:
    """Canonical JSON form used for comparisons."""
    return json.loads(json.dumps(value, sort_keys=True, default=str))


def classify(
    node: ResourceNode,
    record: StateRecord,
    inputs: dict[str, Any],
    artifact_hash: str | None = None,
) -> tuple[NodeAction, list[str]]:
    """Decide what to do with a node. Returns the action and its reasons."""
    if node.is_data:
        return NodeAction.READ, []

    instance = record.resource_instances.get(node.id)
    if instance is None:
        return NodeAction.CREATE, ["not in state"]

    reasons: list[str] = []
    before = normalize(instance.inputs)
    after = normalize(inputs)
    for key in sorted(set(before) | set(after)):
        if before.get(key) != after.get(key):
            reasons.append(f"attribute '{key}' changed")
    if instance.external_name != node.external_name:
        reasons.append("external name changed")
    if artifact_hash is not None and instance.artifact_hash != artifact_hash:
        reasons.append("artifact changed")

    if reasons:
        return NodeAction.UPDATE, reasons
    return NodeAction.UNCHANGED, []


@dataclass
class PlannedChange:
    """One line of a preview."""

    node_id: str
    action: NodeAction
    external_name: str = ""
    reasons: list[str] = field(default_factory=list)
    stateful: bool = False
    orphan: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node_id,
            "action": self.action.value,
            "external_name": self.external_name,
            "reasons": self.reasons,
            "stateful": self.stateful,
            "orphan": self.orphan,
        }


def orphan_order(graph: ResourceGraph, record: StateRecord) -> list[str]:
    """Recorded instances absent from the graph, in safe deletion order."""
    recorded = graph_from_state(record)
    return [nid for nid in recorded.destroy_order() if nid not in graph.nodes]


def plan_apply(
    graph: ResourceGraph,
    record: StateRecord | None,
    artifact_hashes: dict[str, str] | None = None,
) -> list[PlannedChange]:
    """Classify every node without locking or acting."""
    record = record or StateRecord()
    artifact_hashes = artifact_hashes or {}
    table = record.attribute_table()
    changes: list[PlannedChange] = []

    for nid in graph.apply_order():
        node = graph.nodes[nid]
        inputs = resolve_value(node.attributes, table, nid, strict=False)
        action, reasons = classify(node, record, inputs, artifact_hashes.get(nid))
        changes.append(PlannedChange(
            node_id=nid,
            action=action,
            external_name=node.external_name,
            reasons=reasons,
            stateful=node.stateful,
        ))

    for nid in orphan_order(graph, record):
        inst = record.resource_instances[nid]
        changes.append(PlannedChange(
            node_id=nid,
            action=NodeAction.DELETE,
            external_name=inst.external_name,
            reasons=["no longer declared"],
            stateful=inst.stateful,
            orphan=True,
        ))
    return changes


def plan_destroy(record: StateRecord | None) -> list[PlannedChange]:
    """Every recorded instance, in reverse dependency order."""
    if record is None:
        return []
    recorded = graph_from_state(record)
    return [
        PlannedChange(
            node_id=nid,
            action=NodeAction.DELETE,
            external_name=record.resource_instances[nid].external_name,
            stateful=record.resource_instances[nid].stateful,
        )
        for nid in recorded.destroy_order()
    ]
