"""
Resource graph builder — declarations in, ordered acyclic graph out.

Build steps, for one environment:

    1. resolve variables   defaults ← environment overlay ← overrides
    2. static check        consumers of a conditional producer share its `when`
    3. evaluate `when`     disabled declarations never become nodes
    4. substitute          {var: x} → value, {ref: ...} → Reference
    5. derive edges        attribute references ∪ depends_on
    6. cycle check         Kahn; a cycle is fatal, never broken

The same ResourceGraph type is rebuilt from a StateRecord for destroy
and orphan handling, using the dependencies recorded at apply time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from stackdeploy.core.errors import (
    BuildError,
    ConditionMismatchError,
    CycleError,
    UnresolvedReferenceError,
)
from stackdeploy.core.models.project import ProjectConfig
from stackdeploy.core.models.resource import (
    DATA_PREFIX,
    DataSpec,
    OutputSpec,
    ResourceNode,
    ResourceSpec,
    VariableSpec,
    as_reference,
    iter_references,
)
from stackdeploy.core.models.state import StateRecord

logger = logging.getLogger(__name__)

BUILTIN_VARIABLES = ("project", "environment", "name_prefix")

_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


# ═══════════════════════════════════════════════════════════════════
#  Graph
# ═══════════════════════════════════════════════════════════════════


@dataclass
class ResourceGraph:
    """Nodes in declaration order plus the producer edges between them."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    dependencies: dict[str, set[str]] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    sensitive_outputs: set[str] = field(default_factory=set)
    variables: dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    @property
    def consumers(self) -> dict[str, set[str]]:
        """Producer id → ids of the nodes that depend on it."""
        result: dict[str, set[str]] = {nid: set() for nid in self.nodes}
        for nid, producers in self.dependencies.items():
            for producer in producers:
                result.setdefault(producer, set()).add(nid)
        return result

    @property
    def edges(self) -> list[tuple[str, str]]:
        """(producer, consumer) pairs."""
        return sorted(
            (producer, nid)
            for nid, producers in self.dependencies.items()
            for producer in producers
        )

    def _order_key(self, node_id: str) -> int:
        return self.nodes[node_id].declaration_index

    def levels(self) -> list[list[str]]:
        """Dependency levels (Kahn), ties broken by declaration order.

        Raises:
            CycleError: If the edge relation is not acyclic.
        """
        in_degree = {nid: len(self.dependencies.get(nid, ())) for nid in self.nodes}
        consumers = self.consumers
        current = sorted((nid for nid, deg in in_degree.items() if deg == 0), key=self._order_key)
        levels: list[list[str]] = []
        placed = 0

        while current:
            levels.append(current)
            placed += len(current)
            following: list[str] = []
            for nid in current:
                for consumer in consumers.get(nid, ()):
                    in_degree[consumer] -= 1
                    if in_degree[consumer] == 0:
                        following.append(consumer)
            current = sorted(following, key=self._order_key)

        if placed < len(self.nodes):
            remaining = {nid for nid, deg in in_degree.items() if deg > 0}
            raise CycleError(self._find_cycle(remaining))
        return levels

    def apply_order(self) -> list[str]:
        return [nid for level in self.levels() for nid in level]

    def destroy_order(self) -> list[str]:
        return list(reversed(self.apply_order()))

    def _find_cycle(self, candidates: set[str]) -> list[str]:
        """Walk producer edges inside ``candidates`` until a node repeats."""
        for start in sorted(candidates, key=self._order_key):
            path: list[str] = []
            on_path: set[str] = set()
            visited: set[str] = set()

            def visit(nid: str) -> list[str] | None:
                path.append(nid)
                on_path.add(nid)
                visited.add(nid)
                for producer in sorted(self.dependencies.get(nid, ()), key=self._order_key):
                    if producer not in candidates:
                        continue
                    if producer in on_path:
                        loop = path[path.index(producer):] + [producer]
                        # Report in producer → consumer direction
                        return list(reversed(loop))
                    if producer not in visited:
                        found = visit(producer)
                        if found:
                            return found
                path.pop()
                on_path.discard(nid)
                return None

            cycle = visit(start)
            if cycle:
                return cycle
        return sorted(candidates)


def graph_from_state(record: StateRecord) -> ResourceGraph:
    """Rebuild a graph of recorded instances from their recorded dependencies."""
    graph = ResourceGraph()
    for index, (nid, inst) in enumerate(record.resource_instances.items()):
        graph.nodes[nid] = ResourceNode(
            type=inst.type,
            local_name=inst.name,
            attributes=dict(inst.inputs),
            stateful=inst.stateful,
            artifact=inst.artifact,
            external_name=inst.external_name,
            declaration_index=index,
        )
    for nid, inst in record.resource_instances.items():
        graph.dependencies[nid] = {
            dep for dep in inst.dependencies
            if dep in graph.nodes and dep != nid
        }
    return graph


# ═══════════════════════════════════════════════════════════════════
#  Variables
# ═══════════════════════════════════════════════════════════════════


def coerce_variable(name: str, value: Any, declared_type: str | None) -> Any:
    """Coerce a raw value (often a CLI string) to the declared type."""
    if value is None or declared_type is None:
        return value

    if declared_type == "string":
        return value if isinstance(value, str) else str(value)

    if declared_type == "bool":
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False

    elif declared_type == "number":
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            try:
                return int(value)
            except ValueError:
                try:
                    return float(value)
                except ValueError:
                    pass

    elif declared_type == "list":
        if isinstance(value, (list, tuple)):
            return list(value)
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]

    elif declared_type == "map":
        if isinstance(value, dict):
            return value

    raise BuildError(
        f"Variable '{name}' expects {declared_type}, got {type(value).__name__} {value!r}"
    )


def resolve_variables(
    declared: dict[str, VariableSpec],
    overlay: dict[str, Any] | None = None,
    overrides: dict[str, Any] | None = None,
    builtins: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Merge defaults, the environment overlay and explicit overrides.

    Raises:
        BuildError: On undeclared overlay/override keys, missing required
            values, or values that do not coerce to the declared type.
    """
    overlay = overlay or {}
    overrides = overrides or {}
    builtins = builtins or {}

    undeclared = sorted((set(overlay) | set(overrides)) - set(declared))
    if undeclared:
        raise BuildError(f"Undeclared variable(s): {', '.join(undeclared)}")

    shadowed = sorted(set(declared) & set(BUILTIN_VARIABLES))
    if shadowed:
        raise BuildError(f"Variable name(s) reserved for built-ins: {', '.join(shadowed)}")

    values: dict[str, Any] = {}
    for name, spec in declared.items():
        if name in overrides:
            raw = overrides[name]
        elif name in overlay:
            raw = overlay[name]
        else:
            raw = spec.default
        if raw is None and spec.required:
            raise BuildError(f"Variable '{name}' is required but has no value")
        values[name] = coerce_variable(name, raw, spec.type)

    values.update(builtins)
    return values


def _parse_condition(when: str) -> tuple[str, bool]:
    text = when.strip()
    if text.startswith("!"):
        return text[1:].strip(), True
    return text, False


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in _TRUE
    return bool(value)


def evaluate_condition(owner: str, when: str | None, variables: dict[str, Any]) -> bool:
    """Whether a declaration gated by ``when`` is enabled.

    Raises:
        UnresolvedReferenceError: If the toggle names an unknown variable.
    """
    if not when:
        return True
    name, negated = _parse_condition(when)
    if name not in variables:
        raise UnresolvedReferenceError(owner, f"var.{name}", "in when condition")
    enabled = _truthy(variables[name])
    return not enabled if negated else enabled


def _normalize_condition(when: str | None) -> str | None:
    if not when or not when.strip():
        return None
    name, negated = _parse_condition(when)
    return f"!{name}" if negated else name


# ═══════════════════════════════════════════════════════════════════
#  Build
# ═══════════════════════════════════════════════════════════════════


def _substitute(owner: str, value: Any, variables: dict[str, Any]) -> Any:
    """Replace {var: x} with values and {ref: ...} with Reference objects."""
    if isinstance(value, dict):
        try:
            ref = as_reference(value)
        except ValueError as e:
            raise UnresolvedReferenceError(owner, str(next(iter(value.values()))), str(e)) from e
        if ref is not None:
            if ref.kind == "var":
                if ref.target not in variables:
                    raise UnresolvedReferenceError(owner, ref.path)
                return variables[ref.target]
            return ref
        return {key: _substitute(owner, item, variables) for key, item in value.items()}
    if isinstance(value, list):
        return [_substitute(owner, item, variables) for item in value]
    return value


def _static_targets(value: Any) -> set[str]:
    """Node ids referenced by a raw (unsubstituted) attribute value."""
    targets: set[str] = set()
    if isinstance(value, dict):
        try:
            ref = as_reference(value)
        except ValueError:
            ref = None
        if ref is not None:
            if ref.kind != "var":
                targets.add(ref.target)
            return targets
        for item in value.values():
            targets |= _static_targets(item)
    elif isinstance(value, list):
        for item in value:
            targets |= _static_targets(item)
    return targets


def _check_conditions(
    resources: list[ResourceSpec],
    data: list[DataSpec],
    outputs: dict[str, OutputSpec],
) -> None:
    """Every consumer of a conditional producer carries the same toggle."""
    conditions: dict[str, str | None] = {}
    for decl in [*resources, *data]:
        conditions[decl.id] = _normalize_condition(decl.when)

    consumers: list[tuple[str, str | None, set[str]]] = []
    for decl in [*resources, *data]:
        targets = _static_targets(decl.attributes) | set(decl.depends_on)
        consumers.append((decl.id, _normalize_condition(decl.when), targets))
    for name, out in outputs.items():
        consumers.append((f"output.{name}", _normalize_condition(out.when), _static_targets(out.value)))

    for owner, own_when, targets in consumers:
        for target in sorted(targets):
            expected = conditions.get(target)
            if expected is not None and expected != own_when:
                raise ConditionMismatchError(owner, target, expected, own_when)


def _external_name(prefix: str, spec: ResourceSpec) -> str:
    declared = spec.attributes.get("name")
    base = declared if isinstance(declared, str) and declared else spec.name
    return f"{prefix}-{base}" if prefix else base


def build_graph(
    resources: list[ResourceSpec],
    variables: dict[str, VariableSpec],
    overlay: dict[str, Any] | None = None,
    *,
    data: list[DataSpec] | None = None,
    outputs: dict[str, OutputSpec] | None = None,
    overrides: dict[str, Any] | None = None,
    builtins: dict[str, Any] | None = None,
) -> ResourceGraph:
    """Build the resource graph for one environment.

    Args:
        resources: Declared resources, in declaration order.
        variables: Declared variables.
        overlay: The environment's variable values.
        data: Declared data lookups.
        outputs: Declared outputs.
        overrides: Explicit values (``--var k=v``), applied last.
        builtins: project / environment / name_prefix.

    Returns:
        An acyclic ResourceGraph.

    Raises:
        BuildError: CycleError, UnresolvedReferenceError,
            ConditionMismatchError, or a variable problem.
    """
    data = data or []
    outputs = outputs or {}
    builtins = builtins or {}
    prefix = str(builtins.get("name_prefix", ""))

    values = resolve_variables(variables, overlay, overrides, builtins)
    _check_conditions(resources, data, outputs)

    graph = ResourceGraph(variables=values)
    explicit: dict[str, list[str]] = {}

    declarations: list[ResourceSpec | DataSpec] = [*resources, *data]
    for index, decl in enumerate(declarations):
        if not evaluate_condition(decl.id, decl.when, values):
            logger.debug("Skipping %s (when: %s)", decl.id, decl.when)
            continue

        attributes = _substitute(decl.id, decl.attributes, values)
        if isinstance(decl, DataSpec):
            node = ResourceNode(
                type=decl.type,
                local_name=decl.name,
                kind="data",
                attributes=attributes,
                explicit_dependencies=set(decl.depends_on),
                declaration_index=index,
            )
        else:
            node = ResourceNode(
                type=decl.type,
                local_name=decl.name,
                attributes=attributes,
                explicit_dependencies=set(decl.depends_on),
                stateful=decl.stateful,
                artifact=decl.artifact,
                external_name=_external_name(prefix, decl),
                declaration_index=index,
            )
        graph.nodes[node.id] = node
        explicit[node.id] = list(decl.depends_on)

    for nid, node in graph.nodes.items():
        producers: set[str] = set()
        for ref in node.references():
            if ref.target not in graph.nodes:
                raise UnresolvedReferenceError(nid, ref.path)
            producers.add(ref.target)
        for dep in explicit[nid]:
            if dep not in graph.nodes:
                raise UnresolvedReferenceError(nid, dep, "depends_on")
            producers.add(dep)
        if nid in producers:
            raise CycleError([nid, nid])
        graph.dependencies[nid] = producers

    for name, out in outputs.items():
        owner = f"output.{name}"
        if not evaluate_condition(owner, out.when, values):
            continue
        value = _substitute(owner, out.value, values)
        for ref in iter_references(value):
            if ref.target not in graph.nodes:
                raise UnresolvedReferenceError(owner, ref.path)
        graph.outputs[name] = value
        if out.sensitive:
            graph.sensitive_outputs.add(name)

    # Cycle check
    levels = graph.levels()
    logger.info(
        "Built graph: %d nodes, %d edges, %d levels",
        len(graph.nodes), len(graph.edges), len(levels),
    )
    return graph


def build_for_environment(
    project: ProjectConfig,
    environment: str,
    name_prefix: str,
    overlay: dict[str, Any] | None = None,
    overrides: dict[str, Any] | None = None,
) -> ResourceGraph:
    """Build the graph for a project's environment (workspace)."""
    return build_graph(
        project.resources,
        project.variables,
        overlay,
        data=project.data,
        outputs=project.outputs,
        overrides=overrides,
        builtins={
            "project": project.name,
            "environment": environment,
            "name_prefix": name_prefix,
        },
    )


def is_data_id(node_id: str) -> bool:
    return node_id.startswith(DATA_PREFIX)


__all__ = [
    "BUILTIN_VARIABLES",
    "ResourceGraph",
    "build_for_environment",
    "build_graph",
    "coerce_variable",
    "evaluate_condition",
    "graph_from_state",
    "is_data_id",
    "resolve_variables",
]
