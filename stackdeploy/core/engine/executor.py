"""
Engine executor — the apply/destroy run state machine.

A run moves through::

    locking → diffing → executing ⇄ persisting → unlocking → succeeded | failed

The environment lock is held for the whole run and always released on
the way out. After every successful node action the state record is
written immediately, so a run that stops half-way leaves a record that
matches the last completed node. Nothing is rolled back.

Apply walks dependency levels; destroy walks them in reverse. Nodes
within one level may run concurrently (``parallelism > 1``), but a
level only starts once every node of the previous one has completed
and been persisted. Cancellation is checked between node actions only.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable

from stackdeploy.adapters.base import ActionContext
from stackdeploy.adapters.registry import ProviderRegistry
from stackdeploy.core.engine.diff import classify, orphan_order, resolve_value
from stackdeploy.core.engine.graph import ResourceGraph, graph_from_state
from stackdeploy.core.errors import (
    BackendError,
    OperationTimeoutError,
    ProviderActionError,
    RunCancelledError,
    StackDeployError,
)
from stackdeploy.core.models.action import NodeAction, Receipt
from stackdeploy.core.models.resource import ResourceNode
from stackdeploy.core.models.run import RunMode
from stackdeploy.core.models.state import LockRecord, ResourceInstance, StateRecord
from stackdeploy.core.persistence.backend import StateBackend
from stackdeploy.core.services.artifacts import PlaceholderArtifacts, require_artifact

logger = logging.getLogger(__name__)


class RunPhase(StrEnum):
    PENDING = "pending"
    LOCKING = "locking"
    DIFFING = "diffing"
    EXECUTING = "executing"
    PERSISTING = "persisting"
    UNLOCKING = "unlocking"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def generate_operation_id() -> str:
    """Generate a unique operation ID."""
    now = datetime.now(UTC).strftime("%Y%m%d-%H%M%S")
    short = uuid.uuid4().hex[:6]
    return f"op-{now}-{short}"


@dataclass
class RunContext:
    """Everything a run needs besides the graph."""

    project: str
    environment: str
    state_key: str
    lock_id: str
    backend: StateBackend
    registry: ProviderRegistry
    operation_id: str = ""
    who: str = ""
    artifacts_root: Path = field(default_factory=Path.cwd)
    parallelism: int = 1
    cancel_event: threading.Event = field(default_factory=threading.Event)
    env: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.operation_id:
            self.operation_id = generate_operation_id()

    def cancel(self) -> None:
        """Request cancellation; honoured before the next node action."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass
class NodeOutcome:
    """What happened to one node during a run."""

    node_id: str
    action: NodeAction | None
    status: str = "ok"              # ok, failed
    reasons: list[str] = field(default_factory=list)
    receipts: list[Receipt] = field(default_factory=list)
    error: str | None = None
    serial: int | None = None       # state serial written after the action

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node_id,
            "action": self.action.value if self.action else None,
            "status": self.status,
            "reasons": self.reasons,
            "error": self.error,
            "serial": self.serial,
            "duration_ms": sum(r.duration_ms for r in self.receipts),
        }


@dataclass
class RunReport:
    """Result of one apply or destroy run."""

    operation_id: str = ""
    project: str = ""
    environment: str = ""
    mode: RunMode = RunMode.APPLY
    phases: list[RunPhase] = field(default_factory=lambda: [RunPhase.PENDING])
    outcomes: list[NodeOutcome] = field(default_factory=list)
    state: StateRecord | None = None
    outputs: dict[str, Any] = field(default_factory=dict)
    sensitive_outputs: set[str] = field(default_factory=set)
    error: StackDeployError | None = None
    lock_mode: str | None = None
    placeholders: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())
    duration_ms: int = 0

    @property
    def phase(self) -> RunPhase:
        return self.phases[-1]

    @property
    def succeeded(self) -> bool:
        return self.phase == RunPhase.SUCCEEDED

    @property
    def status(self) -> str:
        return self.phase.value

    def enter(self, phase: RunPhase) -> None:
        if self.phases[-1] != phase:
            self.phases.append(phase)

    def count(self, action: NodeAction) -> int:
        return sum(1 for o in self.outcomes if o.ok and o.action == action)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.ok)

    @property
    def performed(self) -> list[tuple[str, str]]:
        """(action, node_id) for every node acted on, in completion order."""
        return [
            (o.action.value, o.node_id)
            for o in self.outcomes
            if o.ok and o.action not in (None, NodeAction.UNCHANGED)
        ]

    def counts(self) -> dict[str, int]:
        return {
            "created": self.count(NodeAction.CREATE),
            "updated": self.count(NodeAction.UPDATE),
            "unchanged": self.count(NodeAction.UNCHANGED),
            "deleted": self.count(NodeAction.DELETE),
            "read": self.count(NodeAction.READ),
            "failed": self.failed,
        }

    def public_outputs(self) -> dict[str, Any]:
        return {
            k: ("(sensitive)" if k in self.sensitive_outputs else v)
            for k, v in self.outputs.items()
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "project": self.project,
            "environment": self.environment,
            "mode": self.mode.value,
            "status": self.status,
            "phases": [p.value for p in self.phases],
            "lock_mode": self.lock_mode,
            "counts": self.counts(),
            "nodes": [o.to_dict() for o in self.outcomes],
            "outputs": self.public_outputs(),
            "serial": self.state.serial if self.state else None,
            "placeholders": self.placeholders,
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at,
            "duration_ms": self.duration_ms,
        }


# ═══════════════════════════════════════════════════════════════════
#  Walk — per-run bookkeeping shared by apply and destroy
# ═══════════════════════════════════════════════════════════════════


def _node_error(receipt: Receipt, node_id: str, operation: str) -> ProviderActionError:
    message = receipt.error or f"{operation} failed"
    if receipt.timed_out:
        return OperationTimeoutError(message, node_id=node_id, operation=operation)
    return ProviderActionError(message, node_id=node_id, operation=operation)


class _Walk:
    """Runs node functions level by level and persists after each."""

    def __init__(self, ctx: RunContext, record: StateRecord, report: RunReport):
        self.ctx = ctx
        self.record = record
        self.report = report
        self.guard = threading.Lock()
        self.first_error: StackDeployError | None = None

    def check_cancel(self, before: str) -> None:
        if self.ctx.cancelled:
            raise RunCancelledError(f"Run {self.ctx.operation_id} cancelled before {before}")

    def persist(self, outcome: NodeOutcome | None = None) -> None:
        """Write the state record. Caller holds ``guard``."""
        self.report.enter(RunPhase.PERSISTING)
        serial = self.ctx.backend.write_state(self.ctx.state_key, self.record)
        if outcome is not None:
            outcome.serial = serial
        self.report.enter(RunPhase.EXECUTING)

    def table(self) -> dict[str, dict[str, Any]]:
        with self.guard:
            return self.record.attribute_table()

    def action_context(
        self,
        node_id: str,
        type_: str,
        name: str,
        external_name: str,
        inputs: dict[str, Any],
        prior: dict[str, Any],
        stateful: bool,
        artifact_path: Path | None = None,
        artifact_hash: str | None = None,
    ) -> ActionContext:
        return ActionContext(
            node_id=node_id,
            type=type_,
            name=name,
            external_name=external_name,
            inputs=inputs,
            prior=prior,
            stateful=stateful,
            project=self.ctx.project,
            environment=self.ctx.environment,
            operation_id=self.ctx.operation_id,
            artifact_path=str(artifact_path) if artifact_path else None,
            artifact_hash=artifact_hash,
            env=dict(self.ctx.env),
            **self.ctx.registry.settings_for(type_),
        )

    def _run_one(self, node_id: str, fn: Callable[[str], NodeOutcome]) -> None:
        with self.guard:
            if self.first_error is not None:
                return
        if self.ctx.cancelled:
            return

        try:
            outcome = fn(node_id)
        except StackDeployError as e:
            try:
                action: NodeAction | None = NodeAction(getattr(e, "operation", ""))
            except ValueError:
                action = None
            outcome = NodeOutcome(node_id=node_id, action=action, status="failed", error=str(e))
            logger.error("Node %s failed: %s", node_id, e)
            with self.guard:
                if self.first_error is None:
                    self.first_error = e

        with self.guard:
            self.report.outcomes.append(outcome)

    def run_level(self, node_ids: list[str], fn: Callable[[str], NodeOutcome]) -> None:
        """Run one level; raise the first failure once in-flight work settles."""
        workers = min(self.ctx.parallelism, len(node_ids))
        if workers <= 1:
            for nid in node_ids:
                self.check_cancel(nid)
                self._run_one(nid, fn)
                if self.first_error is not None:
                    raise self.first_error
            return

        self.check_cancel(node_ids[0])
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {pool.submit(self._run_one, nid, fn): nid for nid in node_ids}
            for future in as_completed(futures):
                future.result()
        if self.first_error is not None:
            raise self.first_error
        self.check_cancel("next level")

    # ── Node actions ─────────────────────────────────────────────

    def delete_instance(self, node_id: str, placeholders: PlaceholderArtifacts) -> NodeOutcome:
        """Empty (if stateful) then delete a recorded instance."""
        with self.guard:
            inst = self.record.resource_instances[node_id]
        artifact_path = (
            placeholders.for_destroy(node_id, self.ctx.artifacts_root, inst.artifact)
            if inst.artifact else None
        )
        actx = self.action_context(
            node_id, inst.type, inst.name, inst.external_name,
            inputs=dict(inst.inputs),
            prior=dict(inst.attributes),
            stateful=inst.stateful,
            artifact_path=artifact_path,
            artifact_hash=inst.artifact_hash,
        )
        outcome = NodeOutcome(node_id=node_id, action=NodeAction.DELETE)

        if inst.stateful:
            receipt = self.ctx.registry.empty(actx)
            outcome.receipts.append(receipt)
            if receipt.failed:
                raise _node_error(receipt, node_id, "delete")

        receipt = self.ctx.registry.delete(actx)
        outcome.receipts.append(receipt)
        if receipt.failed:
            raise _node_error(receipt, node_id, "delete")

        with self.guard:
            self.record.remove_instance(node_id)
            self.persist(outcome)
        logger.info("Deleted %s", node_id)
        return outcome


# ═══════════════════════════════════════════════════════════════════
#  Locking
# ═══════════════════════════════════════════════════════════════════


def _acquire(ctx: RunContext, report: RunReport, operation: str) -> LockRecord:
    report.enter(RunPhase.LOCKING)
    lock = LockRecord(
        lock_id=ctx.lock_id,
        project=ctx.project,
        environment=ctx.environment,
        holder_id=ctx.operation_id,
        operation=operation,
        who=ctx.who,
    )
    try:
        ctx.backend.acquire_lock(lock)
    except StackDeployError:
        report.enter(RunPhase.FAILED)
        raise
    report.lock_mode = lock.mode
    return lock


def _finish(ctx: RunContext, report: RunReport, lock: LockRecord, start: float) -> None:
    report.enter(RunPhase.UNLOCKING)
    try:
        ctx.backend.release_lock(lock.lock_id, lock.holder_id)
    except BackendError as e:
        logger.error("Failed to release lock %s: %s", lock.lock_id, e)
        if report.error is None:
            report.error = e
    report.enter(RunPhase.FAILED if report.error else RunPhase.SUCCEEDED)
    report.duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        "%s %s/%s %s in %dms (%s)",
        report.mode.value, ctx.project, ctx.environment, report.status,
        report.duration_ms, ", ".join(f"{k}={v}" for k, v in report.counts().items() if v),
    )


def _load_record(ctx: RunContext) -> StateRecord | None:
    return ctx.backend.read_state(ctx.state_key)


# ═══════════════════════════════════════════════════════════════════
#  Apply
# ═══════════════════════════════════════════════════════════════════


def execute_apply(graph: ResourceGraph, ctx: RunContext) -> RunReport:
    """Converge the environment onto the graph.

    Returns:
        RunReport; ``report.error`` holds the first failure, if any.

    Raises:
        LockConflictError: If the environment is locked. No state is
            read or written and no node is acted on.
    """
    start = time.monotonic()
    report = RunReport(
        operation_id=ctx.operation_id,
        project=ctx.project,
        environment=ctx.environment,
        mode=RunMode.APPLY,
        sensitive_outputs=set(graph.sensitive_outputs),
    )
    lock = _acquire(ctx, report, "apply")
    try:
        _apply(graph, ctx, report)
    except StackDeployError as e:
        report.error = e
    finally:
        _finish(ctx, report, lock, start)
    return report


def _apply(graph: ResourceGraph, ctx: RunContext, report: RunReport) -> None:
    report.enter(RunPhase.DIFFING)
    record = _load_record(ctx) or StateRecord(project=ctx.project, environment=ctx.environment)
    report.state = record

    # Every artifact must exist before the first action
    artifacts: dict[str, tuple[Path, str]] = {}
    for nid, node in graph.nodes.items():
        if node.artifact:
            artifacts[nid] = require_artifact(nid, ctx.artifacts_root, node.artifact)

    levels = graph.levels()
    orphans = orphan_order(graph, record)
    walk = _Walk(ctx, record, report)

    def apply_node(node_id: str) -> NodeOutcome:
        return _apply_node(walk, graph, graph.nodes[node_id], artifacts.get(node_id))

    report.enter(RunPhase.EXECUTING)
    for level in levels:
        walk.run_level(level, apply_node)

    if orphans:
        logger.info("Removing %d instance(s) no longer declared: %s", len(orphans), ", ".join(orphans))
        with PlaceholderArtifacts() as placeholders:
            try:
                for nid in orphans:
                    walk.run_level([nid], lambda n: walk.delete_instance(n, placeholders))
            finally:
                report.placeholders = sorted(placeholders.created)

    with walk.guard:
        for stale in set(record.data_sources) - set(graph.nodes):
            del record.data_sources[stale]
        table = record.attribute_table()
        record.outputs = {
            name: resolve_value(value, table, f"output.{name}")
            for name, value in graph.outputs.items()
        }
        record.last_applied_at = datetime.now(UTC).isoformat()
        walk.persist()
    report.outputs = dict(record.outputs)


def _apply_node(
    walk: _Walk,
    graph: ResourceGraph,
    node: ResourceNode,
    artifact: tuple[Path, str] | None,
) -> NodeOutcome:
    inputs = resolve_value(node.attributes, walk.table(), node.id)
    artifact_path, artifact_hash = artifact if artifact else (None, None)

    with walk.guard:
        action, reasons = classify(node, walk.record, inputs, artifact_hash)
        prior = walk.record.resource_instances.get(node.id)
    dependencies = sorted(graph.dependencies.get(node.id, ()))
    outcome = NodeOutcome(node_id=node.id, action=action, reasons=reasons)

    if action == NodeAction.UNCHANGED:
        with walk.guard:
            if prior is not None and prior.dependencies != dependencies:
                prior.dependencies = dependencies
        logger.debug("%s unchanged", node.id)
        return outcome

    actx = walk.action_context(
        node.id, node.type, node.local_name, node.external_name,
        inputs=inputs,
        prior=dict(prior.attributes) if prior else {},
        stateful=node.stateful,
        artifact_path=artifact_path,
        artifact_hash=artifact_hash,
    )
    receipt = walk.ctx.registry.dispatch(action.value, actx)
    outcome.receipts.append(receipt)
    if receipt.failed:
        raise _node_error(receipt, node.id, action.value)

    with walk.guard:
        if action == NodeAction.READ:
            walk.record.data_sources[node.id] = dict(receipt.attributes)
        else:
            attributes = dict(prior.attributes) if prior and action == NodeAction.UPDATE else {}
            attributes.update(receipt.attributes)
            walk.record.set_instance(ResourceInstance(
                type=node.type,
                name=node.local_name,
                external_name=node.external_name,
                inputs=inputs,
                attributes=attributes,
                dependencies=dependencies,
                stateful=node.stateful,
                artifact=node.artifact,
                artifact_hash=artifact_hash,
            ))
        walk.persist(outcome)

    logger.info("%s %s", {"create": "Created", "update": "Updated", "read": "Read"}[action.value], node.id)
    return outcome


# ═══════════════════════════════════════════════════════════════════
#  Destroy
# ═══════════════════════════════════════════════════════════════════


def execute_destroy(ctx: RunContext) -> RunReport:
    """Delete every recorded instance in reverse dependency order.

    Stateful instances are emptied immediately before their own deletion.
    On success the state document itself is removed.

    Raises:
        LockConflictError: If the environment is locked.
    """
    start = time.monotonic()
    report = RunReport(
        operation_id=ctx.operation_id,
        project=ctx.project,
        environment=ctx.environment,
        mode=RunMode.DESTROY,
    )
    lock = _acquire(ctx, report, "destroy")
    try:
        _destroy(ctx, report)
    except StackDeployError as e:
        report.error = e
    finally:
        _finish(ctx, report, lock, start)
    return report


def _destroy(ctx: RunContext, report: RunReport) -> None:
    report.enter(RunPhase.DIFFING)
    record = _load_record(ctx)
    if record is None:
        logger.info("No state for %s/%s; nothing to destroy", ctx.project, ctx.environment)
        return
    report.state = record

    levels = [list(reversed(level)) for level in reversed(graph_from_state(record).levels())]
    walk = _Walk(ctx, record, report)

    report.enter(RunPhase.EXECUTING)
    with PlaceholderArtifacts() as placeholders:
        try:
            for level in levels:
                walk.run_level(level, lambda nid: walk.delete_instance(nid, placeholders))
        finally:
            report.placeholders = sorted(placeholders.created)

    with walk.guard:
        record.data_sources.clear()
        record.outputs = {}
        report.enter(RunPhase.PERSISTING)
        ctx.backend.delete_state(ctx.state_key)


# ═══════════════════════════════════════════════════════════════════
#  Drift
# ═══════════════════════════════════════════════════════════════════


@dataclass
class DriftReport:
    """Recorded instances the provider no longer knows about."""

    environment: str = ""
    checked: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def drifted(self) -> bool:
        return bool(self.missing)

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "checked": len(self.checked),
            "missing": self.missing,
            "errors": self.errors,
            "drifted": self.drifted,
        }


def detect_drift(record: StateRecord, registry: ProviderRegistry, ctx: RunContext) -> DriftReport:
    """Ask the provider whether each recorded instance still exists.

    Detect and report only; nothing is changed.
    """
    report = DriftReport(environment=record.environment or ctx.environment)
    walk = _Walk(ctx, record, RunReport())
    for nid, inst in record.resource_instances.items():
        actx = walk.action_context(
            nid, inst.type, inst.name, inst.external_name,
            inputs=dict(inst.inputs),
            prior=dict(inst.attributes),
            stateful=inst.stateful,
        )
        receipt = registry.exists(actx)
        report.checked.append(nid)
        if receipt.failed:
            report.errors[nid] = receipt.error or "existence check failed"
        elif not receipt.metadata.get("exists"):
            report.missing.append(nid)
    if report.missing:
        logger.warning("Drift in %s: %s missing", report.environment, ", ".join(report.missing))
    return report
