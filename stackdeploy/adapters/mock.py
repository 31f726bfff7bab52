"""
Mock provider — an in-memory cloud for tests and ``--mock`` runs.

Every resource type is accepted. Created resources get deterministic
ids derived from their external name, so destroying and re-applying a
stack reproduces the same attributes. The world can optionally be
persisted to a JSON file so separate CLI invocations see the same cloud.

Failure injection:
    set_failure(node_id, operation)   next matching call fails
    set_timeout(node_id, operation)   next matching call exceeds its wait
    put_contents(node_id, n)          stateful delete fails until emptied
    forget(node_id)                   resource vanishes (drift)
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from pathlib import Path
from typing import Any

from stackdeploy.adapters.base import ActionContext, ProviderAdapter
from stackdeploy.core.errors import OperationTimeoutError
from stackdeploy.core.models.action import Receipt
from stackdeploy.core.reliability.poll import PollPolicy, wait_until

logger = logging.getLogger(__name__)

MOCK_ACCOUNT_ID = "123456789012"
MOCK_REGION = "us-east-1"


def _short_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:12]


class MockProvider(ProviderAdapter):
    """Universal mock provider.

    By default every action succeeds. Calls are recorded in ``call_log``
    as ``(operation, node_id)`` pairs, in call order.
    """

    def __init__(
        self,
        adapter_name: str = "mock",
        world_file: Path | None = None,
        latency: float = 0.0,
        available: bool = True,
    ):
        self._name = adapter_name
        self._world_file = world_file
        self._latency = latency
        self._available = available
        self._guard = threading.Lock()
        self._world: dict[str, dict[str, Any]] = {}
        self._failures: dict[tuple[str, str], str] = {}
        self._timeouts: set[tuple[str, str]] = set()
        self._call_log: list[tuple[str, str]] = []
        self._load()

    @property
    def name(self) -> str:
        return self._name

    @property
    def call_log(self) -> list[tuple[str, str]]:
        return self._call_log

    @property
    def call_count(self) -> int:
        return len(self._call_log)

    @property
    def world(self) -> dict[str, dict[str, Any]]:
        """Node id → what the mock cloud currently holds."""
        return self._world

    def is_available(self) -> bool:
        return self._available

    def calls(self, operation: str | None = None) -> list[str]:
        """Node ids called, optionally for one operation only."""
        return [nid for op, nid in self._call_log if operation is None or op == operation]

    # ── Failure injection ────────────────────────────────────────

    def set_failure(self, node_id: str, operation: str = "create", error: str = "Mock failure") -> None:
        """Make the next ``operation`` on ``node_id`` fail."""
        self._failures[(node_id, operation)] = error

    def set_timeout(self, node_id: str, operation: str = "create") -> None:
        """Make the next ``operation`` on ``node_id`` exceed its bounded wait."""
        self._timeouts.add((node_id, operation))

    def put_contents(self, node_id: str, count: int = 1) -> None:
        """Give a stateful resource durable contents (objects in a bucket)."""
        with self._guard:
            if node_id in self._world:
                self._world[node_id]["contents"] = count
                self._save()

    def forget(self, node_id: str) -> None:
        """Remove a resource behind the executor's back."""
        with self._guard:
            self._world.pop(node_id, None)
            self._save()

    def reset(self) -> None:
        """Clear the world, call log and injected failures."""
        with self._guard:
            self._world.clear()
            self._failures.clear()
            self._timeouts.clear()
            self._call_log.clear()
            self._save()

    # ── Persistence ──────────────────────────────────────────────

    def _load(self) -> None:
        if self._world_file is None or not self._world_file.is_file():
            return
        try:
            self._world = json.loads(self._world_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Mock world %s unreadable, starting empty: %s", self._world_file, e)
            self._world = {}

    def _save(self) -> None:
        if self._world_file is None:
            return
        self._world_file.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._world_file.with_suffix(".tmp")
        tmp.write_text(json.dumps(self._world, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self._world_file)

    # ── Simulation ───────────────────────────────────────────────

    def _begin(self, operation: str, context: ActionContext) -> Receipt | None:
        """Log the call, apply latency and injected faults."""
        with self._guard:
            self._call_log.append((operation, context.node_id))
            error = self._failures.pop((context.node_id, operation), None)
            timeout = (context.node_id, operation) in self._timeouts
            self._timeouts.discard((context.node_id, operation))

        if self._latency:
            time.sleep(self._latency)

        if timeout:
            try:
                wait_until(
                    lambda: False,
                    policy=PollPolicy(timeout=0.0),
                    description=f"{context.node_id} to converge",
                )
            except OperationTimeoutError as e:
                return Receipt.failure(
                    adapter=self._name,
                    node_id=context.node_id,
                    error=str(e),
                    operation=operation,
                    metadata={"mock": True, "timeout": True},
                )
        if error is not None:
            return Receipt.failure(
                adapter=self._name,
                node_id=context.node_id,
                error=error,
                operation=operation,
                metadata={"mock": True},
            )
        return None

    def _attributes(self, context: ActionContext, resource_id: str) -> dict[str, Any]:
        name = context.external_name or context.name
        attrs = dict(context.inputs)
        attrs.update({
            "id": resource_id,
            "name": name,
            "arn": f"arn:mock:{context.type}:{MOCK_REGION}:{MOCK_ACCOUNT_ID}:{name}",
            "address": f"{name}.mock.local",
        })
        if context.artifact_hash:
            attrs["artifact_hash"] = context.artifact_hash
        return attrs

    # ── Operations ───────────────────────────────────────────────

    def create(self, context: ActionContext) -> Receipt:
        failed = self._begin("create", context)
        if failed is not None:
            return failed

        resource_id = f"mock-{_short_hash(context.type + ':' + (context.external_name or context.node_id))}"
        attributes = self._attributes(context, resource_id)
        with self._guard:
            self._world[context.node_id] = {
                "type": context.type,
                "external_name": context.external_name,
                "attributes": attributes,
                "contents": 0,
            }
            self._save()
        return Receipt.success(
            adapter=self._name,
            node_id=context.node_id,
            attributes=attributes,
            operation="create",
            output=f"[mock] created {context.node_id}",
            metadata={"mock": True},
        )

    def update(self, context: ActionContext) -> Receipt:
        failed = self._begin("update", context)
        if failed is not None:
            return failed

        with self._guard:
            current = self._world.get(context.node_id)
            resource_id = (
                current["attributes"]["id"] if current
                else context.prior.get("id") or f"mock-{_short_hash(context.node_id)}"
            )
            attributes = self._attributes(context, resource_id)
            self._world[context.node_id] = {
                "type": context.type,
                "external_name": context.external_name,
                "attributes": attributes,
                "contents": current.get("contents", 0) if current else 0,
            }
            self._save()
        return Receipt.success(
            adapter=self._name,
            node_id=context.node_id,
            attributes=attributes,
            operation="update",
            output=f"[mock] updated {context.node_id}",
            metadata={"mock": True},
        )

    def delete(self, context: ActionContext) -> Receipt:
        failed = self._begin("delete", context)
        if failed is not None:
            return failed

        with self._guard:
            current = self._world.get(context.node_id)
            if current and current.get("contents"):
                return Receipt.failure(
                    adapter=self._name,
                    node_id=context.node_id,
                    error=f"{context.external_name or context.node_id} is not empty",
                    operation="delete",
                    metadata={"mock": True},
                )
            self._world.pop(context.node_id, None)
            self._save()
        return Receipt.success(
            adapter=self._name,
            node_id=context.node_id,
            operation="delete",
            output=f"[mock] deleted {context.node_id}",
            metadata={"mock": True, "existed": current is not None},
        )

    def empty(self, context: ActionContext) -> Receipt:
        failed = self._begin("empty", context)
        if failed is not None:
            return failed

        with self._guard:
            current = self._world.get(context.node_id)
            removed = current.get("contents", 0) if current else 0
            if current:
                current["contents"] = 0
                self._save()
        return Receipt.success(
            adapter=self._name,
            node_id=context.node_id,
            operation="empty",
            output=f"[mock] removed {removed} object(s) from {context.node_id}",
            metadata={"mock": True, "removed": removed},
        )

    def read(self, context: ActionContext) -> Receipt:
        failed = self._begin("read", context)
        if failed is not None:
            return failed

        attributes = {
            "id": f"data-{_short_hash(context.node_id)}",
            "account_id": MOCK_ACCOUNT_ID,
            "region": MOCK_REGION,
            **context.inputs,
        }
        return Receipt.success(
            adapter=self._name,
            node_id=context.node_id,
            attributes=attributes,
            operation="read",
            metadata={"mock": True},
        )

    def exists(self, context: ActionContext) -> bool:
        with self._guard:
            self._call_log.append(("exists", context.node_id))
            return context.node_id in self._world
