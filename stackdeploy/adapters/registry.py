"""
Provider registry — central dispatch for all node actions.

The registry is the single point of adapter management. It handles
registration, resource-type bindings, mock mode, and dispatch. The
executor never talks to adapters directly — always through the registry.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from stackdeploy.adapters.base import ActionContext, ProviderAdapter
from stackdeploy.core.errors import OperationTimeoutError
from stackdeploy.core.models.action import Receipt
from stackdeploy.core.models.project import ProjectConfig

logger = logging.getLogger(__name__)

OPERATIONS = ("create", "update", "delete", "read", "empty")


class ProviderRegistry:
    """Central registry and dispatcher for provider adapters.

    Features:
        - Register adapters by name, bind resource types to them
        - Mock mode: route every resource type to one mock adapter
        - Dispatch node actions, converting stray exceptions to receipts
    """

    def __init__(self, mock_mode: bool = False, mock_adapter: ProviderAdapter | None = None):
        self._adapters: dict[str, ProviderAdapter] = {}
        self._bindings: dict[str, str] = {}
        self._settings: dict[str, dict[str, Any]] = {}
        self._mock_mode = mock_mode
        self._mock_adapter = mock_adapter

    @property
    def mock_mode(self) -> bool:
        return self._mock_mode

    def set_mock_mode(self, enabled: bool, mock_adapter: ProviderAdapter | None = None) -> None:
        """Enable or disable mock mode."""
        self._mock_mode = enabled
        if mock_adapter is not None:
            self._mock_adapter = mock_adapter

    def register(self, adapter: ProviderAdapter) -> None:
        """Register an adapter under its name."""
        name = adapter.name
        if name in self._adapters:
            logger.warning("Overwriting existing adapter: %s", name)
        self._adapters[name] = adapter
        logger.debug("Registered adapter: %s", name)

    def bind(self, resource_type: str, adapter_name: str, **settings: Any) -> None:
        """Route a resource type to a registered adapter.

        Args:
            resource_type: Resource type as declared (e.g. 'bucket').
            adapter_name: Name of a registered adapter.
            settings: Per-type ActionContext defaults (timeout, poll_interval).
        """
        self._bindings[resource_type] = adapter_name
        self._settings[resource_type] = settings

    def get(self, name: str) -> ProviderAdapter | None:
        """Look up an adapter by name."""
        return self._adapters.get(name)

    def list_adapters(self) -> list[str]:
        return list(self._adapters.keys())

    def settings_for(self, resource_type: str) -> dict[str, Any]:
        return dict(self._settings.get(resource_type, {}))

    def resolve(self, resource_type: str) -> ProviderAdapter | None:
        """Adapter responsible for a resource type."""
        if self._mock_mode and self._mock_adapter is not None:
            return self._mock_adapter
        name = self._bindings.get(resource_type)
        if name is not None:
            return self._adapters.get(name)
        return self._adapters.get(resource_type)

    def adapter_status(self) -> dict[str, dict[str, Any]]:
        """Availability of all registered adapters."""
        status = {}
        for name, adapter in self._adapters.items():
            try:
                available = adapter.is_available()
            except Exception:
                available = False
            status[name] = {
                "name": name,
                "available": available,
                "type": adapter.__class__.__name__,
                "types": sorted(t for t, a in self._bindings.items() if a == name),
            }
        return status

    # ── Dispatch ─────────────────────────────────────────────────

    def dispatch(self, operation: str, context: ActionContext) -> Receipt:
        """Run one node action through the responsible adapter.

        Returns:
            Receipt with the outcome (never raises).
        """
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")

        start_time = time.monotonic()
        adapter = self.resolve(context.type)
        if adapter is None:
            return Receipt.failure(
                adapter="none",
                node_id=context.node_id,
                error=f"No adapter registered for resource type '{context.type}'",
                operation=operation,
            )

        try:
            is_valid, error_msg = adapter.validate(context)
        except Exception as e:
            is_valid, error_msg = False, str(e)
        if not is_valid:
            return Receipt.failure(
                adapter=adapter.name,
                node_id=context.node_id,
                error=f"Validation failed: {error_msg}",
                operation=operation,
            )

        logger.debug("%s %s via %s", operation, context.node_id, adapter.name)
        try:
            receipt = getattr(adapter, operation)(context)
        except OperationTimeoutError as e:
            receipt = Receipt.failure(
                adapter=adapter.name,
                node_id=context.node_id,
                error=str(e),
                metadata={"timeout": True, "timeout_seconds": context.timeout},
            )
        except Exception as e:
            # Adapters should never raise, but defense in depth
            logger.error("Adapter %s raised during %s: %s", adapter.name, operation, e)
            receipt = Receipt.failure(
                adapter=adapter.name,
                node_id=context.node_id,
                error=f"Unexpected error: {e}",
            )

        receipt.operation = receipt.operation or operation
        receipt.duration_ms = int((time.monotonic() - start_time) * 1000)
        return receipt

    def create(self, context: ActionContext) -> Receipt:
        return self.dispatch("create", context)

    def update(self, context: ActionContext) -> Receipt:
        return self.dispatch("update", context)

    def delete(self, context: ActionContext) -> Receipt:
        return self.dispatch("delete", context)

    def read(self, context: ActionContext) -> Receipt:
        return self.dispatch("read", context)

    def empty(self, context: ActionContext) -> Receipt:
        return self.dispatch("empty", context)

    def exists(self, context: ActionContext) -> Receipt:
        """Existence check. ``metadata['exists']`` carries the answer."""
        adapter = self.resolve(context.type)
        if adapter is None:
            return Receipt.failure(
                adapter="none",
                node_id=context.node_id,
                error=f"No adapter registered for resource type '{context.type}'",
                operation="exists",
            )
        try:
            found = bool(adapter.exists(context))
        except Exception as e:
            return Receipt.failure(
                adapter=adapter.name,
                node_id=context.node_id,
                error=f"Existence check failed: {e}",
                operation="exists",
            )
        return Receipt.success(
            adapter=adapter.name,
            node_id=context.node_id,
            operation="exists",
            metadata={"exists": found},
        )


def registry_for_project(
    project: ProjectConfig,
    project_root: Path,
    mock: bool = False,
    world_file: Path | None = None,
) -> ProviderRegistry:
    """Build a registry from the project's ``providers:`` section.

    Every type without an explicit binding goes to the mock provider,
    as does every type when ``mock`` is set.
    """
    from stackdeploy.adapters.mock import MockProvider
    from stackdeploy.adapters.shell.command import ShellCommandProvider

    mock_provider = MockProvider(world_file=world_file)
    registry = ProviderRegistry(mock_mode=mock, mock_adapter=mock_provider)
    registry.register(mock_provider)

    for resource_type, cfg in project.providers.items():
        if cfg.adapter == "shell":
            adapter_name = f"shell:{resource_type}"
            registry.register(ShellCommandProvider(
                commands=cfg.commands,
                env=cfg.env,
                cwd=project_root,
                adapter_name=adapter_name,
            ))
        else:
            adapter_name = cfg.adapter
        registry.bind(
            resource_type,
            adapter_name,
            timeout=cfg.timeout,
            poll_interval=cfg.poll_interval,
        )

    declared_types = {r.type for r in project.resources} | {d.type for d in project.data}
    for resource_type in sorted(declared_types - set(project.providers)):
        registry.bind(resource_type, mock_provider.name)

    return registry
