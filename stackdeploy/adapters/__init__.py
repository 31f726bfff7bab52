"""Adapters — provider bindings for resource types.

Public re-exports for convenient access.
"""

from stackdeploy.adapters.base import ActionContext, ProviderAdapter
from stackdeploy.adapters.mock import MockProvider
from stackdeploy.adapters.registry import ProviderRegistry, registry_for_project

__all__ = [
    "ActionContext",
    "MockProvider",
    "ProviderAdapter",
    "ProviderRegistry",
    "registry_for_project",
]
