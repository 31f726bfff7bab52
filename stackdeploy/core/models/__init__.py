"""
Domain models — Pydantic types for stackdeploy.

All models are re-exported here for convenient access:

    from stackdeploy.core.models import ProjectConfig, ResourceNode, StateRecord
"""

from stackdeploy.core.models.action import NodeAction, Receipt
from stackdeploy.core.models.project import (
    BackendConfig,
    CredentialConfig,
    EnvironmentSpec,
    ProjectConfig,
    ProviderConfig,
)
from stackdeploy.core.models.resource import (
    DataSpec,
    OutputSpec,
    Reference,
    ResourceNode,
    ResourceSpec,
    VariableSpec,
)
from stackdeploy.core.models.run import (
    DeploymentRun,
    RunMode,
    ShortLivedCredential,
    Trigger,
)
from stackdeploy.core.models.state import LockRecord, ResourceInstance, StateRecord

__all__ = [
    # project.py
    "BackendConfig",
    "CredentialConfig",
    # resource.py
    "DataSpec",
    # run.py
    "DeploymentRun",
    "EnvironmentSpec",
    # state.py
    "LockRecord",
    # action.py
    "NodeAction",
    "OutputSpec",
    "ProjectConfig",
    "ProviderConfig",
    "Receipt",
    "Reference",
    "ResourceInstance",
    "ResourceNode",
    "ResourceSpec",
    "RunMode",
    "ShortLivedCredential",
    "StateRecord",
    "Trigger",
    "VariableSpec",
]
