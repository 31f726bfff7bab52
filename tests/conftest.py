"""
Shared test fixtures and configuration.
"""

import logging
import textwrap
from pathlib import Path

import pytest

from stackdeploy.adapters.mock import MockProvider
from stackdeploy.adapters.registry import ProviderRegistry
from stackdeploy.core.engine.executor import RunContext
from stackdeploy.core.models.resource import ResourceSpec
from stackdeploy.core.persistence.local import LocalStateBackend
from stackdeploy.core.services.bootstrap import ensure_backend

SAMPLE_PROJECT = textwrap.dedent("""\
    name: chat-app
    description: "Chat application stack"
    region: us-east-1

    environments:
      - name: dev
        default: true
      - name: test
      - name: prod
        variables:
          use_cdn: true
          memory: 512

    backend:
      type: local
      path: .stackdeploy/backend

    credentials:
      source: mock

    variables:
      use_cdn:
        type: bool
        default: false
      memory:
        type: number
        default: 128

    resources:
      - type: bucket
        name: assets
        stateful: true
      - type: function
        name: api
        artifact: build/api.zip
        depends_on: [bucket.assets]
        attributes:
          memory: {var: memory}
          bucket: {ref: bucket.assets.name}
      - type: edge
        name: cdn
        when: use_cdn
        attributes:
          origin: {ref: function.api.address}

    data:
      - type: identity
        name: current

    outputs:
      api_url:
        value: {ref: function.api.address}
      bucket_arn:
        value: {ref: bucket.assets.arn}
        sensitive: true
      cdn_domain:
        value: {ref: edge.cdn.address}
        when: use_cdn
""")


@pytest.fixture
def project_file(tmp_path: Path) -> Path:
    """A sample stackdeploy.yml with its function artifact built."""
    config = tmp_path / "stackdeploy.yml"
    config.write_text(SAMPLE_PROJECT)
    artifact = tmp_path / "build" / "api.zip"
    artifact.parent.mkdir(parents=True)
    artifact.write_bytes(b"PK-api-v1")
    return config


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def registry(mock_provider: MockProvider) -> ProviderRegistry:
    """Registry routing every type to the mock provider."""
    reg = ProviderRegistry(mock_mode=True, mock_adapter=mock_provider)
    reg.register(mock_provider)
    return reg


@pytest.fixture
def backend(tmp_path: Path) -> LocalStateBackend:
    """A bootstrapped local state backend."""
    store = LocalStateBackend(tmp_path / "state")
    ensure_backend(store)
    return store


@pytest.fixture
def run_context(backend: LocalStateBackend, registry: ProviderRegistry, tmp_path: Path) -> RunContext:
    return RunContext(
        project="chat-app",
        environment="dev",
        state_key="chat-app/dev/state.json",
        lock_id="chat-app/dev",
        backend=backend,
        registry=registry,
        who="tester@host",
        artifacts_root=tmp_path,
    )


@pytest.fixture
def three_tier() -> list[ResourceSpec]:
    """Bucket ← Function (depends_on) ← Edge (ref Function.address)."""
    return [
        ResourceSpec(type="bucket", name="assets", stateful=True),
        ResourceSpec(type="function", name="api", depends_on=["bucket.assets"]),
        ResourceSpec(
            type="edge",
            name="cdn",
            attributes={"origin": {"ref": "function.api.address"}},
        ),
    ]


@pytest.fixture(autouse=True)
def _restore_logging():
    """CLI invocations reconfigure the root logger; undo it after each test."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
