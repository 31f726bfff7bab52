"""
Shell command provider — drive a resource type with per-operation commands.

Configured per resource type in stackdeploy.yml::

    providers:
      edge_distribution:
        adapter: shell
        timeout: 900
        poll_interval: 15
        commands:
          create: ./scripts/cdn.sh create
          update: ./scripts/cdn.sh update
          delete: ./scripts/cdn.sh delete
          exists: ./scripts/cdn.sh exists
          ready:  ./scripts/cdn.sh deployed

The action context is written to the command's stdin as JSON. A JSON
object printed on stdout becomes the node's attributes. ``exists`` and
``ready`` answer with their exit code. When ``ready`` is configured it
is polled after create/update until it succeeds or the timeout passes.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Any

from stackdeploy.adapters.base import ActionContext, ProviderAdapter
from stackdeploy.core.errors import OperationTimeoutError
from stackdeploy.core.models.action import Receipt
from stackdeploy.core.reliability.poll import PollPolicy, wait_until

logger = logging.getLogger(__name__)


class ShellCommandProvider(ProviderAdapter):
    """Run configured shell commands for each node operation.

    Args:
        commands: Operation name → shell command.
        env: Extra environment variables for every command.
        cwd: Working directory (the project root).
        adapter_name: Registry name (one instance per resource type).
    """

    def __init__(
        self,
        commands: dict[str, str],
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        adapter_name: str = "shell",
    ):
        self._commands = dict(commands)
        self._env = dict(env or {})
        self._cwd = Path(cwd) if cwd else None
        self._name = adapter_name

    @property
    def name(self) -> str:
        return self._name

    def is_available(self) -> bool:
        return shutil.which("sh") is not None

    def validate(self, context: ActionContext) -> tuple[bool, str]:
        if self._cwd and not self._cwd.is_dir():
            return False, f"Working directory does not exist: {self._cwd}"
        return True, ""

    # ── Process plumbing ─────────────────────────────────────────

    def _environment(self, operation: str, context: ActionContext) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self._env)
        env.update(context.env)
        env.update({
            "STACKDEPLOY_OPERATION": operation,
            "STACKDEPLOY_NODE": context.node_id,
            "STACKDEPLOY_TYPE": context.type,
            "STACKDEPLOY_EXTERNAL_NAME": context.external_name,
            "STACKDEPLOY_PROJECT": context.project,
            "STACKDEPLOY_ENVIRONMENT": context.environment,
        })
        if context.artifact_path:
            env["STACKDEPLOY_ARTIFACT"] = context.artifact_path
        return env

    def _run(self, operation: str, context: ActionContext) -> subprocess.CompletedProcess:
        command = self._commands[operation]
        payload = context.model_dump(mode="json", exclude={"env"})
        logger.debug("Executing %s for %s: %s", operation, context.node_id, command)
        return subprocess.run(
            command,
            shell=True,
            cwd=self._cwd,
            input=json.dumps(payload),
            capture_output=True,
            text=True,
            timeout=context.timeout,
            env=self._environment(operation, context),
        )

    @staticmethod
    def _parse_attributes(stdout: str) -> dict[str, Any]:
        text = stdout.strip()
        if not text:
            return {}
        # Last line wins so scripts can log above their result
        last = text.splitlines()[-1]
        try:
            data = json.loads(last)
        except json.JSONDecodeError:
            return {}
        return data if isinstance(data, dict) else {}

    def _wait_ready(self, context: ActionContext) -> None:
        if "ready" not in self._commands:
            return

        def ready() -> bool:
            try:
                return self._run("ready", context).returncode == 0
            except subprocess.TimeoutExpired:
                return False

        wait_until(
            ready,
            policy=PollPolicy(
                timeout=context.timeout,
                interval=context.poll_interval,
                max_interval=max(context.poll_interval * 4, context.poll_interval),
            ),
            description=f"{context.node_id} to become ready",
        )

    def _act(self, operation: str, context: ActionContext, wait: bool = False) -> Receipt:
        if operation not in self._commands:
            if operation == "empty":
                return super().empty(context)
            return Receipt.failure(
                adapter=self.name,
                node_id=context.node_id,
                error=f"No '{operation}' command configured for type '{context.type}'",
                operation=operation,
            )

        start = time.monotonic()
        command = self._commands[operation]
        try:
            result = self._run(operation, context)
        except subprocess.TimeoutExpired:
            return Receipt.failure(
                adapter=self.name,
                node_id=context.node_id,
                error=f"Command timed out after {context.timeout:g}s",
                operation=operation,
                metadata={"command": command, "timeout": context.timeout},
            )
        except OSError as e:
            return Receipt.failure(
                adapter=self.name,
                node_id=context.node_id,
                error=f"Command execution error: {e}",
                operation=operation,
                metadata={"command": command},
            )

        stdout = result.stdout.strip()
        stderr = result.stderr.strip()
        if result.returncode != 0:
            return Receipt.failure(
                adapter=self.name,
                node_id=context.node_id,
                error=stderr or f"Command exited with code {result.returncode}",
                operation=operation,
                duration_ms=int((time.monotonic() - start) * 1000),
                metadata={"command": command, "return_code": result.returncode, "stdout": stdout},
            )

        if wait:
            try:
                self._wait_ready(context)
            except OperationTimeoutError as e:
                return Receipt.failure(
                    adapter=self.name,
                    node_id=context.node_id,
                    error=str(e),
                    operation=operation,
                    metadata={"command": command, "timeout": context.timeout},
                )

        return Receipt.success(
            adapter=self.name,
            node_id=context.node_id,
            attributes=self._parse_attributes(stdout),
            operation=operation,
            output=stdout,
            duration_ms=int((time.monotonic() - start) * 1000),
            metadata={"command": command, "return_code": 0, "stderr": stderr},
        )

    # ── Operations ───────────────────────────────────────────────

    def create(self, context: ActionContext) -> Receipt:
        return self._act("create", context, wait=True)

    def update(self, context: ActionContext) -> Receipt:
        return self._act("update", context, wait=True)

    def delete(self, context: ActionContext) -> Receipt:
        return self._act("delete", context)

    def read(self, context: ActionContext) -> Receipt:
        return self._act("read", context)

    def empty(self, context: ActionContext) -> Receipt:
        return self._act("empty", context)

    def exists(self, context: ActionContext) -> bool:
        if "exists" not in self._commands:
            raise NotImplementedError(f"No 'exists' command configured for type '{context.type}'")
        return self._run("exists", context).returncode == 0
