"""
Tests for persistence — local state backend, audit ledger, backend factory.
"""

import json
import logging
from pathlib import Path

import pytest

from stackdeploy.core.errors import BackendError, ConfigError, LockConflictError
from stackdeploy.core.models.project import BackendConfig, ProjectConfig
from stackdeploy.core.models.run import ShortLivedCredential
from stackdeploy.core.models.state import LockRecord, ResourceInstance, StateRecord
from stackdeploy.core.persistence.audit import AuditEntry, AuditWriter
from stackdeploy.core.persistence.backend import decode_state, encode_state
from stackdeploy.core.persistence.factory import create_backend
from stackdeploy.core.persistence.local import LocalStateBackend
from stackdeploy.core.persistence.s3 import S3StateBackend

KEY = "chat-app/dev/state.json"


def _record() -> StateRecord:
    record = StateRecord(project="chat-app", environment="dev")
    record.set_instance(ResourceInstance(
        type="bucket", name="assets", external_name="chat-app-dev-assets",
        attributes={"id": "mock-1", "arn": "arn:mock:bucket"},
        stateful=True,
    ))
    return record


def _lock(holder: str = "op-1") -> LockRecord:
    return LockRecord(
        lock_id="chat-app/dev", project="chat-app", environment="dev",
        holder_id=holder, operation="apply", who="tester@host",
    )


# ── Encoding ────────────────────────────────────────────────────────


class TestEncoding:
    def test_roundtrip(self):
        record = _record()
        loaded = decode_state(encode_state(record), "test")
        assert loaded.resource_instances["bucket.assets"].attributes["id"] == "mock-1"
        assert loaded.lineage == record.lineage

    def test_encoding_is_stable_json(self):
        raw = encode_state(_record())
        assert raw.endswith("\n")
        data = json.loads(raw)
        assert list(data) == sorted(data)
        assert data["schema_version"] == 1

    def test_corrupt_is_an_error(self):
        with pytest.raises(BackendError, match="Corrupt state document"):
            decode_state("not json {{{", "s3://bucket/key")

    def test_wrong_shape_is_an_error(self):
        with pytest.raises(BackendError):
            decode_state('{"serial": "many"}', "test")


# ── Local backend ───────────────────────────────────────────────────


class TestLocalContainer:
    def test_create_is_idempotent(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "state")
        assert not store.container_exists()
        assert store.create_container() is True
        assert store.create_container() is False
        assert store.container_exists()
        assert "created_at" in store.container_settings()

    def test_harden(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "state")
        store.create_container()
        settings = store.harden_container()

        assert settings["versioning"] == "enabled"
        assert store.container_settings()["public_access"] == "blocked"
        assert (store.root.stat().st_mode & 0o777) == 0o700

    def test_refs(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "state")
        assert store.name == "local"
        assert store.container_ref == str(tmp_path / "state")
        assert store.lock_table_ref.endswith(".locks")


class TestLocalState:
    def test_read_missing(self, backend: LocalStateBackend):
        assert backend.read_state(KEY) is None

    def test_write_and_read(self, backend: LocalStateBackend):
        record = _record()
        serial = backend.write_state(KEY, record)

        assert serial == 1
        loaded = backend.read_state(KEY)
        assert loaded.serial == 1
        assert loaded.resource_instances["bucket.assets"].stateful

    def test_serial_increments(self, backend: LocalStateBackend):
        record = _record()
        backend.write_state(KEY, record)
        backend.write_state(KEY, record)
        assert backend.read_state(KEY).serial == 2

    def test_versions_kept_when_hardened(self, backend: LocalStateBackend):
        record = _record()
        backend.write_state(KEY, record)
        backend.write_state(KEY, record)
        assert backend.list_versions(KEY) == ["000001", "000002"]

    def test_no_versions_without_hardening(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "plain")
        store.create_container()
        store.write_state(KEY, _record())
        assert store.list_versions(KEY) == []

    def test_no_temp_files_left(self, backend: LocalStateBackend):
        backend.write_state(KEY, _record())
        assert list((backend.root / "chat-app" / "dev").glob(".state_*.tmp")) == []

    def test_corrupt_document(self, backend: LocalStateBackend):
        path = backend.root / KEY
        path.parent.mkdir(parents=True)
        path.write_text("{ torn")
        with pytest.raises(BackendError):
            backend.read_state(KEY)

    def test_delete(self, backend: LocalStateBackend):
        backend.write_state(KEY, _record())
        backend.delete_state(KEY)
        assert backend.read_state(KEY) is None
        backend.delete_state(KEY)


class TestLocalWorkspaces:
    def test_register_and_list(self, backend: LocalStateBackend):
        assert backend.register_workspace("chat-app", "test") is True
        assert backend.register_workspace("chat-app", "dev") is True
        assert backend.register_workspace("chat-app", "dev") is False
        assert backend.list_workspaces("chat-app") == ["dev", "test"]

    def test_unregistered_directories_ignored(self, backend: LocalStateBackend):
        (backend.root / "chat-app" / "stray").mkdir(parents=True)
        assert backend.list_workspaces("chat-app") == []
        assert backend.list_workspaces("other") == []


class TestLocalLocks:
    def test_acquire_and_release(self, backend: LocalStateBackend):
        lock = backend.acquire_lock(_lock())
        assert lock.mode == "table"
        assert (backend.root / ".locks" / "chat-app--dev.lock").is_file()

        backend.release_lock("chat-app/dev", "op-1")
        assert backend.read_lock("chat-app/dev") is None

    def test_conflict_reports_holder(self, backend: LocalStateBackend):
        backend.acquire_lock(_lock("op-1"))
        with pytest.raises(LockConflictError) as exc:
            backend.acquire_lock(_lock("op-2"))
        assert exc.value.holder.holder_id == "op-1"
        assert "tester@host" in str(exc.value)

    def test_release_by_other_holder_keeps_lock(self, backend: LocalStateBackend):
        backend.acquire_lock(_lock("op-1"))
        backend.release_lock("chat-app/dev", "op-2")
        assert backend.read_lock("chat-app/dev").holder_id == "op-1"

    def test_force_unlock(self, backend: LocalStateBackend):
        backend.acquire_lock(_lock("op-1"))
        removed = backend.force_unlock("chat-app/dev")
        assert removed.holder_id == "op-1"
        assert backend.read_lock("chat-app/dev") is None
        assert backend.force_unlock("chat-app/dev") is None

    def test_locks_shared_across_instances(self, backend: LocalStateBackend):
        other = LocalStateBackend(backend.root)
        backend.acquire_lock(_lock("op-1"))
        with pytest.raises(LockConflictError):
            other.acquire_lock(_lock("op-2"))

    def test_degraded_without_lock_table(self, tmp_path: Path, caplog):
        store = LocalStateBackend(tmp_path / "nolocks")
        store.create_container()

        with caplog.at_level(logging.WARNING):
            assert store.locking_mode == "degraded"
        assert "single writer" in caplog.text

    def test_degraded_locks_shared_across_instances(self, tmp_path: Path):
        root = tmp_path / "nolocks"
        first = LocalStateBackend(root)
        second = LocalStateBackend(root)
        first.set_locking_mode("degraded")
        second.set_locking_mode("degraded")

        first.acquire_lock(_lock("op-1"))

        with pytest.raises(LockConflictError) as exc:
            second.acquire_lock(_lock("op-2"))
        assert exc.value.holder.holder_id == "op-1"
        assert (root / "chat-app" / "dev" / ".lock").is_file()
        assert not (root / ".locks").exists()
        assert second.read_lock("chat-app/dev").mode == "degraded"

        first.release_lock("chat-app/dev", "op-1")
        assert second.read_lock("chat-app/dev") is None
        second.acquire_lock(_lock("op-2"))

    def test_degraded_release_by_other_holder_keeps_lock(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "nolocks")
        store.set_locking_mode("degraded")
        store.acquire_lock(_lock("op-1"))

        store.release_lock("chat-app/dev", "op-2")
        assert store.read_lock("chat-app/dev").holder_id == "op-1"

        assert store.force_unlock("chat-app/dev").holder_id == "op-1"
        assert store.read_lock("chat-app/dev") is None

    def test_degraded_lock_is_not_a_workspace(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "nolocks")
        store.set_locking_mode("degraded")
        store.acquire_lock(_lock("op-1"))
        assert store.list_workspaces("chat-app") == []


# ── Audit ledger ────────────────────────────────────────────────────


class TestAuditWriter:
    def test_write_and_read(self, tmp_path: Path):
        writer = AuditWriter(project_root=tmp_path)
        writer.write(AuditEntry(operation_id="op-1", operation_type="deploy", environment="dev"))
        writer.write(AuditEntry(operation_id="op-2", operation_type="destroy", environment="test"))

        assert writer.path == tmp_path / ".stackdeploy" / "audit.ndjson"
        entries = writer.read_all()
        assert [e.operation_id for e in entries] == ["op-1", "op-2"]

    def test_one_json_line_per_entry(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        writer = AuditWriter(path=path)
        writer.write(AuditEntry(operation_id="op-1", errors=["boom"]))

        lines = path.read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["errors"] == ["boom"]

    def test_read_recent_filters_environment(self, tmp_path: Path):
        writer = AuditWriter(path=tmp_path / "audit.ndjson")
        for i in range(5):
            writer.write(AuditEntry(operation_id=f"op-{i}", environment="dev" if i % 2 else "prod"))

        recent = writer.read_recent(n=1, environment="dev")
        assert [e.operation_id for e in recent] == ["op-3"]
        assert len(writer.read_recent(n=10)) == 5

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "audit.ndjson"
        writer = AuditWriter(path=path)
        writer.write(AuditEntry(operation_id="op-1"))
        with path.open("a") as f:
            f.write("not json\n\n")
        writer.write(AuditEntry(operation_id="op-2"))

        assert [e.operation_id for e in writer.read_all()] == ["op-1", "op-2"]

    def test_missing_ledger(self, tmp_path: Path):
        assert AuditWriter(path=tmp_path / "none.ndjson").read_all() == []


# ── Factory ─────────────────────────────────────────────────────────


class TestCreateBackend:
    def test_local_relative_to_project(self, tmp_path: Path):
        project = ProjectConfig(name="chat-app", backend=BackendConfig(path="state"))
        store = create_backend(project, tmp_path)
        assert isinstance(store, LocalStateBackend)
        assert store.root == tmp_path / "state"

    def test_s3_needs_account_for_derived_bucket(self, tmp_path: Path):
        project = ProjectConfig(name="chat-app", backend=BackendConfig(type="s3"))
        with pytest.raises(ConfigError, match="backend.bucket"):
            create_backend(project, tmp_path)

    def test_s3_derives_names(self, tmp_path: Path):
        project = ProjectConfig(
            name="Chat-App", region="eu-west-1", backend=BackendConfig(type="s3"),
        )
        credential = ShortLivedCredential(
            access_key_id="ASIAEXAMPLE",
            secret_access_key="secret",
            session_token="token",
            account_id="123456789012",
        )
        store = create_backend(project, tmp_path, credential)
        assert isinstance(store, S3StateBackend)
        assert store.container_ref == "s3://chat-app-stackdeploy-state-123456789012"
        assert store.lock_table_ref == "dynamodb:Chat-App-stackdeploy-locks"

    def test_s3_explicit_names(self, tmp_path: Path):
        project = ProjectConfig(
            name="chat-app",
            backend=BackendConfig(type="s3", bucket="my-state", lock_table="my-locks"),
        )
        store = create_backend(project, tmp_path)
        assert store.container_ref == "s3://my-state"
        assert store.lock_table_ref == "dynamodb:my-locks"
