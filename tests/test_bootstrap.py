"""
Tests for the bootstrap reconciler.
"""

from pathlib import Path
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from stackdeploy.core.errors import BootstrapDegradedWarning, LockTableUnavailableError
from stackdeploy.core.persistence.local import LocalStateBackend
from stackdeploy.core.persistence.s3 import S3StateBackend
from stackdeploy.core.services.bootstrap import ensure_backend


class _NoLockTable(LocalStateBackend):
    """A local backend whose platform refuses to create the lock table."""

    def create_lock_table(self) -> bool:
        raise LockTableUnavailableError("permission denied")


class TestEnsureBackend:
    def test_first_run_creates_and_hardens(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "state")

        result = ensure_backend(store)

        assert result.created_container
        assert result.created_lock_table
        assert result.hardened
        assert not result.degraded
        assert result.changed
        assert store.container_settings()["versioning"] == "enabled"
        assert store.locking_mode == "table"

    def test_second_run_changes_nothing(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "state")
        ensure_backend(store)

        result = ensure_backend(store)

        assert not result.changed
        assert not result.hardened
        assert result.lock_table_ref == store.lock_table_ref

    def test_existing_container_not_rehardened(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "state")
        store.create_container()

        result = ensure_backend(store)

        assert not result.created_container
        assert not result.hardened
        assert "versioning" not in store.container_settings()

    def test_concurrent_create_counts_as_success(self, tmp_path: Path):
        store = LocalStateBackend(tmp_path / "state")
        first = LocalStateBackend(tmp_path / "state")
        store.container_exists = lambda: False  # type: ignore[method-assign]
        first.create_container()

        result = ensure_backend(store)

        assert not result.created_container
        assert not result.hardened

    def test_lock_table_refused_degrades(self, tmp_path: Path):
        store = _NoLockTable(tmp_path / "state")

        with pytest.warns(BootstrapDegradedWarning, match="single writer"):
            result = ensure_backend(store)

        assert result.degraded
        assert result.lock_table_ref is None
        assert result.created_container
        assert store.locking_mode == "degraded"
        assert len(result.warnings) == 1

    def test_to_dict(self, tmp_path: Path):
        data = ensure_backend(LocalStateBackend(tmp_path / "state")).to_dict()
        assert data["backend"] == "local"
        assert data["created_container"] is True
        assert data["hardening"]["public_access"] == "blocked"


class TestEnsureS3Backend:
    def _store(self, s3, ddb) -> S3StateBackend:
        return S3StateBackend("state-bucket", "locks", "us-east-1", s3_client=s3, dynamodb_client=ddb)

    def test_denied_lock_table_degrades(self):
        s3, ddb = MagicMock(), MagicMock()
        s3.head_bucket.side_effect = ClientError({"Error": {"Code": "404"}}, "HeadBucket")
        ddb.describe_table.side_effect = ClientError(
            {"Error": {"Code": "ResourceNotFoundException"}}, "DescribeTable",
        )
        ddb.create_table.side_effect = ClientError(
            {"Error": {"Code": "AccessDeniedException"}}, "CreateTable",
        )
        store = self._store(s3, ddb)

        with pytest.warns(BootstrapDegradedWarning):
            result = ensure_backend(store)

        assert result.created_container
        assert result.hardened
        assert result.degraded
        s3.put_bucket_versioning.assert_called_once()

    def test_everything_present(self):
        s3, ddb = MagicMock(), MagicMock()
        ddb.describe_table.return_value = {"Table": {"TableStatus": "ACTIVE"}}
        store = self._store(s3, ddb)

        result = ensure_backend(store)

        assert not result.changed
        s3.create_bucket.assert_not_called()
        ddb.create_table.assert_not_called()
        assert store.locking_mode == "table"
