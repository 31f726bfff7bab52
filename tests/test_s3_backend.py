"""
Tests for the S3 + DynamoDB state backend, against mocked boto3 clients.
"""

import io
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from stackdeploy.core.errors import BackendError, LockConflictError, LockTableUnavailableError
from stackdeploy.core.models.state import LockRecord, StateRecord
from stackdeploy.core.persistence.backend import encode_state
from stackdeploy.core.persistence.s3 import (
    S3StateBackend,
    derive_bucket_name,
    derive_lock_table_name,
)
from stackdeploy.core.reliability.poll import PollPolicy

KEY = "chat-app/dev/state.json"


def client_error(code: str, operation: str = "Op") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


@pytest.fixture
def s3():
    return MagicMock(name="s3")


@pytest.fixture
def ddb():
    return MagicMock(name="dynamodb")


@pytest.fixture
def store(s3, ddb):
    return S3StateBackend(
        "chat-app-stackdeploy-state-123456789012",
        "chat-app-stackdeploy-locks",
        "eu-west-1",
        s3_client=s3,
        dynamodb_client=ddb,
        table_poll=PollPolicy(timeout=1.0, interval=0.0, jitter=0.0),
    )


class TestNames:
    def test_bucket_name_is_lowercase_and_account_scoped(self):
        assert derive_bucket_name("Chat-App", "123456789012") == "chat-app-stackdeploy-state-123456789012"

    def test_lock_table_name(self):
        assert derive_lock_table_name("chat-app") == "chat-app-stackdeploy-locks"


# ── Container ───────────────────────────────────────────────────────


class TestContainer:
    def test_exists(self, store, s3):
        assert store.container_exists()
        s3.head_bucket.assert_called_once_with(Bucket="chat-app-stackdeploy-state-123456789012")

    def test_missing(self, store, s3):
        s3.head_bucket.side_effect = client_error("404", "HeadBucket")
        assert not store.container_exists()

    def test_head_denied_is_an_error(self, store, s3):
        s3.head_bucket.side_effect = client_error("403", "HeadBucket")
        with pytest.raises(BackendError):
            store.container_exists()

    def test_create_with_location(self, store, s3):
        assert store.create_container() is True
        s3.create_bucket.assert_called_once_with(
            Bucket="chat-app-stackdeploy-state-123456789012",
            CreateBucketConfiguration={"LocationConstraint": "eu-west-1"},
        )

    def test_create_us_east_1_has_no_location(self, s3, ddb):
        store = S3StateBackend("b", "t", "us-east-1", s3_client=s3, dynamodb_client=ddb)
        store.create_container()
        s3.create_bucket.assert_called_once_with(Bucket="b")

    def test_create_race_counts_as_existing(self, store, s3):
        s3.create_bucket.side_effect = client_error("BucketAlreadyOwnedByYou", "CreateBucket")
        assert store.create_container() is False

    def test_name_taken_elsewhere(self, store, s3):
        s3.create_bucket.side_effect = client_error("BucketAlreadyExists", "CreateBucket")
        with pytest.raises(BackendError, match="another account"):
            store.create_container()

    def test_harden(self, store, s3):
        settings = store.harden_container()

        s3.put_bucket_versioning.assert_called_once()
        assert s3.put_bucket_versioning.call_args.kwargs["VersioningConfiguration"] == {"Status": "Enabled"}
        rules = s3.put_bucket_encryption.call_args.kwargs["ServerSideEncryptionConfiguration"]["Rules"]
        assert rules[0]["ApplyServerSideEncryptionByDefault"]["SSEAlgorithm"] == "AES256"
        block = s3.put_public_access_block.call_args.kwargs["PublicAccessBlockConfiguration"]
        assert all(block.values())
        assert settings["versioning"] == "enabled"


# ── Lock table ──────────────────────────────────────────────────────


class TestLockTable:
    def test_exists(self, store, ddb):
        ddb.describe_table.return_value = {"Table": {"TableStatus": "ACTIVE"}}
        assert store.lock_table_exists()

    def test_missing(self, store, ddb):
        ddb.describe_table.side_effect = client_error("ResourceNotFoundException", "DescribeTable")
        assert not store.lock_table_exists()

    def test_create_waits_for_active(self, store, ddb):
        ddb.describe_table.side_effect = [
            {"Table": {"TableStatus": "CREATING"}},
            {"Table": {"TableStatus": "ACTIVE"}},
        ]
        assert store.create_lock_table() is True

        kwargs = ddb.create_table.call_args.kwargs
        assert kwargs["KeySchema"] == [{"AttributeName": "LockID", "KeyType": "HASH"}]
        assert kwargs["BillingMode"] == "PAY_PER_REQUEST"
        assert ddb.describe_table.call_count == 2

    def test_create_race(self, store, ddb):
        ddb.create_table.side_effect = client_error("ResourceInUseException", "CreateTable")
        assert store.create_lock_table() is False

    def test_create_denied(self, store, ddb):
        ddb.create_table.side_effect = client_error("AccessDeniedException", "CreateTable")
        with pytest.raises(LockTableUnavailableError):
            store.create_lock_table()

    def test_denied_describe_means_degraded(self, store, ddb):
        ddb.describe_table.side_effect = client_error("AccessDeniedException", "DescribeTable")
        assert store.locking_mode == "degraded"


# ── State documents ─────────────────────────────────────────────────


class TestDocuments:
    def test_read_missing(self, store, s3):
        s3.get_object.side_effect = client_error("NoSuchKey", "GetObject")
        assert store.read_state(KEY) is None

    def test_read(self, store, s3):
        record = StateRecord(project="chat-app", environment="dev", serial=3)
        s3.get_object.return_value = {"Body": io.BytesIO(encode_state(record).encode())}

        loaded = store.read_state(KEY)

        assert loaded.serial == 3
        s3.get_object.assert_called_once_with(
            Bucket="chat-app-stackdeploy-state-123456789012", Key=KEY,
        )

    def test_read_denied(self, store, s3):
        s3.get_object.side_effect = client_error("AccessDenied", "GetObject")
        with pytest.raises(BackendError):
            store.read_state(KEY)

    def test_write_is_encrypted(self, store, s3):
        serial = store.write_state(KEY, StateRecord(project="chat-app", environment="dev"))

        assert serial == 1
        kwargs = s3.put_object.call_args.kwargs
        assert kwargs["Key"] == KEY
        assert kwargs["ServerSideEncryption"] == "AES256"
        assert kwargs["Metadata"] == {"serial": "1"}

    def test_write_failure(self, store, s3):
        s3.put_object.side_effect = client_error("InternalError", "PutObject")
        with pytest.raises(BackendError):
            store.write_state(KEY, StateRecord())

    def test_delete(self, store, s3):
        store.delete_state(KEY)
        s3.delete_object.assert_called_once_with(
            Bucket="chat-app-stackdeploy-state-123456789012", Key=KEY,
        )

    def test_versions(self, store, s3):
        s3.list_object_versions.return_value = {"Versions": [
            {"Key": KEY, "VersionId": "v2", "LastModified": "2026-01-02"},
            {"Key": KEY, "VersionId": "v1", "LastModified": "2026-01-01"},
            {"Key": KEY + ".bak", "VersionId": "x", "LastModified": "2026-01-03"},
        ]}
        assert store.list_versions(KEY) == ["v1", "v2"]


# ── Workspaces ──────────────────────────────────────────────────────


class TestWorkspaces:
    def test_list(self, store, s3):
        paginator = MagicMock()
        paginator.paginate.return_value = [
            {"Contents": [
                {"Key": "chat-app/dev/.workspace"},
                {"Key": "chat-app/dev/state.json"},
            ]},
            {"Contents": [{"Key": "chat-app/test/.workspace"}]},
            {},
        ]
        s3.get_paginator.return_value = paginator

        assert store.list_workspaces("chat-app") == ["dev", "test"]
        paginator.paginate.assert_called_once_with(
            Bucket="chat-app-stackdeploy-state-123456789012", Prefix="chat-app/",
        )

    def test_register_new(self, store, s3):
        s3.head_object.side_effect = client_error("404", "HeadObject")
        assert store.register_workspace("chat-app", "dev") is True
        assert s3.put_object.call_args.kwargs["Key"] == "chat-app/dev/.workspace"

    def test_register_existing(self, store, s3):
        assert store.register_workspace("chat-app", "dev") is False
        s3.put_object.assert_not_called()


# ── Locks ───────────────────────────────────────────────────────────


class TestLocks:
    def _lock(self, holder: str = "op-1") -> LockRecord:
        return LockRecord(lock_id="chat-app/dev", holder_id=holder, operation="apply", who="ci")

    def test_acquire_is_conditional(self, store, ddb):
        ddb.describe_table.return_value = {"Table": {"TableStatus": "ACTIVE"}}

        lock = store.acquire_lock(self._lock())

        assert lock.mode == "table"
        kwargs = ddb.put_item.call_args.kwargs
        assert kwargs["ConditionExpression"] == "attribute_not_exists(LockID)"
        assert kwargs["Item"]["LockID"] == {"S": "chat-app/dev"}

    def test_conflict_reports_holder(self, store, ddb):
        ddb.describe_table.return_value = {"Table": {"TableStatus": "ACTIVE"}}
        ddb.put_item.side_effect = client_error("ConditionalCheckFailedException", "PutItem")
        ddb.get_item.return_value = {"Item": {
            "LockID": {"S": "chat-app/dev"},
            "HolderID": {"S": "op-other"},
            "Info": {"S": self._lock("op-other").model_dump_json()},
        }}

        with pytest.raises(LockConflictError) as exc:
            store.acquire_lock(self._lock())
        assert exc.value.holder.holder_id == "op-other"

    def test_release_is_conditional_on_holder(self, store, ddb):
        ddb.describe_table.return_value = {"Table": {"TableStatus": "ACTIVE"}}

        store.release_lock("chat-app/dev", "op-1")

        kwargs = ddb.delete_item.call_args.kwargs
        assert kwargs["ConditionExpression"] == "HolderID = :holder"
        assert kwargs["ExpressionAttributeValues"] == {":holder": {"S": "op-1"}}

    def test_release_by_stranger_is_ignored(self, store, ddb):
        ddb.describe_table.return_value = {"Table": {"TableStatus": "ACTIVE"}}
        ddb.delete_item.side_effect = client_error("ConditionalCheckFailedException", "DeleteItem")
        store.release_lock("chat-app/dev", "op-2")

    def test_force_unlock(self, store, ddb):
        ddb.describe_table.return_value = {"Table": {"TableStatus": "ACTIVE"}}
        ddb.get_item.return_value = {"Item": {
            "LockID": {"S": "chat-app/dev"},
            "HolderID": {"S": "op-stuck"},
        }}

        removed = store.force_unlock("chat-app/dev")

        assert removed.holder_id == "op-stuck"
        assert "ConditionExpression" not in ddb.delete_item.call_args.kwargs

    def test_read_no_lock(self, store, ddb):
        ddb.describe_table.return_value = {"Table": {"TableStatus": "ACTIVE"}}
        ddb.get_item.return_value = {}
        assert store.read_lock("chat-app/dev") is None


class TestDegradedLocks:
    LOCK_KEY = "chat-app/dev/.lock"

    def _lock(self, holder: str = "op-1") -> LockRecord:
        return LockRecord(lock_id="chat-app/dev", holder_id=holder, operation="apply", who="ci")

    def _held(self, s3, holder: str, etag: str = '"etag-1"') -> None:
        s3.get_object.return_value = {
            "Body": io.BytesIO(self._lock(holder).model_dump_json().encode()),
            "ETag": etag,
        }

    @pytest.fixture(autouse=True)
    def _degraded(self, store):
        store.set_locking_mode("degraded")

    def test_acquire_writes_conditional_object(self, store, s3, ddb):
        lock = store.acquire_lock(self._lock())

        assert lock.mode == "degraded"
        kwargs = s3.put_object.call_args.kwargs
        assert kwargs["Key"] == self.LOCK_KEY
        assert kwargs["IfNoneMatch"] == "*"
        assert kwargs["ServerSideEncryption"] == "AES256"
        assert LockRecord.model_validate_json(kwargs["Body"]).holder_id == "op-1"
        ddb.put_item.assert_not_called()

    @pytest.mark.parametrize("code", ["PreconditionFailed", "ConditionalRequestConflict"])
    def test_existing_object_is_a_conflict(self, store, s3, code):
        s3.put_object.side_effect = client_error(code, "PutObject")
        self._held(s3, "op-other")

        with pytest.raises(LockConflictError) as exc:
            store.acquire_lock(self._lock())
        assert exc.value.holder.holder_id == "op-other"

    def test_put_failure_is_an_error(self, store, s3):
        s3.put_object.side_effect = client_error("AccessDenied", "PutObject")
        with pytest.raises(BackendError):
            store.acquire_lock(self._lock())

    def test_release_matches_etag(self, store, s3, ddb):
        self._held(s3, "op-1", etag='"abc"')

        store.release_lock("chat-app/dev", "op-1")

        s3.delete_object.assert_called_once_with(
            Bucket="chat-app-stackdeploy-state-123456789012",
            Key=self.LOCK_KEY,
            IfMatch='"abc"',
        )
        ddb.delete_item.assert_not_called()

    def test_release_by_stranger_is_ignored(self, store, s3):
        self._held(s3, "op-1")
        store.release_lock("chat-app/dev", "op-2")
        s3.delete_object.assert_not_called()

    def test_release_after_replacement_is_ignored(self, store, s3):
        self._held(s3, "op-1")
        s3.delete_object.side_effect = client_error("PreconditionFailed", "DeleteObject")
        store.release_lock("chat-app/dev", "op-1")

    def test_force_unlock(self, store, s3):
        self._held(s3, "op-stuck")

        removed = store.force_unlock("chat-app/dev")

        assert removed.holder_id == "op-stuck"
        assert "IfMatch" not in s3.delete_object.call_args.kwargs

    def test_read_no_lock(self, store, s3):
        s3.get_object.side_effect = client_error("NoSuchKey", "GetObject")
        assert store.read_lock("chat-app/dev") is None
