"""
S3 state backend — state documents in a bucket, locks in a DynamoDB table.

Layout::

    s3://<bucket>/<project>/<env>/state.json       versioned, SSE AES256
    s3://<bucket>/<project>/<env>/.workspace       workspace marker
    s3://<bucket>/<project>/<env>/.lock            lock object (degraded locking)
    dynamodb <lock_table>  LockID (hash key) = "<project>/<env>"

Lock acquisition is a conditional put (attribute_not_exists(LockID)),
release is a conditional delete on the holder id. Without the table, the
lock is an object written with If-None-Match: * and removed with If-Match
on the ETag read back from it.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from botocore.exceptions import ClientError

from stackdeploy.core.errors import BackendError, LockTableUnavailableError
from stackdeploy.core.models.state import LockRecord
from stackdeploy.core.persistence.backend import StateBackend
from stackdeploy.core.reliability.poll import PollPolicy, wait_until

logger = logging.getLogger(__name__)

_NOT_FOUND = frozenset({"404", "NoSuchBucket", "NotFound", "NoSuchKey"})
_PRECONDITION = frozenset({"PreconditionFailed", "ConditionalRequestConflict", "412"})
_DENIED = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def derive_bucket_name(project: str, account_id: str) -> str:
    """Globally unique bucket name for a project's state."""
    return f"{project}-stackdeploy-state-{account_id}".lower()


def derive_lock_table_name(project: str) -> str:
    return f"{project}-stackdeploy-locks"


class S3StateBackend(StateBackend):
    """State container in S3 with a DynamoDB lock table.

    Args:
        bucket: State bucket name.
        lock_table: DynamoDB table name.
        region: AWS region.
        s3_client: Optional pre-built client (tests, custom sessions).
        dynamodb_client: Optional pre-built client.
        session: Optional boto3 session used to build missing clients.
        table_poll: Bounded wait for the lock table to become ACTIVE.
    """

    def __init__(
        self,
        bucket: str,
        lock_table: str,
        region: str = "us-east-1",
        *,
        s3_client: Any = None,
        dynamodb_client: Any = None,
        session: Any = None,
        table_poll: PollPolicy | None = None,
    ):
        super().__init__()
        self._bucket = bucket
        self._lock_table = lock_table
        self._region = region
        self._session = session
        self._s3 = s3_client
        self._ddb = dynamodb_client
        self._table_poll = table_poll or PollPolicy(timeout=120.0, interval=2.0)

    @property
    def name(self) -> str:
        return "s3"

    @property
    def container_ref(self) -> str:
        return f"s3://{self._bucket}"

    @property
    def lock_table_ref(self) -> str:
        return f"dynamodb:{self._lock_table}"

    # ── Clients ──────────────────────────────────────────────────

    def _get_session(self) -> Any:
        if self._session is None:
            import boto3

            self._session = boto3.Session(region_name=self._region)
        return self._session

    @property
    def s3(self) -> Any:
        if self._s3 is None:
            self._s3 = self._get_session().client("s3", region_name=self._region)
        return self._s3

    @property
    def dynamodb(self) -> Any:
        if self._ddb is None:
            self._ddb = self._get_session().client("dynamodb", region_name=self._region)
        return self._ddb

    # ── Bootstrap primitives ─────────────────────────────────────

    def container_exists(self) -> bool:
        try:
            self.s3.head_bucket(Bucket=self._bucket)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND:
                return False
            raise BackendError(f"Cannot inspect bucket {self._bucket}: {e}") from e

    def create_container(self) -> bool:
        kwargs: dict[str, Any] = {"Bucket": self._bucket}
        # us-east-1 doesn't take a LocationConstraint
        if self._region and self._region != "us-east-1":
            kwargs["CreateBucketConfiguration"] = {"LocationConstraint": self._region}
        try:
            self.s3.create_bucket(**kwargs)
        except ClientError as e:
            code = _error_code(e)
            if code == "BucketAlreadyOwnedByYou":
                return False
            if code == "BucketAlreadyExists":
                raise BackendError(
                    f"Bucket name {self._bucket} is taken by another account"
                ) from e
            raise BackendError(f"Cannot create bucket {self._bucket}: {e}") from e
        logger.info("Created state bucket %s", self._bucket)
        return True

    def harden_container(self) -> dict[str, Any]:
        try:
            self.s3.put_bucket_versioning(
                Bucket=self._bucket,
                VersioningConfiguration={"Status": "Enabled"},
            )
            self.s3.put_bucket_encryption(
                Bucket=self._bucket,
                ServerSideEncryptionConfiguration={
                    "Rules": [{
                        "ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"},
                    }],
                },
            )
            self.s3.put_public_access_block(
                Bucket=self._bucket,
                PublicAccessBlockConfiguration={
                    "BlockPublicAcls": True,
                    "IgnorePublicAcls": True,
                    "BlockPublicPolicy": True,
                    "RestrictPublicBuckets": True,
                },
            )
        except ClientError as e:
            raise BackendError(f"Cannot harden bucket {self._bucket}: {e}") from e
        return {"versioning": "enabled", "encryption": "AES256", "public_access": "blocked"}

    def _table_status(self) -> str | None:
        try:
            resp = self.dynamodb.describe_table(TableName=self._lock_table)
        except ClientError as e:
            code = _error_code(e)
            if code == "ResourceNotFoundException" or code in _DENIED:
                return None
            raise BackendError(f"Cannot inspect lock table {self._lock_table}: {e}") from e
        return resp.get("Table", {}).get("TableStatus")

    def lock_table_exists(self) -> bool:
        return self._table_status() is not None

    def create_lock_table(self) -> bool:
        try:
            self.dynamodb.create_table(
                TableName=self._lock_table,
                AttributeDefinitions=[{"AttributeName": "LockID", "AttributeType": "S"}],
                KeySchema=[{"AttributeName": "LockID", "KeyType": "HASH"}],
                BillingMode="PAY_PER_REQUEST",
            )
        except ClientError as e:
            code = _error_code(e)
            if code == "ResourceInUseException":
                return False
            if code in _DENIED:
                raise LockTableUnavailableError(
                    f"Not permitted to create lock table {self._lock_table}: {code}"
                ) from e
            raise BackendError(f"Cannot create lock table {self._lock_table}: {e}") from e

        wait_until(
            lambda: self._table_status() == "ACTIVE",
            policy=self._table_poll,
            description=f"lock table {self._lock_table} to become ACTIVE",
        )
        logger.info("Created lock table %s", self._lock_table)
        return True

    # ── State documents ──────────────────────────────────────────

    def _read_document(self, key: str) -> str | None:
        try:
            resp = self.s3.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND:
                return None
            raise BackendError(f"Cannot read s3://{self._bucket}/{key}: {e}") from e
        return resp["Body"].read().decode("utf-8")

    def _write_document(self, key: str, content: str, serial: int) -> None:
        try:
            self.s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content.encode("utf-8"),
                ContentType="application/json",
                ServerSideEncryption="AES256",
                Metadata={"serial": str(serial)},
            )
        except ClientError as e:
            logger.error("Failed to save state to s3://%s/%s: %s", self._bucket, key, e)
            raise BackendError(f"Cannot write s3://{self._bucket}/{key}: {e}") from e

    def delete_state(self, key: str) -> None:
        try:
            self.s3.delete_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            raise BackendError(f"Cannot delete s3://{self._bucket}/{key}: {e}") from e
        logger.info("Deleted state document s3://%s/%s", self._bucket, key)

    def list_versions(self, key: str) -> list[str]:
        try:
            resp = self.s3.list_object_versions(Bucket=self._bucket, Prefix=key)
        except ClientError as e:
            raise BackendError(f"Cannot list versions of {key}: {e}") from e
        versions = [v for v in resp.get("Versions", []) if v.get("Key") == key]
        versions.sort(key=lambda v: v.get("LastModified") or "")
        return [v["VersionId"] for v in versions]

    # ── Workspaces ───────────────────────────────────────────────

    def list_workspaces(self, project: str) -> list[str]:
        names: set[str] = set()
        paginator = self.s3.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self._bucket, Prefix=f"{project}/"):
                for obj in page.get("Contents", []):
                    parts = obj["Key"].split("/")
                    if len(parts) == 3 and parts[2] == ".workspace":
                        names.add(parts[1])
        except ClientError as e:
            raise BackendError(f"Cannot list workspaces in {self._bucket}: {e}") from e
        return sorted(names)

    def register_workspace(self, project: str, environment: str) -> bool:
        key = f"{project}/{environment}/.workspace"
        try:
            self.s3.head_object(Bucket=self._bucket, Key=key)
            return False
        except ClientError as e:
            if _error_code(e) not in _NOT_FOUND:
                raise BackendError(f"Cannot inspect {key}: {e}") from e
        try:
            self.s3.put_object(Bucket=self._bucket, Key=key, Body=b"", ServerSideEncryption="AES256")
        except ClientError as e:
            raise BackendError(f"Cannot register workspace {key}: {e}") from e
        return True

    # ── Table lock primitives ────────────────────────────────────

    def _put_lock(self, lock: LockRecord) -> bool:
        try:
            self.dynamodb.put_item(
                TableName=self._lock_table,
                Item={
                    "LockID": {"S": lock.lock_id},
                    "HolderID": {"S": lock.holder_id},
                    "Info": {"S": lock.model_dump_json()},
                },
                ConditionExpression="attribute_not_exists(LockID)",
            )
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                return False
            raise BackendError(f"Cannot acquire lock {lock.lock_id}: {e}") from e
        return True

    def _get_lock(self, lock_id: str) -> LockRecord | None:
        try:
            resp = self.dynamodb.get_item(
                TableName=self._lock_table,
                Key={"LockID": {"S": lock_id}},
                ConsistentRead=True,
            )
        except ClientError as e:
            raise BackendError(f"Cannot read lock {lock_id}: {e}") from e
        item = resp.get("Item")
        if not item:
            return None
        try:
            return LockRecord.model_validate(json.loads(item["Info"]["S"]))
        except (KeyError, ValueError):
            return LockRecord(lock_id=lock_id, holder_id=item.get("HolderID", {}).get("S", "unknown"))

    def _delete_lock(self, lock_id: str, holder_id: str | None) -> bool:
        kwargs: dict[str, Any] = {
            "TableName": self._lock_table,
            "Key": {"LockID": {"S": lock_id}},
        }
        if holder_id is not None:
            kwargs["ConditionExpression"] = "HolderID = :holder"
            kwargs["ExpressionAttributeValues"] = {":holder": {"S": holder_id}}
        try:
            self.dynamodb.delete_item(**kwargs)
        except ClientError as e:
            if _error_code(e) == "ConditionalCheckFailedException":
                return False
            raise BackendError(f"Cannot release lock {lock_id}: {e}") from e
        return True

    # ── Lock object primitives (degraded mode) ───────────────────

    @staticmethod
    def _lock_key(lock_id: str) -> str:
        return f"{lock_id}/.lock"

    def _put_lock_object(self, lock: LockRecord) -> bool:
        key = self._lock_key(lock.lock_id)
        try:
            self.s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=lock.model_dump_json().encode("utf-8"),
                ContentType="application/json",
                ServerSideEncryption="AES256",
                IfNoneMatch="*",
            )
        except ClientError as e:
            if _error_code(e) in _PRECONDITION:
                return False
            raise BackendError(f"Cannot acquire lock s3://{self._bucket}/{key}: {e}") from e
        return True

    def _fetch_lock_object(self, lock_id: str) -> tuple[LockRecord, str] | None:
        key = self._lock_key(lock_id)
        try:
            resp = self.s3.get_object(Bucket=self._bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND:
                return None
            raise BackendError(f"Cannot read lock s3://{self._bucket}/{key}: {e}") from e
        etag = resp.get("ETag", "")
        try:
            return LockRecord.model_validate_json(resp["Body"].read()), etag
        except ValueError:
            return LockRecord(lock_id=lock_id, holder_id="unknown"), etag

    def _get_lock_object(self, lock_id: str) -> LockRecord | None:
        found = self._fetch_lock_object(lock_id)
        return found[0] if found else None

    def _delete_lock_object(self, lock_id: str, holder_id: str | None) -> bool:
        key = self._lock_key(lock_id)
        kwargs: dict[str, Any] = {"Bucket": self._bucket, "Key": key}
        if holder_id is not None:
            found = self._fetch_lock_object(lock_id)
            if found is None or found[0].holder_id != holder_id:
                return False
            # Only delete the object we just read
            kwargs["IfMatch"] = found[1]
        try:
            self.s3.delete_object(**kwargs)
        except ClientError as e:
            if _error_code(e) in _PRECONDITION:
                return False
            raise BackendError(f"Cannot release lock s3://{self._bucket}/{key}: {e}") from e
        return True
