"""
Backend factory — turn a BackendConfig into a concrete StateBackend.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from stackdeploy.core.errors import ConfigError
from stackdeploy.core.models.project import ProjectConfig
from stackdeploy.core.models.run import ShortLivedCredential
from stackdeploy.core.persistence.backend import StateBackend
from stackdeploy.core.persistence.local import LocalStateBackend

logger = logging.getLogger(__name__)


def create_backend(
    project: ProjectConfig,
    project_root: Path,
    credential: ShortLivedCredential | None = None,
) -> StateBackend:
    """Build the state backend declared in the project file.

    Args:
        project: Loaded project config.
        project_root: Directory holding stackdeploy.yml.
        credential: Short-lived credential for cloud backends.

    Raises:
        ConfigError: If an S3 backend needs a derived name but the
            account id is unknown.
    """
    cfg = project.backend

    if cfg.type == "local":
        root = Path(cfg.path)
        if not root.is_absolute():
            root = project_root / root
        logger.debug("Using local state backend at %s", root)
        return LocalStateBackend(root)

    import boto3

    from stackdeploy.core.persistence.s3 import (
        S3StateBackend,
        derive_bucket_name,
        derive_lock_table_name,
    )

    region = cfg.region or project.region
    bucket = cfg.bucket
    if not bucket:
        account_id = credential.account_id if credential else ""
        if not account_id:
            raise ConfigError(
                "backend.bucket is not set and the account id is unknown; "
                "set backend.bucket in stackdeploy.yml"
            )
        bucket = derive_bucket_name(project.name, account_id)
    lock_table = cfg.lock_table or derive_lock_table_name(project.name)

    session_kwargs: dict[str, Any] = {"region_name": region}
    if credential is not None and credential.access_key_id:
        session_kwargs.update({
            "aws_access_key_id": credential.access_key_id,
            "aws_secret_access_key": credential.secret_access_key.get_secret_value(),
            "aws_session_token": credential.session_token.get_secret_value() or None,
        })
    session = boto3.Session(**session_kwargs)

    logger.debug("Using s3 state backend s3://%s (locks: %s)", bucket, lock_table)
    return S3StateBackend(bucket, lock_table, region, session=session)
