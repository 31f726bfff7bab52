"""
DeploymentRun and credentials — ephemeral, per-invocation models.

Nothing in this module is persisted beyond logs and the audit summary.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum

from pydantic import BaseModel, Field, SecretStr


class RunMode(StrEnum):
    APPLY = "apply"
    DESTROY = "destroy"


class Trigger(StrEnum):
    AUTO = "auto"        # mainline push
    MANUAL = "manual"    # operator or manual dispatch


class ShortLivedCredential(BaseModel):
    """Temporary credentials obtained by token exchange."""

    access_key_id: str = ""
    secret_access_key: SecretStr = SecretStr("")
    session_token: SecretStr = SecretStr("")
    expiration: str = ""
    audience: str = ""
    subject: str = ""
    account_id: str = ""
    source: str = ""

    @property
    def expired(self) -> bool:
        if not self.expiration:
            return False
        try:
            expires = datetime.fromisoformat(self.expiration)
        except ValueError:
            return False
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=UTC)
        return expires <= datetime.now(UTC)

    def as_env(self) -> dict[str, str]:
        """Environment variables understood by AWS tooling."""
        env = {}
        if self.access_key_id:
            env["AWS_ACCESS_KEY_ID"] = self.access_key_id
            env["AWS_SECRET_ACCESS_KEY"] = self.secret_access_key.get_secret_value()
        token = self.session_token.get_secret_value()
        if token:
            env["AWS_SESSION_TOKEN"] = token
        return env

    def redacted(self) -> dict[str, str]:
        return {
            "access_key_id": (self.access_key_id[:4] + "…") if self.access_key_id else "",
            "expiration": self.expiration,
            "audience": self.audience,
            "subject": self.subject,
            "account_id": self.account_id,
            "source": self.source,
        }


class DeploymentRun(BaseModel):
    """One invocation of the controller."""

    operation_id: str
    environment: str
    mode: RunMode = RunMode.APPLY
    trigger: Trigger = Trigger.MANUAL
    confirmation_token: str | None = None
    credential: ShortLivedCredential | None = None
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
