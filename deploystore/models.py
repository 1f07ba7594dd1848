"""Entity models returned and accepted by the storage facade."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Permission(str, Enum):
    OWNER = "Owner"
    COLLABORATOR = "Collaborator"


class CollaboratorInfo(BaseModel):
    """Collaborator entry of an app.

    is_current_account is computed for the requesting account and never
    persisted.
    """

    account_id: str
    permission: Permission = Permission.COLLABORATOR
    is_current_account: bool = False


class Account(BaseModel):
    """User account. Unknown profile fields are kept as-is."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    email: str | None = None
    name: str | None = None
    github_id: str | None = None
    created_time: int | None = Field(default=None, description="Epoch milliseconds")
    version: int | None = Field(default=None, description="Concurrency token")


class App(BaseModel):
    id: str | None = None
    name: str | None = None
    created_time: int | None = None
    collaborators: dict[str, CollaboratorInfo] = Field(default_factory=dict)
    version: int | None = None


class Package(BaseModel):
    """A release uploaded to a deployment."""

    label: str | None = None
    app_version: str | None = None
    description: str | None = None
    is_disabled: bool = False
    is_mandatory: bool = False
    rollout: int | None = Field(default=None, description="Rollout percentage, None = 100")
    size: int | None = None
    blob_url: str | None = None
    manifest_blob_url: str | None = None
    package_hash: str | None = None
    release_method: str | None = None
    original_label: str | None = None
    original_deployment: str | None = None
    released_by: str | None = None
    upload_time: int | None = None
    diff_package_map: dict[str, Any] | None = None


class Deployment(BaseModel):
    id: str | None = None
    name: str | None = None
    key: str | None = Field(default=None, description="Public token used by release clients")
    created_time: int | None = None
    package: Package | None = None
    app_id: str | None = None
    account_id: str | None = None
    version: int | None = None


class DeploymentInfo(BaseModel):
    """Result of resolving a deployment key."""

    app_id: str
    deployment_id: str


class AccessKey(BaseModel):
    id: str | None = None
    name: str | None = Field(default=None, description="Bearer token value")
    friendly_name: str | None = None
    description: str | None = None
    created_by: str | None = None
    is_session: bool = False
    account_id: str | None = None
    expires: int | None = Field(default=None, description="Epoch milliseconds")
    created_time: int | None = None
    version: int | None = None


def to_record(model: BaseModel, *, partial: bool = False, exclude: set[str] | None = None) -> dict:
    """Serialize *model* for the document store.

    partial=True keeps only fields the caller explicitly set, which is what
    a merge-update needs.
    """
    record = model.model_dump(mode="json", exclude_unset=partial, exclude_none=not partial)
    for field in (exclude or set()) | {"version"}:
        record.pop(field, None)
    return record
