"""Storage facade for accounts, apps, deployments, access keys and blobs.

All authorization happens here: every per-app operation first resolves the
app for the requesting account and fails NOT_FOUND when the account has no
access, so callers can never tell "missing" from "not yours".

Updates are read-merge-write: the stored record is fetched, the fields the
caller set are merged over it and the union is written back with the version
that was read. A concurrent writer in between makes the update fail
ALREADY_EXISTS instead of being silently overwritten.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from functools import wraps
from typing import BinaryIO

from . import health
from .blobs import BlobStore
from .documents import VERSION_FIELD, DocumentStore
from .errors import (
    ErrorCode,
    StorageError,
    already_exists,
    invalid,
    not_found,
    translated_errors,
)
from .ids import generate_id, generate_key, now_millis
from .models import (
    AccessKey,
    Account,
    App,
    CollaboratorInfo,
    Deployment,
    DeploymentInfo,
    Package,
    Permission,
    to_record,
)

logger = logging.getLogger(__name__)

ACCOUNT = "Account"
APP = "App"
DEPLOYMENT = "Deployment"
ACCESS_KEY = "AccessKey"
PACKAGE_HISTORY = "PackageHistory"
KINDS = (ACCOUNT, APP, DEPLOYMENT, ACCESS_KEY, PACKAGE_HISTORY)

DEFAULT_BLOB_URL_TTL = 60 * 60  # seconds
MAX_PACKAGE_HISTORY_LENGTH = 50

# Fields a merge-update never overwrites.
_ACCOUNT_PROTECTED = {"id", "created_time"}
_APP_PROTECTED = {"id", "created_time", "collaborators", "account_id"}
_DEPLOYMENT_PROTECTED = {"id", "key", "created_time", "app_id", "account_id", "package"}
_ACCESS_KEY_PROTECTED = {"id", "name", "account_id", "created_time"}


def storage_operation(func):
    """Guarantee only StorageError escapes a facade method."""

    @wraps(func)
    def wrapper(*args, **kwargs):
        with translated_errors():
            return func(*args, **kwargs)

    return wrapper


def _merge(existing: dict, updates: dict, protected: set[str]) -> dict:
    merged = dict(existing)
    for field, value in updates.items():
        if field not in protected:
            merged[field] = value
    return merged


def _expected_version(requested: int | None, existing: dict) -> int:
    return requested if requested is not None else existing[VERSION_FIELD]


def _next_label(history: list[dict]) -> str:
    if history:
        last = history[-1].get("label") or ""
        if last.startswith("v") and last[1:].isdigit():
            return f"v{int(last[1:]) + 1}"
    return f"v{len(history) + 1}"


class Storage:
    """Persistence contract consumed by the rest of the service."""

    def __init__(
        self,
        documents: DocumentStore,
        blobs: BlobStore,
        *,
        blob_url_ttl: int = DEFAULT_BLOB_URL_TTL,
        clock: Callable[[], int] = now_millis,
    ):
        self.documents = documents
        self.blobs = blobs
        self.blob_url_ttl = blob_url_ttl
        self._clock = clock

    # ── Health ───────────────────────────────────────────────────────────

    def check_health(self) -> None:
        health.check_health(self.documents, self.blobs)

    # ── Accounts ─────────────────────────────────────────────────────────

    def _account_doc_by_email(self, email: str) -> dict:
        docs = self.documents.query(ACCOUNT, {"email": email}, limit=1)
        if not docs:
            raise not_found(f"Account with email {email} not found")
        return docs[0]

    @storage_operation
    def add_account(self, account: Account) -> str:
        if not account.email:
            raise invalid("Account email is required")
        if self.documents.query(ACCOUNT, {"email": account.email}, limit=1):
            raise already_exists(f"Account with email {account.email} already exists")

        account_id = generate_id()
        record = to_record(account, exclude=_ACCOUNT_PROTECTED)
        record.update(id=account_id, created_time=self._clock())
        self.documents.put(ACCOUNT, account_id, record, expected_version=0)
        logger.info(f"Created account {account_id}")
        return account_id

    @storage_operation
    def get_account(self, account_id: str) -> Account:
        doc = self.documents.get(ACCOUNT, account_id)
        if doc is None:
            raise not_found(f"Account {account_id} not found")
        return Account.model_validate(doc)

    @storage_operation
    def get_account_by_email(self, email: str) -> Account:
        return Account.model_validate(self._account_doc_by_email(email))

    @storage_operation
    def get_account_id_from_access_key(self, access_key: str) -> str:
        docs = self.documents.query(ACCESS_KEY, {"name": access_key}, limit=1)
        if not docs:
            raise not_found("Access key not found")
        expires = docs[0].get("expires")
        if expires is not None and expires < self._clock():
            raise StorageError(ErrorCode.EXPIRED, "Access key has expired")
        return docs[0]["account_id"]

    @storage_operation
    def update_account(self, email: str, updates: Account) -> None:
        existing = self._account_doc_by_email(email)
        changes = to_record(updates, partial=True)
        if "email" in changes and not changes["email"]:
            raise invalid("Account email cannot be removed")
        new_email = changes.get("email")
        if new_email and new_email != email:
            if self.documents.query(ACCOUNT, {"email": new_email}, limit=1):
                raise already_exists(f"Account with email {new_email} already exists")

        merged = _merge(existing, changes, _ACCOUNT_PROTECTED)
        self.documents.put(
            ACCOUNT, existing["id"], merged, _expected_version(updates.version, existing)
        )

    # ── Apps ─────────────────────────────────────────────────────────────

    @staticmethod
    def _has_app_access(doc: dict, account_id: str) -> bool:
        return doc.get("account_id") == account_id or account_id in (
            doc.get("collaborators") or {}
        )

    @staticmethod
    def _app_view(doc: dict, account_id: str) -> App:
        collaborators = {
            cid: CollaboratorInfo(
                account_id=info.get("account_id", cid),
                permission=info.get("permission", Permission.COLLABORATOR),
                is_current_account=cid == account_id,
            )
            for cid, info in (doc.get("collaborators") or {}).items()
        }
        return App(
            id=doc["id"],
            name=doc.get("name"),
            created_time=doc.get("created_time"),
            collaborators=collaborators,
            version=doc.get(VERSION_FIELD),
        )

    def _app_doc(self, account_id: str, app_id: str) -> dict:
        doc = self.documents.get(APP, app_id)
        if doc is None or not self._has_app_access(doc, account_id):
            raise not_found(f"App {app_id} not found")
        return doc

    def _owned_app_doc(self, account_id: str, app_id: str, action: str) -> dict:
        doc = self._app_doc(account_id, app_id)
        info = (doc.get("collaborators") or {}).get(account_id) or {}
        if info.get("permission") != Permission.OWNER.value:
            raise invalid(f"Only the owner of app {app_id} can {action}")
        return doc

    @storage_operation
    def add_app(self, account_id: str, app: App) -> App:
        app_id = generate_id()
        record = to_record(app, exclude=_APP_PROTECTED)
        record.update(
            id=app_id,
            created_time=self._clock(),
            collaborators={
                account_id: {"account_id": account_id, "permission": Permission.OWNER.value}
            },
            account_id=account_id,
        )
        version = self.documents.put(APP, app_id, record, expected_version=0)
        logger.info(f"Created app {app_id} for account {account_id}")
        return self._app_view({**record, VERSION_FIELD: version}, account_id)

    @storage_operation
    def get_apps(self, account_id: str, *, include_shared: bool = False) -> list[App]:
        """Apps created by *account_id*.

        With include_shared=True, apps the account collaborates on are
        returned as well.
        """
        docs = self.documents.query(APP, {"account_id": account_id})
        if include_shared:
            seen = {doc["id"] for doc in docs}
            for doc in self.documents.query(APP, {}):
                if doc["id"] not in seen and self._has_app_access(doc, account_id):
                    docs.append(doc)
        docs.sort(key=lambda d: d.get("created_time") or 0)
        return [self._app_view(doc, account_id) for doc in docs]

    @storage_operation
    def get_app(self, account_id: str, app_id: str) -> App:
        return self._app_view(self._app_doc(account_id, app_id), account_id)

    @storage_operation
    def remove_app(self, account_id: str, app_id: str) -> None:
        self._app_doc(account_id, app_id)
        deployment_ids = [doc["id"] for doc in self.documents.query(DEPLOYMENT, {"app_id": app_id})]
        if deployment_ids:
            self.documents.delete(PACKAGE_HISTORY, deployment_ids)
            self.documents.delete(DEPLOYMENT, deployment_ids)
        self.documents.delete(APP, app_id)
        logger.info(f"Removed app {app_id} and {len(deployment_ids)} deployment(s)")

    @storage_operation
    def update_app(self, account_id: str, app: App) -> None:
        if not app.id:
            raise invalid("App id is required")
        existing = self._app_doc(account_id, app.id)
        merged = _merge(existing, to_record(app, partial=True), _APP_PROTECTED)
        self.documents.put(APP, app.id, merged, _expected_version(app.version, existing))

    @storage_operation
    def transfer_app(self, account_id: str, app_id: str, email: str) -> None:
        """Make the account owning *email* the app owner.

        The previous owner stays on the app as a collaborator.
        """
        doc = self._owned_app_doc(account_id, app_id, "transfer it")
        new_owner = self._account_doc_by_email(email)
        new_owner_id = new_owner["id"]
        if new_owner_id == account_id:
            raise invalid(f"Account {email} already owns app {app_id}")

        collaborators = dict(doc.get("collaborators") or {})
        collaborators[account_id] = {
            "account_id": account_id,
            "permission": Permission.COLLABORATOR.value,
        }
        collaborators[new_owner_id] = {
            "account_id": new_owner_id,
            "permission": Permission.OWNER.value,
        }
        updated = {**doc, "collaborators": collaborators, "account_id": new_owner_id}
        self.documents.put(APP, app_id, updated, doc[VERSION_FIELD])

        # Keep the denormalized owner on deployments in step with the app.
        for deployment in self.documents.query(DEPLOYMENT, {"app_id": app_id}):
            self.documents.put(
                DEPLOYMENT,
                deployment["id"],
                {**deployment, "account_id": new_owner_id},
                deployment[VERSION_FIELD],
            )
        logger.info(f"Transferred app {app_id} from {account_id} to {new_owner_id}")

    # ── Collaborators ────────────────────────────────────────────────────

    @storage_operation
    def add_collaborator(self, account_id: str, app_id: str, email: str) -> None:
        doc = self._owned_app_doc(account_id, app_id, "add collaborators")
        collaborator_id = self._account_doc_by_email(email)["id"]
        collaborators = dict(doc.get("collaborators") or {})
        if collaborator_id in collaborators:
            raise already_exists(f"{email} is already a collaborator on app {app_id}")

        collaborators[collaborator_id] = {
            "account_id": collaborator_id,
            "permission": Permission.COLLABORATOR.value,
        }
        self.documents.put(
            APP, app_id, {**doc, "collaborators": collaborators}, doc[VERSION_FIELD]
        )

    @storage_operation
    def get_collaborators(self, account_id: str, app_id: str) -> dict[str, CollaboratorInfo]:
        return self._app_view(self._app_doc(account_id, app_id), account_id).collaborators

    @storage_operation
    def remove_collaborator(self, account_id: str, app_id: str, email: str) -> None:
        """Remove a collaborator. Non-owners may only remove themselves."""
        doc = self._app_doc(account_id, app_id)
        collaborator_id = self._account_doc_by_email(email)["id"]
        collaborators = dict(doc.get("collaborators") or {})
        info = collaborators.get(collaborator_id)
        if info is None:
            raise not_found(f"{email} is not a collaborator on app {app_id}")
        if info.get("permission") == Permission.OWNER.value:
            raise invalid("Cannot remove the owner of the app from collaborator list")
        if collaborator_id != account_id:
            requester = collaborators.get(account_id) or {}
            if requester.get("permission") != Permission.OWNER.value:
                raise invalid(f"Only the owner of app {app_id} can remove collaborators")

        del collaborators[collaborator_id]
        self.documents.put(
            APP, app_id, {**doc, "collaborators": collaborators}, doc[VERSION_FIELD]
        )

    # ── Deployments ──────────────────────────────────────────────────────

    def _can_access_deployment(self, doc: dict, account_id: str) -> bool:
        if doc.get("account_id") == account_id:
            return True
        app_doc = self.documents.get(APP, doc.get("app_id"))
        return app_doc is not None and self._has_app_access(app_doc, account_id)

    def _deployment_doc(self, account_id: str, app_id: str, deployment_id: str) -> dict:
        doc = self.documents.get(DEPLOYMENT, deployment_id)
        if (
            doc is None
            or doc.get("app_id") != app_id
            or not self._can_access_deployment(doc, account_id)
        ):
            raise not_found(f"Deployment {deployment_id} not found")
        return doc

    def _deployment_doc_by_key(self, deployment_key: str) -> dict:
        docs = self.documents.query(DEPLOYMENT, {"key": deployment_key}, limit=1)
        if not docs:
            raise not_found("Deployment with the given key not found")
        return docs[0]

    def _ensure_unique_deployment_name(
        self, app_id: str, name: str, deployment_id: str | None = None
    ) -> None:
        for doc in self.documents.query(DEPLOYMENT, {"app_id": app_id, "name": name}):
            if doc["id"] != deployment_id:
                raise already_exists(f"Deployment {name} already exists in app {app_id}")

    @storage_operation
    def add_deployment(self, account_id: str, app_id: str, deployment: Deployment) -> str:
        app_doc = self._app_doc(account_id, app_id)
        if deployment.name:
            self._ensure_unique_deployment_name(app_id, deployment.name)
        key = deployment.key or generate_key()
        if self.documents.query(DEPLOYMENT, {"key": key}, limit=1):
            raise already_exists("Deployment key is already in use")

        deployment_id = generate_id()
        record = to_record(deployment, exclude=_DEPLOYMENT_PROTECTED)
        record.update(
            id=deployment_id,
            key=key,
            created_time=self._clock(),
            app_id=app_id,
            account_id=app_doc.get("account_id", account_id),
        )
        self.documents.put(DEPLOYMENT, deployment_id, record, expected_version=0)
        logger.info(f"Created deployment {deployment_id} in app {app_id}")
        return deployment_id

    @storage_operation
    def get_deployment(self, account_id: str, app_id: str, deployment_id: str) -> Deployment:
        return Deployment.model_validate(self._deployment_doc(account_id, app_id, deployment_id))

    @storage_operation
    def get_deployment_info(self, deployment_key: str) -> DeploymentInfo:
        """Resolve a public deployment key; no account is required."""
        doc = self._deployment_doc_by_key(deployment_key)
        return DeploymentInfo(app_id=doc["app_id"], deployment_id=doc["id"])

    @storage_operation
    def get_deployments(self, account_id: str, app_id: str) -> list[Deployment]:
        docs = self.documents.query(DEPLOYMENT, {"app_id": app_id})
        app_doc = self.documents.get(APP, app_id)
        app_access = app_doc is not None and self._has_app_access(app_doc, account_id)
        visible = [d for d in docs if app_access or d.get("account_id") == account_id]
        visible.sort(key=lambda d: d.get("created_time") or 0)
        return [Deployment.model_validate(doc) for doc in visible]

    @storage_operation
    def remove_deployment(self, account_id: str, app_id: str, deployment_id: str) -> None:
        self._deployment_doc(account_id, app_id, deployment_id)
        self.documents.delete(PACKAGE_HISTORY, deployment_id)
        self.documents.delete(DEPLOYMENT, deployment_id)
        logger.info(f"Removed deployment {deployment_id} from app {app_id}")

    @storage_operation
    def update_deployment(self, account_id: str, app_id: str, deployment: Deployment) -> None:
        if not deployment.id:
            raise invalid("Deployment id is required")
        existing = self._deployment_doc(account_id, app_id, deployment.id)
        changes = to_record(deployment, partial=True)
        if changes.get("name") and changes["name"] != existing.get("name"):
            self._ensure_unique_deployment_name(app_id, changes["name"], deployment.id)
        merged = _merge(existing, changes, _DEPLOYMENT_PROTECTED)
        self.documents.put(
            DEPLOYMENT, deployment.id, merged, _expected_version(deployment.version, existing)
        )

    # ── Package history ──────────────────────────────────────────────────

    def _history(self, deployment_id: str) -> tuple[list[dict], int]:
        doc = self.documents.get(PACKAGE_HISTORY, deployment_id)
        if doc is None:
            return [], 0
        return list(doc.get("packages") or []), doc[VERSION_FIELD]

    def _write_history(
        self,
        deployment: dict,
        packages: list[dict],
        history_version: int,
        previous: list[dict],
    ) -> None:
        """Store the history, then point the deployment at its latest entry.

        If the deployment changed since it was read, the history write is
        undone before the conflict is raised.
        """
        deployment_id = deployment["id"]
        written_version = self.documents.put(
            PACKAGE_HISTORY,
            deployment_id,
            {"deployment_id": deployment_id, "packages": packages},
            history_version,
        )
        latest = packages[-1] if packages else None
        try:
            self.documents.put(
                DEPLOYMENT,
                deployment_id,
                {**deployment, "package": latest},
                deployment[VERSION_FIELD],
            )
        except StorageError:
            self._restore_history(deployment_id, previous, history_version, written_version)
            raise

    def _restore_history(
        self, deployment_id: str, previous: list[dict], previous_version: int, written_version: int
    ) -> None:
        try:
            if previous_version == 0:
                current = self.documents.get(PACKAGE_HISTORY, deployment_id)
                if current is not None and current[VERSION_FIELD] == written_version:
                    self.documents.delete(PACKAGE_HISTORY, deployment_id)
            else:
                self.documents.put(
                    PACKAGE_HISTORY,
                    deployment_id,
                    {"deployment_id": deployment_id, "packages": previous},
                    written_version,
                )
        except StorageError as e:
            logger.error(f"Failed to restore package history of deployment {deployment_id}: {e}")

    @storage_operation
    def commit_package(
        self, account_id: str, app_id: str, deployment_id: str, package: Package
    ) -> Package:
        """Append *package* to the deployment history and make it current.

        The package gets the next ``v<n>`` label and an upload time; only
        the most recent MAX_PACKAGE_HISTORY_LENGTH entries are kept.
        """
        deployment = self._deployment_doc(account_id, app_id, deployment_id)
        packages, history_version = self._history(deployment_id)
        previous = list(packages)

        record = to_record(package)
        record.update(label=_next_label(packages), upload_time=self._clock())
        packages.append(record)
        packages = packages[-MAX_PACKAGE_HISTORY_LENGTH:]

        self._write_history(deployment, packages, history_version, previous)
        logger.info(f"Committed package {record['label']} to deployment {deployment_id}")
        return Package.model_validate(record)

    @storage_operation
    def clear_package_history(self, account_id: str, app_id: str, deployment_id: str) -> None:
        deployment = self._deployment_doc(account_id, app_id, deployment_id)
        self.documents.put(
            DEPLOYMENT, deployment_id, {**deployment, "package": None}, deployment[VERSION_FIELD]
        )
        self.documents.delete(PACKAGE_HISTORY, deployment_id)

    @storage_operation
    def get_package_history(
        self, account_id: str, app_id: str, deployment_id: str
    ) -> list[Package]:
        self._deployment_doc(account_id, app_id, deployment_id)
        packages, _ = self._history(deployment_id)
        return [Package.model_validate(p) for p in packages]

    @storage_operation
    def get_package_history_from_deployment_key(self, deployment_key: str) -> list[Package]:
        deployment = self._deployment_doc_by_key(deployment_key)
        packages, _ = self._history(deployment["id"])
        return [Package.model_validate(p) for p in packages]

    @storage_operation
    def update_package_history(
        self, account_id: str, app_id: str, deployment_id: str, history: list[Package]
    ) -> None:
        """Replace the whole history; the last entry becomes the current package."""
        if not history:
            raise invalid("Cannot clear package history from an update operation")
        deployment = self._deployment_doc(account_id, app_id, deployment_id)
        previous, history_version = self._history(deployment_id)
        packages = [to_record(p) for p in history][-MAX_PACKAGE_HISTORY_LENGTH:]
        self._write_history(deployment, packages, history_version, previous)

    # ── Access keys ──────────────────────────────────────────────────────

    def _access_key_doc(self, account_id: str, access_key_id: str) -> dict:
        doc = self.documents.get(ACCESS_KEY, access_key_id)
        if doc is None or doc.get("account_id") != account_id:
            raise not_found(f"Access key {access_key_id} not found")
        return doc

    @storage_operation
    def add_access_key(self, account_id: str, access_key: AccessKey) -> str:
        name = access_key.name or generate_key()
        if self.documents.query(ACCESS_KEY, {"name": name}, limit=1):
            raise already_exists("Access key already exists")

        access_key_id = generate_id()
        record = to_record(access_key, exclude=_ACCESS_KEY_PROTECTED)
        record.update(
            id=access_key_id,
            name=name,
            account_id=account_id,
            created_time=self._clock(),
        )
        self.documents.put(ACCESS_KEY, access_key_id, record, expected_version=0)
        logger.info(f"Created access key {access_key_id} for account {account_id}")
        return access_key_id

    @storage_operation
    def get_access_key(self, account_id: str, access_key_id: str) -> AccessKey:
        return AccessKey.model_validate(self._access_key_doc(account_id, access_key_id))

    @storage_operation
    def get_access_keys(self, account_id: str) -> list[AccessKey]:
        docs = self.documents.query(ACCESS_KEY, {"account_id": account_id})
        docs.sort(key=lambda d: d.get("created_time") or 0)
        return [AccessKey.model_validate(doc) for doc in docs]

    @storage_operation
    def remove_access_key(self, account_id: str, access_key_id: str) -> None:
        self._access_key_doc(account_id, access_key_id)
        self.documents.delete(ACCESS_KEY, access_key_id)
        logger.info(f"Removed access key {access_key_id}")

    @storage_operation
    def update_access_key(self, account_id: str, access_key: AccessKey) -> None:
        if not access_key.id:
            raise invalid("Access key id is required")
        existing = self._access_key_doc(account_id, access_key.id)
        merged = _merge(existing, to_record(access_key, partial=True), _ACCESS_KEY_PROTECTED)
        self.documents.put(
            ACCESS_KEY, access_key.id, merged, _expected_version(access_key.version, existing)
        )

    # ── Blobs ────────────────────────────────────────────────────────────

    @storage_operation
    def add_blob(self, blob_id: str, stream: BinaryIO, length: int | None = None) -> str:
        return self.blobs.upload(blob_id, stream, length)

    @storage_operation
    def get_blob_url(self, blob_id: str) -> str:
        return self.blobs.read_url(blob_id, self.blob_url_ttl)

    @storage_operation
    def remove_blob(self, blob_id: str) -> None:
        self.blobs.delete(blob_id)
