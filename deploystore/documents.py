"""Document store adapter: records addressed by (kind, id).

The facade only relies on the DocumentStore protocol. SQLDocumentStore is
the SQLModel-backed implementation; each call runs in its own session, so
every operation is atomic for a single record and nothing more.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from sqlalchemy import delete, update
from sqlalchemy.engine import Engine
from sqlmodel import select

from .database import session_scope
from .db_models import Document, utcnow
from .errors import already_exists, translated_errors

logger = logging.getLogger(__name__)

# Key under which get()/query() expose the stored version of a record.
VERSION_FIELD = "version"


class DocumentStore(Protocol):
    """Minimal document store contract used by the storage facade."""

    def put(
        self, kind: str, doc_id: str, record: dict[str, Any], expected_version: int | None = None
    ) -> int: ...

    def get(self, kind: str, doc_id: str) -> dict[str, Any] | None: ...

    def query(
        self, kind: str, filters: dict[str, Any], limit: int | None = None
    ) -> list[dict[str, Any]]: ...

    def keys(self, kind: str) -> list[str]: ...

    def delete(self, kind: str, doc_ids: str | Iterable[str]) -> None: ...

    def ping(self) -> None: ...


def _matches(data: dict[str, Any], filters: dict[str, Any]) -> bool:
    return all(data.get(field) == value for field, value in filters.items())


def _with_version(row: Document) -> dict[str, Any]:
    record = dict(row.data or {})
    record[VERSION_FIELD] = row.version
    return record


class SQLDocumentStore:
    """Document store over a single SQL table of JSON documents."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def put(
        self, kind: str, doc_id: str, record: dict[str, Any], expected_version: int | None = None
    ) -> int:
        """Write *record* and return its new version.

        With expected_version set, the write only succeeds if the stored
        version still equals it (0 means the record must not exist yet);
        otherwise ALREADY_EXISTS is raised.
        """
        data = {k: v for k, v in record.items() if k != VERSION_FIELD}
        with translated_errors():
            if expected_version is None:
                return self._upsert(kind, doc_id, data)
            if expected_version == 0:
                return self._insert(kind, doc_id, data)
            return self._compare_and_set(kind, doc_id, data, expected_version)

    def _upsert(self, kind: str, doc_id: str, data: dict[str, Any]) -> int:
        with session_scope(self.engine) as session:
            row = session.get(Document, (kind, doc_id))
            if row:
                row.data = data
                row.version += 1
                row.updated_at = utcnow()
            else:
                row = Document(kind=kind, id=doc_id, data=data)
            session.add(row)
            version = row.version
        logger.debug(f"Stored {kind} {doc_id} (version {version})")
        return version

    def _insert(self, kind: str, doc_id: str, data: dict[str, Any]) -> int:
        with session_scope(self.engine) as session:
            if session.get(Document, (kind, doc_id)) is not None:
                raise already_exists(f"{kind} {doc_id} already exists")
            session.add(Document(kind=kind, id=doc_id, data=data))
        logger.debug(f"Created {kind} {doc_id}")
        return 1

    def _compare_and_set(
        self, kind: str, doc_id: str, data: dict[str, Any], expected_version: int
    ) -> int:
        stmt = (
            update(Document)
            .where(
                Document.kind == kind,
                Document.id == doc_id,
                Document.version == expected_version,
            )
            .values(data=data, version=expected_version + 1, updated_at=utcnow())
        )
        with session_scope(self.engine) as session:
            result = session.connection().execute(stmt)
            if result.rowcount != 1:
                raise already_exists(
                    f"{kind} {doc_id} was modified concurrently "
                    f"(expected version {expected_version})"
                )
        logger.debug(f"Updated {kind} {doc_id} (version {expected_version + 1})")
        return expected_version + 1

    def get(self, kind: str, doc_id: str) -> dict[str, Any] | None:
        with translated_errors(), session_scope(self.engine) as session:
            row = session.get(Document, (kind, doc_id))
            return _with_version(row) if row else None

    def query(
        self, kind: str, filters: dict[str, Any], limit: int | None = None
    ) -> list[dict[str, Any]]:
        """Return records of *kind* whose fields equal every value in *filters*."""
        with translated_errors(), session_scope(self.engine) as session:
            rows = list(session.exec(select(Document).where(Document.kind == kind)).all())

        results = []
        for row in rows:
            if _matches(row.data or {}, filters):
                results.append(_with_version(row))
                if limit is not None and len(results) >= limit:
                    break
        return results

    def keys(self, kind: str) -> list[str]:
        with translated_errors(), session_scope(self.engine) as session:
            return list(session.exec(select(Document.id).where(Document.kind == kind)).all())

    def delete(self, kind: str, doc_ids: str | Iterable[str]) -> None:
        ids = [doc_ids] if isinstance(doc_ids, str) else list(doc_ids)
        if not ids:
            return
        stmt = delete(Document).where(Document.kind == kind, Document.id.in_(ids))
        with translated_errors(), session_scope(self.engine) as session:
            session.connection().execute(stmt)
        logger.debug(f"Deleted {len(ids)} {kind} record(s)")

    def ping(self) -> None:
        """Trivial read used by the health monitor."""
        with translated_errors(), session_scope(self.engine) as session:
            session.exec(select(Document.id).limit(1)).first()
