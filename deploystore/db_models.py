"""SQLModel table backing the document store.

Every entity kind shares one table: a record is a JSON document addressed by
its (kind, id) composite key, the same shape a cloud document store uses.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlmodel import JSON, Column, Field, SQLModel


def utcnow() -> datetime:
    """Return current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


class Document(SQLModel, table=True):
    """A stored entity record."""

    __tablename__ = "documents"

    kind: str = Field(primary_key=True)
    id: str = Field(primary_key=True)
    data: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    version: int = Field(default=1)
    updated_at: datetime = Field(default_factory=utcnow)
