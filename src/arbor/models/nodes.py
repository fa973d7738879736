"""Node model: the unified file/folder metadata row.

Provides ``NodeBase`` (non-table) and ``Node`` (concrete table).  Subclass
``NodeBase`` with ``table=True`` and a custom ``__tablename__`` to use a
different table name; pass ``node_indexes(<tablename>)`` as
``__table_args__`` to keep the sibling-uniqueness guarantee.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import DateTime, Index, text
from sqlmodel import Field, SQLModel

from arbor.fs import paths


class NodeStatus(str, Enum):
    """Processing state of a stored file."""

    AVAILABLE = "available"
    PROCESSING = "processing"
    ARCHIVED = "archived"
    ERROR = "error"


def node_indexes(tablename: str) -> tuple[Index, ...]:
    """Indexes every node table needs.

    ``(owner_id, parent_key, name)`` is unique among rows that are not
    deleted.  ``parent_key`` is the parent id, or ``""`` at root, so root
    siblings are covered too (NULLs never collide in a unique index).
    """
    return (
        Index(
            f"uq_{tablename}_active_sibling_name",
            "owner_id",
            "parent_key",
            "name",
            unique=True,
            sqlite_where=text("is_deleted = 0"),
            postgresql_where=text("is_deleted = false"),
        ),
        Index(f"ix_{tablename}_owner_parent", "owner_id", "parent_id"),
    )


class NodeBase(SQLModel):
    """Base fields for a node. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    owner_id: str = Field(index=True)
    name: str = Field(index=True)
    is_folder: bool = Field(default=False)
    parent_id: str | None = Field(default=None)
    parent_key: str = Field(default="")
    path: str = Field(default=paths.ROOT, index=True)
    size: int = Field(default=0)
    content_ref: str | None = Field(default=None)
    mime_type: str | None = Field(default=None)
    status: str = Field(default=NodeStatus.AVAILABLE.value)

    is_deleted: bool = Field(default=False, index=True)
    deleted_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    deleted_by: str | None = Field(default=None)
    trash_batch: str | None = Field(default=None)

    public_code: str | None = Field(default=None, unique=True)
    public_active: bool = Field(default=False)
    public_expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    download_count: int = Field(default=0)
    last_accessed_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def ancestors(self) -> paths.NodePath:
        """Ancestor ids, root first."""
        return paths.decode_path(self.path)

    @property
    def subtree_prefix(self) -> str:
        """Encoded path prefix of every strict descendant."""
        return paths.subtree_prefix(self.path, self.id)

    def place(self, parent: NodeBase | None) -> None:
        """Point this node at *parent* (``None`` = root) and recompute its path."""
        if parent is None:
            self.parent_id = None
            self.parent_key = ""
            self.path = paths.ROOT
        else:
            self.parent_id = parent.id
            self.parent_key = parent.id
            self.path = paths.encode_path(paths.build_path(parent.path, parent.id))


class Node(NodeBase, table=True):
    """Default node table: ``arbor_nodes``."""

    __tablename__ = "arbor_nodes"
    __table_args__ = node_indexes("arbor_nodes")
