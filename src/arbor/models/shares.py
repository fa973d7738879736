"""Grant models: per-user and per-cohort read grants on nodes.

Provides ``ShareGrantBase`` / ``ShareGrant`` and ``ClassShareGrantBase`` /
``ClassShareGrant``.  Subclass a base with ``table=True`` and a custom
``__tablename__`` to use a different table name per backend.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field, SQLModel


class ShareGrantBase(SQLModel):
    """Base fields for a direct user grant. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    node_id: str = Field(index=True)
    grantee_id: str = Field(index=True)
    granted_by: str = Field(default="")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class ShareGrant(ShareGrantBase, table=True):
    """Default grant table: ``arbor_share_grants``."""

    __tablename__ = "arbor_share_grants"
    __table_args__ = (UniqueConstraint("node_id", "grantee_id", name="uq_arbor_share_grant"),)


class ClassShareGrantBase(SQLModel):
    """Base fields for a cohort grant. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()), primary_key=True)
    node_id: str = Field(index=True)
    shared_by: str = Field(index=True)
    subject_id: str = Field(default="")
    batch: str = Field(index=True)
    semester: str
    section: str
    description: str | None = Field(default=None)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class ClassShareGrant(ClassShareGrantBase, table=True):
    """Default cohort grant table: ``arbor_class_share_grants``."""

    __tablename__ = "arbor_class_share_grants"
    __table_args__ = (
        UniqueConstraint(
            "node_id", "batch", "semester", "section", "subject_id",
            name="uq_arbor_class_share_grant",
        ),
    )
