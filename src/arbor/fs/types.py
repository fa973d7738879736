"""Result types returned by the services."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime

    from arbor.models.nodes import NodeBase
    from arbor.models.shares import ClassShareGrantBase, ShareGrantBase


class AccessReason(str, Enum):
    """Why an access check granted or denied."""

    OWNER = "owner"
    DIRECT = "direct"
    INHERITED = "inherited"
    CLASS = "class"
    NOT_FOUND = "not_found"
    DELETED = "deleted"
    NO_ACCESS = "no_access"
    NOT_OWNER = "not_owner"


@dataclass
class AccessDecision:
    """Outcome of a read or write check on one node."""

    granted: bool
    reason: AccessReason
    node: NodeBase | None = None
    via_node_id: str | None = None
    """Node carrying the grant that applied (the node itself, or an ancestor)."""


@dataclass
class UploadFile:
    """One file in an upload batch."""

    name: str
    data: bytes
    content_type: str | None = None


@dataclass
class Breadcrumb:
    id: str
    name: str


@dataclass
class ListingResult:
    """Children of a folder (or of the requester's root)."""

    nodes: list[NodeBase] = field(default_factory=list)
    current_folder: NodeBase | None = None
    breadcrumbs: list[Breadcrumb] = field(default_factory=list)


@dataclass
class FolderDetails:
    node: NodeBase
    file_count: int = 0
    folder_count: int = 0
    total_size: int = 0


@dataclass
class MoveResult:
    node: NodeBase
    updated_descendant_count: int = 0


@dataclass
class DeleteResult:
    node_id: str
    moved_count: int = 0


@dataclass
class RestoreResult:
    node_id: str
    restored_count: int = 0


@dataclass
class BulkRestoreResult:
    restored_count: int = 0
    restored_ids: list[str] = field(default_factory=list)
    skipped_ids: list[str] = field(default_factory=list)
    """Items left in trash because their parent is missing or trashed."""


@dataclass
class PurgeResult:
    purged_count: int = 0
    blobs_deleted: int = 0
    blob_failures: int = 0
    grants_deleted: int = 0
    purged_ids: list[str] = field(default_factory=list)


@dataclass
class TrashEntry:
    """A top-level trashed item plus what went to trash with it."""

    node: NodeBase
    descendant_count: int = 0
    total_size: int = 0


@dataclass
class TrashStats:
    file_count: int = 0
    folder_count: int = 0
    total_items: int = 0
    total_size: int = 0


@dataclass
class PublicLink:
    node_id: str
    code: str
    expires_at: datetime


@dataclass
class ResolvedLink:
    """Result of resolving a public code."""

    node: NodeBase
    url: str | None
    """Signed download URL, or None for folders (exported as a zip instead)."""

    @property
    def is_folder(self) -> bool:
        return self.node.is_folder


@dataclass
class SharedItem:
    """A node reachable through a grant, as seen by the grantee."""

    node: NodeBase
    via: AccessReason
    granted_by: str
    expires_at: datetime | None = None


@dataclass
class OutgoingShares:
    """Everything one owner currently shares."""

    public_links: list[NodeBase] = field(default_factory=list)
    user_grants: list[ShareGrantBase] = field(default_factory=list)
    class_grants: list[ClassShareGrantBase] = field(default_factory=list)


@dataclass
class ExportEntry:
    arcname: str
    node_id: str
    content_ref: str | None
    size: int = 0
    modified: datetime | None = None


@dataclass
class ExportPlan:
    """Archive layout computed before any bytes are streamed."""

    filename: str
    entries: list[ExportEntry] = field(default_factory=list)
    media_type: str = "application/zip"

    @property
    def total_size(self) -> int:
        return sum(e.size for e in self.entries)
