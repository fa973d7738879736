"""Storage layer: node store, access rules, folders, files, sharing, trash, export."""

from arbor.fs.blobs import BlobStore, LocalBlobStore
from arbor.fs.cache import TTLUrlCache, UrlCache
from arbor.fs.config import DriveConfig
from arbor.fs.exceptions import (
    ArborError,
    ConflictError,
    DependencyUnavailableError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidShareLinkError,
    NotFoundError,
)
from arbor.fs.export import ZipExportService
from arbor.fs.files import FileService
from arbor.fs.folders import FolderService
from arbor.fs.identity import (
    Assignment,
    Cohort,
    InMemoryUserDirectory,
    Requester,
    Staff,
    Student,
    Teacher,
    UserDirectory,
    UserProfile,
)
from arbor.fs.permissions import AccessRule, PermissionService
from arbor.fs.sharing import LinkDuration, ShareService
from arbor.fs.store import NodeStore
from arbor.fs.trash import TrashService
from arbor.fs.types import (
    AccessDecision,
    AccessReason,
    Breadcrumb,
    BulkRestoreResult,
    DeleteResult,
    ExportEntry,
    ExportPlan,
    FolderDetails,
    ListingResult,
    MoveResult,
    OutgoingShares,
    PublicLink,
    PurgeResult,
    ResolvedLink,
    RestoreResult,
    SharedItem,
    TrashEntry,
    TrashStats,
    UploadFile,
)

__all__ = [
    "AccessDecision",
    "AccessReason",
    "AccessRule",
    "ArborError",
    "Assignment",
    "BlobStore",
    "Breadcrumb",
    "BulkRestoreResult",
    "Cohort",
    "ConflictError",
    "DeleteResult",
    "DependencyUnavailableError",
    "DriveConfig",
    "ExportEntry",
    "ExportPlan",
    "FileService",
    "FolderDetails",
    "FolderService",
    "ForbiddenError",
    "InMemoryUserDirectory",
    "InvalidArgumentError",
    "InvalidShareLinkError",
    "LinkDuration",
    "ListingResult",
    "LocalBlobStore",
    "MoveResult",
    "NodeStore",
    "NotFoundError",
    "OutgoingShares",
    "PermissionService",
    "PublicLink",
    "PurgeResult",
    "Requester",
    "ResolvedLink",
    "RestoreResult",
    "ShareService",
    "SharedItem",
    "Staff",
    "Student",
    "TTLUrlCache",
    "Teacher",
    "TrashEntry",
    "TrashService",
    "TrashStats",
    "UploadFile",
    "UrlCache",
    "UserDirectory",
    "UserProfile",
    "ZipExportService",
]
