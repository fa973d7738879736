"""Arbor: hierarchical file storage with sharing, trash, and streaming export."""

__version__ = "0.1.0"

from arbor._arbor_async import ArborAsync
from arbor.events import EventBus, EventType, NodeEvent
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
from arbor.fs.sharing import LinkDuration
from arbor.fs.types import AccessDecision, AccessReason, ExportPlan, UploadFile
from arbor.models import ClassShareGrant, Node, ShareGrant

__all__ = [
    "AccessDecision",
    "AccessReason",
    "ArborAsync",
    "ArborError",
    "Assignment",
    "BlobStore",
    "ClassShareGrant",
    "Cohort",
    "ConflictError",
    "DependencyUnavailableError",
    "DriveConfig",
    "EventBus",
    "EventType",
    "ExportPlan",
    "ForbiddenError",
    "InMemoryUserDirectory",
    "InvalidArgumentError",
    "InvalidShareLinkError",
    "LinkDuration",
    "LocalBlobStore",
    "Node",
    "NodeEvent",
    "NotFoundError",
    "Requester",
    "ShareGrant",
    "Staff",
    "Student",
    "TTLUrlCache",
    "Teacher",
    "UploadFile",
    "UrlCache",
    "UserDirectory",
    "UserProfile",
    "__version__",
]
