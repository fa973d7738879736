"""ArborAsync: async facade that owns sessions and wires the services."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from arbor.events import EventBus, EventType, NodeEvent
from arbor.fs.cache import TTLUrlCache
from arbor.fs.config import DriveConfig
from arbor.fs.export import ZipExportService
from arbor.fs.files import FileService
from arbor.fs.folders import FolderService
from arbor.fs.identity import InMemoryUserDirectory
from arbor.fs.permissions import PermissionService
from arbor.fs.sharing import ShareService
from arbor.fs.store import NodeStore
from arbor.fs.trash import TrashService
from arbor.models.nodes import Node
from arbor.models.shares import ClassShareGrant, ShareGrant

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Callable, Iterable, Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncEngine

    from arbor.fs.blobs import BlobStore
    from arbor.fs.cache import UrlCache
    from arbor.fs.identity import Assignment, Requester, UserDirectory
    from arbor.fs.sharing import LinkDuration
    from arbor.fs.types import (
        AccessDecision,
        BulkRestoreResult,
        DeleteResult,
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
    from arbor.models.nodes import NodeBase
    from arbor.models.shares import ClassShareGrantBase, ShareGrantBase

logger = logging.getLogger(__name__)


class ArborAsync:
    """Async facade over the storage, sharing, trash, and export services.

    Each public method runs in its own session: committed on success,
    rolled back on any exception.  Events fire only after a commit.

    Usage::

        blobs = LocalBlobStore("/var/arbor", base_url="https://cdn/x", secret="...")
        arbor = ArborAsync(url="sqlite+aiosqlite:///arbor.db", blobs=blobs)
        await arbor.create_tables()
        folder = await arbor.create_folder(Staff("u1"), "Notes")
    """

    def __init__(
        self,
        *,
        blobs: BlobStore,
        engine: AsyncEngine | None = None,
        url: str | None = None,
        users: UserDirectory | None = None,
        cache: UrlCache | None = None,
        config: DriveConfig | None = None,
        node_model: type[NodeBase] = Node,
        grant_model: type[ShareGrantBase] = ShareGrant,
        class_grant_model: type[ClassShareGrantBase] = ClassShareGrant,
    ) -> None:
        if engine is None and url is None:
            raise ValueError("Either engine or url is required")
        config = config or DriveConfig()
        if blobs.url_expires_in < config.url_expires_in:
            raise ValueError(
                f"Blob store URLs expire after {blobs.url_expires_in}s, "
                f"shorter than url_expires_in={config.url_expires_in}s"
            )
        self._owns_engine = engine is None
        self._engine: AsyncEngine = engine or create_async_engine(url)  # type: ignore[arg-type]
        self._session_factory = async_sessionmaker(
            self._engine, class_=AsyncSession, expire_on_commit=False
        )
        self._models: tuple[type[SQLModel], ...] = (node_model, grant_model, class_grant_model)
        self._closed = False

        self.config = config
        self.users = users if users is not None else InMemoryUserDirectory()
        self.cache = cache if cache is not None else TTLUrlCache()
        self.blobs = blobs
        self.events = EventBus()

        self.store = NodeStore(node_model)
        self.permissions = PermissionService(self.store, grant_model, class_grant_model)
        self.trash = TrashService(
            self.store, self.permissions, grant_model, class_grant_model, blobs, self.config
        )
        self.folders = FolderService(self.store, self.permissions, self.trash, self.config)
        self.files = FileService(
            self.store, self.permissions, self.folders, blobs, self.cache, self.config
        )
        self.shares = ShareService(
            self.store,
            self.permissions,
            self.files,
            grant_model,
            class_grant_model,
            self.users,
            self.config,
        )
        self.exports = ZipExportService(
            self.store, self.permissions, self.shares, blobs, self.config
        )

        self.events.register(EventType.NODE_PURGED, self._forget_urls)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_tables(self) -> None:
        """Create the node and grant tables if they do not exist."""
        tables = [m.__table__ for m in self._models]  # type: ignore[attr-defined]
        async with self._engine.begin() as conn:
            await conn.run_sync(lambda sync_conn: SQLModel.metadata.create_all(sync_conn, tables=tables))

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.events.clear()
        if self._owns_engine:
            await self._engine.dispose()

    async def __aenter__(self) -> ArborAsync:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    @asynccontextmanager
    async def _session(self) -> AsyncGenerator[AsyncSession]:
        if self._closed:
            raise RuntimeError("ArborAsync is closed")
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def _run(self, op: Callable[[AsyncSession], Any]) -> Any:
        async with self._session() as session:
            return await op(session)

    async def _emit(
        self, event_type: EventType, node_ids: Iterable[str], user_id: str | None, count: int = 0
    ) -> None:
        await self.events.emit(NodeEvent(event_type, tuple(node_ids), user_id, count))

    async def _forget_urls(self, event: NodeEvent) -> None:
        for node_id in event.node_ids:
            await self.cache.invalidate_node(node_id)

    # ------------------------------------------------------------------
    # Access checks
    # ------------------------------------------------------------------

    async def check_read_access(self, requester: Requester, node_id: str) -> AccessDecision:
        return await self._run(
            lambda s: self.permissions.check_read_access(s, node_id, requester)
        )

    async def check_bulk_read_access(
        self, requester: Requester, node_ids: Iterable[str]
    ) -> dict[str, AccessDecision]:
        ids = list(node_ids)
        return await self._run(
            lambda s: self.permissions.check_bulk_read_access(s, ids, requester)
        )

    async def check_write_access(self, requester: Requester, node_id: str) -> AccessDecision:
        return await self._run(
            lambda s: self.permissions.check_write_access(s, node_id, requester.user_id)
        )

    # ------------------------------------------------------------------
    # Browsing
    # ------------------------------------------------------------------

    async def list_nodes(
        self, requester: Requester, parent_id: str | None = None
    ) -> ListingResult:
        return await self._run(lambda s: self.files.list_nodes(s, requester, parent_id))

    async def get_info(self, requester: Requester, node_id: str) -> NodeBase:
        return await self._run(lambda s: self.files.get_info(s, node_id, requester))

    async def folder_details(self, requester: Requester, folder_id: str) -> FolderDetails:
        return await self._run(lambda s: self.folders.get_details(s, folder_id, requester))

    async def search(self, requester: Requester, query: str) -> list[NodeBase]:
        return await self._run(lambda s: self.files.search(s, requester, query))

    async def descendant_files(self, requester: Requester, folder_id: str) -> list[NodeBase]:
        return await self._run(
            lambda s: self.files.list_descendant_files(s, folder_id, requester)
        )

    async def download_url(self, requester: Requester, node_id: str) -> str:
        return await self._run(lambda s: self.files.get_download_url(s, node_id, requester))

    async def preview_url(self, requester: Requester, node_id: str) -> str:
        return await self._run(lambda s: self.files.get_preview_url(s, node_id, requester))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create_folder(
        self, requester: Requester, name: str, parent_id: str | None = None
    ) -> NodeBase:
        folder = await self._run(
            lambda s: self.folders.create(s, name, requester.user_id, parent_id)
        )
        await self._emit(EventType.NODE_CREATED, [folder.id], requester.user_id, 1)
        return folder

    async def upload(
        self,
        requester: Requester,
        uploads: Sequence[UploadFile],
        parent_id: str | None = None,
    ) -> list[NodeBase]:
        nodes = await self._run(
            lambda s: self.files.register_upload(s, uploads, requester.user_id, parent_id)
        )
        await self._emit(EventType.NODE_CREATED, [n.id for n in nodes], requester.user_id, len(nodes))
        return nodes

    async def rename(self, requester: Requester, node_id: str, new_name: str) -> NodeBase:
        return await self._run(
            lambda s: self.folders.rename(s, node_id, requester.user_id, new_name)
        )

    async def move(
        self, requester: Requester, node_id: str, new_parent_id: str | None
    ) -> MoveResult:
        result = await self._run(
            lambda s: self.folders.move(s, node_id, requester.user_id, new_parent_id)
        )
        await self._emit(
            EventType.NODE_MOVED, [node_id], requester.user_id, result.updated_descendant_count
        )
        return result

    async def delete(self, requester: Requester, node_id: str) -> DeleteResult:
        result = await self._run(lambda s: self.folders.delete(s, node_id, requester.user_id))
        await self._emit(EventType.NODE_TRASHED, [node_id], requester.user_id, result.moved_count)
        return result

    async def bulk_delete(self, requester: Requester, node_ids: Iterable[str]) -> DeleteResult:
        ids = list(node_ids)
        result = await self._run(
            lambda s: self.trash.bulk_soft_delete(s, ids, requester.user_id)
        )
        await self._emit(EventType.NODE_TRASHED, ids, requester.user_id, result.moved_count)
        return result

    # ------------------------------------------------------------------
    # Trash
    # ------------------------------------------------------------------

    async def restore(
        self, requester: Requester, node_id: str, *, to_root: bool = False
    ) -> RestoreResult:
        result = await self._run(
            lambda s: self.trash.restore(s, node_id, requester.user_id, to_root=to_root)
        )
        await self._emit(EventType.NODE_RESTORED, [node_id], requester.user_id, result.restored_count)
        return result

    async def bulk_restore(
        self, requester: Requester, node_ids: Iterable[str]
    ) -> BulkRestoreResult:
        ids = list(node_ids)
        result = await self._run(lambda s: self.trash.bulk_restore(s, ids, requester.user_id))
        await self._emit(
            EventType.NODE_RESTORED, result.restored_ids, requester.user_id, result.restored_count
        )
        return result

    async def purge(self, requester: Requester, node_id: str) -> PurgeResult:
        return await self._purge_with(
            requester.user_id, lambda s: self.trash.purge(s, node_id, requester.user_id)
        )

    async def bulk_purge(self, requester: Requester, node_ids: Iterable[str]) -> PurgeResult:
        ids = list(node_ids)
        return await self._purge_with(
            requester.user_id, lambda s: self.trash.bulk_purge(s, ids, requester.user_id)
        )

    async def empty_trash(self, requester: Requester) -> PurgeResult:
        return await self._purge_with(
            requester.user_id, lambda s: self.trash.empty_trash(s, requester.user_id)
        )

    async def retention_sweep(
        self, max_age_days: int | None = None, *, now: datetime | None = None
    ) -> PurgeResult:
        return await self._purge_with(
            None, lambda s: self.trash.retention_sweep(s, max_age_days, now=now)
        )

    async def _purge_with(
        self, user_id: str | None, op: Callable[[AsyncSession], Any]
    ) -> PurgeResult:
        result: PurgeResult = await self._run(op)
        if result.purged_count:
            await self._emit(EventType.NODE_PURGED, result.purged_ids, user_id, result.purged_count)
        return result

    async def list_trash(self, requester: Requester) -> list[TrashEntry]:
        return await self._run(lambda s: self.trash.list_trash(s, requester.user_id))

    async def trash_stats(self, requester: Requester) -> TrashStats:
        return await self._run(lambda s: self.trash.stats(s, requester.user_id))

    # ------------------------------------------------------------------
    # Public links
    # ------------------------------------------------------------------

    async def create_public_link(
        self, requester: Requester, node_id: str, duration: LinkDuration | str
    ) -> PublicLink:
        link = await self._run(
            lambda s: self.shares.create_public_link(s, node_id, requester.user_id, duration)
        )
        await self._emit(EventType.SHARE_CHANGED, [node_id], requester.user_id)
        return link

    async def revoke_public_link(self, requester: Requester, node_id: str) -> None:
        await self._run(
            lambda s: self.shares.revoke_public_link(s, node_id, requester.user_id)
        )
        await self._emit(EventType.SHARE_CHANGED, [node_id], requester.user_id)

    async def resolve_public_link(self, code: str) -> ResolvedLink:
        return await self._run(lambda s: self.shares.resolve_public_link(s, code))

    # ------------------------------------------------------------------
    # User and class grants
    # ------------------------------------------------------------------

    async def share_with_user(
        self,
        requester: Requester,
        node_id: str,
        grantee_id: str,
        *,
        expires_at: datetime | None = None,
    ) -> ShareGrantBase:
        grant = await self._run(
            lambda s: self.shares.share_with_user(
                s, node_id, requester.user_id, grantee_id, expires_at=expires_at
            )
        )
        await self._emit(EventType.SHARE_CHANGED, [node_id], requester.user_id)
        return grant

    async def revoke_user_share(
        self, requester: Requester, node_id: str, target_id: str | None = None
    ) -> None:
        await self._run(
            lambda s: self.shares.revoke_user_share(s, node_id, requester.user_id, target_id)
        )
        await self._emit(EventType.SHARE_CHANGED, [node_id], requester.user_id)

    async def bulk_remove_self(self, requester: Requester, node_ids: Iterable[str]) -> int:
        ids = list(node_ids)
        return await self._run(
            lambda s: self.shares.bulk_remove_self(s, ids, requester.user_id)
        )

    async def list_shares(self, requester: Requester, node_id: str) -> list[ShareGrantBase]:
        return await self._run(lambda s: self.shares.list_shares(s, node_id, requester.user_id))

    async def shared_with_me(self, requester: Requester) -> list[SharedItem]:
        return await self._run(lambda s: self.shares.list_shared_with_me(s, requester))

    async def shared_by_me(self, requester: Requester) -> OutgoingShares:
        return await self._run(lambda s: self.shares.list_shared_by_me(s, requester.user_id))

    async def share_with_class(
        self,
        requester: Requester,
        node_id: str,
        cohorts: Sequence[Assignment],
        *,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> list[ClassShareGrantBase]:
        grants = await self._run(
            lambda s: self.shares.share_with_class(
                s, node_id, requester, cohorts, description=description, expires_at=expires_at
            )
        )
        await self._emit(EventType.SHARE_CHANGED, [node_id], requester.user_id)
        return grants

    async def remove_class_shares(
        self, requester: Requester, node_id: str, **filters: str | None
    ) -> int:
        return await self._run(
            lambda s: self.shares.remove_class_shares(s, node_id, requester.user_id, **filters)
        )

    async def list_class_shares(
        self, requester: Requester, node_id: str
    ) -> list[ClassShareGrantBase]:
        return await self._run(
            lambda s: self.shares.list_class_shares(s, node_id, requester.user_id)
        )

    async def update_class_share_expiration(
        self, requester: Requester, share_id: str, expires_at: datetime | None
    ) -> ClassShareGrantBase:
        return await self._run(
            lambda s: self.shares.update_class_share_expiration(
                s, share_id, requester.user_id, expires_at
            )
        )

    async def class_materials(
        self, requester: Requester, subject_id: str | None = None
    ) -> list[SharedItem]:
        return await self._run(lambda s: self.shares.class_materials(s, requester, subject_id))

    async def purge_expired_grants(self) -> int:
        return await self._run(lambda s: self.shares.purge_expired_grants(s))

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_nodes(self, requester: Requester, node_ids: Iterable[str]) -> ExportPlan:
        """Check access and plan an archive; stream it with ``stream_export``."""
        ids = list(node_ids)
        return await self._run(lambda s: self.exports.plan_nodes(s, ids, requester))

    async def export_folder(self, requester: Requester, folder_id: str) -> ExportPlan:
        return await self._run(lambda s: self.exports.plan_folder(s, folder_id, requester))

    async def export_public_folder(self, code: str) -> ExportPlan:
        return await self._run(lambda s: self.exports.plan_public_folder(s, code))

    def stream_export(self, plan: ExportPlan) -> AsyncIterator[bytes]:
        """Zip bytes for a plan.  Needs no session: only blobs are read."""
        return self.exports.stream(plan)
