"""TrashService: soft-delete, restore, purge, and retention.

State machine::

    Active --soft_delete--> Trashed --restore--> Active
                            Trashed --purge----> Gone

Every row flipped by one ``soft_delete`` shares a ``trash_batch`` id, so a
restore brings back exactly what went to trash with the item and leaves
alone descendants that were trashed separately before it.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import case, func
from sqlalchemy import delete as sa_delete
from sqlmodel import select

from . import paths
from .exceptions import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from .types import (
    BulkRestoreResult,
    DeleteResult,
    PurgeResult,
    RestoreResult,
    TrashEntry,
    TrashStats,
)
from .utils import as_aware, check_ids, new_id, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from arbor.models.nodes import NodeBase
    from arbor.models.shares import ClassShareGrantBase, ShareGrantBase

    from .blobs import BlobStore
    from .config import DriveConfig
    from .permissions import PermissionService
    from .store import NodeStore

logger = logging.getLogger(__name__)


class TrashService:
    """Trash management for node subtrees.

    Purge is the only irreversible operation: it removes node rows, the
    grants that reference them, and (best-effort) their blobs.
    """

    def __init__(
        self,
        store: NodeStore,
        permissions: PermissionService,
        grant_model: type[ShareGrantBase],
        class_grant_model: type[ClassShareGrantBase],
        blobs: BlobStore,
        config: DriveConfig,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._grant_model = grant_model
        self._class_grant_model = class_grant_model
        self._blobs = blobs
        self._config = config

    # ------------------------------------------------------------------
    # Soft delete
    # ------------------------------------------------------------------

    async def soft_delete(
        self, session: AsyncSession, node_id: str, owner_id: str
    ) -> DeleteResult:
        """Move a node and its active descendants to trash."""
        node = await self._permissions.require_write(
            session, node_id, owner_id, allow_deleted=True
        )
        if node.is_deleted:
            raise ConflictError("Item is already in trash")

        rows = [node]
        if node.is_folder:
            rows.extend(await self._store.descendants(session, node, deleted=False))

        now = utcnow()
        batch = new_id()
        for row in rows:
            row.is_deleted = True
            row.deleted_at = now
            row.deleted_by = owner_id
            row.trash_batch = batch
            row.public_active = False
            row.updated_at = now
        await session.flush()

        logger.info("Trashed %s (%d rows) for %s", node.id, len(rows), owner_id)
        return DeleteResult(node_id=node.id, moved_count=len(rows))

    async def bulk_soft_delete(
        self, session: AsyncSession, node_ids: Iterable[str], owner_id: str
    ) -> DeleteResult:
        """Trash several nodes after checking every one of them.

        Items already swept into trash by an earlier item in the same call
        are skipped.
        """
        ids = check_ids(node_ids, "node id")
        nodes = await self._store.get_many(session, ids)
        for node_id in ids:
            node = nodes.get(node_id)
            if node is None:
                raise NotFoundError(f"Item not found: {node_id}")
            if node.owner_id != owner_id:
                raise ForbiddenError("Only the owner can modify this item")
            if node.is_deleted:
                raise ConflictError(f"Item is already in trash: {node.name}")

        moved = 0
        for node in sorted(nodes.values(), key=lambda n: len(n.ancestors)):
            if node.is_deleted:
                continue
            result = await self.soft_delete(session, node.id, owner_id)
            moved += result.moved_count
        return DeleteResult(node_id=ids[0], moved_count=moved)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(
        self,
        session: AsyncSession,
        node_id: str,
        owner_id: str,
        *,
        to_root: bool = False,
    ) -> RestoreResult:
        """Bring a trashed node, and what was trashed with it, back.

        The parent must exist and be active.  With ``to_root=True`` an
        orphaned item is re-parented to the owner's root instead.
        """
        node = await self._permissions.require_write(
            session, node_id, owner_id, allow_deleted=True
        )
        if not node.is_deleted:
            raise ConflictError("Item is not in trash")

        parent_available = await self._parent_available(session, node)
        if not parent_available and not to_root:
            raise InvalidArgumentError(
                "The parent folder is missing or in trash; restore it first or restore to root"
            )
        target_parent = node.parent_id if parent_available else None

        if await self._store.name_taken(session, owner_id, target_parent, node.name):
            raise ConflictError(f"An item named {node.name!r} already exists at the restore location")

        if node.trash_batch is not None:
            batch_rows = await self._store.descendants(
                session, node, deleted=True, trash_batch=node.trash_batch
            )
        else:
            batch_rows = await self._store.descendants(session, node, deleted=True)

        if target_parent != node.parent_id:
            await self._reparent_to_root(session, node)

        now = utcnow()
        for row in [*batch_rows, node]:
            row.is_deleted = False
            row.deleted_at = None
            row.deleted_by = None
            row.trash_batch = None
            row.updated_at = now
        await self._store.flush(session, f"An item named {node.name!r} already exists here")

        logger.info("Restored %s (%d rows) for %s", node.id, len(batch_rows) + 1, owner_id)
        return RestoreResult(node_id=node.id, restored_count=len(batch_rows) + 1)

    async def bulk_restore(
        self, session: AsyncSession, node_ids: Iterable[str], owner_id: str
    ) -> BulkRestoreResult:
        """Restore several items, skipping those whose parent is unavailable.

        Shallow items go first, so a parent restored in the same call makes
        its child eligible.
        """
        ids = check_ids(node_ids, "node id")
        nodes = await self._store.get_many(session, ids)
        for node_id in ids:
            node = nodes.get(node_id)
            if node is None:
                raise NotFoundError(f"Item not found: {node_id}")
            if node.owner_id != owner_id:
                raise ForbiddenError("Only the owner can modify this item")

        out = BulkRestoreResult()
        for node in sorted(nodes.values(), key=lambda n: len(n.ancestors)):
            if not node.is_deleted:
                # came back with an ancestor restored earlier in this call
                continue
            if not await self._parent_available(session, node):
                out.skipped_ids.append(node.id)
                continue
            result = await self.restore(session, node.id, owner_id)
            out.restored_count += result.restored_count
            out.restored_ids.append(node.id)
        return out

    async def _parent_available(self, session: AsyncSession, node: NodeBase) -> bool:
        if node.parent_id is None:
            return True
        parent = await self._store.get(session, node.parent_id)
        return parent is not None and not parent.is_deleted

    async def _reparent_to_root(self, session: AsyncSession, node: NodeBase) -> None:
        old_lineage = paths.lineage(node.path, node.id)
        subtree = await self._store.descendants(session, node, deleted=None)
        node.place(None)
        new_lineage = paths.lineage(node.path, node.id)
        for row in subtree:
            row.path = paths.encode_path(paths.rewrite_prefix(old_lineage, new_lineage, row.path))

    # ------------------------------------------------------------------
    # Purge
    # ------------------------------------------------------------------

    async def purge(self, session: AsyncSession, node_id: str, owner_id: str) -> PurgeResult:
        """Permanently remove a trashed node, its subtree, grants, and blobs."""
        node = await self._permissions.require_write(
            session, node_id, owner_id, allow_deleted=True
        )
        if not node.is_deleted:
            raise ConflictError("Only items in trash can be deleted permanently")
        rows = [node, *await self._store.descendants(session, node, deleted=None)]
        return await self._purge_rows(session, rows)

    async def bulk_purge(
        self, session: AsyncSession, node_ids: Iterable[str], owner_id: str
    ) -> PurgeResult:
        """Purge several trashed items; refuses the whole call if any is not the caller's trash."""
        ids = check_ids(node_ids, "node id")
        model = self._store.model
        result = await session.execute(
            select(model).where(
                model.id.in_(ids),  # type: ignore[union-attr]
                model.owner_id == owner_id,
                model.is_deleted == True,  # noqa: E712
            )
        )
        nodes = list(result.scalars().all())
        if len(nodes) != len(ids):
            raise ForbiddenError("Some items are not in your trash")

        rows: dict[str, NodeBase] = {}
        for node in nodes:
            rows[node.id] = node
            for row in await self._store.descendants(session, node, deleted=None):
                rows[row.id] = row
        return await self._purge_rows(session, list(rows.values()))

    async def empty_trash(self, session: AsyncSession, owner_id: str) -> PurgeResult:
        """Purge everything in *owner_id*'s trash."""
        model = self._store.model
        result = await session.execute(
            select(model).where(model.owner_id == owner_id, model.is_deleted == True)  # noqa: E712
        )
        rows = list(result.scalars().all())
        purged = await self._purge_rows(session, rows)
        logger.info("Emptied trash for %s: %d rows", owner_id, purged.purged_count)
        return purged

    async def retention_sweep(
        self,
        session: AsyncSession,
        max_age_days: int | None = None,
        *,
        now: datetime | None = None,
    ) -> PurgeResult:
        """Purge every trashed row older than the retention window, across owners."""
        days = self._config.trash_retention_days if max_age_days is None else max_age_days
        cutoff = (now or utcnow()) - timedelta(days=days)
        model = self._store.model
        result = await session.execute(
            select(model).where(
                model.is_deleted == True,  # noqa: E712
                model.deleted_at <= cutoff,  # type: ignore[operator]
            )
        )
        rows: dict[str, NodeBase] = {}
        for node in result.scalars().all():
            rows[node.id] = node
            if node.is_folder:
                for row in await self._store.descendants(session, node, deleted=None):
                    rows[row.id] = row
        purged = await self._purge_rows(session, list(rows.values()))
        if purged.purged_count:
            logger.info("Retention sweep purged %d rows older than %d days", purged.purged_count, days)
        return purged

    async def _purge_rows(self, session: AsyncSession, rows: list[NodeBase]) -> PurgeResult:
        if not rows:
            return PurgeResult()
        ids = [r.id for r in rows]
        refs = [r.content_ref for r in rows if not r.is_folder and r.content_ref]

        grants = await session.execute(
            sa_delete(self._grant_model).where(self._grant_model.node_id.in_(ids))  # type: ignore[union-attr]
        )
        class_grants = await session.execute(
            sa_delete(self._class_grant_model).where(
                self._class_grant_model.node_id.in_(ids)  # type: ignore[union-attr]
            )
        )
        for row in rows:
            await session.delete(row)
        await session.flush()

        out = PurgeResult(
            purged_count=len(ids),
            grants_deleted=(grants.rowcount or 0) + (class_grants.rowcount or 0),
            purged_ids=ids,
        )
        for ref in refs:
            try:
                await self._blobs.delete(ref)
                out.blobs_deleted += 1
            except Exception:
                out.blob_failures += 1
                logger.warning("Blob delete failed for %s", ref, exc_info=True)
        logger.info(
            "Purged %d rows, %d blobs (%d blob failures)",
            out.purged_count, out.blobs_deleted, out.blob_failures,
        )
        return out

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    async def list_trash(self, session: AsyncSession, owner_id: str) -> list[TrashEntry]:
        """Top-level trashed items with what went to trash alongside them, newest first."""
        model = self._store.model
        result = await session.execute(
            select(model).where(model.owner_id == owner_id, model.is_deleted == True)  # noqa: E712
        )
        rows = list(result.scalars().all())
        by_id = {r.id: r for r in rows}

        entries: list[TrashEntry] = []
        for row in rows:
            parent = by_id.get(row.parent_id) if row.parent_id else None
            if parent is not None and parent.trash_batch == row.trash_batch:
                continue
            prefix = row.subtree_prefix
            batch = [
                r for r in rows
                if r.trash_batch == row.trash_batch and r.path.startswith(prefix)
            ]
            size = row.size if not row.is_folder else 0
            size += sum(r.size for r in batch if not r.is_folder)
            entries.append(TrashEntry(node=row, descendant_count=len(batch), total_size=size))

        entries.sort(key=lambda e: as_aware(e.node.deleted_at or e.node.updated_at), reverse=True)
        return entries

    async def stats(self, session: AsyncSession, owner_id: str) -> TrashStats:
        model = self._store.model
        result = await session.execute(
            select(
                func.coalesce(func.sum(case((model.is_folder == False, 1), else_=0)), 0),  # noqa: E712
                func.coalesce(func.sum(case((model.is_folder == True, 1), else_=0)), 0),  # noqa: E712
                func.coalesce(func.sum(case((model.is_folder == False, model.size), else_=0)), 0),  # noqa: E712
            ).where(model.owner_id == owner_id, model.is_deleted == True)  # noqa: E712
        )
        files, folders, size = result.one()
        return TrashStats(
            file_count=int(files),
            folder_count=int(folders),
            total_items=int(files) + int(folders),
            total_size=int(size),
        )
