"""FolderService: create, rename, move, delete, and details."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from . import paths
from .exceptions import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from .types import FolderDetails, MoveResult
from .utils import check_id, clean_name, utcnow

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from arbor.models.nodes import NodeBase

    from .config import DriveConfig
    from .identity import Requester
    from .permissions import PermissionService
    from .store import NodeStore
    from .trash import TrashService
    from .types import DeleteResult

logger = logging.getLogger(__name__)


class FolderService:
    """Folder lifecycle over the node store.

    Sibling-name uniqueness is ultimately enforced by the partial unique
    index; a violation surfaces here as ``ConflictError``.
    """

    def __init__(
        self,
        store: NodeStore,
        permissions: PermissionService,
        trash: TrashService,
        config: DriveConfig,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._trash = trash
        self._config = config

    async def get_owned_folder(
        self, session: AsyncSession, folder_id: str, owner_id: str
    ) -> NodeBase:
        """An active folder owned by *owner_id*; anything else is NotFound."""
        check_id(folder_id, "folder id")
        folder = await self._store.get(session, folder_id)
        if (
            folder is None
            or folder.owner_id != owner_id
            or not folder.is_folder
            or folder.is_deleted
        ):
            raise NotFoundError("Parent folder not found")
        return folder

    def _check_folder_depth(self, path: paths.NodePath, height: int = 0) -> None:
        if not paths.is_valid_depth(path, self._config.max_folder_depth - height):
            raise InvalidArgumentError(
                f"Maximum folder depth of {self._config.max_folder_depth} exceeded"
            )

    # ------------------------------------------------------------------
    # Create / rename
    # ------------------------------------------------------------------

    async def create(
        self,
        session: AsyncSession,
        name: str,
        owner_id: str,
        parent_id: str | None = None,
    ) -> NodeBase:
        """Create a folder under *parent_id* (root when None)."""
        name = clean_name(name)
        parent = None
        if parent_id is not None:
            parent = await self.get_owned_folder(session, parent_id, owner_id)

        folder = self._store.model(owner_id=owner_id, name=name, is_folder=True)
        folder.place(parent)
        self._check_folder_depth(folder.ancestors)

        await self._store.add(
            session, folder, conflict_message=f"A folder named {name!r} already exists here"
        )
        logger.debug("Created folder %s (%s) for %s", folder.id, name, owner_id)
        return folder

    async def rename(
        self,
        session: AsyncSession,
        node_id: str,
        owner_id: str,
        new_name: str,
    ) -> NodeBase:
        """Rename a file or folder in place."""
        new_name = clean_name(new_name)
        node = await self._permissions.require_write(session, node_id, owner_id)
        if node.name == new_name:
            return node
        if await self._store.name_taken(
            session, owner_id, node.parent_id, new_name, exclude_id=node.id
        ):
            raise ConflictError(f"An item named {new_name!r} already exists here")

        node.name = new_name
        node.updated_at = utcnow()
        await self._store.flush(session, f"An item named {new_name!r} already exists here")
        return node

    # ------------------------------------------------------------------
    # Move
    # ------------------------------------------------------------------

    async def move(
        self,
        session: AsyncSession,
        node_id: str,
        owner_id: str,
        new_parent_id: str | None,
    ) -> MoveResult:
        """Move a node under *new_parent_id* (root when None).

        Every descendant's path is rewritten in one batch, trashed ones
        included, so paths stay consistent if they are restored later.
        """
        check_id(node_id, "node id")
        if new_parent_id is not None:
            check_id(new_parent_id, "folder id")
            if new_parent_id == node_id:
                raise InvalidArgumentError("Cannot move an item into itself")

        wanted = [node_id] if new_parent_id is None else [node_id, new_parent_id]
        found = await self._store.get_many(session, wanted)

        node = found.get(node_id)
        if node is None or node.is_deleted:
            raise NotFoundError(f"Item not found: {node_id}")
        if node.owner_id != owner_id:
            raise ForbiddenError("Only the owner can move this item")

        dest = None
        if new_parent_id is not None:
            dest = found.get(new_parent_id)
            if dest is None or dest.owner_id != owner_id or dest.is_deleted or not dest.is_folder:
                raise NotFoundError("Destination folder not found")
            if node.is_folder and paths.is_descendant(dest.path, dest.id, node.path, node.id):
                raise InvalidArgumentError("Cannot move a folder into its own subfolder")

        if node.parent_id == (dest.id if dest else None):
            return MoveResult(node=node, updated_descendant_count=0)

        old_lineage = paths.lineage(node.path, node.id)
        new_path = paths.build_path(dest.path if dest else None, dest.id if dest else None)
        if node.is_folder:
            height = await self._store.folder_height(session, node)
            self._check_folder_depth(new_path, height)

        if await self._store.name_taken(session, owner_id, dest.id if dest else None, node.name):
            raise ConflictError(f"An item named {node.name!r} already exists in the destination")

        descendants = []
        if node.is_folder:
            descendants = await self._store.descendants(session, node, deleted=None)

        node.place(dest)
        node.updated_at = utcnow()
        new_lineage = paths.lineage(node.path, node.id)
        for row in descendants:
            row.path = paths.encode_path(paths.rewrite_prefix(old_lineage, new_lineage, row.path))
        await self._store.flush(
            session, f"An item named {node.name!r} already exists in the destination"
        )

        logger.info("Moved %s with %d descendants for %s", node.id, len(descendants), owner_id)
        return MoveResult(node=node, updated_descendant_count=len(descendants))

    # ------------------------------------------------------------------
    # Delete / details
    # ------------------------------------------------------------------

    async def delete(self, session: AsyncSession, node_id: str, owner_id: str) -> DeleteResult:
        """Soft-delete; hard deletion only happens through trash purge."""
        return await self._trash.soft_delete(session, node_id, owner_id)

    async def get_details(
        self, session: AsyncSession, folder_id: str, requester: Requester
    ) -> FolderDetails:
        """Aggregate counts and size of a readable folder's active subtree."""
        folder = await self._permissions.require_read(session, folder_id, requester)
        if not folder.is_folder:
            raise InvalidArgumentError("Item is not a folder")
        files, folders, size = await self._store.subtree_totals(session, folder)
        return FolderDetails(node=folder, file_count=files, folder_count=folders, total_size=size)
