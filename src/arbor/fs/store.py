"""NodeStore: node lookups, subtree queries, and guarded writes.

Stateless: receives the concrete node model at construction and a session
at call time.  Every query that walks a subtree is a prefix match on the
encoded ``path`` column; see ``arbor.fs.paths``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from . import paths
from .exceptions import ConflictError

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from arbor.models.nodes import NodeBase


class NodeStore:
    """Node record lookup and subtree helpers.

    Receives the concrete node model at construction so callers can
    use custom SQLModel subclasses.
    """

    def __init__(self, node_model: type[NodeBase]) -> None:
        self._node_model = node_model

    @property
    def model(self) -> type[NodeBase]:
        return self._node_model

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get(self, session: AsyncSession, node_id: str) -> NodeBase | None:
        """Get a node by id, trashed or not."""
        model = self._node_model
        result = await session.execute(select(model).where(model.id == node_id))
        return result.scalar_one_or_none()

    async def get_many(
        self, session: AsyncSession, node_ids: Iterable[str]
    ) -> dict[str, NodeBase]:
        """Fetch several nodes in one round trip, keyed by id."""
        ids = list(dict.fromkeys(node_ids))
        if not ids:
            return {}
        model = self._node_model
        result = await session.execute(select(model).where(model.id.in_(ids)))  # type: ignore[union-attr]
        return {n.id: n for n in result.scalars().all()}

    async def children(
        self,
        session: AsyncSession,
        owner_id: str | None,
        parent_id: str | None,
    ) -> list[NodeBase]:
        """Active children of *parent_id*, folders first then by name.

        ``owner_id`` scopes the root level; pass None to list any owner's
        children of a non-root folder.
        """
        model = self._node_model
        conditions = [model.parent_key == (parent_id or ""), model.is_deleted == False]  # noqa: E712
        if owner_id is not None:
            conditions.append(model.owner_id == owner_id)
        result = await session.execute(
            select(model)
            .where(*conditions)
            .order_by(model.is_folder.desc(), model.name)  # type: ignore[union-attr]
        )
        return list(result.scalars().all())

    async def sibling_names(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None,
        *,
        exclude_id: str | None = None,
    ) -> set[str]:
        """Names of active siblings under *parent_id*."""
        model = self._node_model
        query = select(model.name).where(
            model.owner_id == owner_id,
            model.parent_key == (parent_id or ""),
            model.is_deleted == False,  # noqa: E712
        )
        if exclude_id is not None:
            query = query.where(model.id != exclude_id)
        result = await session.execute(query)
        return set(result.scalars().all())

    async def name_taken(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None,
        name: str,
        *,
        exclude_id: str | None = None,
    ) -> bool:
        model = self._node_model
        query = select(func.count()).select_from(model).where(
            model.owner_id == owner_id,
            model.parent_key == (parent_id or ""),
            model.name == name,
            model.is_deleted == False,  # noqa: E712
        )
        if exclude_id is not None:
            query = query.where(model.id != exclude_id)
        result = await session.execute(query)
        return (result.scalar_one() or 0) > 0

    # ------------------------------------------------------------------
    # Subtrees
    # ------------------------------------------------------------------

    def in_subtree(self, node: NodeBase):  # noqa: ANN201
        """SQL condition matching every strict descendant of *node*."""
        return self._node_model.path.startswith(node.subtree_prefix, autoescape=True)  # type: ignore[union-attr]

    async def descendants(
        self,
        session: AsyncSession,
        node: NodeBase,
        *,
        deleted: bool | None = False,
        files_only: bool = False,
        trash_batch: str | None = None,
    ) -> list[NodeBase]:
        """Strict descendants of *node*.

        ``deleted=None`` returns rows in any state.  ``trash_batch`` narrows
        to rows trashed by one soft-delete.
        """
        model = self._node_model
        conditions = [self.in_subtree(node)]
        if deleted is not None:
            conditions.append(model.is_deleted == deleted)
        if files_only:
            conditions.append(model.is_folder == False)  # noqa: E712
        if trash_batch is not None:
            conditions.append(model.trash_batch == trash_batch)
        result = await session.execute(
            select(model).where(*conditions).order_by(model.path, model.name)
        )
        return list(result.scalars().all())

    async def subtree_totals(
        self, session: AsyncSession, node: NodeBase
    ) -> tuple[int, int, int]:
        """(file_count, folder_count, total_size) over active descendants."""
        model = self._node_model
        result = await session.execute(
            select(
                func.coalesce(func.sum(case((model.is_folder == False, 1), else_=0)), 0),  # noqa: E712
                func.coalesce(func.sum(case((model.is_folder == True, 1), else_=0)), 0),  # noqa: E712
                func.coalesce(func.sum(case((model.is_folder == False, model.size), else_=0)), 0),  # noqa: E712
            ).where(self.in_subtree(node), model.is_deleted == False)  # noqa: E712
        )
        files, folders, size = result.one()
        return int(files), int(folders), int(size)

    async def folder_height(self, session: AsyncSession, node: NodeBase) -> int:
        """Levels of folders below *node* (0 when it has no sub-folders)."""
        if not node.is_folder:
            return 0
        model = self._node_model
        result = await session.execute(
            select(model.path).where(
                self.in_subtree(node),
                model.is_folder == True,  # noqa: E712
            )
        )
        own_depth = len(node.ancestors)
        height = 0
        for (path,) in result.all():
            height = max(height, len(paths.decode_path(path)) - own_depth)
        return height

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def flush(self, session: AsyncSession, conflict_message: str) -> None:
        """Flush pending writes, turning uniqueness violations into ConflictError."""
        try:
            await session.flush()
        except IntegrityError as e:
            raise ConflictError(conflict_message) from e

    async def add(
        self, session: AsyncSession, node: NodeBase, *, conflict_message: str | None = None
    ) -> NodeBase:
        session.add(node)
        await self.flush(
            session,
            conflict_message or f"An item named {node.name!r} already exists here",
        )
        return node
