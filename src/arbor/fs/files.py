"""FileService: uploads, listings, signed URLs, search, and enumeration."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from sqlalchemy import or_
from sqlmodel import select

from .exceptions import (
    ConflictError,
    DependencyUnavailableError,
    InvalidArgumentError,
    NotFoundError,
)
from .types import Breadcrumb, ListingResult
from .utils import clean_name, guess_mime_type, unique_name

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from arbor.models.nodes import NodeBase

    from .blobs import BlobStore
    from .cache import UrlCache
    from .config import DriveConfig
    from .folders import FolderService
    from .identity import Requester
    from .permissions import PermissionService
    from .store import NodeStore
    from .types import UploadFile

logger = logging.getLogger(__name__)

DOWNLOAD = "download"
PREVIEW = "preview"


class FileService:
    """File metadata operations.  Bytes go through the injected ``BlobStore``."""

    def __init__(
        self,
        store: NodeStore,
        permissions: PermissionService,
        folders: FolderService,
        blobs: BlobStore,
        cache: UrlCache,
        config: DriveConfig,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._folders = folders
        self._blobs = blobs
        self._cache = cache
        self._config = config

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    async def register_upload(
        self,
        session: AsyncSession,
        uploads: Sequence[UploadFile],
        owner_id: str,
        parent_id: str | None = None,
    ) -> list[NodeBase]:
        """Store a batch of files under *parent_id*, renaming on collisions.

        A name already used in the folder (or earlier in the same batch)
        becomes ``"name (n).ext"``.  If a concurrent writer takes a name
        between the check and the insert, the whole batch fails with
        ``ConflictError`` and its blobs are removed.
        """
        if not uploads:
            raise InvalidArgumentError("No files to upload")

        parent = None
        if parent_id is not None:
            parent = await self._folders.get_owned_folder(session, parent_id, owner_id)

        taken = await self._store.sibling_names(session, owner_id, parent_id)
        names: list[str] = []
        for upload in uploads:
            name = unique_name(clean_name(upload.name), taken)
            taken.add(name)
            names.append(name)

        mime_types = [u.content_type or guess_mime_type(n) for u, n in zip(uploads, names, strict=True)]
        keys = await self._put_all(uploads, names, mime_types, owner_id)

        nodes = []
        for upload, name, mime, key in zip(uploads, names, mime_types, keys, strict=True):
            node = self._store.model(
                owner_id=owner_id,
                name=name,
                is_folder=False,
                size=len(upload.data),
                content_ref=key,
                mime_type=mime,
            )
            node.place(parent)
            nodes.append(node)

        session.add_all(nodes)
        try:
            await self._store.flush(session, "A file with the same name was uploaded concurrently")
        except ConflictError:
            await self._discard_blobs(keys)
            raise

        logger.info("Registered %d uploads for %s", len(nodes), owner_id)
        return nodes

    async def _put_all(
        self,
        uploads: Sequence[UploadFile],
        names: list[str],
        mime_types: list[str],
        owner_id: str,
    ) -> list[str]:
        results = await asyncio.gather(
            *(
                self._blobs.put(u.data, mime, filename=name, owner_id=owner_id)
                for u, name, mime in zip(uploads, names, mime_types, strict=True)
            ),
            return_exceptions=True,
        )
        keys = [r for r in results if isinstance(r, str)]
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            await self._discard_blobs(keys)
            raise DependencyUnavailableError("File storage is unavailable") from failures[0]
        return keys

    async def _discard_blobs(self, keys: list[str]) -> None:
        for key in keys:
            try:
                await self._blobs.delete(key)
            except Exception:
                logger.warning("Could not remove orphaned blob %s", key, exc_info=True)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_nodes(
        self,
        session: AsyncSession,
        requester: Requester,
        parent_id: str | None = None,
    ) -> ListingResult:
        """Children of *parent_id*, or the requester's own root when None."""
        if parent_id is None:
            nodes = await self._store.children(session, requester.user_id, None)
            return ListingResult(nodes=nodes)

        decision = await self._permissions.require_read_decision(session, parent_id, requester)
        folder = decision.node
        assert folder is not None
        if not folder.is_folder:
            raise InvalidArgumentError("Item is not a folder")

        nodes = await self._store.children(session, folder.owner_id, folder.id)
        breadcrumbs = await self._breadcrumbs(session, folder, requester)
        return ListingResult(nodes=nodes, current_folder=folder, breadcrumbs=breadcrumbs)

    async def _breadcrumbs(
        self, session: AsyncSession, folder: NodeBase, requester: Requester
    ) -> list[Breadcrumb]:
        chain = [*folder.ancestors, folder.id]
        if folder.owner_id != requester.user_id:
            granted = await self._permissions.explicit_grant_ids(session, requester, chain)
            start = next((i for i, node_id in enumerate(chain) if node_id in granted), len(chain) - 1)
            chain = chain[start:]
        found = await self._store.get_many(session, chain[:-1])
        found[folder.id] = folder
        return [Breadcrumb(id=i, name=found[i].name) for i in chain if i in found]

    async def get_info(
        self, session: AsyncSession, node_id: str, requester: Requester
    ) -> NodeBase:
        return await self._permissions.require_read(session, node_id, requester)

    # ------------------------------------------------------------------
    # Signed URLs
    # ------------------------------------------------------------------

    async def get_download_url(
        self, session: AsyncSession, node_id: str, requester: Requester
    ) -> str:
        return await self._signed_url(session, node_id, requester, DOWNLOAD)

    async def get_preview_url(
        self, session: AsyncSession, node_id: str, requester: Requester
    ) -> str:
        return await self._signed_url(session, node_id, requester, PREVIEW)

    async def _signed_url(
        self, session: AsyncSession, node_id: str, requester: Requester, kind: str
    ) -> str:
        node = await self._permissions.require_read(session, node_id, requester)
        key = (kind, node.id, requester.user_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached
        url = await self.sign(node, kind)
        await self._cache.set(key, url, self._config.url_cache_ttl)
        return url

    async def sign(self, node: NodeBase, kind: str = DOWNLOAD) -> str:
        """Ask the blob store for a fresh URL; no access check."""
        if node.is_folder:
            raise InvalidArgumentError("Folders have no download URL; export them as a zip")
        if not node.content_ref:
            raise NotFoundError("File content is not available")
        if kind == PREVIEW:
            return await self._blobs.get_preview_url(node.content_ref)
        return await self._blobs.get_download_url(node.content_ref, node.name)

    # ------------------------------------------------------------------
    # Search / enumeration
    # ------------------------------------------------------------------

    async def search(
        self, session: AsyncSession, requester: Requester, query: str
    ) -> list[NodeBase]:
        """Case-insensitive name match over everything *requester* can read."""
        query = (query or "").strip()
        if not query:
            return []

        model = self._store.model
        granted = await self._permissions.granted_roots(session, requester)
        roots = [n for n in (await self._store.get_many(session, granted)).values() if not n.is_deleted]

        scope = [model.owner_id == requester.user_id]
        if roots:
            scope.append(model.id.in_([r.id for r in roots]))  # type: ignore[union-attr]
            scope.extend(self._store.in_subtree(r) for r in roots if r.is_folder)

        result = await session.execute(
            select(model)
            .where(
                model.name.icontains(query, autoescape=True),  # type: ignore[union-attr]
                model.is_deleted == False,  # noqa: E712
                or_(*scope),
            )
            .order_by(model.is_folder.desc(), model.name)  # type: ignore[union-attr]
            .limit(self._config.search_limit)
        )
        return list(result.scalars().all())

    async def list_descendant_files(
        self, session: AsyncSession, folder_id: str, requester: Requester
    ) -> list[NodeBase]:
        """Active files anywhere below a readable folder."""
        folder = await self._permissions.require_read(session, folder_id, requester)
        if not folder.is_folder:
            raise InvalidArgumentError("Item is not a folder")
        return await self._store.descendants(session, folder, deleted=False, files_only=True)
