"""ZipExportService: plan and stream zip archives of node selections.

Export happens in two steps.  ``plan_*`` checks access and resolves the
selection into archive entries (relative names rooted at each exported
folder's own name).  ``stream`` then reads blobs one at a time and yields
zip bytes as they are produced, so memory stays bounded by the chunk size.

The archive is written to a non-seekable sink, which makes ``zipfile`` use
data descriptors.  The central directory is only written after the last
entry, so a blob failure part way through never yields a complete archive.
"""

from __future__ import annotations

import logging
import zipfile
from typing import TYPE_CHECKING

from .exceptions import (
    ArborError,
    DependencyUnavailableError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidShareLinkError,
    NotFoundError,
)
from .types import AccessReason, ExportEntry, ExportPlan
from .utils import as_aware, check_ids, unique_name, utcnow

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from arbor.models.nodes import NodeBase

    from .blobs import BlobStore
    from .config import DriveConfig
    from .identity import Requester
    from .permissions import PermissionService
    from .sharing import ShareService
    from .store import NodeStore

logger = logging.getLogger(__name__)

MEDIA_TYPE = "application/zip"
_ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class _ChunkSink:
    """Write-only buffer handed to ``zipfile``; drained between entries.

    It has no ``tell``/``seek``, so ``zipfile`` treats it as unseekable.
    """

    def __init__(self) -> None:
        self._buf = bytearray()

    def write(self, data: bytes) -> int:
        self._buf += data
        return len(data)

    def flush(self) -> None:
        pass

    def __len__(self) -> int:
        return len(self._buf)

    def drain(self) -> bytes:
        out = bytes(self._buf)
        self._buf.clear()
        return out


class _PlanBuilder:
    """Accumulates entries, skipping repeated nodes and de-duplicating names."""

    def __init__(self) -> None:
        self.entries: list[ExportEntry] = []
        self._node_ids: set[str] = set()
        self._arcnames: set[str] = set()

    def add(self, node: NodeBase, arcname: str) -> None:
        if node.id in self._node_ids:
            return
        self._node_ids.add(node.id)
        head, sep, base = arcname.rpartition("/")
        base = unique_name(base, lambda b: f"{head}{sep}{b}" in self._arcnames)
        arcname = f"{head}{sep}{base}"
        self._arcnames.add(arcname)
        self.entries.append(
            ExportEntry(
                arcname=arcname,
                node_id=node.id,
                content_ref=node.content_ref,
                size=node.size,
                modified=node.updated_at,
            )
        )


class ZipExportService:
    """Builds export plans and streams them as zip archives."""

    def __init__(
        self,
        store: NodeStore,
        permissions: PermissionService,
        shares: ShareService,
        blobs: BlobStore,
        config: DriveConfig,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._shares = shares
        self._blobs = blobs
        self._config = config

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def plan_nodes(
        self, session: AsyncSession, node_ids: Iterable[str], requester: Requester
    ) -> ExportPlan:
        """Plan an archive of several files and folders.

        Every target must be readable; one denial refuses the whole export.
        """
        ids = check_ids(node_ids, "node id")
        verdicts = await self._permissions.check_bulk_read_access(session, ids, requester)
        for node_id, decision in verdicts.items():
            if decision.granted:
                continue
            if decision.reason in (AccessReason.NOT_FOUND, AccessReason.DELETED):
                raise NotFoundError(f"Item not found: {node_id}")
            raise ForbiddenError("You do not have access to one or more selected items")

        targets = [verdicts[i].node for i in ids]
        builder = _PlanBuilder()
        for node in targets:
            assert node is not None
            if node.is_folder:
                await self._add_folder(session, builder, node)
            else:
                builder.add(node, node.name)

        if not builder.entries:
            raise InvalidArgumentError("Nothing to export: the selection contains no files")
        if len(targets) == 1 and targets[0] is not None and targets[0].is_folder:
            filename = f"{targets[0].name}.zip"
        else:
            filename = f"export-{utcnow():%Y%m%d-%H%M%S}.zip"
        logger.debug("Export plan %s: %d entries", filename, len(builder.entries))
        return ExportPlan(filename=filename, entries=builder.entries, media_type=MEDIA_TYPE)

    async def plan_folder(
        self, session: AsyncSession, folder_id: str, requester: Requester
    ) -> ExportPlan:
        """Plan an archive of one readable folder."""
        folder = await self._permissions.require_read(session, folder_id, requester)
        if not folder.is_folder:
            raise InvalidArgumentError("Item is not a folder")
        return await self._plan_single_folder(session, folder)

    async def plan_public_folder(self, session: AsyncSession, code: str) -> ExportPlan:
        """Plan an archive for a folder reached through a public link."""
        node = await self._shares.public_node(session, code)
        if not node.is_folder:
            builder = _PlanBuilder()
            builder.add(node, node.name)
            return ExportPlan(filename=f"{node.name}.zip", entries=builder.entries)
        try:
            return await self._plan_single_folder(session, node)
        except InvalidArgumentError:
            # an emptied folder looks like any other dead link
            raise InvalidShareLinkError() from None

    async def _plan_single_folder(self, session: AsyncSession, folder: NodeBase) -> ExportPlan:
        builder = _PlanBuilder()
        await self._add_folder(session, builder, folder)
        if not builder.entries:
            raise InvalidArgumentError("Cannot export an empty folder")
        return ExportPlan(filename=f"{folder.name}.zip", entries=builder.entries)

    async def _add_folder(
        self, session: AsyncSession, builder: _PlanBuilder, folder: NodeBase
    ) -> None:
        rows = await self._store.descendants(session, folder, deleted=False)
        names = {folder.id: folder.name}
        names.update((r.id, r.name) for r in rows if r.is_folder)
        for row in rows:
            if row.is_folder:
                continue
            chain = list(row.ancestors)
            parts = [names[i] for i in chain[chain.index(folder.id):] if i in names]
            builder.add(row, "/".join([*parts, row.name]))

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream(self, plan: ExportPlan) -> AsyncIterator[bytes]:
        """Yield the archive for *plan* in chunks.

        A blob read failure raises ``DependencyUnavailableError`` before the
        central directory is written.
        """
        sink = _ChunkSink()
        zf = zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED)  # type: ignore[arg-type]
        chunk_size = self._config.export_chunk_size

        for entry in plan.entries:
            if not entry.content_ref:
                logger.warning("Skipping %s: no stored content", entry.arcname)
                continue
            zinfo = zipfile.ZipInfo(entry.arcname, date_time=self._date_time(entry))
            zinfo.compress_type = zipfile.ZIP_DEFLATED
            zinfo.file_size = entry.size

            with zf.open(zinfo, "w") as dest:
                reader = self._blobs.get_read_stream(entry.content_ref)
                try:
                    async for chunk in reader:
                        dest.write(chunk)
                        if len(sink) >= chunk_size:
                            yield sink.drain()
                except ArborError:
                    raise
                except Exception as e:
                    raise DependencyUnavailableError(
                        f"Could not read {entry.arcname} from storage"
                    ) from e
                finally:
                    aclose = getattr(reader, "aclose", None)
                    if aclose is not None:
                        await aclose()
            if len(sink) >= chunk_size:
                yield sink.drain()

        zf.close()
        tail = sink.drain()
        if tail:
            yield tail

    @staticmethod
    def _date_time(entry: ExportEntry) -> tuple[int, int, int, int, int, int]:
        if entry.modified is None:
            return _ZIP_EPOCH
        moment = as_aware(entry.modified)
        stamp = (moment.year, moment.month, moment.day, moment.hour, moment.minute, moment.second)
        return max(stamp, _ZIP_EPOCH)
