"""Tests for FolderService: create, rename, move, details."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from arbor import ArborAsync
from arbor.fs import paths
from arbor.fs.config import DriveConfig
from arbor.fs.exceptions import ConflictError, ForbiddenError, InvalidArgumentError, NotFoundError
from arbor.fs.identity import Staff
from arbor.fs.utils import new_id

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

ALICE = Staff("alice")
BOB = Staff("bob")


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


class TestCreate:
    async def test_root_folder(self, make_folder):
        folder = await make_folder("Docs")
        assert folder.is_folder
        assert folder.parent_id is None
        assert folder.path == paths.ROOT

    async def test_child_path(self, make_folder):
        parent = await make_folder("Docs")
        child = await make_folder("Notes", parent_id=parent.id)
        assert child.parent_id == parent.id
        assert child.ancestors == (parent.id,)

    async def test_depth_limit(self, make_folder):
        a = await make_folder("A")
        b = await make_folder("B", parent_id=a.id)
        with pytest.raises(InvalidArgumentError, match="Maximum folder depth"):
            await make_folder("C", parent_id=b.id)

    async def test_depth_limit_configurable(
        self, async_session: AsyncSession, blobs, users, async_engine
    ):
        deep = ArborAsync(engine=async_engine, blobs=blobs, users=users,
                          config=DriveConfig(max_folder_depth=3))
        a = await deep.folders.create(async_session, "A", "alice")
        b = await deep.folders.create(async_session, "B", "alice", a.id)
        c = await deep.folders.create(async_session, "C", "alice", b.id)
        assert len(c.ancestors) == 2

    async def test_files_exempt_from_depth_limit(self, make_folder, make_file):
        a = await make_folder("A")
        b = await make_folder("B", parent_id=a.id)
        f = await make_file("deep.txt", parent_id=b.id)
        assert f.ancestors == (a.id, b.id)

    async def test_duplicate_name_conflicts(self, make_folder):
        await make_folder("Docs")
        with pytest.raises(ConflictError):
            await make_folder("Docs")

    async def test_same_name_for_other_owner(self, make_folder):
        await make_folder("Docs")
        other = await make_folder("Docs", owner="bob")
        assert other.owner_id == "bob"

    async def test_invalid_name(self, make_folder):
        with pytest.raises(InvalidArgumentError):
            await make_folder("a/b")

    async def test_parent_must_be_owned_folder(self, make_folder, make_file):
        theirs = await make_folder("Theirs", owner="bob")
        f = await make_file("file.txt")
        with pytest.raises(NotFoundError, match="Parent folder not found"):
            await make_folder("X", parent_id=theirs.id)
        with pytest.raises(NotFoundError):
            await make_folder("X", parent_id=f.id)


# ---------------------------------------------------------------------------
# rename
# ---------------------------------------------------------------------------


class TestRename:
    async def test_rename(self, arbor: ArborAsync, async_session: AsyncSession, make_folder):
        folder = await make_folder("Docs")
        renamed = await arbor.folders.rename(async_session, folder.id, "alice", "Papers")
        assert renamed.name == "Papers"

    async def test_rename_collision(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        await make_folder("Docs")
        f = await make_file("a.txt")
        with pytest.raises(ConflictError):
            await arbor.folders.rename(async_session, f.id, "alice", "Docs")

    async def test_rename_to_trashed_name_allowed(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder
    ):
        old = await make_folder("Old")
        await arbor.trash.soft_delete(async_session, old.id, "alice")
        new = await make_folder("New")
        renamed = await arbor.folders.rename(async_session, new.id, "alice", "Old")
        assert renamed.name == "Old"

    async def test_rename_by_other_user(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder
    ):
        folder = await make_folder("Docs")
        with pytest.raises(ForbiddenError):
            await arbor.folders.rename(async_session, folder.id, "bob", "Mine")


# ---------------------------------------------------------------------------
# move
# ---------------------------------------------------------------------------


class TestMove:
    async def test_move_rewrites_descendant_paths(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        src = await make_folder("Src")
        inner = await make_folder("Inner", parent_id=src.id)
        f = await make_file("f.txt", parent_id=inner.id)
        dest = await make_folder("Dest")

        result = await arbor.folders.move(async_session, inner.id, "alice", dest.id)

        assert result.updated_descendant_count == 1
        assert inner.ancestors == (dest.id,)
        assert f.ancestors == (dest.id, inner.id)

    async def test_move_to_root(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        src = await make_folder("Src")
        f = await make_file("f.txt", parent_id=src.id)
        await arbor.folders.move(async_session, f.id, "alice", None)
        assert f.parent_id is None
        assert f.path == paths.ROOT

    async def test_move_includes_trashed_descendants(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        src = await make_folder("Src")
        gone = await make_file("gone.txt", parent_id=src.id)
        await arbor.trash.soft_delete(async_session, gone.id, "alice")
        dest = await make_folder("Dest")

        result = await arbor.folders.move(async_session, src.id, "alice", dest.id)
        assert result.updated_descendant_count == 1
        assert gone.ancestors == (dest.id, src.id)

    async def test_move_into_self(self, arbor: ArborAsync, async_session: AsyncSession, make_folder):
        src = await make_folder("Src")
        with pytest.raises(InvalidArgumentError):
            await arbor.folders.move(async_session, src.id, "alice", src.id)

    async def test_move_into_own_subfolder(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder
    ):
        src = await make_folder("Src")
        child = await make_folder("Child", parent_id=src.id)
        with pytest.raises(InvalidArgumentError, match="own subfolder"):
            await arbor.folders.move(async_session, src.id, "alice", child.id)

    async def test_move_respects_depth_of_subtree(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder
    ):
        src = await make_folder("Src")
        await make_folder("Child", parent_id=src.id)
        dest = await make_folder("Dest")
        with pytest.raises(InvalidArgumentError, match="Maximum folder depth"):
            await arbor.folders.move(async_session, src.id, "alice", dest.id)

    async def test_move_name_collision(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        dest = await make_folder("Dest")
        await make_file("a.txt", parent_id=dest.id)
        f = await make_file("a.txt")
        with pytest.raises(ConflictError):
            await arbor.folders.move(async_session, f.id, "alice", dest.id)

    async def test_move_same_parent_is_noop(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        dest = await make_folder("Dest")
        f = await make_file("a.txt", parent_id=dest.id)
        result = await arbor.folders.move(async_session, f.id, "alice", dest.id)
        assert result.updated_descendant_count == 0

    async def test_move_requires_owner(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        f = await make_file("a.txt")
        with pytest.raises(ForbiddenError):
            await arbor.folders.move(async_session, f.id, "bob", None)

    async def test_destination_must_be_owned_active_folder(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        f = await make_file("a.txt")
        theirs = await make_folder("Theirs", owner="bob")
        trashed = await make_folder("Trashed")
        await arbor.trash.soft_delete(async_session, trashed.id, "alice")
        for dest_id in (theirs.id, trashed.id, new_id()):
            with pytest.raises(NotFoundError):
                await arbor.folders.move(async_session, f.id, "alice", dest_id)


# ---------------------------------------------------------------------------
# details
# ---------------------------------------------------------------------------


class TestDetails:
    async def test_counts_active_subtree(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        top = await make_folder("Top")
        sub = await make_folder("Sub", parent_id=top.id)
        await make_file("a.txt", b"12345", parent_id=top.id)
        await make_file("b.txt", b"123", parent_id=sub.id)
        gone = await make_file("c.txt", b"1234567", parent_id=sub.id)
        await arbor.trash.soft_delete(async_session, gone.id, "alice")

        details = await arbor.folders.get_details(async_session, top.id, ALICE)
        assert details.file_count == 2
        assert details.folder_count == 1
        assert details.total_size == 8

    async def test_details_of_file_rejected(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        with pytest.raises(InvalidArgumentError):
            await arbor.folders.get_details(async_session, f.id, ALICE)

    async def test_details_for_grantee(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        top = await make_folder("Top")
        await make_file("a.txt", parent_id=top.id)
        with pytest.raises(ForbiddenError):
            await arbor.folders.get_details(async_session, top.id, BOB)
        await arbor.shares.share_with_user(async_session, top.id, "alice", "bob")
        details = await arbor.folders.get_details(async_session, top.id, BOB)
        assert details.file_count == 1
