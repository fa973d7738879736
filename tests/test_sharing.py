"""Tests for ShareService: public links, user grants, class grants."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import pytest

from arbor.fs.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidShareLinkError,
    NotFoundError,
)
from arbor.fs.identity import Assignment, Staff, Student, Teacher
from arbor.fs.sharing import LinkDuration
from arbor.fs.types import AccessReason
from arbor.models.shares import ClassShareGrant, ShareGrant

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from arbor import ArborAsync

ALICE = Staff("alice")
BOB = Staff("bob")
MATH_3A = Assignment("math", "2024", "3", "A")
MATH_3B = Assignment("math", "2024", "3", "B")
PHYSICS_3A = Assignment("physics", "2024", "3", "A")
TINA = Teacher("tina", (MATH_3A, PHYSICS_3A))
SAM = Student("sam", "2024", "3", "A")
SUE = Student("sue", "2024", "3", "B")


def _past(**kwargs) -> datetime:
    return datetime.now(UTC) - timedelta(**kwargs)


def _future(**kwargs) -> datetime:
    return datetime.now(UTC) + timedelta(**kwargs)


# ---------------------------------------------------------------------------
# Public links
# ---------------------------------------------------------------------------


class TestPublicLinks:
    async def test_create_and_resolve_file(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        link = await arbor.shares.create_public_link(async_session, f.id, "alice", "1h")
        assert len(link.code) == 8
        assert f.public_active

        resolved = await arbor.shares.resolve_public_link(async_session, link.code)
        assert resolved.node is f
        assert resolved.url is not None
        assert not resolved.is_folder
        assert f.download_count == 1
        assert f.last_accessed_at is not None

    async def test_duration_enum(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        link = await arbor.shares.create_public_link(
            async_session, f.id, "alice", LinkDuration.SEVEN_DAYS
        )
        remaining = link.expires_at - datetime.now(UTC)
        assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)

    async def test_invalid_duration(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        with pytest.raises(InvalidArgumentError, match="Invalid duration"):
            await arbor.shares.create_public_link(async_session, f.id, "alice", "2w")

    async def test_folder_link_has_no_url(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        folder = await make_folder("Docs")
        await make_file("a.txt", parent_id=folder.id)
        link = await arbor.shares.create_public_link(async_session, folder.id, "alice", "1d")
        resolved = await arbor.shares.resolve_public_link(async_session, link.code)
        assert resolved.is_folder
        assert resolved.url is None

    async def test_empty_folder_rejected(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder
    ):
        folder = await make_folder("Docs")
        with pytest.raises(InvalidArgumentError, match="empty folder"):
            await arbor.shares.create_public_link(async_session, folder.id, "alice", "1h")

    async def test_only_owner_creates(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        with pytest.raises(ForbiddenError):
            await arbor.shares.create_public_link(async_session, f.id, "bob", "1h")

    async def test_new_link_replaces_old(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        first = await arbor.shares.create_public_link(async_session, f.id, "alice", "1h")
        second = await arbor.shares.create_public_link(async_session, f.id, "alice", "1h")
        assert first.code != second.code
        with pytest.raises(InvalidShareLinkError):
            await arbor.shares.resolve_public_link(async_session, first.code)

    async def test_revoke_is_idempotent(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        link = await arbor.shares.create_public_link(async_session, f.id, "alice", "1h")
        await arbor.shares.revoke_public_link(async_session, f.id, "alice")
        await arbor.shares.revoke_public_link(async_session, f.id, "alice")
        with pytest.raises(InvalidShareLinkError):
            await arbor.shares.resolve_public_link(async_session, link.code)

    async def test_failures_look_identical(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        expired = await make_file("expired.txt")
        link = await arbor.shares.create_public_link(async_session, expired.id, "alice", "1h")
        expired.public_expires_at = _past(seconds=1)

        trashed = await make_file("trashed.txt")
        trashed_link = await arbor.shares.create_public_link(
            async_session, trashed.id, "alice", "1h"
        )
        await arbor.trash.soft_delete(async_session, trashed.id, "alice")

        messages = set()
        for code in (link.code, trashed_link.code, "deadbeef", "", "   "):
            with pytest.raises(InvalidShareLinkError) as exc_info:
                await arbor.shares.resolve_public_link(async_session, code)
            messages.add(str(exc_info.value))
        assert messages == {"Invalid or expired share link."}

    async def test_link_error_is_not_found(self):
        assert issubclass(InvalidShareLinkError, NotFoundError)

    async def test_code_collisions_exhaust_attempts(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file, monkeypatch
    ):
        taken = await make_file("taken.txt")
        taken.public_code = "cafebabe"
        f = await make_file("a.txt")
        monkeypatch.setattr("arbor.fs.sharing.secrets.token_hex", lambda n: "cafebabe")
        with pytest.raises(ConflictError, match="unique share code"):
            await arbor.shares.create_public_link(async_session, f.id, "alice", "1h")


# ---------------------------------------------------------------------------
# User grants
# ---------------------------------------------------------------------------


class TestShareWithUser:
    async def test_share(self, arbor: ArborAsync, async_session: AsyncSession, make_file):
        f = await make_file("a.txt")
        grant = await arbor.shares.share_with_user(async_session, f.id, "alice", "bob")
        assert grant.node_id == f.id
        assert grant.grantee_id == "bob"
        assert grant.granted_by == "alice"

    async def test_unknown_user(self, arbor: ArborAsync, async_session: AsyncSession, make_file):
        f = await make_file("a.txt")
        with pytest.raises(NotFoundError, match="User not found"):
            await arbor.shares.share_with_user(async_session, f.id, "alice", "nobody")

    async def test_self_share(self, arbor: ArborAsync, async_session: AsyncSession, make_file):
        f = await make_file("a.txt")
        with pytest.raises(InvalidArgumentError, match="yourself"):
            await arbor.shares.share_with_user(async_session, f.id, "alice", "alice")

    async def test_self_share_checked_before_directory_lookup(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt", owner="dave")
        assert await arbor.users.get_user("dave") is None
        with pytest.raises(InvalidArgumentError, match="yourself"):
            await arbor.shares.share_with_user(async_session, f.id, "dave", "dave")

    async def test_user_refusing_shares(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        with pytest.raises(ForbiddenError):
            await arbor.shares.share_with_user(async_session, f.id, "alice", "hermit")

    async def test_duplicate(self, arbor: ArborAsync, async_session: AsyncSession, make_file):
        f = await make_file("a.txt")
        await arbor.shares.share_with_user(async_session, f.id, "alice", "bob")
        with pytest.raises(ConflictError):
            await arbor.shares.share_with_user(async_session, f.id, "alice", "bob")

    async def test_expired_grant_renewed(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        old = ShareGrant(node_id=f.id, grantee_id="bob", granted_by="alice", expires_at=_past(days=1))
        async_session.add(old)
        await async_session.flush()

        renewed = await arbor.shares.share_with_user(async_session, f.id, "alice", "bob")
        assert renewed.id == old.id
        assert renewed.expires_at is None

    async def test_past_expiry_rejected(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        with pytest.raises(InvalidArgumentError):
            await arbor.shares.share_with_user(
                async_session, f.id, "alice", "bob", expires_at=_past(minutes=5)
            )

    async def test_non_owner_cannot_share(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        await arbor.shares.share_with_user(async_session, f.id, "alice", "bob")
        with pytest.raises(ForbiddenError):
            await arbor.shares.share_with_user(async_session, f.id, "bob", "carol")


class TestRevokeUserShare:
    async def test_owner_revokes_named_grantee(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        await arbor.shares.share_with_user(async_session, f.id, "alice", "bob")
        await arbor.shares.revoke_user_share(async_session, f.id, "alice", "bob")
        assert await arbor.shares.list_shares(async_session, f.id, "alice") == []

    async def test_owner_must_name_target(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        with pytest.raises(InvalidArgumentError):
            await arbor.shares.revoke_user_share(async_session, f.id, "alice")

    async def test_grantee_removes_self(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        await arbor.shares.share_with_user(async_session, f.id, "alice", "bob")
        await arbor.shares.revoke_user_share(async_session, f.id, "bob")
        decision = await arbor.permissions.check_read_access(async_session, f.id, BOB)
        assert not decision.granted

    async def test_grantee_cannot_remove_others(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        await arbor.shares.share_with_user(async_session, f.id, "alice", "bob")
        await arbor.shares.share_with_user(async_session, f.id, "alice", "carol")
        with pytest.raises(ForbiddenError):
            await arbor.shares.revoke_user_share(async_session, f.id, "bob", "carol")

    async def test_missing_share(self, arbor: ArborAsync, async_session: AsyncSession, make_file):
        f = await make_file("a.txt")
        with pytest.raises(NotFoundError, match="Share not found"):
            await arbor.shares.revoke_user_share(async_session, f.id, "bob")

    async def test_bulk_remove_self(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        a = await make_file("a.txt")
        b = await make_file("b.txt")
        c = await make_file("c.txt")
        for node in (a, b):
            await arbor.shares.share_with_user(async_session, node.id, "alice", "bob")
        removed = await arbor.shares.bulk_remove_self(async_session, [a.id, b.id, c.id], "bob")
        assert removed == 2

    async def test_bulk_remove_self_validates_ids(
        self, arbor: ArborAsync, async_session: AsyncSession
    ):
        with pytest.raises(InvalidArgumentError):
            await arbor.shares.bulk_remove_self(async_session, ["not-an-id"], "bob")


# ---------------------------------------------------------------------------
# Shared-with-me / shared-by-me
# ---------------------------------------------------------------------------


class TestSharedViews:
    async def test_shared_with_me(
        self, arbor: ArborAsync, async_session: AsyncSession, make_folder, make_file
    ):
        folder = await make_folder("Team")
        f = await make_file("z.txt")
        gone = await make_file("gone.txt")
        for node in (folder, f, gone):
            await arbor.shares.share_with_user(async_session, node.id, "alice", "bob")
        await arbor.trash.soft_delete(async_session, gone.id, "alice")

        items = await arbor.shares.list_shared_with_me(async_session, BOB)
        assert [i.node.name for i in items] == ["Team", "z.txt"]
        assert {i.via for i in items} == {AccessReason.DIRECT}
        assert {i.granted_by for i in items} == {"alice"}

    async def test_direct_wins_over_class(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("week1.pdf", owner="tina")
        await arbor.shares.share_with_class(async_session, f.id, TINA, [MATH_3A])
        await arbor.shares.share_with_user(async_session, f.id, "tina", "sam")
        items = await arbor.shares.list_shared_with_me(async_session, SAM)
        assert len(items) == 1
        assert items[0].via is AccessReason.DIRECT

    async def test_shared_by_me(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        live = await make_file("live.txt")
        stale = await make_file("stale.txt")
        await arbor.shares.create_public_link(async_session, live.id, "alice", "1h")
        await arbor.shares.create_public_link(async_session, stale.id, "alice", "1h")
        stale.public_expires_at = _past(seconds=1)
        await arbor.shares.share_with_user(async_session, live.id, "alice", "bob")

        out = await arbor.shares.list_shared_by_me(async_session, "alice")
        assert [n.id for n in out.public_links] == [live.id]
        assert not stale.public_active
        assert [g.grantee_id for g in out.user_grants] == ["bob"]
        assert out.class_grants == []


# ---------------------------------------------------------------------------
# Class grants
# ---------------------------------------------------------------------------


class TestClassShares:
    async def test_teacher_shares_with_assigned_cohorts(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("week1.pdf", owner="tina")
        grants = await arbor.shares.share_with_class(
            async_session, f.id, TINA, [MATH_3A, PHYSICS_3A], description="Week 1"
        )
        assert {g.subject_id for g in grants} == {"math", "physics"}
        assert all(g.description == "Week 1" for g in grants)

    async def test_reshare_updates_existing(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("week1.pdf", owner="tina")
        first = await arbor.shares.share_with_class(async_session, f.id, TINA, [MATH_3A])
        second = await arbor.shares.share_with_class(
            async_session, f.id, TINA, [MATH_3A], description="updated"
        )
        assert first[0].id == second[0].id
        assert len(await arbor.shares.list_class_shares(async_session, f.id, "tina")) == 1

    async def test_unassigned_cohort_rejected(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("week1.pdf", owner="tina")
        with pytest.raises(ForbiddenError, match="not assigned"):
            await arbor.shares.share_with_class(async_session, f.id, TINA, [MATH_3B])

    async def test_non_teacher_rejected(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        with pytest.raises(ForbiddenError, match="Only teachers"):
            await arbor.shares.share_with_class(async_session, f.id, ALICE, [MATH_3A])

    async def test_remove_with_filters(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("week1.pdf", owner="tina")
        await arbor.shares.share_with_class(async_session, f.id, TINA, [MATH_3A, PHYSICS_3A])
        removed = await arbor.shares.remove_class_shares(
            async_session, f.id, "tina", subject_id="physics"
        )
        assert removed == 1
        remaining = await arbor.shares.list_class_shares(async_session, f.id, "tina")
        assert [g.subject_id for g in remaining] == ["math"]

    async def test_update_expiration(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("week1.pdf", owner="tina")
        [grant] = await arbor.shares.share_with_class(async_session, f.id, TINA, [MATH_3A])
        later = _future(days=3)
        updated = await arbor.shares.update_class_share_expiration(
            async_session, grant.id, "tina", later
        )
        assert updated.expires_at == later
        with pytest.raises(ForbiddenError):
            await arbor.shares.update_class_share_expiration(async_session, grant.id, "bob", None)

    async def test_class_materials(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        math = await make_file("algebra.pdf", owner="tina")
        physics = await make_file("optics.pdf", owner="tina")
        await arbor.shares.share_with_class(async_session, math.id, TINA, [MATH_3A])
        await arbor.shares.share_with_class(async_session, physics.id, TINA, [PHYSICS_3A])

        everything = await arbor.shares.class_materials(async_session, SAM)
        only_math = await arbor.shares.class_materials(async_session, SAM, "math")
        other_section = await arbor.shares.class_materials(async_session, SUE)

        assert {i.node.name for i in everything} == {"algebra.pdf", "optics.pdf"}
        assert [i.node.name for i in only_math] == ["algebra.pdf"]
        assert other_section == []

    async def test_class_materials_students_only(
        self, arbor: ArborAsync, async_session: AsyncSession
    ):
        with pytest.raises(ForbiddenError):
            await arbor.shares.class_materials(async_session, TINA)


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


class TestPurgeExpiredGrants:
    async def test_removes_only_expired(
        self, arbor: ArborAsync, async_session: AsyncSession, make_file
    ):
        f = await make_file("a.txt")
        async_session.add_all(
            [
                ShareGrant(node_id=f.id, grantee_id="bob", expires_at=_past(days=1)),
                ShareGrant(node_id=f.id, grantee_id="carol", expires_at=_future(days=1)),
                ShareGrant(node_id=f.id, grantee_id="dave"),
                ClassShareGrant(
                    node_id=f.id, shared_by="alice", subject_id="math",
                    batch="2024", semester="3", section="A", expires_at=_past(hours=1),
                ),
            ]
        )
        await async_session.flush()

        removed = await arbor.shares.purge_expired_grants(async_session)
        assert removed == 2
        remaining = await arbor.shares.list_shares(async_session, f.id, "alice")
        assert sorted(g.grantee_id for g in remaining) == ["carol", "dave"]
