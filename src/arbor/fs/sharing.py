"""ShareService: public links, user grants, and class grants.

Stateless service that receives the grant models at construction and a
session at call time.  Grants are rows in their own tables (one per
node and grantee, one per node and cohort); access evaluation lives in
``PermissionService``.
"""

from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import func
from sqlmodel import select

from .exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    InvalidShareLinkError,
    NotFoundError,
)
from .identity import Student, Teacher
from .types import AccessReason, OutgoingShares, PublicLink, ResolvedLink, SharedItem
from .utils import check_id, check_ids, is_expired, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from arbor.models.nodes import NodeBase
    from arbor.models.shares import ClassShareGrantBase, ShareGrantBase

    from .config import DriveConfig
    from .files import FileService
    from .identity import Assignment, Requester, UserDirectory
    from .permissions import PermissionService
    from .store import NodeStore

logger = logging.getLogger(__name__)


class LinkDuration(str, Enum):
    """Lifetimes a public link can be created with."""

    ONE_HOUR = "1h"
    ONE_DAY = "1d"
    SEVEN_DAYS = "7d"

    @property
    def delta(self) -> timedelta:
        return _DURATIONS[self]


_DURATIONS = {
    LinkDuration.ONE_HOUR: timedelta(hours=1),
    LinkDuration.ONE_DAY: timedelta(days=1),
    LinkDuration.SEVEN_DAYS: timedelta(days=7),
}


def _sort_items(items: Iterable[SharedItem]) -> list[SharedItem]:
    return sorted(items, key=lambda s: (not s.node.is_folder, s.node.name))


class ShareService:
    """Manages public links and per-user / per-cohort grants."""

    def __init__(
        self,
        store: NodeStore,
        permissions: PermissionService,
        files: FileService,
        grant_model: type[ShareGrantBase],
        class_grant_model: type[ClassShareGrantBase],
        users: UserDirectory,
        config: DriveConfig,
    ) -> None:
        self._store = store
        self._permissions = permissions
        self._files = files
        self._grant_model = grant_model
        self._class_grant_model = class_grant_model
        self._users = users
        self._config = config

    # ------------------------------------------------------------------
    # Public links
    # ------------------------------------------------------------------

    async def create_public_link(
        self,
        session: AsyncSession,
        node_id: str,
        owner_id: str,
        duration: LinkDuration | str,
    ) -> PublicLink:
        """Issue a fresh public code for a node, replacing any earlier one."""
        try:
            duration = LinkDuration(duration)
        except ValueError:
            raise InvalidArgumentError(
                f"Invalid duration: {duration!r}. Must be one of 1h, 1d, 7d."
            ) from None

        node = await self._permissions.require_write(session, node_id, owner_id)
        if node.is_folder:
            files, _, _ = await self._store.subtree_totals(session, node)
            if files == 0:
                raise InvalidArgumentError("Cannot share an empty folder")

        code = await self._unused_code(session, node.id)
        node.public_code = code
        node.public_active = True
        node.public_expires_at = utcnow() + duration.delta
        node.updated_at = utcnow()
        await self._store.flush(session, "Could not generate a unique share code")

        logger.info("Public link created for %s (%s)", node.id, duration.value)
        return PublicLink(node_id=node.id, code=code, expires_at=node.public_expires_at)

    async def _unused_code(self, session: AsyncSession, node_id: str) -> str:
        model = self._store.model
        for _ in range(self._config.public_code_attempts):
            code = secrets.token_hex(self._config.public_code_bytes)
            result = await session.execute(
                select(func.count()).select_from(model).where(
                    model.public_code == code, model.id != node_id
                )
            )
            if not result.scalar_one():
                return code
            logger.debug("Public code collision, retrying")
        raise ConflictError("Could not generate a unique share code")

    async def revoke_public_link(
        self, session: AsyncSession, node_id: str, owner_id: str
    ) -> None:
        """Deactivate the node's public link.  Revoking twice is harmless."""
        node = await self._permissions.require_write(session, node_id, owner_id)
        if node.public_active:
            node.public_active = False
            node.updated_at = utcnow()
            await session.flush()

    async def resolve_public_link(self, session: AsyncSession, code: str) -> ResolvedLink:
        """Look up an unauthenticated code.

        Every failure raises the same ``InvalidShareLinkError`` so callers
        cannot tell a wrong code from a revoked, expired, or trashed item.
        """
        node = await self.public_node(session, code)
        node.download_count += 1
        node.last_accessed_at = utcnow()
        await session.flush()

        url = None
        if not node.is_folder:
            try:
                url = await self._files.sign(node)
            except NotFoundError:
                raise InvalidShareLinkError() from None
        return ResolvedLink(node=node, url=url)

    async def public_node(self, session: AsyncSession, code: str) -> NodeBase:
        """The live node behind *code*, without recording access."""
        if not isinstance(code, str) or not code.strip():
            raise InvalidShareLinkError()
        model = self._store.model
        result = await session.execute(select(model).where(model.public_code == code.strip()))
        node = result.scalar_one_or_none()
        if (
            node is None
            or not node.public_active
            or node.is_deleted
            or node.public_expires_at is None
            or is_expired(node.public_expires_at)
        ):
            raise InvalidShareLinkError()
        return node

    # ------------------------------------------------------------------
    # User grants
    # ------------------------------------------------------------------

    async def share_with_user(
        self,
        session: AsyncSession,
        node_id: str,
        owner_id: str,
        grantee_id: str,
        *,
        expires_at: datetime | None = None,
    ) -> ShareGrantBase:
        """Grant *grantee_id* read access to a node and everything below it."""
        node = await self._permissions.require_write(session, node_id, owner_id)

        if grantee_id == owner_id:
            raise InvalidArgumentError("You cannot share an item with yourself")
        profile = await self._users.get_user(grantee_id)
        if profile is None:
            raise NotFoundError("User not found")
        if not profile.accepts_shares:
            raise ForbiddenError("This user is not accepting shared files")
        if expires_at is not None and is_expired(expires_at):
            raise InvalidArgumentError("Expiry must be in the future")

        existing = await self._grant(session, node.id, grantee_id)
        if existing is not None:
            if not is_expired(existing.expires_at):
                raise ConflictError("This item is already shared with that user")
            # an expired grant counts as absent: renew it in place
            existing.granted_by = owner_id
            existing.created_at = utcnow()
            existing.expires_at = expires_at
            await session.flush()
            return existing

        grant = self._grant_model(
            node_id=node.id,
            grantee_id=grantee_id,
            granted_by=owner_id,
            expires_at=expires_at,
        )
        session.add(grant)
        await self._store.flush(session, "This item is already shared with that user")
        logger.info("Shared %s with %s", node.id, grantee_id)
        return grant

    async def _grant(
        self, session: AsyncSession, node_id: str, grantee_id: str
    ) -> ShareGrantBase | None:
        model = self._grant_model
        result = await session.execute(
            select(model).where(model.node_id == node_id, model.grantee_id == grantee_id)
        )
        return result.scalar_one_or_none()

    async def revoke_user_share(
        self,
        session: AsyncSession,
        node_id: str,
        requester_id: str,
        target_id: str | None = None,
    ) -> None:
        """Remove a grant.

        The owner removes a named grantee.  A grantee removes themself by
        leaving *target_id* out.  Anything else is forbidden.
        """
        check_id(node_id, "node id")
        node = await self._store.get(session, node_id)
        if node is None or node.is_deleted:
            raise NotFoundError(f"Item not found: {node_id}")

        is_owner = node.owner_id == requester_id
        if is_owner and target_id:
            grantee = target_id
        elif is_owner:
            raise InvalidArgumentError("Specify which user to remove")
        elif target_id is None:
            grantee = requester_id
        else:
            raise ForbiddenError("You can only remove your own access")

        grant = await self._grant(session, node.id, grantee)
        if grant is None:
            raise NotFoundError("Share not found")
        await session.delete(grant)
        await session.flush()
        logger.info("Revoked share on %s for %s", node.id, grantee)

    async def bulk_remove_self(
        self, session: AsyncSession, node_ids: Iterable[str], requester_id: str
    ) -> int:
        """Drop the caller's own grants on several nodes; ids are all checked first."""
        ids = check_ids(node_ids, "node id")
        model = self._grant_model
        result = await session.execute(
            select(model).where(
                model.node_id.in_(ids),  # type: ignore[union-attr]
                model.grantee_id == requester_id,
            )
        )
        grants = list(result.scalars().all())
        for grant in grants:
            await session.delete(grant)
        await session.flush()
        return len(grants)

    async def list_shares(
        self, session: AsyncSession, node_id: str, owner_id: str
    ) -> list[ShareGrantBase]:
        """Live user grants on one node, oldest first."""
        node = await self._permissions.require_write(session, node_id, owner_id)
        model = self._grant_model
        result = await session.execute(
            select(model).where(model.node_id == node.id).order_by(model.created_at)
        )
        return [g for g in result.scalars().all() if not is_expired(g.expires_at)]

    # ------------------------------------------------------------------
    # Shared-with-me / shared-by-me
    # ------------------------------------------------------------------

    async def list_shared_with_me(
        self, session: AsyncSession, requester: Requester
    ) -> list[SharedItem]:
        """Nodes granted to the requester directly or through their cohort."""
        model = self._grant_model
        result = await session.execute(select(model).where(model.grantee_id == requester.user_id))
        items: dict[str, SharedItem] = {}
        now = utcnow()
        direct = [g for g in result.scalars().all() if not is_expired(g.expires_at, now)]

        cohort: list[ClassShareGrantBase] = []
        if isinstance(requester, Student):
            cohort = await self._class_grants_for(session, requester)

        nodes = await self._store.get_many(
            session, [g.node_id for g in direct] + [g.node_id for g in cohort]
        )
        for g in direct:
            node = nodes.get(g.node_id)
            if node is not None and not node.is_deleted:
                items[node.id] = SharedItem(node, AccessReason.DIRECT, g.granted_by, g.expires_at)
        for c in cohort:
            node = nodes.get(c.node_id)
            if node is not None and not node.is_deleted and node.id not in items:
                items[node.id] = SharedItem(node, AccessReason.CLASS, c.shared_by, c.expires_at)
        return _sort_items(items.values())

    async def list_shared_by_me(self, session: AsyncSession, owner_id: str) -> OutgoingShares:
        """Everything *owner_id* currently shares.  Expired public links are switched off."""
        model = self._store.model
        result = await session.execute(
            select(model).where(
                model.owner_id == owner_id,
                model.public_active == True,  # noqa: E712
                model.is_deleted == False,  # noqa: E712
            )
        )
        out = OutgoingShares()
        now = utcnow()
        expired = 0
        for node in result.scalars().all():
            if node.public_expires_at is None or is_expired(node.public_expires_at, now):
                node.public_active = False
                expired += 1
            else:
                out.public_links.append(node)
        if expired:
            await session.flush()
            logger.debug("Deactivated %d expired public links for %s", expired, owner_id)

        live_ids = select(model.id).where(
            model.owner_id == owner_id,
            model.is_deleted == False,  # noqa: E712
        )
        grant_model = self._grant_model
        grants = await session.execute(
            select(grant_model)
            .where(grant_model.node_id.in_(live_ids))  # type: ignore[union-attr]
            .order_by(grant_model.created_at)
        )
        out.user_grants = [g for g in grants.scalars().all() if not is_expired(g.expires_at, now)]

        class_model = self._class_grant_model
        class_grants = await session.execute(
            select(class_model)
            .where(class_model.node_id.in_(live_ids))  # type: ignore[union-attr]
            .order_by(class_model.created_at)
        )
        out.class_grants = [
            g for g in class_grants.scalars().all() if not is_expired(g.expires_at, now)
        ]
        return out

    # ------------------------------------------------------------------
    # Class grants
    # ------------------------------------------------------------------

    async def share_with_class(
        self,
        session: AsyncSession,
        node_id: str,
        requester: Requester,
        cohorts: Sequence[Assignment],
        *,
        description: str | None = None,
        expires_at: datetime | None = None,
    ) -> list[ClassShareGrantBase]:
        """Share a node with whole cohorts the teacher is assigned to.

        Re-sharing with the same cohort and subject updates the existing
        grant.
        """
        if not isinstance(requester, Teacher):
            raise ForbiddenError("Only teachers can share with a class")
        if not cohorts:
            raise InvalidArgumentError("At least one class is required")
        node = await self._permissions.require_write(session, node_id, requester.user_id)
        for a in cohorts:
            if not requester.teaches(a.subject_id, a.cohort):
                raise ForbiddenError(
                    f"You are not assigned to {a.subject_id} for "
                    f"{a.batch}/{a.semester}/{a.section}"
                )
        if expires_at is not None and is_expired(expires_at):
            raise InvalidArgumentError("Expiry must be in the future")

        model = self._class_grant_model
        grants = []
        for a in dict.fromkeys(cohorts):
            result = await session.execute(
                select(model).where(
                    model.node_id == node.id,
                    model.subject_id == a.subject_id,
                    model.batch == a.batch,
                    model.semester == a.semester,
                    model.section == a.section,
                )
            )
            grant = result.scalar_one_or_none()
            if grant is None:
                grant = model(
                    node_id=node.id,
                    shared_by=requester.user_id,
                    subject_id=a.subject_id,
                    batch=a.batch,
                    semester=a.semester,
                    section=a.section,
                )
                session.add(grant)
            grant.description = description
            grant.expires_at = expires_at
            grants.append(grant)
        await self._store.flush(session, "This item is already shared with that class")
        logger.info("Shared %s with %d classes", node.id, len(grants))
        return grants

    async def remove_class_shares(
        self,
        session: AsyncSession,
        node_id: str,
        owner_id: str,
        *,
        batch: str | None = None,
        semester: str | None = None,
        section: str | None = None,
        subject_id: str | None = None,
    ) -> int:
        """Remove class grants on a node, optionally narrowed by cohort fields."""
        node = await self._permissions.require_write(session, node_id, owner_id)
        model = self._class_grant_model
        query = select(model).where(model.node_id == node.id)
        for column, value in (
            (model.batch, batch),
            (model.semester, semester),
            (model.section, section),
            (model.subject_id, subject_id),
        ):
            if value is not None:
                query = query.where(column == value)
        result = await session.execute(query)
        grants = list(result.scalars().all())
        for grant in grants:
            await session.delete(grant)
        await session.flush()
        return len(grants)

    async def list_class_shares(
        self, session: AsyncSession, node_id: str, owner_id: str
    ) -> list[ClassShareGrantBase]:
        node = await self._permissions.require_write(session, node_id, owner_id)
        model = self._class_grant_model
        result = await session.execute(
            select(model).where(model.node_id == node.id).order_by(model.created_at)
        )
        return list(result.scalars().all())

    async def update_class_share_expiration(
        self,
        session: AsyncSession,
        share_id: str,
        owner_id: str,
        expires_at: datetime | None,
    ) -> ClassShareGrantBase:
        check_id(share_id, "share id")
        model = self._class_grant_model
        result = await session.execute(select(model).where(model.id == share_id))
        grant = result.scalar_one_or_none()
        if grant is None:
            raise NotFoundError("Class share not found")
        await self._permissions.require_write(session, grant.node_id, owner_id)
        if expires_at is not None and is_expired(expires_at):
            raise InvalidArgumentError("Expiry must be in the future")
        grant.expires_at = expires_at
        await session.flush()
        return grant

    async def class_materials(
        self,
        session: AsyncSession,
        requester: Requester,
        subject_id: str | None = None,
    ) -> list[SharedItem]:
        """Items shared with the requesting student's cohort, newest first."""
        if not isinstance(requester, Student):
            raise ForbiddenError("Class materials are only available to students")
        grants = await self._class_grants_for(session, requester, subject_id)
        nodes = await self._store.get_many(session, [g.node_id for g in grants])
        items = []
        seen: set[str] = set()
        for g in grants:
            node = nodes.get(g.node_id)
            if node is None or node.is_deleted or node.id in seen:
                continue
            seen.add(node.id)
            items.append(SharedItem(node, AccessReason.CLASS, g.shared_by, g.expires_at))
        return items

    async def _class_grants_for(
        self, session: AsyncSession, student: Student, subject_id: str | None = None
    ) -> list[ClassShareGrantBase]:
        model = self._class_grant_model
        query = select(model).where(
            model.batch == student.batch,
            model.semester == student.semester,
            model.section == student.section,
        )
        if subject_id is not None:
            query = query.where(model.subject_id == subject_id)
        result = await session.execute(query.order_by(model.created_at.desc()))  # type: ignore[union-attr]
        now = utcnow()
        return [g for g in result.scalars().all() if not is_expired(g.expires_at, now)]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_expired_grants(
        self, session: AsyncSession, *, now: datetime | None = None
    ) -> int:
        """Physically remove expired user and class grants. Returns rows removed."""
        now = now or utcnow()
        removed = 0
        for model in (self._grant_model, self._class_grant_model):
            result = await session.execute(
                select(model).where(model.expires_at.is_not(None))  # type: ignore[union-attr]
            )
            for grant in result.scalars().all():
                if is_expired(grant.expires_at, now):
                    await session.delete(grant)
                    removed += 1
        await session.flush()
        if removed:
            logger.info("Removed %d expired grants", removed)
        return removed
