"""PermissionService: ordered access-rule chain over nodes.

Read access is decided by a chain of rules, each of which either grants
or abstains for a node; the first grant wins.  The default chain is::

    OwnerRule -> DirectGrantRule -> ClassGrantRule

Missing and trashed nodes are denied before any rule runs.  Rules work on
batches so a bulk check costs one query per rule rather than one per node.

Write access is ownership only and is never inherited.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Protocol

from sqlmodel import select

from .exceptions import ForbiddenError, NotFoundError
from .identity import Student
from .types import AccessDecision, AccessReason
from .utils import check_id, is_expired, is_valid_id, utcnow

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from sqlalchemy.ext.asyncio import AsyncSession

    from arbor.models.nodes import NodeBase
    from arbor.models.shares import ClassShareGrantBase, ShareGrantBase

    from .identity import Requester
    from .store import NodeStore

logger = logging.getLogger(__name__)


def _lineage_ids(nodes: Iterable[NodeBase]) -> set[str]:
    ids: set[str] = set()
    for node in nodes:
        ids.update(node.ancestors)
        ids.add(node.id)
    return ids


def _nearest(node: NodeBase, granted_ids: set[str]) -> str | None:
    """Closest node in *node*'s lineage (itself first) carrying a grant."""
    if node.id in granted_ids:
        return node.id
    for ancestor_id in reversed(node.ancestors):
        if ancestor_id in granted_ids:
            return ancestor_id
    return None


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class AccessRule(Protocol):
    """One link in the read-access chain."""

    name: str

    async def evaluate(
        self,
        session: AsyncSession,
        requester: Requester,
        nodes: Sequence[NodeBase],
    ) -> dict[str, AccessDecision]:
        """Return decisions for the nodes this rule grants; omit the rest."""
        ...


class OwnerRule:
    name = "owner"

    async def evaluate(
        self,
        session: AsyncSession,
        requester: Requester,
        nodes: Sequence[NodeBase],
    ) -> dict[str, AccessDecision]:
        return {
            n.id: AccessDecision(True, AccessReason.OWNER, n, n.id)
            for n in nodes
            if n.owner_id == requester.user_id
        }


class DirectGrantRule:
    """Unexpired user grant on the node (direct) or on an ancestor (inherited)."""

    name = "direct"

    def __init__(self, grant_model: type[ShareGrantBase]) -> None:
        self.grant_model = grant_model

    async def granted_node_ids(
        self, session: AsyncSession, user_id: str, node_ids: Iterable[str]
    ) -> set[str]:
        model = self.grant_model
        ids = list(node_ids)
        if not ids:
            return set()
        result = await session.execute(
            select(model).where(
                model.grantee_id == user_id,
                model.node_id.in_(ids),  # type: ignore[union-attr]
            )
        )
        now = utcnow()
        return {g.node_id for g in result.scalars().all() if not is_expired(g.expires_at, now)}

    async def evaluate(
        self,
        session: AsyncSession,
        requester: Requester,
        nodes: Sequence[NodeBase],
    ) -> dict[str, AccessDecision]:
        granted = await self.granted_node_ids(session, requester.user_id, _lineage_ids(nodes))
        decisions: dict[str, AccessDecision] = {}
        for node in nodes:
            via = _nearest(node, granted)
            if via is None:
                continue
            reason = AccessReason.DIRECT if via == node.id else AccessReason.INHERITED
            decisions[node.id] = AccessDecision(True, reason, node, via)
        return decisions


class ClassGrantRule:
    """Unexpired cohort grant on the node or an ancestor matching a student's cohort."""

    name = "class"

    def __init__(self, class_grant_model: type[ClassShareGrantBase]) -> None:
        self.class_grant_model = class_grant_model

    async def granted_node_ids(
        self, session: AsyncSession, student: Student, node_ids: Iterable[str] | None = None
    ) -> set[str]:
        model = self.class_grant_model
        query = select(model).where(
            model.batch == student.batch,
            model.semester == student.semester,
            model.section == student.section,
        )
        if node_ids is not None:
            ids = list(node_ids)
            if not ids:
                return set()
            query = query.where(model.node_id.in_(ids))  # type: ignore[union-attr]
        result = await session.execute(query)
        now = utcnow()
        return {g.node_id for g in result.scalars().all() if not is_expired(g.expires_at, now)}

    async def evaluate(
        self,
        session: AsyncSession,
        requester: Requester,
        nodes: Sequence[NodeBase],
    ) -> dict[str, AccessDecision]:
        if not isinstance(requester, Student):
            return {}
        granted = await self.granted_node_ids(session, requester, _lineage_ids(nodes))
        decisions: dict[str, AccessDecision] = {}
        for node in nodes:
            via = _nearest(node, granted)
            if via is not None:
                decisions[node.id] = AccessDecision(True, AccessReason.CLASS, node, via)
        return decisions


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class PermissionService:
    """Evaluates read and write access for requesters.

    Receives the node store and the grant models at construction; the
    rule chain may be replaced to add or reorder policies.
    """

    def __init__(
        self,
        store: NodeStore,
        grant_model: type[ShareGrantBase],
        class_grant_model: type[ClassShareGrantBase],
        *,
        rules: Sequence[AccessRule] | None = None,
    ) -> None:
        self._store = store
        self.direct_rule = DirectGrantRule(grant_model)
        self.class_rule = ClassGrantRule(class_grant_model)
        self.rules: list[AccessRule] = (
            list(rules) if rules is not None else [OwnerRule(), self.direct_rule, self.class_rule]
        )

    async def _run_chain(
        self,
        session: AsyncSession,
        requester: Requester,
        nodes: Sequence[NodeBase],
    ) -> dict[str, AccessDecision]:
        decisions: dict[str, AccessDecision] = {}
        pending = list(nodes)
        for rule in self.rules:
            if not pending:
                break
            granted = await rule.evaluate(session, requester, pending)
            decisions.update(granted)
            pending = [n for n in pending if n.id not in granted]
        for node in pending:
            decisions[node.id] = AccessDecision(False, AccessReason.NO_ACCESS, node)
        return decisions

    @staticmethod
    def _precheck(node: NodeBase | None) -> AccessDecision | None:
        if node is None:
            return AccessDecision(False, AccessReason.NOT_FOUND)
        if node.is_deleted:
            return AccessDecision(False, AccessReason.DELETED, node)
        return None

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def check_read_access(
        self, session: AsyncSession, node_id: str, requester: Requester
    ) -> AccessDecision:
        """Decide read access for one node."""
        if not is_valid_id(node_id):
            return AccessDecision(False, AccessReason.NOT_FOUND)
        node = await self._store.get(session, node_id)
        denied = self._precheck(node)
        if denied is not None:
            return denied
        assert node is not None
        return (await self._run_chain(session, requester, [node]))[node.id]

    async def check_bulk_read_access(
        self, session: AsyncSession, node_ids: Iterable[str], requester: Requester
    ) -> dict[str, AccessDecision]:
        """Per-id verdicts for every id, in input order; never short-circuits."""
        ids = list(dict.fromkeys(node_ids))
        nodes = await self._store.get_many(session, [i for i in ids if is_valid_id(i)])
        verdicts: dict[str, AccessDecision] = {}
        live: list[NodeBase] = []
        for node_id in ids:
            node = nodes.get(node_id)
            denied = self._precheck(node)
            if denied is not None:
                verdicts[node_id] = denied
            else:
                assert node is not None
                live.append(node)
        chain = await self._run_chain(session, requester, live) if live else {}
        logger.debug(
            "Bulk read check for %s: %d ids, %d denied before rules",
            requester.user_id, len(ids), len(verdicts),
        )
        return {node_id: verdicts.get(node_id) or chain[node_id] for node_id in ids}

    async def require_read_decision(
        self, session: AsyncSession, node_id: str, requester: Requester
    ) -> AccessDecision:
        """Granted decision for a readable node; raise NotFoundError or ForbiddenError otherwise."""
        check_id(node_id, "node id")
        decision = await self.check_read_access(session, node_id, requester)
        self._raise_unless_granted(decision, node_id)
        return decision

    async def require_read(
        self, session: AsyncSession, node_id: str, requester: Requester
    ) -> NodeBase:
        """Return the node if readable; raise NotFoundError or ForbiddenError otherwise."""
        decision = await self.require_read_decision(session, node_id, requester)
        assert decision.node is not None
        return decision.node

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def check_write_access(
        self,
        session: AsyncSession,
        node_id: str,
        requester_id: str,
        *,
        allow_deleted: bool = False,
    ) -> AccessDecision:
        """Owner-only check. ``allow_deleted`` lets trash operations reach trashed rows."""
        if not is_valid_id(node_id):
            return AccessDecision(False, AccessReason.NOT_FOUND)
        node = await self._store.get(session, node_id)
        if node is None:
            return AccessDecision(False, AccessReason.NOT_FOUND)
        if node.is_deleted and not allow_deleted:
            return AccessDecision(False, AccessReason.DELETED, node)
        if node.owner_id != requester_id:
            return AccessDecision(False, AccessReason.NOT_OWNER, node)
        return AccessDecision(True, AccessReason.OWNER, node, node.id)

    async def require_write(
        self,
        session: AsyncSession,
        node_id: str,
        requester_id: str,
        *,
        allow_deleted: bool = False,
    ) -> NodeBase:
        """Return the node if owned by *requester_id*; raise otherwise."""
        check_id(node_id, "node id")
        decision = await self.check_write_access(
            session, node_id, requester_id, allow_deleted=allow_deleted
        )
        return self._raise_unless_granted(decision, node_id)

    @staticmethod
    def _raise_unless_granted(decision: AccessDecision, node_id: str) -> NodeBase:
        if decision.granted:
            assert decision.node is not None
            return decision.node
        if decision.reason in (AccessReason.NOT_FOUND, AccessReason.DELETED):
            raise NotFoundError(f"Item not found: {node_id}")
        if decision.reason == AccessReason.NOT_OWNER:
            raise ForbiddenError("Only the owner can modify this item")
        raise ForbiddenError("You do not have access to this item")

    # ------------------------------------------------------------------
    # Grant scans used by listings and search
    # ------------------------------------------------------------------

    async def granted_roots(self, session: AsyncSession, requester: Requester) -> set[str]:
        """Ids of every node carrying a live grant for *requester* (user or cohort)."""
        model = self.direct_rule.grant_model
        result = await session.execute(
            select(model).where(model.grantee_id == requester.user_id)
        )
        now = utcnow()
        ids = {g.node_id for g in result.scalars().all() if not is_expired(g.expires_at, now)}
        if isinstance(requester, Student):
            ids |= await self.class_rule.granted_node_ids(session, requester)
        return ids

    async def explicit_grant_ids(
        self, session: AsyncSession, requester: Requester, node_ids: Iterable[str]
    ) -> set[str]:
        """Subset of *node_ids* carrying a live grant recorded for *requester* itself."""
        ids = list(node_ids)
        granted = await self.direct_rule.granted_node_ids(session, requester.user_id, ids)
        if isinstance(requester, Student):
            granted |= await self.class_rule.granted_node_ids(session, requester, ids)
        return granted
