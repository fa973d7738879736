"""SQLModel database models for Arbor."""

from arbor.models.nodes import Node, NodeBase, NodeStatus, node_indexes
from arbor.models.shares import (
    ClassShareGrant,
    ClassShareGrantBase,
    ShareGrant,
    ShareGrantBase,
)

__all__ = [
    "ClassShareGrant",
    "ClassShareGrantBase",
    "Node",
    "NodeBase",
    "NodeStatus",
    "ShareGrant",
    "ShareGrantBase",
    "node_indexes",
]
