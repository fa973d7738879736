"""Materialized-path helpers.

A node's path is the ordered tuple of its ancestor ids, root first.  The
root level is the empty tuple.  For storage the tuple is encoded as a
delimiter-terminated string::

    ()              -> "/"
    ("a",)          -> "/a/"
    ("a", "b")      -> "/a/b/"

Every id is closed by the delimiter, so the encoded prefix of one node can
never match a sibling whose id merely starts with the same characters.
Subtree queries become plain string-prefix queries on the encoded column.

Everything here is pure: no I/O, no sessions.
"""

from __future__ import annotations

from collections.abc import Sequence

SEP = "/"
ROOT = SEP

NodePath = tuple[str, ...]


def _check_id(node_id: str) -> str:
    if not node_id or SEP in node_id:
        raise ValueError(f"Invalid node id for path: {node_id!r}")
    return node_id


def encode_path(ids: Sequence[str]) -> str:
    """Encode an ancestor-id sequence for storage."""
    if not ids:
        return ROOT
    return SEP + SEP.join(_check_id(i) for i in ids) + SEP


def decode_path(text: str) -> NodePath:
    """Decode a stored path back into an ancestor-id tuple."""
    if not text.startswith(SEP) or not text.endswith(SEP):
        raise ValueError(f"Malformed materialized path: {text!r}")
    inner = text[1:-1]
    if not inner:
        return ()
    parts = tuple(inner.split(SEP))
    if any(not p for p in parts):
        raise ValueError(f"Malformed materialized path: {text!r}")
    return parts


def _as_ids(path: Sequence[str] | str) -> NodePath:
    if isinstance(path, str):
        return decode_path(path)
    return tuple(path)


def build_path(parent_path: Sequence[str] | str | None, parent_id: str | None) -> NodePath:
    """Return the path of a child of *parent_id*.

    ``parent_id=None`` means the child lives at root and gets the empty path.
    """
    if parent_id is None:
        return ()
    ancestors = _as_ids(parent_path) if parent_path is not None else ()
    return (*ancestors, _check_id(parent_id))


def ancestor_ids(path: Sequence[str] | str) -> list[str]:
    """Ordered ancestor ids, root first."""
    return list(_as_ids(path))


def lineage(path: Sequence[str] | str, node_id: str) -> NodePath:
    """Ancestors followed by the node itself."""
    return (*_as_ids(path), node_id)


def subtree_prefix(path: Sequence[str] | str, node_id: str) -> str:
    """Encoded prefix shared by every strict descendant of *node_id*."""
    return encode_path(lineage(path, node_id))


def is_descendant(
    node_path: Sequence[str] | str,
    node_id: str,
    ancestor_path: Sequence[str] | str,
    ancestor_id: str,
) -> bool:
    """True iff ``node_path + [node_id]`` starts with ``ancestor_path + [ancestor_id]``.

    A node counts as lying within its own subtree.
    """
    node_chain = lineage(node_path, node_id)
    anc_chain = lineage(ancestor_path, ancestor_id)
    return node_chain[: len(anc_chain)] == anc_chain


def rewrite_prefix(
    old_prefix: Sequence[str] | str,
    new_prefix: Sequence[str] | str,
    path: Sequence[str] | str,
) -> NodePath:
    """Replace *old_prefix* at the head of *path* with *new_prefix*."""
    old = _as_ids(old_prefix)
    new = _as_ids(new_prefix)
    ids = _as_ids(path)
    if ids[: len(old)] != old:
        raise ValueError(f"Path {encode_path(ids)!r} does not start with {encode_path(old)!r}")
    return (*new, *ids[len(old) :])


def depth(path: Sequence[str] | str) -> int:
    """Number of ancestors; 0 at root."""
    return len(_as_ids(path))


def is_valid_depth(path: Sequence[str] | str, max_depth: int) -> bool:
    """True when a node with *path* sits above the configured depth limit."""
    return depth(path) < max_depth
