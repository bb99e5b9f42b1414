"""
Tree algorithms over the flat, parent-pointer node store.

All traversals are iterative and keep a visited set, so corrupted data
(dangling parents or pre-existing cycles) cannot loop forever or blow the
call stack on deep trees.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable, Optional

from startpage.db import NodeRecord, NodeStore
from startpage.errors import InvalidParentError

logger = logging.getLogger(__name__)

SORT_CREATED = "created"
SORT_TITLE = "title"


def validate_parent(
    store: NodeStore, owner_id: str, parent_id: Optional[str]
) -> Optional[NodeRecord]:
    """Return the parent folder, or None for root level.

    Raises InvalidParentError when the id does not resolve to a folder owned
    by ``owner_id``.
    """
    if not parent_id:
        return None
    parent = store.find_by_id(owner_id, parent_id)
    if parent is None or not parent.is_folder:
        raise InvalidParentError()
    return parent


def would_create_cycle(
    store: NodeStore,
    owner_id: str,
    item_id: str,
    candidate_parent_id: Optional[str],
    *,
    max_depth: Optional[int] = None,
) -> bool:
    """Walk up from ``candidate_parent_id`` looking for ``item_id``.

    A revisited id (an existing cycle) or a walk longer than ``max_depth``
    counts as a cycle. A dangling parent reference ends the walk.
    """
    visited: set[str] = set()
    current = candidate_parent_id
    while current:
        if current == item_id:
            return True
        if current in visited:
            logger.warning(
                "Existing cycle through %s in tree of owner %s", current, owner_id
            )
            return True
        visited.add(current)
        if max_depth is not None and len(visited) > max_depth:
            logger.warning(
                "Ancestor walk from %s exceeded %d steps for owner %s",
                candidate_parent_id,
                max_depth,
                owner_id,
            )
            return True
        node = store.find_by_id(owner_id, current)
        if node is None:
            break
        current = node.parent_id
    return False


def collect_descendants(
    store: NodeStore, owner_id: str, folder_id: str
) -> list[str]:
    """Breadth-first ids of every node beneath ``folder_id`` (each id once)."""
    descendants: list[str] = []
    seen = {folder_id}
    queue = deque([folder_id])
    while queue:
        parent_id = queue.popleft()
        for child in store.find_children(owner_id, parent_id):
            if child.id in seen:
                continue
            seen.add(child.id)
            descendants.append(child.id)
            if child.is_folder:
                queue.append(child.id)
    return descendants


def sort_nodes(nodes: Iterable[NodeRecord], by: str = SORT_CREATED) -> list[NodeRecord]:
    if by == SORT_TITLE:
        return sorted(nodes, key=lambda node: (node.title.casefold(), node.title))
    if by == SORT_CREATED:
        return sorted(nodes, key=lambda node: node.created_at)
    raise ValueError(f"Unknown sort order: {by}")


def build_tree(nodes: Iterable[NodeRecord]) -> list[dict]:
    """Nest a flat list of one owner's nodes into a forest of dicts.

    Sibling order follows the input order. Nodes whose parent is missing or
    is not a folder are placed at root level; nodes caught in a parent cycle
    are detached from their parent and placed at root level as well, so every
    input node appears exactly once.
    """
    nodes = list(nodes)
    by_id: dict[str, dict] = {}
    folders: set[str] = set()
    for node in nodes:
        by_id[node.id] = {**node.as_dict(), "children": []}
        if node.is_folder:
            folders.add(node.id)

    roots: list[dict] = []
    attached_to: dict[str, str] = {}
    for node in nodes:
        entry = by_id[node.id]
        parent_id = node.parent_id
        if parent_id is None:
            roots.append(entry)
        elif parent_id not in folders:
            logger.warning(
                "Node %s has invalid parent %s, placing at root", node.id, parent_id
            )
            roots.append(entry)
        else:
            by_id[parent_id]["children"].append(entry)
            attached_to[node.id] = parent_id

    reached: set[str] = set()

    def mark(entry: dict) -> None:
        stack = [entry]
        while stack:
            current = stack.pop()
            if current["id"] in reached:
                continue
            reached.add(current["id"])
            stack.extend(current["children"])

    for root in roots:
        mark(root)

    for node in nodes:
        if node.id in reached:
            continue
        # Unreached nodes hang off a cycle; climb until an id repeats.
        path: set[str] = set()
        current = node.id
        while current not in path:
            path.add(current)
            current = attached_to[current]
        logger.warning("Node %s is part of a parent cycle, placing at root", current)
        entry = by_id[current]
        siblings = by_id[attached_to[current]]["children"]
        siblings[:] = [child for child in siblings if child is not entry]
        roots.append(entry)
        mark(entry)

    return roots


def count_tree(roots: Iterable[dict]) -> int:
    """Total number of entries in a forest produced by build_tree."""
    total = 0
    stack = list(roots)
    while stack:
        entry = stack.pop()
        total += 1
        stack.extend(entry["children"])
    return total


def find_orphans(nodes: Iterable[NodeRecord]) -> list[NodeRecord]:
    """Nodes whose parent does not resolve to a folder in ``nodes``."""
    nodes = list(nodes)
    folders = {node.id for node in nodes if node.is_folder}
    return [
        node
        for node in nodes
        if node.parent_id is not None and node.parent_id not in folders
    ]
