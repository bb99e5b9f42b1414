"""
Bookmark tree service: owner-scoped reads and validated mutations.

Mutations run inside the store's per-owner lock so that the parent and
cycle checks and the following write see the same tree.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Iterator, Optional

from startpage.db import (
    UPDATABLE_FIELDS,
    DuplicateKeyError,
    NodeKind,
    NodeRecord,
    NodeStore,
    StoreError,
    VersionMismatchError,
)
from startpage.errors import (
    CircularReferenceError,
    ConflictError,
    DuplicateTitleError,
    NotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from startpage.tree import (
    SORT_CREATED,
    build_tree,
    collect_descendants,
    find_orphans,
    sort_nodes,
    validate_parent,
    would_create_cycle,
)

logger = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"^https?://", re.IGNORECASE)


def _clean_title(title: Optional[str]) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("title is required")
    return title.strip()


def _clean_url(url: Optional[str]) -> str:
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("URL is required for links")
    url = url.strip()
    if not URL_PATTERN.match(url):
        raise ValidationError("URL must start with http:// or https://")
    return url


def _parse_kind(kind) -> NodeKind:
    try:
        return NodeKind(kind)
    except ValueError:
        raise ValidationError("type must be 'folder' or 'link'") from None


class BookmarkService:
    """Operations on one store; every call is scoped to an owner id."""

    def __init__(self, store: NodeStore, *, max_tree_depth: Optional[int] = None):
        self.store = store
        self.max_tree_depth = max_tree_depth

    @contextmanager
    def _store_errors(self) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as exc:
            raise DuplicateTitleError() from exc
        except VersionMismatchError as exc:
            raise ConflictError() from exc
        except StoreError as exc:
            logger.exception("Bookmark store failure")
            raise StoreUnavailableError() from exc

    def _require(self, owner_id: str, node_id: str) -> NodeRecord:
        node = self.store.find_by_id(owner_id, node_id)
        if node is None:
            raise NotFoundError()
        return node

    def list_nodes(
        self,
        owner_id: str,
        *,
        parent_id: Optional[str] = None,
        root_only: bool = False,
    ) -> list[NodeRecord]:
        with self._store_errors():
            if root_only:
                nodes = self.store.find_children(owner_id, None)
            elif parent_id:
                nodes = self.store.find_children(owner_id, parent_id)
            else:
                nodes = self.store.find_by_owner(owner_id)
        return sort_nodes(nodes, SORT_CREATED)

    def get_node(self, owner_id: str, node_id: str) -> NodeRecord:
        with self._store_errors():
            return self._require(owner_id, node_id)

    def get_tree(self, owner_id: str, *, sort: str = SORT_CREATED) -> list[dict]:
        with self._store_errors():
            nodes = self.store.find_by_owner(owner_id)
        try:
            ordered = sort_nodes(nodes, sort)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        return build_tree(ordered)

    def create_node(
        self,
        owner_id: str,
        *,
        kind,
        title: Optional[str],
        parent_id: Optional[str] = None,
        url: Optional[str] = None,
    ) -> NodeRecord:
        if not kind or not title:
            raise ValidationError("type and title are required")
        kind = _parse_kind(kind)
        title = _clean_title(title)
        if kind == NodeKind.LINK:
            url = _clean_url(url)
        elif url is not None:
            raise ValidationError("Folders cannot have a URL")

        with self._store_errors(), self.store.owner_lock(owner_id):
            validate_parent(self.store, owner_id, parent_id)
            node = self.store.insert(
                owner_id,
                kind=kind,
                title=title,
                parent_id=parent_id or None,
                url=url,
            )
        logger.info("Created %s %s for owner %s", node.kind.value, node.id, owner_id)
        return node

    def update_node(
        self,
        owner_id: str,
        node_id: str,
        changes: dict,
        *,
        expected_version: Optional[int] = None,
    ) -> NodeRecord:
        """Rename, re-point or move a node.

        ``changes`` holds only the fields the caller provided; a ``parent_id``
        of None moves the node to root level.
        """
        if not changes:
            raise ValidationError("Nothing to update")
        unknown = set(changes) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        if "parent_id" in changes and changes["parent_id"] == node_id:
            raise ValidationError("Item cannot be its own parent")

        with self._store_errors(), self.store.owner_lock(owner_id):
            node = self._require(owner_id, node_id)
            if expected_version is not None and node.version != expected_version:
                raise ConflictError()

            update: dict = {}
            if "title" in changes:
                update["title"] = _clean_title(changes["title"])
            if "url" in changes:
                if node.is_folder:
                    raise ValidationError("Folders cannot have a URL")
                update["url"] = _clean_url(changes["url"])
            if "parent_id" in changes:
                new_parent = changes["parent_id"] or None
                if new_parent is not None:
                    validate_parent(self.store, owner_id, new_parent)
                    if new_parent != node.parent_id and would_create_cycle(
                        self.store,
                        owner_id,
                        node_id,
                        new_parent,
                        max_depth=self.max_tree_depth,
                    ):
                        raise CircularReferenceError()
                update["parent_id"] = new_parent

            if not update:
                return node
            updated = self.store.update_one(
                owner_id, node_id, update, expected_version=node.version
            )
            if updated is None:
                raise NotFoundError()
        logger.info(
            "Updated %s for owner %s (%s)", node_id, owner_id, ", ".join(sorted(update))
        )
        return updated

    def delete_node(self, owner_id: str, node_id: str) -> int:
        """Delete a node; folders take their whole subtree with them.

        Descendants go first so a folder never disappears while children
        still point at it. Returns the number of removed nodes.
        """
        with self._store_errors(), self.store.owner_lock(owner_id):
            node = self._require(owner_id, node_id)
            removed = 0
            if node.is_folder:
                descendant_ids = collect_descendants(self.store, owner_id, node_id)
                if descendant_ids:
                    removed += self.store.delete_many(owner_id, descendant_ids)
            removed += self.store.delete_one(owner_id, node_id)
        logger.info("Deleted %s for owner %s, removed %d", node_id, owner_id, removed)
        return removed

    def find_orphans(self, owner_id: str) -> list[NodeRecord]:
        with self._store_errors():
            return find_orphans(self.store.find_by_owner(owner_id))

    def prune_orphans(self, owner_id: str) -> int:
        """Delete orphaned nodes (and their subtrees) left by partial deletes."""
        removed = 0
        with self._store_errors(), self.store.owner_lock(owner_id):
            for orphan in find_orphans(self.store.find_by_owner(owner_id)):
                ids = [orphan.id]
                if orphan.is_folder:
                    ids.extend(collect_descendants(self.store, owner_id, orphan.id))
                removed += self.store.delete_many(owner_id, ids)
        if removed:
            logger.info("Pruned %d orphaned nodes for owner %s", removed, owner_id)
        return removed
