"""
Audit one owner's bookmark tree for orphaned nodes.

Orphans are nodes whose parent no longer resolves to a folder, typically left
behind when a cascading delete failed part way. With --prune they are removed
together with their subtrees.

Exit status: 0 when the tree is clean (or was pruned), 1 when orphans remain.
"""

from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from startpage.config import get_settings
from startpage.db import SqlNodeStore, StoreError
from startpage.errors import BookmarkError
from startpage.service import BookmarkService

logger = logging.getLogger(__name__)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check a bookmark tree for orphans")
    parser.add_argument("--owner", required=True, help="Owner id to check")
    parser.add_argument(
        "--database-url",
        type=str,
        default=None,
        help="SQLAlchemy URL (defaults to DATABASE_URL)",
    )
    parser.add_argument(
        "--prune",
        action="store_true",
        help="Delete orphaned nodes and their subtrees",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
    )

    settings = get_settings()
    database_url = args.database_url or settings.database_url
    if not database_url:
        logger.error("No database URL given and DATABASE_URL is not set")
        return 2

    try:
        store = SqlNodeStore(database_url)
    except StoreError as exc:
        logger.error("Could not open database: %s", exc)
        return 1
    service = BookmarkService(store, max_tree_depth=settings.max_tree_depth)
    try:
        orphans = service.find_orphans(args.owner)
        for node in orphans:
            logger.info(
                "Orphan %s %s (%r) points at missing parent %s",
                node.kind.value,
                node.id,
                node.title,
                node.parent_id,
            )
        if not orphans:
            logger.info("Tree for owner %s is clean", args.owner)
            return 0
        if not args.prune:
            logger.info("%d orphaned nodes found, rerun with --prune", len(orphans))
            return 1
        removed = service.prune_orphans(args.owner)
    except BookmarkError as exc:
        logger.error("Check failed: %s", exc.message)
        return 1

    logger.info("Removed %d nodes", removed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
