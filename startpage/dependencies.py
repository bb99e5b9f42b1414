"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from startpage.config import get_settings
from startpage.db import InMemoryNodeStore, NodeStore, SqlNodeStore
from startpage.errors import UnauthorizedError
from startpage.service import BookmarkService

logger = logging.getLogger(__name__)

_node_store: NodeStore | None = None


def get_node_store() -> NodeStore:
    """
    Return a singleton node store so state persists across requests.
    """
    global _node_store
    if _node_store:
        return _node_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.database_url:
        logger.info("Using in-memory bookmark store")
        _node_store = InMemoryNodeStore()
    else:
        logger.info("Using SQL bookmark store")
        _node_store = SqlNodeStore(settings.database_url)
    return _node_store


def get_bookmark_service(
    store: NodeStore = Depends(get_node_store),
) -> BookmarkService:
    settings = get_settings()
    return BookmarkService(store, max_tree_depth=settings.max_tree_depth)


def get_owner_id(request: Request) -> str:
    """
    Owner id placed on the request by the upstream authentication layer.
    """
    settings = get_settings()
    owner_id = (request.headers.get(settings.owner_header) or "").strip()
    if not owner_id:
        raise UnauthorizedError()
    return owner_id
