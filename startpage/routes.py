"""
HTTP routes for the bookmark tree.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from startpage.dependencies import get_bookmark_service, get_owner_id
from startpage.schemas import (
    DeleteResponse,
    ErrorResponse,
    NodeCreatePayload,
    NodeResponse,
    NodeTreeResponse,
    NodeUpdatePayload,
)
from startpage.service import BookmarkService
from startpage.tree import SORT_CREATED

router = APIRouter(
    prefix="/bookmarks",
    tags=["bookmarks"],
    responses={
        400: {"model": ErrorResponse},
        401: {"description": "Missing authorization"},
        503: {"model": ErrorResponse},
    },
)


def _node_response(node) -> NodeResponse:
    return NodeResponse(**node.as_dict())


@router.get("", response_model=list[NodeResponse])
def list_bookmarks(
    parent_id: str | None = Query(
        None,
        alias="parentId",
        description='Filter by parent folder id, "null" for top-level items',
    ),
    owner_id: str = Depends(get_owner_id),
    service: BookmarkService = Depends(get_bookmark_service),
):
    if parent_id == "null":
        nodes = service.list_nodes(owner_id, root_only=True)
    else:
        nodes = service.list_nodes(owner_id, parent_id=parent_id)
    return [_node_response(node) for node in nodes]


@router.get("/tree", response_model=list[NodeTreeResponse])
def get_bookmark_tree(
    sort: str = Query(SORT_CREATED, pattern="^(created|title)$"),
    owner_id: str = Depends(get_owner_id),
    service: BookmarkService = Depends(get_bookmark_service),
):
    roots = service.get_tree(owner_id, sort=sort)
    return [NodeTreeResponse.model_validate(root) for root in roots]


@router.get(
    "/{node_id}",
    response_model=NodeResponse,
    responses={404: {"model": ErrorResponse}},
)
def get_bookmark(
    node_id: str,
    owner_id: str = Depends(get_owner_id),
    service: BookmarkService = Depends(get_bookmark_service),
):
    return _node_response(service.get_node(owner_id, node_id))


@router.post(
    "",
    response_model=NodeResponse,
    status_code=201,
    responses={409: {"model": ErrorResponse}},
)
def create_bookmark(
    payload: NodeCreatePayload,
    owner_id: str = Depends(get_owner_id),
    service: BookmarkService = Depends(get_bookmark_service),
):
    node = service.create_node(
        owner_id,
        kind=payload.kind,
        title=payload.title,
        parent_id=payload.parent_id,
        url=payload.url,
    )
    return _node_response(node)


@router.put(
    "/{node_id}",
    response_model=NodeResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def update_bookmark(
    node_id: str,
    payload: NodeUpdatePayload,
    owner_id: str = Depends(get_owner_id),
    service: BookmarkService = Depends(get_bookmark_service),
):
    """
    Update title or URL, or move to a different parent (null for root).
    """
    node = service.update_node(
        owner_id, node_id, payload.changes(), expected_version=payload.version
    )
    return _node_response(node)


@router.delete(
    "/{node_id}",
    response_model=DeleteResponse,
    responses={404: {"model": ErrorResponse}},
)
def delete_bookmark(
    node_id: str,
    owner_id: str = Depends(get_owner_id),
    service: BookmarkService = Depends(get_bookmark_service),
):
    """
    Delete a link, or a folder together with everything beneath it.
    """
    removed = service.delete_node(owner_id, node_id)
    return DeleteResponse(removed_count=removed)
