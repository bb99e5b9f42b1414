"""
Pydantic schemas for the bookmark API. Wire names are camelCase.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NodeCreatePayload(CamelModel):
    # Presence and values are checked by the service so that missing fields
    # produce the same error body as other validation failures.
    kind: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("kind", "type")
    )
    title: Optional[str] = Field(default=None, max_length=512)
    parent_id: Optional[str] = None
    url: Optional[str] = Field(default=None, max_length=2048)


class NodeUpdatePayload(CamelModel):
    """Only fields present in the request body are applied.

    ``parentId: null`` moves the node to root level. ``version`` enables an
    optimistic concurrency check against the stored node.
    """

    title: Optional[str] = Field(default=None, max_length=512)
    parent_id: Optional[str] = None
    url: Optional[str] = Field(default=None, max_length=2048)
    version: Optional[int] = None

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True, exclude={"version"})


class NodeResponse(CamelModel):
    id: str
    owner_id: str
    kind: str
    title: str
    parent_id: Optional[str] = None
    url: Optional[str] = None
    created_at: datetime
    version: int


class NodeTreeResponse(NodeResponse):
    children: list["NodeTreeResponse"] = Field(default_factory=list)


NodeTreeResponse.model_rebuild()


class DeleteResponse(CamelModel):
    success: bool = True
    removed_count: int


class ErrorResponse(BaseModel):
    error: str
    code: str
