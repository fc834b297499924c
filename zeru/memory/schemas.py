"""Pydantic DTOs for the Memory Store.

These models define the public contract for the memory module.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

MemoryCategory = Literal["PREFERENCE", "FACT", "PROCEDURE", "DECISION", "CONTEXT"]

# tenant: organization-wide only (user_id IS NULL)
# user:   the caller's personal records only
# all:    both of the above
MemoryScope = Literal["tenant", "user", "all"]


class MemoryInput(BaseModel):
    """Input for storing a new memory record."""

    tenant_id: str
    user_id: str | None = None  # None = organization-wide
    content: str = Field(min_length=1)
    category: MemoryCategory
    importance: int = Field(default=5, ge=1, le=10)
    document_id: str | None = None  # Source document, when extracted from an attachment


class MemoryUpdate(BaseModel):
    """Partial update. Unset fields are left untouched."""

    content: str | None = Field(default=None, min_length=1)
    category: MemoryCategory | None = None
    importance: int | None = Field(default=None, ge=1, le=10)


class MemoryDetail(BaseModel):
    """Full memory record (embedding omitted)."""

    id: UUID
    tenant_id: str
    user_id: str | None
    content: str
    category: MemoryCategory
    importance: int
    document_id: str | None = None
    has_embedding: bool = False
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    similarity: float | None = None  # Set by search() when ranked by embedding

    @property
    def scope(self) -> Literal["tenant", "user"]:
        return "user" if self.user_id else "tenant"
