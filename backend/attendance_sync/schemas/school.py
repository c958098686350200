"""Pydantic schemas for School and SchoolAlias."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class SchoolAliasRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: str
    normalized_code: str
    version: int
    is_primary: bool
    is_active: bool
    deactivated_at: datetime | None = None
    reason: str | None = None


class SchoolRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    code: str
    name: str
    period_count: int
    is_active: bool
    aliases: list[SchoolAliasRead] = []
