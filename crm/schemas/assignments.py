from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class AssignIn(BaseModel):
    lead_id: int
    user_id: int
    reason: Optional[str] = Field(default=None, max_length=255)
    notes: Optional[str] = None


class UnassignIn(BaseModel):
    lead_id: int
    reason: Optional[str] = Field(default=None, max_length=255)


class BulkAssignIn(BaseModel):
    max_per_user: Optional[int] = Field(default=None, ge=1)
    reason: Optional[str] = Field(default=None, max_length=255)


class AssignmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    assigned_user_id: Optional[int] = None
    assigned_by_user_id: Optional[int] = None
    previous_user_id: Optional[int] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    assigned_at: Optional[datetime] = None


class AssignmentEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    action: str
    from_user_id: Optional[int] = None
    to_user_id: Optional[int] = None
    acting_user_id: Optional[int] = None
    reason: Optional[str] = None
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
