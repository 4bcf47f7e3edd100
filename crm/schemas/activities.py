from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ActivityIn(BaseModel):
    lead_id: int
    activity_type: str
    description: str = Field(..., min_length=1)
    next_follow_up_date: Optional[datetime] = None
    priority: str = "medium"
    status: str = "pending"
    notes: Optional[str] = None


class ActivityStatusIn(BaseModel):
    activity_id: int
    status: str
    notes: Optional[str] = None


class FollowUpIn(BaseModel):
    activity_id: int
    next_follow_up_date: Optional[datetime] = None
    notes: Optional[str] = None


class BulkFollowUpIn(BaseModel):
    activity_ids: List[int] = Field(..., min_length=1)
    next_follow_up_date: Optional[datetime] = None


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    lead_id: int
    user_id: int
    activity_type: str
    description: str
    next_follow_up_date: Optional[datetime] = None
    priority: str
    status: str
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
