from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ChangeStatusIn(BaseModel):
    lead_id: int
    status_id: int
    notes: Optional[str] = None
    next_action_required: Optional[str] = None


class StageNotesIn(BaseModel):
    stage_id: int
    notes: Optional[str] = Field(default=None, max_length=5000)
    next_action_required: Optional[str] = None


class StatusOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    display_order: int = 0
