from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class LeadOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_id: int
    lead_meta_id: int
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    raw_field_data: Dict[str, Any] = Field(default_factory=dict)
    consent_time: Optional[datetime] = None
    platform_key: str
    source_page_id: Optional[str] = None
    source_page_name: Optional[str] = None
    status: str
    assigned_user_id: Optional[int] = None
    assigned_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LeadContactUpdate(BaseModel):
    """Manual edit; only contact fields are accepted."""

    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=64)
    first_name: Optional[str] = Field(default=None, max_length=150)
    last_name: Optional[str] = Field(default=None, max_length=150)
    full_name: Optional[str] = Field(default=None, max_length=300)
