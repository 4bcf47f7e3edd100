# crm/models/lead_activity.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from crm.db.base import Base, TenantMixin


class LeadActivity(TenantMixin, Base):
    __tablename__ = "lead_activities"
    __table_args__ = (
        CheckConstraint(
            "activity_type IN ('call','email','meeting','note','status_change','assignment','follow_up')",
            name="lead_activities_type_valid",
        ),
        CheckConstraint("priority IN ('low','medium','high','urgent')", name="lead_activities_priority_valid"),
        CheckConstraint("status IN ('pending','completed','cancelled')", name="lead_activities_status_valid"),
        Index("idx_lead_activities_lead", "entity_id", "lead_id", "created_at"),
        Index("idx_lead_activities_follow_up", "entity_id", "status", "next_follow_up_date"),
        Index("idx_lead_activities_user", "entity_id", "user_id"),
    )

    lead_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("lead_data.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    activity_type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    next_follow_up_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, server_default="medium")
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="pending")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
