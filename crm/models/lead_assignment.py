# crm/models/lead_assignment.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from crm.db.base import Base, TenantMixin

ASSIGNMENT_ACTIONS = ("assigned", "reassigned", "unassigned")


class LeadAssignment(TenantMixin, Base):
    """Current assignee snapshot for a lead. History lives in lead_assignment_events."""

    __tablename__ = "lead_assignments"
    __table_args__ = (
        UniqueConstraint("entity_id", "lead_id", name="uq_lead_assignments_entity_lead"),
        Index("idx_lead_assignments_user", "entity_id", "assigned_user_id"),
    )

    lead_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("lead_data.id", ondelete="CASCADE"), nullable=False
    )
    assigned_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_by_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    previous_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, server_default=func.now()
    )


class AssignmentEvent(TenantMixin, Base):
    """Append-only assignment history. Rows are never updated or deleted."""

    __tablename__ = "lead_assignment_events"
    __table_args__ = (
        CheckConstraint(
            "action IN ('assigned','reassigned','unassigned')",
            name="lead_assignment_events_action_valid",
        ),
        Index("idx_lead_assignment_events_lead", "entity_id", "lead_id", "created_at"),
    )

    lead_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("lead_data.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    from_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    to_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    acting_user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
