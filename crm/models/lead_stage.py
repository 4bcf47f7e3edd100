# crm/models/lead_stage.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Numeric, Text, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from crm.db.base import Base, TenantMixin


class LeadStage(TenantMixin, Base):
    """A period a lead spent in one status. Open while exited_at is NULL."""

    __tablename__ = "lead_stages"
    __table_args__ = (
        UniqueConstraint("lead_id", "sequence", name="uq_lead_stages_lead_sequence"),
        # At most one open stage per lead
        Index(
            "uq_lead_stages_open",
            "lead_id",
            unique=True,
            postgresql_where=text("exited_at IS NULL"),
        ),
        Index("idx_lead_stages_entity_entered", "entity_id", "entered_at"),
        Index("idx_lead_stages_entity_status", "entity_id", "status_id"),
    )

    lead_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("lead_data.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("lead_statuses.id", ondelete="RESTRICT"), nullable=False
    )
    # NULL for stages opened by the system (initial "new" stage)
    user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)

    entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    exited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    next_action_required: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    @property
    def is_open(self) -> bool:
        return self.exited_at is None
