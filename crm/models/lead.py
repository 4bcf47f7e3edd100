# crm/models/lead.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from crm.db.base import Base, TenantMixin

CONTACT_FIELDS = ("email", "phone", "first_name", "last_name", "full_name")


class LeadData(TenantMixin, Base):
    """The normalized lead. Exactly one per lead_meta row."""

    __tablename__ = "lead_data"
    __table_args__ = (
        Index("idx_lead_data_entity_status", "entity_id", "status"),
        Index("idx_lead_data_entity_assignee", "entity_id", "assigned_user_id"),
        Index("idx_lead_data_entity_created", "entity_id", "created_at"),
        Index("idx_lead_data_email", "email"),
        Index("idx_lead_data_phone", "phone"),
    )

    lead_meta_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("lead_meta.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(150), nullable=True)
    full_name: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    # Provider payload kept verbatim, including fields we do not map
    raw_field_data: Mapped[Dict[str, Any]] = mapped_column(JSONB, nullable=False, server_default="{}")
    consent_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    platform_key: Mapped[str] = mapped_column(String(20), nullable=False)
    source_page_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_page_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Owned by the pipeline; ingestion never overwrites it
    status: Mapped[str] = mapped_column(
        String(50), ForeignKey("lead_statuses.name", ondelete="RESTRICT"), nullable=False, server_default="new"
    )

    # Owned by the assignment engine; ingestion never overwrites them
    assigned_user_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
