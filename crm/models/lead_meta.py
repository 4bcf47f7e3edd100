# crm/models/lead_meta.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from crm.db.base import Base, TenantMixin

PLATFORMS = ("facebook", "website")
PROCESSING_STATUSES = ("received", "processed", "failed")


class LeadMeta(TenantMixin, Base):
    """One row per external lead event, deduplicated on (entity, platform, source id)."""

    __tablename__ = "lead_meta"
    __table_args__ = (
        UniqueConstraint("entity_id", "platform_key", "source_lead_id", name="uq_lead_meta_source"),
        CheckConstraint("platform_key IN ('facebook','website')", name="lead_meta_platform_valid"),
        CheckConstraint(
            "processing_status IN ('received','processed','failed')",
            name="lead_meta_processing_status_valid",
        ),
        Index("idx_lead_meta_processing_status", "processing_status", "updated_at"),
    )

    platform_key: Mapped[str] = mapped_column(String(20), nullable=False)
    source_lead_id: Mapped[str] = mapped_column(String(128), nullable=False)

    page_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    form_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ad_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    campaign_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    page_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # First time the provider reported the event; never overwritten
    created_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    processing_status: Mapped[str] = mapped_column(String(20), nullable=False, server_default="received")
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")

    utm_source: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_medium: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_campaign: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_term: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    utm_content: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
