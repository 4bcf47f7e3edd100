# crm/models/tenant.py
from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from crm.db.base import Base, TenantMixin


class Entity(Base):
    """A tenant. Every lead, stage, assignment and activity belongs to one."""

    __tablename__ = "entities"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    # Shared key sent by the tenant's website forms in X-Website-Key
    website_key: Mapped[Optional[str]] = mapped_column(String(128), nullable=True, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")


class FacebookPage(TenantMixin, Base):
    """Maps a Facebook page id to the tenant that owns its lead forms."""

    __tablename__ = "facebook_pages"

    page_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    page_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")
