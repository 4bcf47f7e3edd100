# crm/models/user.py
from __future__ import annotations

from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from crm.db.base import Base, TenantMixin

USER_ROLES = ("admin", "manager", "sales_rep")


class User(TenantMixin, Base):
    """Tenant user. Accounts are managed elsewhere; this service only reads them."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("role IN ('admin','manager','sales_rep')", name="users_role_valid"),
        Index("idx_users_entity_active", "entity_id", "is_active"),
    )

    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, server_default="sales_rep")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, server_default="true")
