# crm/db/__init__.py
"""
Database package for SQLAlchemy setup, session management, and base models.
"""

from crm.db.base import Base, TenantMixin
from crm.db.session import get_session, session_scope, transaction

__all__ = [
    "Base",
    "TenantMixin",
    "get_session",
    "session_scope",
    "transaction",
]
