# crm/models/__init__.py
"""
SQLAlchemy ORM models for database entities.
"""

from crm.models.lead import LeadData
from crm.models.lead_activity import LeadActivity
from crm.models.lead_assignment import AssignmentEvent, LeadAssignment
from crm.models.lead_meta import LeadMeta
from crm.models.lead_stage import LeadStage
from crm.models.lead_status import LeadStatus
from crm.models.tenant import Entity, FacebookPage
from crm.models.user import User

__all__ = [
    "AssignmentEvent",
    "Entity",
    "FacebookPage",
    "LeadActivity",
    "LeadAssignment",
    "LeadData",
    "LeadMeta",
    "LeadStage",
    "LeadStatus",
    "User",
]
