# crm/schemas/__init__.py
"""
Pydantic schemas for request/response validation and serialization.
"""

from crm.schemas.activities import ActivityIn, ActivityOut
from crm.schemas.assignments import AssignIn, AssignmentEventOut, AssignmentOut
from crm.schemas.leads import LeadContactUpdate, LeadOut
from crm.schemas.stages import ChangeStatusIn, StatusOut
from crm.schemas.webhooks import WebsiteLeadIn, WebsiteLeadResponse

__all__ = [
    "ActivityIn",
    "ActivityOut",
    "AssignIn",
    "AssignmentEventOut",
    "AssignmentOut",
    "ChangeStatusIn",
    "LeadContactUpdate",
    "LeadOut",
    "StatusOut",
    "WebsiteLeadIn",
    "WebsiteLeadResponse",
]
