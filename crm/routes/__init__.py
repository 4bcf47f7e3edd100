# crm/routes/__init__.py
"""
API route handlers organized by domain.
"""

from crm.routes.activities import router as activities_router
from crm.routes.assignments import router as assignments_router
from crm.routes.health import router as health_router
from crm.routes.leads import router as leads_router
from crm.routes.stages import router as stages_router
from crm.routes.webhooks import router as webhooks_router

__all__ = [
    "activities_router",
    "assignments_router",
    "health_router",
    "leads_router",
    "stages_router",
    "webhooks_router",
]
