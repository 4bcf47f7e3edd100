"""FastAPI dependency providers for the service layer."""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from crm.db.session import get_session
from crm.services.activities import ActivityTracker
from crm.services.assignment import AssignmentEngine
from crm.services.lead_ingest import LeadIngestionService
from crm.services.pipeline import PipelineService


def get_pipeline_service(session: AsyncSession = Depends(get_session)) -> PipelineService:
    return PipelineService(session)


def get_assignment_engine(session: AsyncSession = Depends(get_session)) -> AssignmentEngine:
    return AssignmentEngine(session)


def get_activity_tracker(session: AsyncSession = Depends(get_session)) -> ActivityTracker:
    return ActivityTracker(session)


def get_ingestion_service(session: AsyncSession = Depends(get_session)) -> LeadIngestionService:
    return LeadIngestionService(session)
