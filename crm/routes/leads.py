# crm/routes/leads.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from crm.db.session import get_session, transaction
from crm.schemas.leads import LeadContactUpdate, LeadOut
from crm.services import lead_store
from crm.services.auth import CurrentUser, get_current_user
from crm.services.lead_store import LeadFilters

router = APIRouter(prefix="/leads", tags=["leads"])


def _out(lead) -> dict:
    return LeadOut.model_validate(lead).model_dump(mode="json")


@router.get("")
async def list_leads(
    status: Optional[str] = None,
    platform: Optional[str] = None,
    assigned_user_id: Optional[int] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    leads = await lead_store.list_leads(
        session,
        user.entity_id,
        LeadFilters(
            status=status,
            platform_key=platform,
            assigned_user_id=assigned_user_id,
            search=search,
            limit=limit,
            offset=offset,
        ),
    )
    return {"success": True, "data": [_out(lead) for lead in leads]}


@router.get("/counts")
async def lead_counts(
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    return {"success": True, "data": await lead_store.count_by_status(session, user.entity_id)}


@router.get("/unassigned")
async def unassigned_leads(
    limit: int = Query(100, ge=1, le=1000),
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    leads = await lead_store.list_unassigned_leads(session, user.entity_id, limit=limit)
    return {"success": True, "data": [_out(lead) for lead in leads]}


@router.get("/my-leads")
async def my_leads(
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    leads = await lead_store.list_leads(
        session,
        user.entity_id,
        LeadFilters(status=status, assigned_user_id=user.id, limit=limit, offset=offset),
    )
    return {"success": True, "data": [_out(lead) for lead in leads]}


@router.get("/{lead_id}")
async def get_lead(
    lead_id: int,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    lead = await lead_store.get_lead(session, user.entity_id, lead_id)
    return {"success": True, "data": _out(lead)}


@router.patch("/{lead_id}")
async def update_lead(
    lead_id: int,
    changes: LeadContactUpdate,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
):
    async with transaction(session):
        lead = await lead_store.update_lead_contact(
            session, user.entity_id, lead_id, changes.model_dump(exclude_unset=True)
        )
    return {"success": True, "data": _out(lead)}
