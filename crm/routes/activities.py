# crm/routes/activities.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from crm.routes.deps import get_activity_tracker
from crm.schemas.activities import ActivityIn, ActivityOut, ActivityStatusIn, BulkFollowUpIn, FollowUpIn
from crm.services.activities import ActivityFilters, ActivityTracker
from crm.services.auth import CurrentUser, get_current_user

router = APIRouter(prefix="/lead-activities", tags=["lead-activities"])


def _out(activity) -> dict:
    return ActivityOut.model_validate(activity).model_dump(mode="json")


def _filters(
    activity_type: Optional[str] = None,
    user_id: Optional[int] = None,
    lead_id: Optional[int] = None,
    priority: Optional[str] = None,
    status: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
) -> ActivityFilters:
    return ActivityFilters(
        activity_type=activity_type,
        user_id=user_id,
        lead_id=lead_id,
        priority=priority,
        status=status,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )


@router.post("/log")
async def log_activity(
    body: ActivityIn,
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    activity = await tracker.log_activity(
        user.entity_id,
        body.lead_id,
        user.id,
        body.activity_type,
        body.description,
        next_follow_up_date=body.next_follow_up_date,
        priority=body.priority,
        status=body.status,
        notes=body.notes,
    )
    return {"success": True, "data": _out(activity)}


@router.put("/update-status")
async def update_status(
    body: ActivityStatusIn,
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    activity = await tracker.update_status(user.entity_id, body.activity_id, body.status, body.notes)
    return {"success": True, "data": _out(activity)}


@router.put("/update-follow-up")
async def update_follow_up(
    body: FollowUpIn,
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    activity = await tracker.update_follow_up_date(
        user.entity_id, body.activity_id, body.next_follow_up_date, body.notes
    )
    return {"success": True, "data": _out(activity)}


@router.put("/bulk-update-follow-ups")
async def bulk_update_follow_ups(
    body: BulkFollowUpIn,
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    updated = await tracker.bulk_update_follow_up_dates(
        user.entity_id, body.activity_ids, body.next_follow_up_date
    )
    return {
        "success": True,
        "data": {"requested": len(set(body.activity_ids)), "updated": updated},
    }


@router.get("/lead/{lead_id}")
async def lead_activities(
    lead_id: int,
    filters: ActivityFilters = Depends(_filters),
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    rows = await tracker.list_lead_activities(user.entity_id, lead_id, filters)
    return {"success": True, "data": [_out(a) for a in rows]}


@router.get("/lead/{lead_id}/timeline")
async def lead_timeline(
    lead_id: int,
    limit: int = Query(50, ge=1, le=500),
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    rows = await tracker.get_lead_timeline(user.entity_id, lead_id, limit=limit)
    return {"success": True, "data": [_out(a) for a in rows]}


@router.get("/entity")
async def entity_activities(
    filters: ActivityFilters = Depends(_filters),
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    rows = await tracker.list_entity_activities(user.entity_id, filters)
    return {"success": True, "data": [_out(a) for a in rows]}


@router.get("/user")
async def user_activities(
    filters: ActivityFilters = Depends(_filters),
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    rows = await tracker.list_user_activities(user.entity_id, filters.user_id or user.id, filters)
    return {"success": True, "data": [_out(a) for a in rows]}


@router.get("/follow-ups/pending")
async def pending_follow_ups(
    user_id: Optional[int] = None,
    priority: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    rows = await tracker.list_pending_follow_ups(
        user.entity_id,
        user_id=user_id,
        priority=priority,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    return {"success": True, "data": rows}


@router.get("/follow-ups/overdue")
async def overdue_follow_ups(
    user_id: Optional[int] = None,
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    return {"success": True, "data": await tracker.list_overdue_follow_ups(user.entity_id, user_id)}


@router.get("/follow-ups/summary")
async def follow_up_summary(
    user_id: Optional[int] = None,
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    return {"success": True, "data": await tracker.get_follow_up_summary(user.entity_id, user_id)}


@router.get("/statistics")
async def activity_statistics(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    user: CurrentUser = Depends(get_current_user),
    tracker: ActivityTracker = Depends(get_activity_tracker),
):
    return {"success": True, "data": await tracker.get_statistics(user.entity_id, date_from, date_to)}
