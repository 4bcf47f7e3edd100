# crm/routes/assignments.py
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from crm.routes.deps import get_assignment_engine
from crm.schemas.assignments import AssignIn, AssignmentEventOut, AssignmentOut, BulkAssignIn, UnassignIn
from crm.services.assignment import AssignmentEngine, AssignmentFilters
from crm.services.auth import MANAGER_ROLES, CurrentUser, get_current_user, require_role

router = APIRouter(prefix="/lead-assignments", tags=["lead-assignments"])


def _assignment(row) -> Optional[dict]:
    return AssignmentOut.model_validate(row).model_dump(mode="json") if row is not None else None


@router.post("/assign")
async def assign_lead(
    body: AssignIn,
    user: CurrentUser = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    outcome = await engine.assign(
        user.entity_id, body.lead_id, body.user_id, user.id, reason=body.reason, notes=body.notes
    )
    return {"success": True, "data": asdict(outcome)}


@router.post("/reassign")
async def reassign_lead(
    body: AssignIn,
    user: CurrentUser = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    outcome = await engine.reassign(
        user.entity_id, body.lead_id, body.user_id, user.id, reason=body.reason, notes=body.notes
    )
    return {"success": True, "data": asdict(outcome)}


@router.post("/unassign")
async def unassign_lead(
    body: UnassignIn,
    user: CurrentUser = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    outcome = await engine.unassign(user.entity_id, body.lead_id, user.id, reason=body.reason)
    return {"success": True, "data": asdict(outcome)}


@router.post("/bulk-assign")
async def bulk_assign(
    body: BulkAssignIn,
    user: CurrentUser = Depends(require_role(*MANAGER_ROLES)),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    result = await engine.bulk_assign_unassigned(
        user.entity_id, user.id, max_per_user=body.max_per_user, reason=body.reason
    )
    return {
        "success": True,
        "message": f"Assigned {result.total_assigned} leads",
        "data": result.to_dict(),
    }


@router.get("/lead/{lead_id}")
async def lead_assignment(
    lead_id: int,
    user: CurrentUser = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    return {"success": True, "data": _assignment(await engine.get_assignment(user.entity_id, lead_id))}


@router.get("/lead/{lead_id}/history")
async def lead_assignment_history(
    lead_id: int,
    user: CurrentUser = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    events = await engine.get_assignment_history(user.entity_id, lead_id)
    return {
        "success": True,
        "data": [AssignmentEventOut.model_validate(e).model_dump(mode="json") for e in events],
    }


@router.get("/entity")
async def entity_assignments(
    assigned_user_id: Optional[int] = None,
    assigned_by_user_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    rows = await engine.list_entity_assignments(
        user.entity_id,
        AssignmentFilters(
            assigned_user_id=assigned_user_id,
            assigned_by_user_id=assigned_by_user_id,
            date_from=date_from,
            date_to=date_to,
            limit=limit,
            offset=offset,
        ),
    )
    return {"success": True, "data": [_assignment(r) for r in rows]}


@router.get("/user")
async def user_assignments(
    user_id: Optional[int] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    rows = await engine.list_user_assignments(user.entity_id, user_id or user.id, limit=limit, offset=offset)
    return {"success": True, "data": [_assignment(r) for r in rows]}


@router.get("/workload-stats")
async def workload_stats(
    user: CurrentUser = Depends(get_current_user),
    engine: AssignmentEngine = Depends(get_assignment_engine),
):
    return {"success": True, "data": await engine.get_workload_stats(user.entity_id)}
