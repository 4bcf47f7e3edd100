# crm/routes/stages.py
from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from crm.routes.deps import get_pipeline_service
from crm.schemas.stages import ChangeStatusIn, StageNotesIn, StatusOut
from crm.services.auth import CurrentUser, get_current_user
from crm.services.pipeline import PipelineService, StageFilters, stage_row

router = APIRouter(prefix="/lead-stages", tags=["lead-stages"])


@router.post("/change-status")
async def change_status(
    body: ChangeStatusIn,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline_service),
):
    change = await pipeline.change_status(
        user.entity_id,
        body.lead_id,
        body.status_id,
        user.id,
        notes=body.notes,
        next_action_required=body.next_action_required,
    )
    return {"success": True, "message": "Lead status updated", "data": asdict(change)}


@router.put("/update-notes")
async def update_notes(
    body: StageNotesIn,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline_service),
):
    stage = await pipeline.update_stage_notes(
        user.entity_id, body.stage_id, body.notes, body.next_action_required
    )
    return {"success": True, "data": stage_row(stage)}


@router.get("/lead/{lead_id}/current")
async def current_stage(
    lead_id: int,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline_service),
):
    return {"success": True, "data": await pipeline.get_current_stage(user.entity_id, lead_id)}


@router.get("/lead/{lead_id}/history")
async def stage_history(
    lead_id: int,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline_service),
):
    return {"success": True, "data": await pipeline.get_stage_history(user.entity_id, lead_id)}


@router.get("/lead/{lead_id}/next-statuses")
async def next_statuses(
    lead_id: int,
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline_service),
):
    statuses = await pipeline.get_next_possible_statuses(user.entity_id, lead_id)
    return {
        "success": True,
        "data": [StatusOut.model_validate(s).model_dump() for s in statuses],
    }


@router.get("/entity")
async def entity_stages(
    status_id: Optional[int] = None,
    user_id: Optional[int] = None,
    lead_id: Optional[int] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    active_only: bool = False,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline_service),
):
    stages = await pipeline.list_entity_stages(
        user.entity_id,
        StageFilters(
            status_id=status_id,
            user_id=user_id,
            lead_id=lead_id,
            date_from=date_from,
            date_to=date_to,
            active_only=active_only,
            limit=limit,
            offset=offset,
        ),
    )
    return {"success": True, "data": stages}


@router.get("/sla-violations")
async def sla_violations(
    hours: Optional[int] = Query(None, ge=1),
    user: CurrentUser = Depends(get_current_user),
    pipeline: PipelineService = Depends(get_pipeline_service),
):
    return {"success": True, "data": await pipeline.list_sla_violations(user.entity_id, hours)}
