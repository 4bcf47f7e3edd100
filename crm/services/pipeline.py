from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.config import settings
from crm.core.exceptions import InvalidArgument, InvalidState, InvalidTransition, NotFoundError
from crm.core.logging import get_structlog_logger
from crm.db.session import transaction
from crm.models import LeadData, LeadStage, LeadStatus
from crm.services import lead_store
from crm.utils.time import hours_between, utcnow

logger = get_structlog_logger(__name__)

INITIAL_STATUS = "new"

DEFAULT_TRANSITIONS: Mapping[str, Iterable[str]] = {
    "new": ("qualified", "lost"),
    "qualified": ("contacted", "lost"),
    "contacted": ("meeting_scheduled", "proposal_sent", "lost"),
    "meeting_scheduled": ("proposal_sent", "negotiation", "lost"),
    "proposal_sent": ("negotiation", "won", "lost"),
    "negotiation": ("won", "lost"),
    "won": (),
    "lost": (),
}


class TransitionGraph:
    """Immutable directed graph of allowed pipeline status changes."""

    __slots__ = ("_edges", "_reverse")

    def __init__(self, transitions: Mapping[str, Iterable[str]]):
        edges = {source: frozenset(targets) for source, targets in transitions.items()}
        unknown = {t for targets in edges.values() for t in targets} - set(edges)
        if unknown:
            raise ValueError(f"transition targets without a state: {sorted(unknown)}")

        reverse: Dict[str, set] = {state: set() for state in edges}
        for source, targets in edges.items():
            for target in targets:
                reverse[target].add(source)

        self._edges = MappingProxyType(edges)
        self._reverse = MappingProxyType({k: frozenset(v) for k, v in reverse.items()})

    @property
    def statuses(self) -> FrozenSet[str]:
        return frozenset(self._edges)

    def next_statuses(self, status: str) -> FrozenSet[str]:
        """Allowed targets; empty for terminal or unknown statuses."""
        return self._edges.get(status, frozenset())

    def previous_statuses(self, status: str) -> FrozenSet[str]:
        return self._reverse.get(status, frozenset())

    def can_transition(self, current: str, target: str) -> bool:
        return target in self.next_statuses(current)

    def is_terminal(self, status: str) -> bool:
        return status in self._edges and not self._edges[status]

    def validate(self, current: str, target: str) -> None:
        if not self.can_transition(current, target):
            raise InvalidTransition(current, target, self.next_statuses(current))


DEFAULT_GRAPH = TransitionGraph(DEFAULT_TRANSITIONS)


@dataclass(frozen=True)
class StageChange:
    lead_id: int
    previous_status: str
    new_status: str
    stage_id: int
    sequence: int
    closed_stage_id: Optional[int] = None
    closed_duration_hours: Optional[float] = None


@dataclass
class StageFilters:
    status_id: Optional[int] = None
    user_id: Optional[int] = None
    lead_id: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    active_only: bool = False
    limit: int = 100
    offset: int = 0


def stage_row(stage: LeadStage, status_name: Optional[str] = None) -> Dict[str, Any]:
    row = stage.to_dict()
    row["status_name"] = status_name
    return row


# Stage primitives; callers own the transaction

async def get_status_by_id(session: AsyncSession, status_id: int) -> LeadStatus:
    result = await session.execute(
        select(LeadStatus).where(LeadStatus.id == status_id, LeadStatus.is_active.is_(True))
    )
    status = result.scalar_one_or_none()
    if status is None:
        raise InvalidArgument(f"Unknown status id {status_id}", details={"status_id": status_id})
    return status


async def get_status_by_name(session: AsyncSession, name: str) -> LeadStatus:
    result = await session.execute(
        select(LeadStatus).where(LeadStatus.name == name, LeadStatus.is_active.is_(True))
    )
    status = result.scalar_one_or_none()
    if status is None:
        raise InvalidArgument(f"Unknown status '{name}'", details={"status": name})
    return status


async def close_open_stage(
    session: AsyncSession,
    entity_id: int,
    lead_id: int,
    now: datetime,
) -> Optional[LeadStage]:
    result = await session.execute(
        select(LeadStage)
        .where(
            LeadStage.lead_id == lead_id,
            LeadStage.entity_id == entity_id,
            LeadStage.exited_at.is_(None),
        )
        .with_for_update()
    )
    stage = result.scalar_one_or_none()
    if stage is None:
        return None

    stage.exited_at = now
    stage.duration_hours = Decimal(str(max(hours_between(stage.entered_at, now), 0.0)))
    # Must reach the database before the next open stage is inserted
    await session.flush()
    return stage


async def open_stage(
    session: AsyncSession,
    entity_id: int,
    lead_id: int,
    status_id: int,
    user_id: Optional[int],
    now: datetime,
    notes: Optional[str] = None,
    next_action_required: Optional[str] = None,
) -> LeadStage:
    current_max = await session.execute(
        select(func.coalesce(func.max(LeadStage.sequence), 0)).where(LeadStage.lead_id == lead_id)
    )
    stage = LeadStage(
        entity_id=entity_id,
        lead_id=lead_id,
        status_id=status_id,
        user_id=user_id,
        sequence=current_max.scalar_one() + 1,
        entered_at=now,
        notes=notes or "",
        next_action_required=next_action_required,
    )
    session.add(stage)
    await session.flush()
    return stage


class PipelineService:
    """Status changes and stage history for one tenant's leads."""

    def __init__(self, session: AsyncSession, graph: TransitionGraph = DEFAULT_GRAPH):
        self.session = session
        self.graph = graph

    async def open_initial_stage(self, entity_id: int, lead_id: int) -> LeadStage:
        """System-opened ``new`` stage for a freshly ingested lead (no transaction of its own)."""
        status = await get_status_by_name(self.session, INITIAL_STATUS)
        return await open_stage(
            self.session,
            entity_id=entity_id,
            lead_id=lead_id,
            status_id=status.id,
            user_id=None,
            now=utcnow(),
            notes="Lead created",
        )

    async def change_status(
        self,
        entity_id: int,
        lead_id: int,
        target_status_id: int,
        acting_user_id: int,
        notes: Optional[str] = None,
        next_action_required: Optional[str] = None,
    ) -> StageChange:
        async with transaction(self.session):
            lead = await lead_store.get_lead(self.session, entity_id, lead_id, for_update=True)
            target = await get_status_by_id(self.session, target_status_id)
            current_status = lead.status

            self.graph.validate(current_status, target.name)

            now = utcnow()
            closed = await close_open_stage(self.session, entity_id, lead_id, now)
            stage = await open_stage(
                self.session,
                entity_id=entity_id,
                lead_id=lead_id,
                status_id=target.id,
                user_id=acting_user_id,
                now=now,
                notes=notes,
                next_action_required=next_action_required,
            )

            result = await self.session.execute(
                update(LeadData)
                .where(
                    LeadData.id == lead_id,
                    LeadData.entity_id == entity_id,
                    LeadData.status == current_status,
                )
                .values(status=target.name, updated_at=now)
            )
            if result.rowcount == 0:
                raise InvalidState(
                    "Lead status changed concurrently",
                    details={"lead_id": lead_id, "expected_status": current_status},
                )

        logger.info(
            "lead.status_changed",
            entity_id=entity_id,
            lead_id=lead_id,
            user_id=acting_user_id,
            from_status=current_status,
            to_status=target.name,
            stage_id=stage.id,
        )
        return StageChange(
            lead_id=lead_id,
            previous_status=current_status,
            new_status=target.name,
            stage_id=stage.id,
            sequence=stage.sequence,
            closed_stage_id=closed.id if closed else None,
            closed_duration_hours=float(closed.duration_hours) if closed else None,
        )

    async def get_next_possible_statuses(self, entity_id: int, lead_id: int) -> List[LeadStatus]:
        lead = await lead_store.get_lead(self.session, entity_id, lead_id)
        return await self.statuses_after(lead.status)

    async def statuses_after(self, status_name: str) -> List[LeadStatus]:
        names = self.graph.next_statuses(status_name)
        if not names:
            return []
        result = await self.session.execute(
            select(LeadStatus)
            .where(LeadStatus.name.in_(names), LeadStatus.is_active.is_(True))
            .order_by(LeadStatus.id)
        )
        return list(result.scalars().all())

    async def get_current_stage(self, entity_id: int, lead_id: int) -> Optional[Dict[str, Any]]:
        await lead_store.get_lead(self.session, entity_id, lead_id)
        result = await self.session.execute(
            select(LeadStage, LeadStatus.name)
            .join(LeadStatus, LeadStatus.id == LeadStage.status_id)
            .where(
                LeadStage.lead_id == lead_id,
                LeadStage.entity_id == entity_id,
                LeadStage.exited_at.is_(None),
            )
        )
        row = result.first()
        return stage_row(row[0], row[1]) if row else None

    async def get_stage_history(self, entity_id: int, lead_id: int) -> List[Dict[str, Any]]:
        await lead_store.get_lead(self.session, entity_id, lead_id)
        result = await self.session.execute(
            select(LeadStage, LeadStatus.name)
            .join(LeadStatus, LeadStatus.id == LeadStage.status_id)
            .where(LeadStage.lead_id == lead_id, LeadStage.entity_id == entity_id)
            .order_by(LeadStage.sequence.asc())
        )
        return [stage_row(stage, name) for stage, name in result.all()]

    async def list_entity_stages(self, entity_id: int, filters: StageFilters) -> List[Dict[str, Any]]:
        stmt = (
            select(LeadStage, LeadStatus.name)
            .join(LeadStatus, LeadStatus.id == LeadStage.status_id)
            .where(LeadStage.entity_id == entity_id)
        )
        if filters.status_id is not None:
            stmt = stmt.where(LeadStage.status_id == filters.status_id)
        if filters.user_id is not None:
            stmt = stmt.where(LeadStage.user_id == filters.user_id)
        if filters.lead_id is not None:
            stmt = stmt.where(LeadStage.lead_id == filters.lead_id)
        if filters.date_from is not None:
            stmt = stmt.where(LeadStage.entered_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(LeadStage.entered_at <= filters.date_to)
        if filters.active_only:
            stmt = stmt.where(LeadStage.exited_at.is_(None))

        stmt = stmt.order_by(LeadStage.entered_at.desc(), LeadStage.id.desc()).limit(filters.limit).offset(filters.offset)
        result = await self.session.execute(stmt)
        return [stage_row(stage, name) for stage, name in result.all()]

    async def list_sla_violations(self, entity_id: int, hours: Optional[int] = None) -> List[Dict[str, Any]]:
        """Open stages entered more than ``hours`` ago, longest waiting first."""
        hours = hours if hours is not None else settings.stage_sla_hours
        now = utcnow()
        result = await self.session.execute(
            select(LeadStage, LeadStatus.name)
            .join(LeadStatus, LeadStatus.id == LeadStage.status_id)
            .where(
                LeadStage.entity_id == entity_id,
                LeadStage.exited_at.is_(None),
                LeadStage.entered_at < now - timedelta(hours=hours),
            )
            .order_by(LeadStage.entered_at.asc())
        )
        violations = []
        for stage, name in result.all():
            row = stage_row(stage, name)
            row["hours_in_stage"] = hours_between(stage.entered_at, now)
            row["sla_hours"] = hours
            violations.append(row)
        return violations

    async def update_stage_notes(
        self,
        entity_id: int,
        stage_id: int,
        notes: Optional[str],
        next_action_required: Optional[str] = None,
    ) -> LeadStage:
        """Notes are the only part of a stage that may change after it is exited."""
        async with transaction(self.session):
            result = await self.session.execute(
                select(LeadStage).where(LeadStage.id == stage_id, LeadStage.entity_id == entity_id)
            )
            stage = result.scalar_one_or_none()
            if stage is None:
                raise NotFoundError(f"Stage {stage_id} not found", details={"stage_id": stage_id})
            stage.notes = notes
            stage.next_action_required = next_action_required
        return stage
