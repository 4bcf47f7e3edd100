from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import and_, case, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.config import settings
from crm.core.exceptions import InvalidArgument, InvalidState, NoEligibleAssignees
from crm.core.logging import get_structlog_logger
from crm.db.session import transaction
from crm.models import AssignmentEvent, LeadAssignment, LeadData, User
from crm.services import lead_store
from crm.utils.time import utcnow

logger = get_structlog_logger(__name__)

CLOSED_STATUSES = ("won", "lost")


@dataclass(frozen=True)
class UserLoad:
    user_id: int
    load: int


@dataclass(frozen=True)
class PlannedAssignment:
    lead_id: int
    user_id: int


@dataclass(frozen=True)
class UserWorkload:
    user_id: int
    email: str
    first_name: Optional[str]
    last_name: Optional[str]
    role: str
    assigned_leads: int
    active_leads: int
    closed_leads: int

    def as_load(self) -> UserLoad:
        return UserLoad(user_id=self.user_id, load=self.active_leads)


@dataclass
class BulkAssignmentResult:
    total_assigned: int
    assignments: List[PlannedAssignment] = field(default_factory=list)
    left_unassigned: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_assigned": self.total_assigned,
            "assignments": [asdict(a) for a in self.assignments],
            "left_unassigned": self.left_unassigned,
        }


@dataclass(frozen=True)
class AssignmentOutcome:
    lead_id: int
    action: str
    assigned_user_id: Optional[int]
    previous_user_id: Optional[int]
    assigned_at: Optional[datetime]


@dataclass
class AssignmentFilters:
    assigned_user_id: Optional[int] = None
    assigned_by_user_id: Optional[int] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class AssignmentPolicy(ABC):
    """Decides which user receives each lead in a bulk run."""

    @abstractmethod
    def plan(
        self,
        lead_ids: Sequence[int],
        workloads: Sequence[UserLoad],
        max_per_user: int,
    ) -> List[PlannedAssignment]:
        raise NotImplementedError


class LeastLoadedPolicy(AssignmentPolicy):
    """Greedy least-loaded selection with a per-user cap.

    Each lead goes to the user with the strictly lowest running count among
    users under ``max_per_user``; the count is bumped in memory after every
    pick. Users are scanned heaviest-first (workload distribution order) and
    equal counts go to the earlier user. Planning stops at the first lead no
    user has capacity for.
    """

    def plan(
        self,
        lead_ids: Sequence[int],
        workloads: Sequence[UserLoad],
        max_per_user: int,
    ) -> List[PlannedAssignment]:
        if max_per_user < 1:
            raise InvalidArgument("max_per_user must be at least 1", details={"max_per_user": max_per_user})

        counts = [[w.user_id, w.load] for w in sorted(workloads, key=lambda w: -w.load)]
        planned: List[PlannedAssignment] = []

        for lead_id in lead_ids:
            best = None
            for entry in counts:
                if entry[1] >= max_per_user:
                    continue
                if best is None or entry[1] < best[1]:
                    best = entry
            if best is None:
                break
            planned.append(PlannedAssignment(lead_id=lead_id, user_id=best[0]))
            best[1] += 1

        return planned


class AssignmentEngine:
    """Lead ownership: snapshot row per lead plus an append-only event log."""

    def __init__(self, session: AsyncSession, policy: Optional[AssignmentPolicy] = None):
        self.session = session
        self.policy = policy or LeastLoadedPolicy()

    async def _require_active_user(self, entity_id: int, user_id: int) -> User:
        result = await self.session.execute(
            select(User).where(User.id == user_id, User.entity_id == entity_id, User.is_active.is_(True))
        )
        user = result.scalar_one_or_none()
        if user is None:
            raise InvalidArgument(
                "Target user is not an active member of this entity",
                details={"user_id": user_id},
            )
        return user

    async def _write_assignment(
        self,
        entity_id: int,
        lead: LeadData,
        target_user_id: Optional[int],
        acting_user_id: Optional[int],
        action: str,
        reason: Optional[str],
        notes: Optional[str],
        now: datetime,
    ) -> AssignmentOutcome:
        previous_user_id = lead.assigned_user_id
        assigned_at = now if target_user_id is not None else None

        values = dict(
            assigned_user_id=target_user_id,
            assigned_by_user_id=acting_user_id,
            previous_user_id=previous_user_id,
            reason=reason,
            notes=notes,
            assigned_at=assigned_at,
        )
        stmt = pg_insert(LeadAssignment).values(entity_id=entity_id, lead_id=lead.id, **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=[LeadAssignment.entity_id, LeadAssignment.lead_id],
            set_=dict(values, updated_at=func.now()),
        )
        await self.session.execute(stmt)

        lead.assigned_user_id = target_user_id
        lead.assigned_at = assigned_at

        self.session.add(
            AssignmentEvent(
                entity_id=entity_id,
                lead_id=lead.id,
                action=action,
                from_user_id=previous_user_id,
                to_user_id=target_user_id,
                acting_user_id=acting_user_id,
                reason=reason,
                notes=notes,
            )
        )
        await self.session.flush()

        return AssignmentOutcome(
            lead_id=lead.id,
            action=action,
            assigned_user_id=target_user_id,
            previous_user_id=previous_user_id,
            assigned_at=assigned_at,
        )

    async def assign(
        self,
        entity_id: int,
        lead_id: int,
        target_user_id: int,
        acting_user_id: int,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AssignmentOutcome:
        async with transaction(self.session):
            await self._require_active_user(entity_id, target_user_id)
            lead = await lead_store.get_lead(self.session, entity_id, lead_id, for_update=True)
            action = "reassigned" if lead.assigned_user_id is not None else "assigned"
            outcome = await self._write_assignment(
                entity_id,
                lead,
                target_user_id,
                acting_user_id,
                action,
                reason or ("Lead reassigned" if action == "reassigned" else "Lead assigned"),
                notes,
                utcnow(),
            )

        logger.info(
            "lead.assigned",
            entity_id=entity_id,
            lead_id=lead_id,
            action=action,
            to_user_id=target_user_id,
            from_user_id=outcome.previous_user_id,
            user_id=acting_user_id,
        )
        return outcome

    async def reassign(
        self,
        entity_id: int,
        lead_id: int,
        target_user_id: int,
        acting_user_id: int,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> AssignmentOutcome:
        return await self.assign(
            entity_id,
            lead_id,
            target_user_id,
            acting_user_id,
            reason=reason or "Lead reassigned",
            notes=notes,
        )

    async def unassign(
        self,
        entity_id: int,
        lead_id: int,
        acting_user_id: int,
        reason: Optional[str] = None,
    ) -> AssignmentOutcome:
        async with transaction(self.session):
            lead = await lead_store.get_lead(self.session, entity_id, lead_id, for_update=True)
            if lead.assigned_user_id is None:
                raise InvalidState("Lead is not assigned", details={"lead_id": lead_id})
            outcome = await self._write_assignment(
                entity_id,
                lead,
                None,
                acting_user_id,
                "unassigned",
                reason or "Lead unassigned",
                None,
                utcnow(),
            )

        logger.info(
            "lead.unassigned",
            entity_id=entity_id,
            lead_id=lead_id,
            from_user_id=outcome.previous_user_id,
            user_id=acting_user_id,
        )
        return outcome

    async def get_assignment(self, entity_id: int, lead_id: int) -> Optional[LeadAssignment]:
        await lead_store.get_lead(self.session, entity_id, lead_id)
        result = await self.session.execute(
            select(LeadAssignment).where(
                LeadAssignment.entity_id == entity_id,
                LeadAssignment.lead_id == lead_id,
            )
        )
        return result.scalar_one_or_none()

    async def get_assignment_history(self, entity_id: int, lead_id: int) -> List[AssignmentEvent]:
        await lead_store.get_lead(self.session, entity_id, lead_id)
        result = await self.session.execute(
            select(AssignmentEvent)
            .where(AssignmentEvent.entity_id == entity_id, AssignmentEvent.lead_id == lead_id)
            .order_by(AssignmentEvent.created_at.desc(), AssignmentEvent.id.desc())
        )
        return list(result.scalars().all())

    async def list_entity_assignments(
        self,
        entity_id: int,
        filters: AssignmentFilters,
    ) -> List[LeadAssignment]:
        stmt = select(LeadAssignment).where(
            LeadAssignment.entity_id == entity_id,
            LeadAssignment.assigned_user_id.is_not(None),
        )
        if filters.assigned_user_id is not None:
            stmt = stmt.where(LeadAssignment.assigned_user_id == filters.assigned_user_id)
        if filters.assigned_by_user_id is not None:
            stmt = stmt.where(LeadAssignment.assigned_by_user_id == filters.assigned_by_user_id)
        if filters.date_from is not None:
            stmt = stmt.where(LeadAssignment.assigned_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(LeadAssignment.assigned_at <= filters.date_to)
        stmt = stmt.order_by(LeadAssignment.assigned_at.desc()).limit(filters.limit).offset(filters.offset)
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_user_assignments(
        self,
        entity_id: int,
        user_id: int,
        limit: int = 100,
        offset: int = 0,
    ) -> List[LeadAssignment]:
        return await self.list_entity_assignments(
            entity_id, AssignmentFilters(assigned_user_id=user_id, limit=limit, offset=offset)
        )

    async def get_workload_distribution(self, entity_id: int) -> List[UserWorkload]:
        """Per active user: assigned, active (not won/lost) and closed lead counts.

        Ordered by active count, heaviest first, then user id.
        """
        active = func.count(case((LeadData.status.not_in(CLOSED_STATUSES), LeadData.id)))
        closed = func.count(case((LeadData.status.in_(CLOSED_STATUSES), LeadData.id)))
        stmt = (
            select(
                User.id,
                User.email,
                User.first_name,
                User.last_name,
                User.role,
                func.count(LeadData.id).label("assigned_leads"),
                active.label("active_leads"),
                closed.label("closed_leads"),
            )
            .select_from(User)
            .outerjoin(
                LeadData,
                and_(LeadData.assigned_user_id == User.id, LeadData.entity_id == User.entity_id),
            )
            .where(User.entity_id == entity_id, User.is_active.is_(True))
            .group_by(User.id, User.email, User.first_name, User.last_name, User.role)
            .order_by(active.desc(), User.id.asc())
        )
        rows = (await self.session.execute(stmt)).all()
        return [
            UserWorkload(
                user_id=row.id,
                email=row.email,
                first_name=row.first_name,
                last_name=row.last_name,
                role=row.role,
                assigned_leads=row.assigned_leads,
                active_leads=row.active_leads,
                closed_leads=row.closed_leads,
            )
            for row in rows
        ]

    async def get_workload_stats(self, entity_id: int) -> Dict[str, Any]:
        distribution = await self.get_workload_distribution(entity_id)
        unassigned = await self.session.execute(
            select(func.count(LeadData.id)).where(
                LeadData.entity_id == entity_id,
                LeadData.assigned_user_id.is_(None),
            )
        )
        total_active = sum(w.active_leads for w in distribution)
        return {
            "users": [asdict(w) for w in distribution],
            "total_users": len(distribution),
            "total_assigned": sum(w.assigned_leads for w in distribution),
            "total_active": total_active,
            "unassigned_leads": unassigned.scalar_one(),
            "average_active_per_user": round(total_active / len(distribution), 2) if distribution else 0.0,
        }

    async def bulk_assign_unassigned(
        self,
        entity_id: int,
        acting_user_id: int,
        max_per_user: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> BulkAssignmentResult:
        if max_per_user is None:
            max_per_user = settings.bulk_assign_max_per_user
        reason = reason or "Bulk assignment"

        workloads = await self.get_workload_distribution(entity_id)
        if not workloads:
            raise NoEligibleAssignees(details={"entity_id": entity_id})

        leads = await lead_store.list_unassigned_leads(
            self.session, entity_id, limit=settings.bulk_assign_batch_limit
        )
        planned = self.policy.plan(
            [lead.id for lead in leads],
            [w.as_load() for w in workloads],
            max_per_user,
        )

        applied: List[PlannedAssignment] = []
        async with transaction(self.session):
            now = utcnow()
            for item in planned:
                lead = await lead_store.get_lead(self.session, entity_id, item.lead_id, for_update=True)
                # Assigned by someone else since the backlog was read
                if lead.assigned_user_id is not None:
                    continue
                await self._write_assignment(
                    entity_id, lead, item.user_id, acting_user_id, "assigned", reason, None, now
                )
                applied.append(item)

        result = BulkAssignmentResult(
            total_assigned=len(applied),
            assignments=applied,
            left_unassigned=len(leads) - len(applied),
        )
        logger.info(
            "lead.bulk_assigned",
            entity_id=entity_id,
            user_id=acting_user_id,
            candidates=len(leads),
            total_assigned=result.total_assigned,
            left_unassigned=result.left_unassigned,
            max_per_user=max_per_user,
        )
        return result
