from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.config import settings
from crm.core.exceptions import InvalidArgument, NotFoundError
from crm.core.logging import get_structlog_logger
from crm.db.session import transaction
from crm.models import LeadActivity, LeadData
from crm.services import lead_store
from crm.utils.time import ensure_aware, hours_between, utcnow

logger = get_structlog_logger(__name__)


class ActivityType(str, Enum):
    CALL = "call"
    EMAIL = "email"
    MEETING = "meeting"
    NOTE = "note"
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    FOLLOW_UP = "follow_up"


class ActivityPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self.value]


class ActivityStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FollowUpState(str, Enum):
    OVERDUE = "overdue"
    UPCOMING = "upcoming"


# Lower rank sorts first
PRIORITY_RANK: Dict[str, int] = {"urgent": 1, "high": 2, "medium": 3, "low": 4}

E = TypeVar("E", bound=Enum)


def coerce_enum(enum_cls: Type[E], value: Any, field_name: str) -> E:
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidArgument(
            f"Invalid {field_name} '{value}'",
            details={field_name: value, "allowed": [m.value for m in enum_cls]},
        ) from None


def classify_follow_up(
    follow_up_date: Optional[datetime],
    status: str,
    now: Optional[datetime] = None,
) -> Optional[FollowUpState]:
    """Only pending activities with a follow-up date are classified."""
    if follow_up_date is None or status != ActivityStatus.PENDING.value:
        return None
    now = now or utcnow()
    follow_up_date = ensure_aware(follow_up_date)
    if follow_up_date < now:
        return FollowUpState.OVERDUE
    return FollowUpState.UPCOMING


def follow_up_sort_key(priority: str, follow_up_date: Optional[datetime]) -> Tuple[int, datetime]:
    """Urgent first, then earliest follow-up; undated entries sort last within a rank."""
    when = ensure_aware(follow_up_date) if follow_up_date else datetime.max.replace(tzinfo=timezone.utc)
    return PRIORITY_RANK.get(priority, len(PRIORITY_RANK) + 1), when


_priority_order = case(PRIORITY_RANK, value=LeadActivity.priority, else_=len(PRIORITY_RANK) + 1)


@dataclass
class ActivityFilters:
    activity_type: Optional[str] = None
    user_id: Optional[int] = None
    lead_id: Optional[int] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = 100
    offset: int = 0


class ActivityTracker:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def _get_activity(self, entity_id: int, activity_id: int) -> LeadActivity:
        result = await self.session.execute(
            select(LeadActivity)
            .where(LeadActivity.id == activity_id, LeadActivity.entity_id == entity_id)
            .with_for_update()
        )
        activity = result.scalar_one_or_none()
        if activity is None:
            raise NotFoundError(f"Activity {activity_id} not found", details={"activity_id": activity_id})
        return activity

    async def log_activity(
        self,
        entity_id: int,
        lead_id: int,
        user_id: int,
        activity_type: str,
        description: str,
        next_follow_up_date: Optional[datetime] = None,
        priority: str = ActivityPriority.MEDIUM.value,
        status: str = ActivityStatus.PENDING.value,
        notes: Optional[str] = None,
    ) -> LeadActivity:
        kind = coerce_enum(ActivityType, activity_type, "activity_type")
        prio = coerce_enum(ActivityPriority, priority or ActivityPriority.MEDIUM.value, "priority")
        state = coerce_enum(ActivityStatus, status or ActivityStatus.PENDING.value, "status")

        async with transaction(self.session):
            await lead_store.get_lead(self.session, entity_id, lead_id)
            activity = LeadActivity(
                entity_id=entity_id,
                lead_id=lead_id,
                user_id=user_id,
                activity_type=kind.value,
                description=description,
                next_follow_up_date=ensure_aware(next_follow_up_date),
                priority=prio.value,
                status=state.value,
                notes=notes,
            )
            self.session.add(activity)
            await self.session.flush()

        logger.info(
            "activity.logged",
            entity_id=entity_id,
            lead_id=lead_id,
            user_id=user_id,
            activity_id=activity.id,
            activity_type=kind.value,
            has_follow_up=next_follow_up_date is not None,
        )
        return activity

    async def update_status(
        self,
        entity_id: int,
        activity_id: int,
        status: str,
        notes: Optional[str] = None,
    ) -> LeadActivity:
        state = coerce_enum(ActivityStatus, status, "status")
        async with transaction(self.session):
            activity = await self._get_activity(entity_id, activity_id)
            activity.status = state.value
            if notes is not None:
                activity.notes = notes

        logger.info("activity.status_updated", entity_id=entity_id, activity_id=activity_id, status=state.value)
        return activity

    async def update_follow_up_date(
        self,
        entity_id: int,
        activity_id: int,
        next_follow_up_date: Optional[datetime],
        notes: Optional[str] = None,
    ) -> LeadActivity:
        async with transaction(self.session):
            activity = await self._get_activity(entity_id, activity_id)
            activity.next_follow_up_date = ensure_aware(next_follow_up_date)
            if notes is not None:
                activity.notes = notes
        return activity

    async def bulk_update_follow_up_dates(
        self,
        entity_id: int,
        activity_ids: Sequence[int],
        next_follow_up_date: Optional[datetime],
    ) -> int:
        """Reschedule many activities; returns how many rows actually changed.

        Ids from other tenants or unknown ids are skipped, so the count can be
        lower than ``len(activity_ids)``.
        """
        ids = sorted(set(activity_ids))
        if not ids:
            return 0

        async with transaction(self.session):
            result = await self.session.execute(
                update(LeadActivity)
                .where(LeadActivity.entity_id == entity_id, LeadActivity.id.in_(ids))
                .values(next_follow_up_date=ensure_aware(next_follow_up_date), updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
        updated = result.rowcount or 0

        logger.info(
            "activity.follow_ups_rescheduled",
            entity_id=entity_id,
            requested=len(ids),
            updated=updated,
        )
        return updated

    def _filtered(self, entity_id: int, filters: ActivityFilters):
        stmt = select(LeadActivity).where(LeadActivity.entity_id == entity_id)
        if filters.activity_type:
            stmt = stmt.where(LeadActivity.activity_type == filters.activity_type)
        if filters.user_id is not None:
            stmt = stmt.where(LeadActivity.user_id == filters.user_id)
        if filters.lead_id is not None:
            stmt = stmt.where(LeadActivity.lead_id == filters.lead_id)
        if filters.priority:
            stmt = stmt.where(LeadActivity.priority == filters.priority)
        if filters.status:
            stmt = stmt.where(LeadActivity.status == filters.status)
        if filters.date_from is not None:
            stmt = stmt.where(LeadActivity.created_at >= filters.date_from)
        if filters.date_to is not None:
            stmt = stmt.where(LeadActivity.created_at <= filters.date_to)
        return stmt

    async def list_entity_activities(self, entity_id: int, filters: ActivityFilters) -> List[LeadActivity]:
        stmt = (
            self._filtered(entity_id, filters)
            .order_by(LeadActivity.created_at.desc(), LeadActivity.id.desc())
            .limit(filters.limit)
            .offset(filters.offset)
        )
        return list((await self.session.execute(stmt)).scalars().all())

    async def list_lead_activities(
        self,
        entity_id: int,
        lead_id: int,
        filters: Optional[ActivityFilters] = None,
    ) -> List[LeadActivity]:
        await lead_store.get_lead(self.session, entity_id, lead_id)
        filters = filters or ActivityFilters()
        filters.lead_id = lead_id
        return await self.list_entity_activities(entity_id, filters)

    async def list_user_activities(
        self,
        entity_id: int,
        user_id: int,
        filters: Optional[ActivityFilters] = None,
    ) -> List[LeadActivity]:
        filters = filters or ActivityFilters()
        filters.user_id = user_id
        return await self.list_entity_activities(entity_id, filters)

    async def get_lead_timeline(self, entity_id: int, lead_id: int, limit: int = 50) -> List[LeadActivity]:
        return await self.list_lead_activities(entity_id, lead_id, ActivityFilters(limit=limit))

    async def list_pending_follow_ups(
        self,
        entity_id: int,
        user_id: Optional[int] = None,
        priority: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        """Upcoming pending follow-ups, most urgent first, then soonest."""
        now = utcnow()
        stmt = select(LeadActivity, LeadData.status).join(
            LeadData, LeadData.id == LeadActivity.lead_id
        ).where(
            LeadActivity.entity_id == entity_id,
            LeadActivity.status == ActivityStatus.PENDING.value,
            LeadActivity.next_follow_up_date.is_not(None),
            LeadActivity.next_follow_up_date >= now,
        )
        if user_id is not None:
            stmt = stmt.where(LeadActivity.user_id == user_id)
        if priority:
            stmt = stmt.where(LeadActivity.priority == coerce_enum(ActivityPriority, priority, "priority").value)
        if date_from is not None:
            stmt = stmt.where(LeadActivity.next_follow_up_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(LeadActivity.next_follow_up_date <= date_to)
        stmt = stmt.order_by(_priority_order, LeadActivity.next_follow_up_date.asc()).limit(limit).offset(offset)

        rows = []
        for activity, lead_status in (await self.session.execute(stmt)).all():
            row = activity.to_dict()
            row["lead_status"] = lead_status
            row["hours_until_follow_up"] = hours_between(now, activity.next_follow_up_date)
            rows.append(row)
        return rows

    async def list_overdue_follow_ups(self, entity_id: int, user_id: Optional[int] = None) -> List[Dict[str, Any]]:
        now = utcnow()
        stmt = select(LeadActivity, LeadData.status).join(
            LeadData, LeadData.id == LeadActivity.lead_id
        ).where(
            LeadActivity.entity_id == entity_id,
            LeadActivity.status == ActivityStatus.PENDING.value,
            LeadActivity.next_follow_up_date.is_not(None),
            LeadActivity.next_follow_up_date < now,
        )
        if user_id is not None:
            stmt = stmt.where(LeadActivity.user_id == user_id)
        stmt = stmt.order_by(LeadActivity.next_follow_up_date.asc())

        rows = []
        for activity, lead_status in (await self.session.execute(stmt)).all():
            row = activity.to_dict()
            row["lead_status"] = lead_status
            row["hours_overdue"] = hours_between(activity.next_follow_up_date, now)
            rows.append(row)
        return rows

    async def get_follow_up_summary(self, entity_id: int, user_id: Optional[int] = None) -> Dict[str, int]:
        now = utcnow()
        soon = now + timedelta(hours=settings.follow_up_due_soon_hours)
        week = now + timedelta(days=settings.follow_up_due_week_days)
        due = LeadActivity.next_follow_up_date

        stmt = select(
            func.count(LeadActivity.id).label("total_pending"),
            func.count(case((LeadActivity.priority == "urgent", 1))).label("urgent_pending"),
            func.count(case((LeadActivity.priority == "high", 1))).label("high_pending"),
            func.count(case((due <= soon, 1))).label("due_within_24h"),
            func.count(case((due <= week, 1))).label("due_within_week"),
        ).where(
            LeadActivity.entity_id == entity_id,
            LeadActivity.status == ActivityStatus.PENDING.value,
            due.is_not(None),
            due >= now,
        )
        if user_id is not None:
            stmt = stmt.where(LeadActivity.user_id == user_id)

        row = (await self.session.execute(stmt)).one()
        return {
            "total_pending": row.total_pending,
            "urgent_pending": row.urgent_pending,
            "high_pending": row.high_pending,
            "due_within_24h": row.due_within_24h,
            "due_within_week": row.due_within_week,
        }

    async def get_statistics(
        self,
        entity_id: int,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Counts per activity type with a completion rate in percent."""
        completed = func.count(case((LeadActivity.status == "completed", 1)))
        total = func.count(LeadActivity.id)
        stmt = select(
            LeadActivity.activity_type,
            total.label("total_activities"),
            completed.label("completed_activities"),
            func.count(case((LeadActivity.status == "pending", 1))).label("pending_activities"),
            func.count(case((LeadActivity.status == "cancelled", 1))).label("cancelled_activities"),
        ).where(LeadActivity.entity_id == entity_id)
        if date_from is not None:
            stmt = stmt.where(LeadActivity.created_at >= date_from)
        if date_to is not None:
            stmt = stmt.where(LeadActivity.created_at <= date_to)
        stmt = stmt.group_by(LeadActivity.activity_type).order_by(total.desc())

        stats = []
        for row in (await self.session.execute(stmt)).all():
            rate = round(row.completed_activities * 100.0 / row.total_activities, 2) if row.total_activities else 0.0
            stats.append(
                {
                    "activity_type": row.activity_type,
                    "total_activities": row.total_activities,
                    "completed_activities": row.completed_activities,
                    "pending_activities": row.pending_activities,
                    "cancelled_activities": row.cancelled_activities,
                    "completion_rate": rate,
                }
            )
        return stats
