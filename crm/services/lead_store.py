from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import func, literal_column, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.exceptions import NotFoundError, ValidationError
from crm.core.logging import get_structlog_logger
from crm.models import Entity, FacebookPage, LeadData, LeadMeta
from crm.models.lead import CONTACT_FIELDS
from crm.services.normalization import NormalizedContact
from crm.utils.time import utcnow

logger = get_structlog_logger(__name__)


@dataclass(frozen=True)
class LeadAttribution:
    """Delivery metadata recorded on the meta row."""

    page_id: Optional[str] = None
    form_id: Optional[str] = None
    ad_id: Optional[str] = None
    campaign_id: Optional[str] = None
    page_url: Optional[str] = None
    created_time: Optional[datetime] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_term: Optional[str] = None
    utm_content: Optional[str] = None

    def as_columns(self) -> Dict[str, Any]:
        return {
            "page_id": self.page_id,
            "form_id": self.form_id,
            "ad_id": self.ad_id,
            "campaign_id": self.campaign_id,
            "page_url": self.page_url,
            "utm_source": self.utm_source,
            "utm_medium": self.utm_medium,
            "utm_campaign": self.utm_campaign,
            "utm_term": self.utm_term,
            "utm_content": self.utm_content,
        }


@dataclass
class LeadFilters:
    status: Optional[str] = None
    platform_key: Optional[str] = None
    assigned_user_id: Optional[int] = None
    search: Optional[str] = None
    limit: int = 50
    offset: int = 0


# Tenant lookups

async def resolve_facebook_page(session: AsyncSession, page_id: str) -> Optional[FacebookPage]:
    result = await session.execute(
        select(FacebookPage).where(FacebookPage.page_id == str(page_id), FacebookPage.is_active.is_(True))
    )
    return result.scalar_one_or_none()


async def resolve_website_tenant(session: AsyncSession, website_key: str) -> Optional[Entity]:
    if not website_key:
        return None
    result = await session.execute(
        select(Entity).where(Entity.website_key == website_key, Entity.is_active.is_(True))
    )
    return result.scalar_one_or_none()


# Meta

async def upsert_lead_meta(
    session: AsyncSession,
    entity_id: int,
    platform_key: str,
    source_lead_id: str,
    attribution: LeadAttribution,
) -> int:
    """Record an arrival event keyed on (entity, platform, source id).

    A re-delivery refreshes attribution and puts the row back to
    ``received``; the first ``created_time`` is kept.
    """
    columns = attribution.as_columns()
    values = dict(
        columns,
        entity_id=entity_id,
        platform_key=platform_key,
        source_lead_id=str(source_lead_id),
        created_time=attribution.created_time or utcnow(),
        processing_status="received",
    )
    stmt = pg_insert(LeadMeta).values(**values)
    excluded = stmt.excluded
    update_set = {
        name: func.coalesce(getattr(excluded, name), getattr(LeadMeta, name)) for name in columns
    }
    update_set.update(
        created_time=func.coalesce(LeadMeta.created_time, excluded.created_time),
        processing_status="received",
        processing_error=None,
        attempts=LeadMeta.attempts + 1,
        updated_at=func.now(),
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[LeadMeta.entity_id, LeadMeta.platform_key, LeadMeta.source_lead_id],
        set_=update_set,
    ).returning(LeadMeta.id)

    meta_id = (await session.execute(stmt)).scalar_one()
    logger.debug(
        "lead_meta.upserted",
        entity_id=entity_id,
        platform=platform_key,
        source_lead_id=source_lead_id,
        meta_id=meta_id,
    )
    return meta_id


async def mark_meta_status(
    session: AsyncSession,
    meta_id: int,
    status: str,
    error: Optional[str] = None,
    bump_attempts: bool = False,
) -> None:
    values: Dict[str, Any] = dict(
        processing_status=status,
        processing_error=error[:2000] if error else None,
        updated_at=func.now(),
    )
    if bump_attempts:
        values["attempts"] = LeadMeta.attempts + 1
    await session.execute(update(LeadMeta).where(LeadMeta.id == meta_id).values(**values))


async def get_meta(session: AsyncSession, meta_id: int) -> LeadMeta:
    meta = await session.get(LeadMeta, meta_id)
    if meta is None:
        raise NotFoundError(f"Lead event {meta_id} not found")
    return meta


async def list_failed_meta(
    session: AsyncSession,
    limit: int = 100,
    stuck_after: timedelta = timedelta(minutes=15),
    entity_id: Optional[int] = None,
) -> List[LeadMeta]:
    """Failed events plus events stuck in ``received`` longer than ``stuck_after``."""
    cutoff = utcnow() - stuck_after
    stmt = select(LeadMeta).where(
        or_(
            LeadMeta.processing_status == "failed",
            (LeadMeta.processing_status == "received") & (LeadMeta.updated_at < cutoff),
        )
    )
    if entity_id is not None:
        stmt = stmt.where(LeadMeta.entity_id == entity_id)
    stmt = stmt.order_by(LeadMeta.updated_at.asc(), LeadMeta.id.asc()).limit(limit)
    return list((await session.execute(stmt)).scalars().all())


# Lead data

async def upsert_lead_data(
    session: AsyncSession,
    meta_id: int,
    entity_id: int,
    contact: NormalizedContact,
    raw_field_data: Mapping[str, Any],
    platform_key: str,
    source_page_id: Optional[str] = None,
    source_page_name: Optional[str] = None,
) -> Tuple[int, bool]:
    """Insert the lead for a meta row or refresh its contact fields.

    Returns ``(lead_id, created)``. Status and assignee columns are never
    part of the update set.
    """
    overwrite = dict(
        contact.as_columns(),
        raw_field_data=dict(raw_field_data),
        platform_key=platform_key,
        source_page_id=source_page_id,
        source_page_name=source_page_name,
    )
    stmt = pg_insert(LeadData).values(
        entity_id=entity_id,
        lead_meta_id=meta_id,
        status="new",
        **overwrite,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[LeadData.lead_meta_id],
        set_=dict(
            {name: getattr(stmt.excluded, name) for name in overwrite},
            updated_at=func.now(),
        ),
    ).returning(LeadData.id, literal_column("(xmax = 0)").label("inserted"))

    row = (await session.execute(stmt)).one()
    return row.id, bool(row.inserted)


async def get_lead(
    session: AsyncSession,
    entity_id: int,
    lead_id: int,
    for_update: bool = False,
) -> LeadData:
    """Tenant-scoped lookup. Another tenant's lead is reported as missing."""
    stmt = select(LeadData).where(LeadData.id == lead_id, LeadData.entity_id == entity_id)
    # Status is changed by Core UPDATEs that bypass the identity map
    stmt = stmt.execution_options(populate_existing=True)
    if for_update:
        stmt = stmt.with_for_update()
    lead = (await session.execute(stmt)).scalar_one_or_none()
    if lead is None:
        raise NotFoundError(f"Lead {lead_id} not found", details={"lead_id": lead_id})
    return lead


async def list_leads(session: AsyncSession, entity_id: int, filters: LeadFilters) -> List[LeadData]:
    stmt = select(LeadData).where(LeadData.entity_id == entity_id)
    if filters.status:
        stmt = stmt.where(LeadData.status == filters.status)
    if filters.platform_key:
        stmt = stmt.where(LeadData.platform_key == filters.platform_key)
    if filters.assigned_user_id is not None:
        stmt = stmt.where(LeadData.assigned_user_id == filters.assigned_user_id)
    if filters.search:
        pattern = f"%{filters.search.strip()}%"
        stmt = stmt.where(
            or_(
                LeadData.email.ilike(pattern),
                LeadData.phone.ilike(pattern),
                LeadData.full_name.ilike(pattern),
                LeadData.first_name.ilike(pattern),
                LeadData.last_name.ilike(pattern),
            )
        )
    stmt = stmt.order_by(LeadData.created_at.desc(), LeadData.id.desc()).limit(filters.limit).offset(filters.offset)
    return list((await session.execute(stmt)).scalars().all())


async def list_unassigned_leads(session: AsyncSession, entity_id: int, limit: int = 1000) -> List[LeadData]:
    """Unassigned leads, oldest first."""
    stmt = (
        select(LeadData)
        .where(LeadData.entity_id == entity_id, LeadData.assigned_user_id.is_(None))
        .order_by(LeadData.created_at.asc(), LeadData.id.asc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())


async def count_by_status(session: AsyncSession, entity_id: int) -> Dict[str, int]:
    stmt = (
        select(LeadData.status, func.count(LeadData.id))
        .where(LeadData.entity_id == entity_id)
        .group_by(LeadData.status)
    )
    return {status: count for status, count in (await session.execute(stmt)).all()}


async def update_lead_contact(
    session: AsyncSession,
    entity_id: int,
    lead_id: int,
    changes: Mapping[str, Any],
) -> LeadData:
    """Manual edit of contact fields. Anything else in ``changes`` is ignored."""
    values = {k: v for k, v in changes.items() if k in CONTACT_FIELDS}
    if not values:
        raise ValidationError(
            "No valid fields to update",
            details={"allowed_fields": list(CONTACT_FIELDS)},
        )

    lead = await get_lead(session, entity_id, lead_id, for_update=True)
    for name, value in values.items():
        setattr(lead, name, value)
    await session.flush()

    logger.info("lead.contact_updated", entity_id=entity_id, lead_id=lead_id, fields=sorted(values))
    return lead
