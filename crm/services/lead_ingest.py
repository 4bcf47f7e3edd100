# crm/services/lead_ingest.py
from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.exceptions import InvalidState
from crm.core.logging import get_structlog_logger
from crm.db.session import transaction
from crm.services import lead_store
from crm.services.graph_client import FacebookGraphClient
from crm.services.lead_store import LeadAttribution
from crm.services.normalization import (
    LeadFieldNormalizer,
    NormalizedContact,
    normalizer as default_normalizer,
    parse_timestamp,
    raw_field_snapshot,
)
from crm.services.pipeline import PipelineService

logger = get_structlog_logger(__name__)

PLATFORM_FACEBOOK = "facebook"
PLATFORM_WEBSITE = "website"


@dataclass(frozen=True)
class FacebookLeadChange:
    """One ``leadgen`` change from a page webhook delivery."""

    leadgen_id: str
    page_id: Optional[str] = None
    form_id: Optional[str] = None
    ad_id: Optional[str] = None
    campaign_id: Optional[str] = None
    created_time: Optional[datetime] = None

    @classmethod
    def from_value(cls, value: Mapping[str, Any]) -> Optional["FacebookLeadChange"]:
        leadgen_id = value.get("leadgen_id") or value.get("lead_id")
        if not leadgen_id:
            return None
        return cls(
            leadgen_id=str(leadgen_id),
            page_id=_opt_str(value.get("page_id")),
            form_id=_opt_str(value.get("form_id")),
            ad_id=_opt_str(value.get("ad_id")),
            campaign_id=_opt_str(value.get("campaign_id")),
            created_time=parse_timestamp(value.get("created_time")),
        )


@dataclass(frozen=True)
class WebsiteSubmission:
    answers: Dict[str, Any]
    page_id: Optional[str] = None
    form_id: Optional[str] = None
    ad_id: Optional[str] = None
    campaign_id: Optional[str] = None
    page_url: Optional[str] = None
    utm: Dict[str, Optional[str]] = field(default_factory=dict)
    created_time: Optional[datetime] = None


@dataclass(frozen=True)
class IngestResult:
    meta_id: int
    lead_id: int
    created: bool


def _opt_str(value: Any) -> Optional[str]:
    return str(value) if value not in (None, "") else None


def extract_leadgen_changes(payload: Mapping[str, Any]) -> List[FacebookLeadChange]:
    """Walk ``entry[].changes[]`` of a page webhook and keep the leadgen ones."""
    if not isinstance(payload, Mapping) or payload.get("object") != "page":
        return []

    changes: List[FacebookLeadChange] = []
    for entry in payload.get("entry") or []:
        for change in (entry or {}).get("changes") or []:
            if not isinstance(change, Mapping) or change.get("field") != "leadgen":
                continue
            value = dict(change.get("value") or {})
            # Some deliveries only carry the page id on the entry
            value.setdefault("page_id", entry.get("id"))
            parsed = FacebookLeadChange.from_value(value)
            if parsed is None:
                logger.warning("facebook.change_missing_leadgen_id", page_id=value.get("page_id"))
                continue
            changes.append(parsed)
    return changes


def website_source_lead_id() -> str:
    return f"website_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class LeadIngestionService:
    """Two-phase ingestion: record the arrival event, then persist the normalized lead.

    The meta row is committed on its own so that a failure in the second phase
    leaves a ``failed`` event behind for replay. The provider fetch never runs
    inside a transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        graph_client: Optional[FacebookGraphClient] = None,
        normalizer: Optional[LeadFieldNormalizer] = None,
    ):
        self.session = session
        self.graph_client = graph_client or FacebookGraphClient()
        self.normalizer = normalizer or default_normalizer
        self.pipeline = PipelineService(session)

    async def _record_meta(
        self,
        entity_id: int,
        platform_key: str,
        source_lead_id: str,
        attribution: LeadAttribution,
    ) -> int:
        async with transaction(self.session):
            return await lead_store.upsert_lead_meta(
                self.session, entity_id, platform_key, source_lead_id, attribution
            )

    async def _persist(
        self,
        meta_id: int,
        entity_id: int,
        platform_key: str,
        contact: NormalizedContact,
        raw_field_data: Mapping[str, Any],
        source_page_id: Optional[str] = None,
        source_page_name: Optional[str] = None,
    ) -> IngestResult:
        async with transaction(self.session):
            lead_id, created = await lead_store.upsert_lead_data(
                self.session,
                meta_id,
                entity_id,
                contact,
                raw_field_data,
                platform_key,
                source_page_id=source_page_id,
                source_page_name=source_page_name,
            )
            if created:
                await self.pipeline.open_initial_stage(entity_id, lead_id)
            await lead_store.mark_meta_status(self.session, meta_id, "processed")

        logger.info(
            "lead.ingested",
            entity_id=entity_id,
            platform=platform_key,
            meta_id=meta_id,
            lead_id=lead_id,
            created=created,
        )
        return IngestResult(meta_id=meta_id, lead_id=lead_id, created=created)

    async def _mark_failed(self, meta_id: int, error: Exception) -> None:
        try:
            async with transaction(self.session):
                await lead_store.mark_meta_status(self.session, meta_id, "failed", error=str(error))
        except Exception as mark_error:
            # The original failure is what the caller sees
            logger.error("lead_meta.mark_failed_error", meta_id=meta_id, error=str(mark_error), exc_info=True)
        logger.error(
            "lead.ingest_failed",
            meta_id=meta_id,
            error=str(error),
            error_type=type(error).__name__,
        )

    async def _process_facebook(
        self,
        meta_id: int,
        entity_id: int,
        leadgen_id: str,
        page_id: Optional[str],
        page_name: Optional[str],
    ) -> IngestResult:
        try:
            graph_lead = await self.graph_client.fetch_lead(leadgen_id)
            contact = self.normalizer.normalize(graph_lead.field_data)
            raw = graph_lead.raw or raw_field_snapshot(graph_lead.field_data)
            return await self._persist(
                meta_id, entity_id, PLATFORM_FACEBOOK, contact, raw, page_id, page_name
            )
        except Exception as e:
            await self._mark_failed(meta_id, e)
            raise

    async def ingest_facebook_change(self, change: FacebookLeadChange) -> Optional[IngestResult]:
        """Returns None when the page is not mapped to any tenant."""
        page = await lead_store.resolve_facebook_page(self.session, change.page_id) if change.page_id else None
        if page is None:
            logger.warning(
                "facebook.unknown_page",
                page_id=change.page_id,
                leadgen_id=change.leadgen_id,
            )
            return None

        attribution = LeadAttribution(
            page_id=change.page_id,
            form_id=change.form_id,
            ad_id=change.ad_id,
            campaign_id=change.campaign_id,
            created_time=change.created_time,
        )
        meta_id = await self._record_meta(page.entity_id, PLATFORM_FACEBOOK, change.leadgen_id, attribution)
        return await self._process_facebook(
            meta_id, page.entity_id, change.leadgen_id, change.page_id, page.page_name
        )

    async def ingest_website_submission(self, entity_id: int, submission: WebsiteSubmission) -> IngestResult:
        utm = submission.utm or {}
        attribution = LeadAttribution(
            page_id=submission.page_id,
            form_id=submission.form_id,
            ad_id=submission.ad_id,
            campaign_id=submission.campaign_id,
            page_url=submission.page_url,
            created_time=submission.created_time,
            utm_source=utm.get("source"),
            utm_medium=utm.get("medium"),
            utm_campaign=utm.get("campaign"),
            utm_term=utm.get("term"),
            utm_content=utm.get("content"),
        )
        meta_id = await self._record_meta(entity_id, PLATFORM_WEBSITE, website_source_lead_id(), attribution)

        try:
            contact = self.normalizer.normalize(submission.answers)
            return await self._persist(
                meta_id,
                entity_id,
                PLATFORM_WEBSITE,
                contact,
                raw_field_snapshot(submission.answers),
                source_page_id=submission.page_id,
            )
        except Exception as e:
            await self._mark_failed(meta_id, e)
            raise

    async def replay_meta(self, meta_id: int) -> IngestResult:
        """Re-run the second phase for a failed or stuck event.

        Safe to repeat: every write is keyed on the meta row.
        """
        meta = await lead_store.get_meta(self.session, meta_id)
        if meta.processing_status == "processed":
            raise InvalidState("Lead event already processed", details={"meta_id": meta_id})
        if meta.platform_key != PLATFORM_FACEBOOK:
            # Website answers are only held by the caller; they must resubmit
            raise InvalidState(
                "Only Facebook lead events can be replayed",
                details={"meta_id": meta_id, "platform": meta.platform_key},
            )

        page = await lead_store.resolve_facebook_page(self.session, meta.page_id) if meta.page_id else None
        async with transaction(self.session):
            await lead_store.mark_meta_status(self.session, meta_id, "received", bump_attempts=True)

        logger.info("lead.replay_started", meta_id=meta_id, entity_id=meta.entity_id, attempts=meta.attempts + 1)
        return await self._process_facebook(
            meta_id,
            meta.entity_id,
            meta.source_lead_id,
            meta.page_id,
            page.page_name if page else None,
        )
