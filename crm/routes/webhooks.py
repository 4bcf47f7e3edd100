# crm/routes/webhooks.py
from __future__ import annotations

import json
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from crm.core.config import settings
from crm.core.exceptions import AuthorizationError, ValidationError
from crm.core.logging import bind_tenant, get_structlog_logger
from crm.db.session import get_session, session_scope
from crm.routes.deps import get_ingestion_service
from crm.schemas.webhooks import WebhookAck, WebsiteLeadIn, WebsiteLeadResponse
from crm.services import lead_store
from crm.services.lead_ingest import (
    FacebookLeadChange,
    LeadIngestionService,
    WebsiteSubmission,
    extract_leadgen_changes,
)
from crm.services.normalization import parse_timestamp
from crm.services.webhook_security import WebhookVerifier

logger = get_structlog_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_verifier() -> WebhookVerifier:
    return WebhookVerifier(settings.fb_app_secret, settings.fb_verify_token)


async def get_website_tenant(
    x_website_key: Optional[str] = Header(None, alias="X-Website-Key"),
    session: AsyncSession = Depends(get_session),
) -> int:
    entity = await lead_store.resolve_website_tenant(session, x_website_key or "")
    if entity is None:
        logger.warning("webhook.website_unknown_key", has_key=bool(x_website_key))
        raise AuthorizationError("Unknown website key")
    return entity.id


# Background Tasks
async def process_facebook_changes(changes: List[FacebookLeadChange]) -> None:
    """Second phase of a Facebook delivery; runs after the provider got its 200."""
    async with session_scope() as session:
        service = LeadIngestionService(session)
        for change in changes:
            try:
                await service.ingest_facebook_change(change)
            except Exception as e:
                # Already acknowledged; the meta row carries the failure for replay
                logger.error(
                    "webhook.facebook_change_failed",
                    leadgen_id=change.leadgen_id,
                    page_id=change.page_id,
                    error=str(e),
                    exc_info=True,
                )


# Routes
@router.get("/facebook")
async def facebook_verify(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
    verifier: WebhookVerifier = Depends(get_verifier),
):
    """Subscription handshake: echo the challenge when the verify token matches."""
    if not verifier.verify_challenge(hub_mode, hub_verify_token):
        logger.warning("webhook.facebook_verify_failed", mode=hub_mode)
        raise AuthorizationError("Webhook verification failed")

    logger.info("webhook.facebook_verified")
    return PlainTextResponse(hub_challenge or "")


@router.post("/facebook", response_model=WebhookAck)
async def facebook_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_hub_signature_256: Optional[str] = Header(None, alias="x-hub-signature-256"),
    verifier: WebhookVerifier = Depends(get_verifier),
):
    body = await request.body()

    if not verifier.verify_signature(body, x_hub_signature_256):
        logger.warning(
            "webhook.facebook_invalid_signature",
            has_signature=bool(x_hub_signature_256),
            content_length=len(body),
        )
        raise AuthorizationError("Invalid webhook signature")

    try:
        payload = json.loads(body)
    except ValueError as e:
        raise ValidationError("Invalid JSON payload", details={"error": str(e)}) from e

    changes = extract_leadgen_changes(payload)
    if changes:
        background_tasks.add_task(process_facebook_changes, changes)

    logger.info(
        "webhook.facebook_received",
        object=payload.get("object") if isinstance(payload, dict) else None,
        changes=len(changes),
    )
    return WebhookAck()


@router.post("/website", response_model=WebsiteLeadResponse)
async def website_webhook(
    submission: WebsiteLeadIn,
    entity_id: int = Depends(get_website_tenant),
    ingestion: LeadIngestionService = Depends(get_ingestion_service),
):
    """Website form post; processed before responding."""
    if submission.platform != "website":
        raise ValidationError(
            "Unsupported platform",
            details={"platform": submission.platform, "expected": "website"},
        )
    if not submission.has_contact_channel():
        raise ValidationError("answers must include email or phone")

    bind_tenant(entity_id)
    utm = submission.utm.model_dump() if submission.utm else {}
    result = await ingestion.ingest_website_submission(
        entity_id,
        WebsiteSubmission(
            answers=submission.answers,
            page_id=submission.page_id,
            form_id=submission.form_id,
            ad_id=submission.ad_id,
            campaign_id=submission.campaign_id,
            page_url=submission.page_url,
            utm=utm,
            created_time=parse_timestamp(submission.created_time),
        ),
    )
    return WebsiteLeadResponse(success=True, lead_id=result.lead_id)
