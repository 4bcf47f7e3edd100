from __future__ import annotations

import asyncio
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from crm.core.config import settings
from crm.core.exceptions import UpstreamError
from crm.core.logging import get_structlog_logger

logger = get_structlog_logger(__name__)

LEAD_FIELDS = "created_time,ad_id,adset_id,campaign_id,form_id,field_data"


class TransientGraphError(Exception):
    """Retryable failure: network error, timeout, 5xx or 429."""


@dataclass(frozen=True)
class GraphLead:
    leadgen_id: str
    field_data: List[Dict[str, Any]] = field(default_factory=list)
    created_time: Optional[str] = None
    ad_id: Optional[str] = None
    adset_id: Optional[str] = None
    campaign_id: Optional[str] = None
    form_id: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, leadgen_id: str, payload: Dict[str, Any]) -> "GraphLead":
        return cls(
            leadgen_id=str(payload.get("id") or leadgen_id),
            field_data=list(payload.get("field_data") or []),
            created_time=payload.get("created_time"),
            ad_id=payload.get("ad_id"),
            adset_id=payload.get("adset_id"),
            campaign_id=payload.get("campaign_id"),
            form_id=payload.get("form_id"),
            raw=payload,
        )


def appsecret_proof(access_token: str, app_secret: str) -> str:
    """HMAC-SHA256 of the access token keyed with the app secret."""
    return hmac.new(
        app_secret.encode("utf-8"),
        access_token.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class FacebookGraphClient:
    """Fetches lead field data from the Graph API by leadgen id."""

    def __init__(
        self,
        access_token: Optional[str] = None,
        app_secret: Optional[str] = None,
        graph_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_delay_seconds: Optional[float] = None,
    ):
        self.access_token = access_token if access_token is not None else settings.fb_page_access_token
        self.app_secret = app_secret if app_secret is not None else settings.fb_app_secret
        self.graph_url = (graph_url or settings.fb_graph_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.fb_fetch_timeout_seconds
        self.max_retries = max(1, max_retries if max_retries is not None else settings.fb_fetch_max_retries)
        self.retry_delay_seconds = (
            retry_delay_seconds if retry_delay_seconds is not None else settings.fb_fetch_retry_delay_seconds
        )

    def build_params(self) -> Dict[str, str]:
        params = {"fields": LEAD_FIELDS, "access_token": self.access_token}
        if self.app_secret:
            params["appsecret_proof"] = appsecret_proof(self.access_token, self.app_secret)
        return params

    async def _request(self, url: str, params: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params=params) as response:
                    try:
                        body = await response.json(content_type=None)
                    except ValueError:
                        body = {"error": {"message": (await response.text())[:200]}}
                    return response.status, body if isinstance(body, dict) else {}
        except asyncio.TimeoutError as e:
            raise TransientGraphError("Graph request timeout") from e
        except aiohttp.ClientError as e:
            raise TransientGraphError(f"Graph client error: {str(e)[:200]}") from e

    async def fetch_lead(self, leadgen_id: str) -> GraphLead:
        """Fetch one lead. Transient failures are retried with linear back-off.

        Raises ``UpstreamError`` on a non-retryable response or when every
        retry is exhausted.
        """
        if not self.access_token:
            raise UpstreamError("Facebook page access token is not configured")

        url = f"{self.graph_url}/{leadgen_id}"
        params = self.build_params()
        attempts = self.max_retries + 1
        last_error = ""

        for attempt in range(1, attempts + 1):
            try:
                status_code, body = await self._request(url, params)
            except TransientGraphError as e:
                last_error = str(e)
            else:
                if 200 <= status_code < 300:
                    logger.info("graph.lead_fetched", leadgen_id=leadgen_id, attempt=attempt)
                    return GraphLead.from_payload(leadgen_id, body)

                message = (body.get("error") or {}).get("message") or f"HTTP {status_code}"
                last_error = f"HTTP {status_code}: {message}"
                if status_code != 429 and status_code < 500:
                    logger.warning(
                        "graph.lead_fetch_rejected",
                        leadgen_id=leadgen_id,
                        status_code=status_code,
                        error=message,
                    )
                    raise UpstreamError(
                        "Facebook Graph rejected lead fetch",
                        details={"leadgen_id": leadgen_id, "status_code": status_code, "error": message},
                    )

            logger.warning(
                "graph.lead_fetch_retry",
                leadgen_id=leadgen_id,
                attempt=attempt,
                max_attempts=attempts,
                error=last_error,
            )
            if attempt < attempts:
                await asyncio.sleep(self.retry_delay_seconds * attempt)

        logger.error("graph.lead_fetch_failed", leadgen_id=leadgen_id, attempts=attempts, error=last_error)
        raise UpstreamError(
            "Facebook Graph lead fetch failed after retries",
            details={"leadgen_id": leadgen_id, "attempts": attempts, "error": last_error},
        )
