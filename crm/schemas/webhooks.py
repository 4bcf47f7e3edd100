from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class WebsiteUtm(BaseModel):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    term: Optional[str] = None
    content: Optional[str] = None


class WebsiteLeadIn(BaseModel):
    platform: str
    answers: Dict[str, Any] = Field(default_factory=dict)
    page_id: Optional[str] = None
    form_id: Optional[str] = None
    ad_id: Optional[str] = None
    campaign_id: Optional[str] = None
    page_url: Optional[str] = None
    utm: Optional[WebsiteUtm] = None
    created_time: Optional[Union[int, float, str]] = None

    def has_contact_channel(self) -> bool:
        lowered = {str(k).lower(): v for k, v in self.answers.items()}
        return any(str(lowered.get(key) or "").strip() for key in ("email", "phone"))


class WebsiteLeadResponse(BaseModel):
    success: bool
    lead_id: int


class WebhookAck(BaseModel):
    success: bool = True
    message: str = "EVENT_RECEIVED"
