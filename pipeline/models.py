from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

EventType = Literal["page_land", "step_complete", "form_complete"]

PII_FIELDS = ("first_name", "last_name", "email", "phone")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Inbound tracking event ───
class TrackingEvent(BaseModel):
    """A single landing page interaction, as accepted by the ingestion boundary."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    event_id: Optional[str] = None
    event_type: EventType = "step_complete"
    page: str = ""
    page_type: str = ""
    domain: str = ""
    step_number: int = 0
    step_name: str = ""
    selected_value: Optional[str] = None
    time_on_step: Optional[float] = None
    event_timestamp: datetime = Field(
        default_factory=_utcnow,
        validation_alias=AliasChoices("event_timestamp", "timestamp"),
    )

    # device / fingerprint
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    referrer: Optional[str] = None
    page_url: Optional[str] = None
    screen_resolution: Optional[str] = None
    viewport: Optional[str] = None
    language: Optional[str] = None

    # geo / identity
    geo_state: Optional[str] = None
    country: Optional[str] = None
    external_id: Optional[str] = None
    quiz_answers: Optional[Dict[str, Any]] = None

    # attribution
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    utm_id: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_id: Optional[str] = None
    adset_name: Optional[str] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    placement: Optional[str] = None
    fbclid: Optional[str] = None
    fbc: Optional[str] = None
    fbp: Optional[str] = None

    # PII, only kept on form_complete
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


# ─── Bot detection ───
class CustomBotRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    rule_type: Literal["ip_prefix", "ua_pattern"]
    value: str
    label: Optional[str] = None
    enabled: bool = True
    created_at: datetime = Field(default_factory=_utcnow)


class BotVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_bot: bool
    bot_type: Optional[str] = None
    reasons: List[str] = Field(default_factory=list)


# ─── Lead scoring ───
class BudgetRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: float
    max: Optional[float] = None


class LeadTier(str, Enum):
    QUALIFIED = "qualified"
    DISQUALIFIED = "disqualified"
    HIGH_VALUE_CUSTOMER = "high_value_customer"
    LOW_VALUE_CUSTOMER = "low_value_customer"


class SignalRuleConditions(BaseModel):
    """Filters a signal rule applies to an event. Unset filters always pass."""

    audience: Optional[List[str]] = None
    domain: Optional[List[str]] = None
    device_type: Optional[List[str]] = None
    geo_state: Optional[List[str]] = None
    step_name: Optional[List[str]] = None
    step_number: Optional[List[int]] = None
    page_type: Optional[List[str]] = None
    min_time_on_step: Optional[float] = None
    max_time_on_step: Optional[float] = None
    min_budget: Optional[float] = None
    max_budget: Optional[float] = None
    has_email: Optional[bool] = None
    has_phone: Optional[bool] = None


class SignalRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    trigger_event: EventType
    meta_event_name: str
    conditions: SignalRuleConditions = Field(default_factory=SignalRuleConditions)
    custom_value: Optional[float] = None
    content_name: Optional[str] = None
    enabled: bool = True


# ─── Meta Conversions API ───
class SignalData(BaseModel):
    """Structured input for the conversion event builders."""

    session_id: str
    event_id: Optional[str] = None
    event_timestamp: datetime = Field(default_factory=_utcnow)
    page_url: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    geo_state: Optional[str] = None
    country: Optional[str] = None
    external_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    fbclid: Optional[str] = None


class UserData(BaseModel):
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    external_id: Optional[str] = None
    client_ip_address: Optional[str] = None
    client_user_agent: Optional[str] = None
    fbp: Optional[str] = None
    fbc: Optional[str] = None
    fbclid: Optional[str] = None


class CustomData(BaseModel):
    value: Optional[float] = None
    currency: Optional[str] = None
    content_name: Optional[str] = None


class ConversionEventData(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_name: str
    event_time: int
    event_id: str
    event_source_url: Optional[str] = None
    action_source: Literal["website"] = "website"
    user_data: UserData = Field(default_factory=UserData)
    custom_data: Optional[CustomData] = None


class CAPIResponse(BaseModel):
    events_received: int = 0
    messages: List[str] = Field(default_factory=list)
    fbtrace_id: str = ""


class SignalResult(BaseModel):
    success: bool
    error: Optional[str] = None


class UploadResult(BaseModel):
    event_id: str
    status: Literal["sent", "failed"]
    message: str


class UploadSummary(BaseModel):
    sent: int = 0
    received: int = 0
    test_event_code: Optional[str] = None
    results: List[UploadResult] = Field(default_factory=list)
