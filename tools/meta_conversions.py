import math
import os
import time
from typing import Any, Dict, List, Optional, Sequence

import httpx
from loguru import logger

from pipeline.models import (
    CAPIResponse,
    ConversionEventData,
    CustomData,
    SignalData,
    SignalResult,
    TrackingEvent,
    UploadResult,
    UploadSummary,
    UserData,
)
from tools.normalize import normalize_phone, sha256_hash

GRAPH_API_VERSION = "v24.0"
GRAPH_API_BASE = f"https://graph.facebook.com/{GRAPH_API_VERSION}"
DEFAULT_CURRENCY = "USD"
UPLOAD_BATCH_SIZE = 50
NOT_CONFIGURED = "CAPI not configured"

# user_data field -> wire key, for fields sent as SHA-256 hashes
HASHED_FIELDS = (
    ("email", "em"),
    ("phone", "ph"),
    ("first_name", "fn"),
    ("last_name", "ln"),
    ("state", "st"),
    ("country", "country"),
    ("external_id", "external_id"),
)
# fbclid is accepted on UserData but never sent.
PLAIN_FIELDS = ("client_ip_address", "client_user_agent", "fbp", "fbc")


class MetaConversionError(Exception):
    """Error returned by the Conversions API for a failed request."""

    def __init__(self, message: str, code: int, fbtrace_id: str = ""):
        super().__init__(message)
        self.message = message
        self.code = code
        self.fbtrace_id = fbtrace_id

    def __repr__(self) -> str:
        return f"MetaConversionError(message={self.message!r}, code={self.code}, fbtrace_id={self.fbtrace_id!r})"


def _user_data(data: SignalData) -> UserData:
    return UserData(
        email=data.email or None,
        phone=data.phone or None,
        first_name=data.first_name or None,
        last_name=data.last_name or None,
        state=data.geo_state or None,
        country=data.country or None,
        external_id=data.external_id or None,
        client_ip_address=data.ip_address or None,
        client_user_agent=data.user_agent or None,
        fbp=data.fbp or None,
        fbc=data.fbc or None,
        fbclid=data.fbclid or None,
    )


def _event_time(data: SignalData) -> int:
    return int(math.floor(data.event_timestamp.timestamp()))


def build_conversion_event(data: SignalData) -> ConversionEventData:
    """Build the standard "Lead" event for a completed form."""
    return ConversionEventData(
        event_name="Lead",
        event_time=_event_time(data),
        event_id=data.event_id or f"fc_{data.session_id}",
        event_source_url=data.page_url or None,
        user_data=_user_data(data),
    )


def build_audience_event(
    event_name: str,
    data: SignalData,
    value: float,
    content_name: Optional[str] = None,
) -> ConversionEventData:
    """
    Build a tier or milestone signal.

    The event id is derived from the event name and the source event (or
    session), so re-sending the same logical signal yields the same id and
    Meta deduplicates it.
    """
    return ConversionEventData(
        event_name=event_name,
        event_time=_event_time(data),
        event_id=f"{event_name.lower()}_{data.event_id or data.session_id}",
        event_source_url=data.page_url or None,
        user_data=_user_data(data),
        custom_data=CustomData(
            value=value,
            currency=DEFAULT_CURRENCY,
            content_name=content_name or None,
        ),
    )


def format_event_for_meta(event: ConversionEventData) -> Dict[str, Any]:
    """Convert an event to the Conversions API wire shape, omitting absent fields."""
    user = event.user_data
    user_data: Dict[str, Any] = {}

    for field, key in HASHED_FIELDS:
        value = getattr(user, field)
        if not value:
            continue
        if field == "phone":
            value = normalize_phone(value)
        user_data[key] = [sha256_hash(value)]

    for field in PLAIN_FIELDS:
        value = getattr(user, field)
        if value:
            user_data[field] = value

    formatted: Dict[str, Any] = {
        "event_name": event.event_name,
        "event_time": event.event_time,
        "event_id": event.event_id,
        "action_source": event.action_source,
        "user_data": user_data,
    }
    if event.event_source_url:
        formatted["event_source_url"] = event.event_source_url
    if event.custom_data is not None:
        custom = event.custom_data.model_dump(exclude_none=True)
        if custom:
            formatted["custom_data"] = custom
    return formatted


def signal_data_from_event(event: TrackingEvent, landing: Optional[TrackingEvent] = None) -> SignalData:
    """
    Collect builder input from a tracking event.

    Identity and attribution fields missing on the event are taken from the
    session's landing event, which usually carries the cookies and IP.
    """
    def pick(field: str) -> Optional[str]:
        value = getattr(event, field)
        if not value and landing is not None:
            value = getattr(landing, field)
        return value or None

    return SignalData(
        session_id=event.session_id,
        event_id=event.event_id,
        event_timestamp=event.event_timestamp,
        page_url=event.page_url,
        email=event.email,
        phone=event.phone,
        first_name=event.first_name,
        last_name=event.last_name,
        geo_state=pick("geo_state"),
        country=pick("country"),
        external_id=pick("external_id"),
        ip_address=pick("ip_address"),
        user_agent=pick("user_agent"),
        fbp=pick("fbp"),
        fbc=pick("fbc"),
        fbclid=pick("fbclid"),
    )


def strip_pii(data: SignalData) -> SignalData:
    """Copy of the signal data without contact details."""
    return data.model_copy(update={"email": None, "phone": None, "first_name": None, "last_name": None})


class MetaConversionsClient:
    """Meta Conversions API (server-side events) client."""

    def __init__(
        self,
        pixel_id: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.pixel_id = pixel_id or os.getenv("FACEBOOK_PIXEL_ID")
        self.access_token = access_token or os.getenv("FACEBOOK_ACCESS_TOKEN")
        self.timeout = timeout if timeout is not None else float(os.getenv("CAPI_HTTP_TIMEOUT", "20"))
        self.transport = transport

        if not self.configured:
            logger.warning("No Meta pixel id / access token provided, audience signals disabled")

    @property
    def configured(self) -> bool:
        return bool(self.pixel_id and self.access_token)

    async def send_conversion_events(
        self,
        pixel_id: str,
        access_token: str,
        events: Sequence[ConversionEventData],
        test_event_code: Optional[str] = None,
    ) -> CAPIResponse:
        """
        Send a batch of events in a single request.

        Args:
            pixel_id: Meta pixel (dataset) id
            access_token: System user access token
            events: Events to send
            test_event_code: Routes the batch to the Test Events tool

        Returns:
            CAPIResponse acknowledgement

        Raises:
            MetaConversionError: the API answered with a non-2xx status
        """
        payload: Dict[str, Any] = {"data": [format_event_for_meta(e) for e in events]}
        if test_event_code:
            payload["test_event_code"] = test_event_code

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                f"{GRAPH_API_BASE}/{pixel_id}/events",
                params={"access_token": access_token},
                headers={"Content-Type": "application/json"},
                json=payload,
            )

        try:
            body = response.json()
        except ValueError:
            body = {}

        if not response.is_success:
            error = body.get("error") if isinstance(body, dict) else None
            if not isinstance(error, dict):
                error = {}
            raise MetaConversionError(
                error.get("message") or "Unknown CAPI error",
                error.get("code") or response.status_code,
                error.get("fbtrace_id") or "",
            )

        return CAPIResponse.model_validate(body)

    async def fire_audience_signal(
        self,
        event_name: str,
        data: SignalData,
        value: float,
        content_name: Optional[str] = None,
    ) -> SignalResult:
        """Build and send one audience signal. Never raises."""
        if not self.configured:
            logger.info(f"CAPI not configured, skipping {event_name} for session {data.session_id}")
            return SignalResult(success=False, error=NOT_CONFIGURED)

        try:
            event = build_audience_event(event_name, data, value, content_name)
            response = await self.send_conversion_events(self.pixel_id, self.access_token, [event])
            logger.info(
                f"Fired {event_name} ({event.event_id}) value={value}: "
                f"events_received={response.events_received}, fbtrace_id={response.fbtrace_id}"
            )
            return SignalResult(success=True)
        except MetaConversionError as e:
            logger.error(f"CAPI rejected {event_name} for session {data.session_id}: {e.message} (code={e.code}, fbtrace_id={e.fbtrace_id})")
            return SignalResult(success=False, error=e.message)
        except Exception as e:
            logger.error(f"Audience signal {event_name} failed for session {data.session_id}: {e}")
            return SignalResult(success=False, error=str(e))

    async def upload_form_completions(
        self,
        records: Sequence[SignalData],
        test_mode: bool = False,
        test_event_code: Optional[str] = None,
    ) -> UploadSummary:
        """
        Send "Lead" events for completed forms in batches.

        A failed batch marks its own records as failed; later batches are still sent.

        Raises:
            MetaConversionError: credentials are not configured
        """
        if not self.configured:
            raise MetaConversionError(NOT_CONFIGURED, 400)

        code = None
        if test_mode:
            code = test_event_code or f"TEST_CAPI_{int(time.time() * 1000)}"

        summary = UploadSummary(test_event_code=code)
        events = [build_conversion_event(record) for record in records]

        for start in range(0, len(events), UPLOAD_BATCH_SIZE):
            batch = events[start:start + UPLOAD_BATCH_SIZE]
            target = f"(test: {code})" if code else "(LIVE)"
            logger.info(f"Sending {len(batch)} events to pixel {self.pixel_id} {target}")
            try:
                response = await self.send_conversion_events(self.pixel_id, self.access_token, batch, code)
            except Exception as e:
                message = e.message if isinstance(e, MetaConversionError) else str(e)
                logger.error(f"CAPI batch of {len(batch)} failed: {message}")
                summary.results.extend(
                    UploadResult(event_id=event.event_id, status="failed", message=message) for event in batch
                )
                continue

            logger.info(
                f"CAPI response: events_received={response.events_received}, "
                f"fbtrace_id={response.fbtrace_id}, messages={response.messages}"
            )
            summary.sent += len(batch)
            summary.received += response.events_received
            summary.results.extend(
                UploadResult(
                    event_id=event.event_id,
                    status="sent",
                    message=f"Sent successfully (fbtrace: {response.fbtrace_id})",
                )
                for event in batch
            )

        return summary


# Global Conversions API client instance
capi_client = MetaConversionsClient()


async def send_conversion_events(
    pixel_id: str,
    access_token: str,
    events: Sequence[ConversionEventData],
    test_event_code: Optional[str] = None,
) -> CAPIResponse:
    """Send events using the global client."""
    return await capi_client.send_conversion_events(pixel_id, access_token, events, test_event_code)


async def fire_audience_signal(
    event_name: str,
    data: SignalData,
    value: float,
    content_name: Optional[str] = None,
) -> SignalResult:
    """Fire an audience signal using the global client."""
    return await capi_client.fire_audience_signal(event_name, data, value, content_name)


async def upload_form_completions(
    records: List[SignalData],
    test_mode: bool = False,
    test_event_code: Optional[str] = None,
) -> UploadSummary:
    """Upload completed forms using the global client."""
    return await capi_client.upload_form_completions(records, test_mode, test_event_code)
