from typing import TypedDict, Optional, List, Dict, Any

from pipeline.models import BotVerdict, CustomBotRule, SignalData, SignalResult, SignalRule, TrackingEvent


class PendingSignal(TypedDict):
    """An audience signal a matched rule wants sent to Meta."""
    rule_id: int
    rule_name: str
    meta_event_name: str
    lead_tier: str
    value: float
    content_name: Optional[str]
    data: SignalData


class EventState(TypedDict, total=False):
    """State shape for the tracking event workflow."""
    raw: Dict[str, Any]                   # payload as received
    event: TrackingEvent                  # validated, PII dropped unless form_complete
    landing: Optional[TrackingEvent]      # the session's page_land event, if known
    custom_rules: List[CustomBotRule]     # enabled bot rules from the block list
    signal_rules: List[SignalRule]        # active signal rules
    verdict: BotVerdict
    lead_tier: Optional[str]
    signals: List[PendingSignal]
    signal_results: List[SignalResult]
    errors: List[str]
    decided_path: str                     # "invalid" | "bot" | "signal" | "no_signal"
