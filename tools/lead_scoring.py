import math
import re
from typing import Dict, List, Optional, Sequence

from loguru import logger

from pipeline.models import BudgetRange, LeadTier, SignalRule, SignalRuleConditions, TrackingEvent

HIGH_VALUE_THRESHOLD = 1200
BUDGET_ANSWER_KEYS = ("budget", "Budget Affordability")

CAPI_EVENT_NAMES: Dict[LeadTier, str] = {
    LeadTier.QUALIFIED: "QualifiedLead",
    LeadTier.DISQUALIFIED: "DisqualifiedLead",
    LeadTier.HIGH_VALUE_CUSTOMER: "HighValueCustomer",
    LeadTier.LOW_VALUE_CUSTOMER: "LowValueCustomer",
}

_unmapped = [tier.value for tier in LeadTier if tier not in CAPI_EVENT_NAMES]
if _unmapped:
    raise RuntimeError(f"Lead tiers without a CAPI event name: {_unmapped}")

BUDGET_NOISE_RE = re.compile(r"[^0-9+\-–—$.,]")
_NUMBER = r"(\d[\d,]*(?:\.\d+)?)"
PLUS_RE = re.compile(r"\$?" + _NUMBER + r"\+")
RANGE_RE = re.compile(r"\$?" + _NUMBER + r"\s*[-–—]\s*\$?" + _NUMBER)
SINGLE_RE = re.compile(r"\$?" + _NUMBER)


def _to_number(raw: str) -> float:
    return float(raw.replace(",", ""))


def parse_budget_range(budget: Optional[str]) -> Optional[BudgetRange]:
    """
    Parse a free-text budget answer into a numeric range.

    Examples:
        "$50-$100/month" -> 50..100
        "$200+"          -> 200..open
        "around 75"      -> 75..75

    Returns:
        BudgetRange, or None when the text carries no usable number
    """
    if not budget:
        return None

    cleaned = BUDGET_NOISE_RE.sub(" ", budget).strip()

    plus_match = PLUS_RE.search(cleaned)
    if plus_match:
        return BudgetRange(min=_to_number(plus_match.group(1)), max=None)

    range_match = RANGE_RE.search(cleaned)
    if range_match:
        return BudgetRange(
            min=_to_number(range_match.group(1)),
            max=_to_number(range_match.group(2)),
        )

    single_match = SINGLE_RE.search(cleaned)
    if single_match:
        value = _to_number(single_match.group(1))
        return BudgetRange(min=value, max=value)

    return None


def budget_midpoint(budget_range: BudgetRange) -> float:
    """Midpoint of a closed range; the minimum of an open-ended one."""
    if budget_range.max is None:
        return budget_range.min
    return (budget_range.min + budget_range.max) / 2


def calculate_annual_premium_estimate(budget: Optional[str]) -> int:
    """Monthly budget midpoint x 12, rounded half up. 0 when unparsable."""
    budget_range = parse_budget_range(budget)
    if budget_range is None:
        return 0
    return int(math.floor(budget_midpoint(budget_range) * 12 + 0.5))


def classify_customer_tier(annual_premium: float) -> LeadTier:
    if annual_premium >= HIGH_VALUE_THRESHOLD:
        return LeadTier.HIGH_VALUE_CUSTOMER
    return LeadTier.LOW_VALUE_CUSTOMER


def get_capi_event_name(tier: LeadTier) -> str:
    return CAPI_EVENT_NAMES[LeadTier(tier)]


def tier_for_event_name(meta_event_name: str) -> LeadTier:
    """Infer the lead tier a signal rule reports from its Meta event name."""
    name = meta_event_name.lower()
    if "disqualified" in name:
        return LeadTier.DISQUALIFIED
    if "highvalue" in name:
        return LeadTier.HIGH_VALUE_CUSTOMER
    if "lowvalue" in name:
        return LeadTier.LOW_VALUE_CUSTOMER
    return LeadTier.QUALIFIED


def budget_answer(event: TrackingEvent) -> str:
    answers = event.quiz_answers or {}
    for key in BUDGET_ANSWER_KEYS:
        if answers.get(key):
            return str(answers[key])
    return ""


def evaluate_rule_conditions(conditions: SignalRuleConditions, event: TrackingEvent) -> bool:
    """True when every condition set on the rule holds for the event."""
    if conditions.audience and event.page not in conditions.audience:
        return False
    if conditions.domain and event.domain not in conditions.domain:
        return False
    if conditions.device_type and (not event.device_type or event.device_type not in conditions.device_type):
        return False
    if conditions.geo_state and (not event.geo_state or event.geo_state not in conditions.geo_state):
        return False
    if conditions.step_name and event.step_name not in conditions.step_name:
        return False
    if conditions.step_number and event.step_number not in conditions.step_number:
        return False
    if conditions.page_type and event.page_type not in conditions.page_type:
        return False

    if conditions.min_time_on_step is not None:
        if not event.time_on_step or event.time_on_step < conditions.min_time_on_step:
            return False
    if conditions.max_time_on_step is not None:
        if not event.time_on_step or event.time_on_step > conditions.max_time_on_step:
            return False

    if conditions.has_email is True and not event.email:
        return False
    if conditions.has_phone is True and not event.phone:
        return False

    if conditions.min_budget is not None or conditions.max_budget is not None:
        budget_range = parse_budget_range(budget_answer(event))
        if budget_range is None:
            return False
        midpoint = budget_midpoint(budget_range)
        if conditions.min_budget is not None and midpoint < conditions.min_budget:
            return False
        if conditions.max_budget is not None and midpoint > conditions.max_budget:
            return False

    return True


def compute_rule_value(custom_value: Optional[float], event: TrackingEvent) -> float:
    """A rule's fixed value, or the event's annual premium estimate."""
    if custom_value is not None:
        return custom_value
    return calculate_annual_premium_estimate(budget_answer(event))


def match_signal_rules(rules: Sequence[SignalRule], event: TrackingEvent) -> List[SignalRule]:
    """Enabled rules triggered by this event type whose conditions all hold."""
    matched = [
        rule for rule in rules
        if rule.enabled
        and rule.trigger_event == event.event_type
        and evaluate_rule_conditions(rule.conditions, event)
    ]
    if matched:
        logger.info(f"{len(matched)} signal rule(s) matched session {event.session_id}: {[r.name for r in matched]}")
    return matched
