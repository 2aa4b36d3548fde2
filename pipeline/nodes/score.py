from loguru import logger

from pipeline.models import LeadTier
from pipeline.state import EventState, PendingSignal
from tools.lead_scoring import compute_rule_value, match_signal_rules, tier_for_event_name
from tools.meta_conversions import signal_data_from_event, strip_pii


def score(state: EventState) -> EventState:
    """Match signal rules against a human event and queue the audience signals they fire."""
    event = state["event"]
    logger.info(f"Starting scoring for session: {event.session_id}")

    state["signals"] = []
    try:
        matched = match_signal_rules(state.get("signal_rules") or [], event)
        base_data = signal_data_from_event(event, state.get("landing"))

        for rule in matched:
            tier = tier_for_event_name(rule.meta_event_name)
            value = compute_rule_value(rule.custom_value, event)
            # Disqualified leads are reported without contact details.
            data = strip_pii(base_data) if tier == LeadTier.DISQUALIFIED else base_data

            state["signals"].append(PendingSignal(
                rule_id=rule.id,
                rule_name=rule.name,
                meta_event_name=rule.meta_event_name,
                lead_tier=tier.value,
                value=value,
                content_name=rule.content_name or event.page or None,
                data=data,
            ))
            state["lead_tier"] = tier.value

    except Exception as e:
        error_msg = f"Signal rule scoring failed: {str(e)}"
        logger.error(error_msg)
        state.setdefault("errors", []).append(error_msg)
        state["signals"] = []

    state["decided_path"] = "signal" if state["signals"] else "no_signal"
    logger.info(f"Scoring completed for {event.session_id}: {len(state['signals'])} signal(s), tier={state.get('lead_tier')}")
    return state
