from typing import Any, Dict

from loguru import logger
from pydantic import ValidationError

from pipeline.models import PII_FIELDS, TrackingEvent
from pipeline.state import EventState


def capture(state: EventState) -> EventState:
    """Validate the incoming payload and drop contact details outside form completions."""
    raw: Dict[str, Any] = dict(state.get("raw") or {})
    logger.info(f"Starting capture for session: {raw.get('session_id', 'unknown')}")

    event_type = raw.get("event_type") or "step_complete"
    raw["event_type"] = event_type
    if event_type != "form_complete":
        for field in PII_FIELDS:
            raw.pop(field, None)

    # Empty strings from the tracking script mean "not provided".
    raw = {key: value for key, value in raw.items() if value != ""}

    try:
        state["event"] = TrackingEvent.model_validate(raw)
    except ValidationError as e:
        issues = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        error_msg = f"Invalid tracking event: {issues}"
        logger.warning(error_msg)
        state.setdefault("errors", []).append(error_msg)
        state["decided_path"] = "invalid"
        return state

    logger.info(f"Capture completed for {state['event'].session_id} ({event_type})")
    return state
