from loguru import logger

from pipeline.state import EventState
from tools.bot_detection import classify


def detect(state: EventState) -> EventState:
    """Attach a bot verdict to the captured event."""
    event = state["event"]
    verdict = classify(event, state.get("custom_rules") or [])
    state["verdict"] = verdict

    if verdict.is_bot:
        state["decided_path"] = "bot"
        logger.info(f"Bot traffic in session {event.session_id}: {verdict.bot_type} {verdict.reasons}")
    else:
        logger.info(f"Human traffic in session {event.session_id}")
    return state
