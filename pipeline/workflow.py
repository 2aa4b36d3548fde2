from typing import Any, Dict, Optional, Sequence

from langgraph.graph import StateGraph, START, END
from loguru import logger

from pipeline.models import CustomBotRule, SignalRule, TrackingEvent
from pipeline.nodes.capture import capture
from pipeline.nodes.detect import detect
from pipeline.nodes.score import score
from pipeline.state import EventState


def build_workflow():
    """Build the tracking event workflow: capture -> detect -> score."""
    workflow = StateGraph(EventState)

    workflow.add_node("capture", capture)
    workflow.add_node("detect", detect)
    workflow.add_node("score", score)

    workflow.add_edge(START, "capture")

    def after_capture(state: EventState) -> str:
        return "detect" if state.get("event") is not None else END

    def after_detect(state: EventState) -> str:
        # Bot traffic is stored with its verdict but never scored or forwarded.
        if state["verdict"].is_bot:
            return END
        return "score"

    workflow.add_conditional_edges("capture", after_capture, {"detect": "detect", END: END})
    workflow.add_conditional_edges("detect", after_detect, {"score": "score", END: END})
    workflow.add_edge("score", END)

    return workflow.compile()


app_graph = build_workflow()


def process_event(
    raw: Dict[str, Any],
    custom_rules: Sequence[CustomBotRule] = (),
    signal_rules: Sequence[SignalRule] = (),
    landing: Optional[TrackingEvent] = None,
) -> EventState:
    """Run one raw tracking payload through the workflow."""
    initial_state: EventState = {
        "raw": raw,
        "landing": landing,
        "custom_rules": list(custom_rules),
        "signal_rules": list(signal_rules),
        "signals": [],
        "errors": [],
    }
    result = app_graph.invoke(initial_state)
    logger.debug(f"Workflow finished with path={result.get('decided_path')} errors={result.get('errors')}")
    return result
