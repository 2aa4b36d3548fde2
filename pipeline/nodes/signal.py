from typing import List, Optional

from loguru import logger

from pipeline.models import SignalData, SignalResult
from pipeline.state import EventState
from tools.idempotency import Idem
from tools.meta_conversions import MetaConversionsClient, capi_client

DUPLICATE_SIGNAL = "duplicate signal"

_signal_idem: Optional[Idem] = None


def get_signal_idem() -> Idem:
    """Shared guard for fired signals, connected on first use."""
    global _signal_idem
    if _signal_idem is None:
        _signal_idem = Idem(namespace="sig")
    return _signal_idem


def signal_key(meta_event_name: str, data: SignalData) -> str:
    # Same derivation as the audience event id sent to Meta
    return f"{meta_event_name.lower()}_{data.event_id or data.session_id}"


async def fire_signals(
    state: EventState,
    client: Optional[MetaConversionsClient] = None,
    idem: Optional[Idem] = None,
) -> List[SignalResult]:
    """
    Send the signals queued by the score node.

    Runs after the ingestion response as a background task; results are
    logged and returned, failures never propagate. A signal already sent for
    the same source event is skipped, and a failed send releases its claim so
    a retry can send it.
    """
    client = client or capi_client
    idem = idem or get_signal_idem()
    results: List[SignalResult] = []
    session_id = state["event"].session_id if state.get("event") else "unknown"

    for pending in state.get("signals") or []:
        key = signal_key(pending["meta_event_name"], pending["data"])
        if not idem.check_and_set(key):
            logger.warning(f"Duplicate signal skipped: {key}")
            results.append(SignalResult(success=False, error=DUPLICATE_SIGNAL))
            continue

        try:
            result = await client.fire_audience_signal(
                pending["meta_event_name"],
                pending["data"],
                pending["value"],
                pending["content_name"],
            )
        except Exception as e:
            logger.error(f"Signal rule \"{pending['rule_name']}\" crashed for session {session_id}: {e}")
            result = SignalResult(success=False, error=str(e))

        if not result.success:
            idem.clear_key(key)

        status = "success" if result.success else f"failed ({result.error})"
        logger.info(
            f"Signal rule \"{pending['rule_name']}\" matched for session {session_id}, "
            f"fired {pending['meta_event_name']}, status: {status}"
        )
        results.append(result)

    state["signal_results"] = results
    return results
