import os
import time
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables before the clients read them
load_dotenv()

from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from pipeline.models import SignalData, UploadSummary
from pipeline.nodes.signal import fire_signals
from pipeline.state import EventState
from pipeline.workflow import process_event
from tools.idempotency import Idem
from tools.lead_scoring import classify_customer_tier, get_capi_event_name
from tools.meta_conversions import MetaConversionError, fire_audience_signal, upload_form_completions
from tools.rule_store import load_custom_bot_rules, load_signal_rules

# Configure logging
logger.add(
    os.getenv("LOG_FILE", "logs/app.log"),
    rotation="1 day",
    retention="7 days",
    level=os.getenv("LOG_LEVEL", "INFO"),
)

app = FastAPI(
    title="Landing Page Signal Router",
    description="Bot filtering, lead tiering and Meta Conversions API signals for landing page events",
    version="1.0.0",
)

idem = Idem()


class PolicySold(BaseModel):
    session_id: str
    annual_premium: float = Field(gt=0)
    policy_type: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    geo_state: Optional[str] = None
    country: Optional[str] = None


class UploadRequest(BaseModel):
    records: List[SignalData]
    test_mode: bool = False
    test_event_code: Optional[str] = None


def require_api_key(api_key: Optional[str]) -> None:
    expected = os.getenv("WEBHOOK_API_KEY")
    if not expected or api_key != expected:
        raise HTTPException(status_code=401, detail="Unauthorized")


async def run_signals(state: EventState) -> None:
    """Background task: failures here must never reach the ingestion response."""
    try:
        await fire_signals(state)
    except Exception as e:
        logger.error(f"Signal firing failed: {e}")


@app.post("/api/events")
async def ingest_event(req: Request, background_tasks: BackgroundTasks):
    """
    Tracking endpoint for landing page events.

    Expected payload (abridged):
    {
        "session_id": "s_123",
        "event_id": "e_456",
        "event_type": "step_complete",
        "page": "health-quiz",
        "step_number": 2,
        "step_name": "budget",
        "user_agent": "Mozilla/5.0 ...",
        "screen_resolution": "1920x1080"
    }
    """
    start_time = time.time()
    try:
        payload = await req.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed JSON body")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")

    payload["user_agent"] = payload.get("user_agent") or req.headers.get("user-agent")
    payload["ip_address"] = payload.get("ip_address") or (req.client.host if req.client else None)
    payload["referrer"] = payload.get("referrer") or req.headers.get("referer")

    event_id = payload.get("event_id")
    if event_id and not idem.check_and_set(str(event_id)):
        logger.warning(f"Duplicate event ignored: {event_id}")
        return {"ok": True, "status": "duplicate_ignored"}

    try:
        result = process_event(
            payload,
            custom_rules=load_custom_bot_rules(),
            signal_rules=load_signal_rules(),
        )
    except Exception:
        # Release the claim so a retry of this event is processed
        if event_id:
            idem.clear_key(str(event_id))
        raise

    if result.get("decided_path") == "invalid":
        if event_id:
            idem.clear_key(str(event_id))
        return JSONResponse(status_code=400, content={"ok": False, "errors": result.get("errors", [])})

    if result.get("signals"):
        background_tasks.add_task(run_signals, result)

    verdict = result["verdict"]
    logger.info(f"Event processed in {time.time() - start_time:.3f}s: path={result.get('decided_path')}")
    return {
        "ok": True,
        "is_bot": verdict.is_bot,
        "bot_type": verdict.bot_type,
        "reasons": verdict.reasons,
        "lead_tier": result.get("lead_tier"),
        "signals": [s["meta_event_name"] for s in result.get("signals", [])],
    }


@app.post("/api/webhook/policy-sold")
async def policy_sold(body: PolicySold, x_api_key: Optional[str] = Header(None)):
    """Report a sold policy as a high/low value customer signal."""
    require_api_key(x_api_key)

    tier = classify_customer_tier(body.annual_premium)
    capi_event_name = get_capi_event_name(tier)

    signal_data = SignalData(
        session_id=body.session_id,
        event_id=f"policy_{body.session_id}",
        email=body.email,
        phone=body.phone,
        first_name=body.first_name,
        last_name=body.last_name,
        geo_state=body.geo_state,
        country=body.country,
    )
    result = await fire_audience_signal(capi_event_name, signal_data, body.annual_premium, body.policy_type)

    logger.info(f"Policy sold: session={body.session_id}, tier={tier.value}, premium={body.annual_premium}, capi={result.success}")
    return {"ok": True, "tier": tier.value, "capi_event_name": capi_event_name, "capi_fired": result.success}


@app.post("/api/meta-conversions/upload")
async def upload(body: UploadRequest, x_api_key: Optional[str] = Header(None)) -> UploadSummary:
    """Send completed forms to Meta as "Lead" events."""
    require_api_key(x_api_key)
    try:
        return await upload_form_completions(body.records, body.test_mode, body.test_event_code)
    except MetaConversionError as e:
        raise HTTPException(status_code=400, detail=e.message)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "version": "1.0.0",
        "services": {
            "redis": "connected" if idem.r else "disconnected",
            "workflow": "ready",
        },
    }


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": "Failed to process event"},
    )


if __name__ == "__main__":
    import uvicorn

    os.makedirs("logs", exist_ok=True)

    logger.info("Starting Landing Page Signal Router")

    uvicorn.run(
        "app:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        log_level="info",
    )
