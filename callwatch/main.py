"""
Call Watch - FastAPI Application

Places outbound calls through Twilio, reconciles their status from webhooks
and polling, and pushes every change to connected UI clients over a
WebSocket.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Form, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from .errors import CallNotFound, ProviderCallError, ProviderUnavailable
from .models import (
    CallStatusResponse,
    HangupRequest,
    HangupResponse,
    HealthResponse,
    MakeCallRequest,
    MakeCallResponse,
    RecordingResponse,
)
from .reconciler import CallReconciler
from .subscriptions import SubscriptionHub
from .twilio_service import get_twilio_service

# Load environment variables: package parent first, then current directory
env_paths = [
    Path(__file__).parent.parent / ".env",
    Path.cwd() / ".env",
]
for env_path in env_paths:
    if env_path.exists():
        load_dotenv(env_path)
        break
else:
    load_dotenv()

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if os.getenv("DEBUG", "false").lower() == "true" else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Created lazily so the app works without the lifespan running (tests)
reconciler: Optional[CallReconciler] = None


def _mask_key(key: Optional[str]) -> str:
    """Mask a credential showing only last 4 chars."""
    if not key:
        return "(not set)"
    if len(key) <= 4:
        return "****"
    return f"****{key[-4:]}"


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"{name}={raw!r} is not a number; using {default}")
        return default


def get_reconciler() -> CallReconciler:
    """Get or create the CallReconciler singleton."""
    global reconciler
    if reconciler is None:
        reconciler = CallReconciler(
            gateway=get_twilio_service(),
            hub=SubscriptionHub(),
            retention_seconds=_float_env("CALL_RETENTION_SECONDS", 600.0),
            recording_lookup_delay=_float_env("RECORDING_LOOKUP_DELAY_SECONDS", 3.0),
            phone_region=os.getenv("DEFAULT_PHONE_REGION", "US"),
        )
    return reconciler


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - initialize services."""
    logger.info("=" * 60)
    logger.info("Initializing Call Watch")
    logger.info("=" * 60)

    logger.info(f"TWILIO_ACCOUNT_SID: {_mask_key(os.getenv('TWILIO_ACCOUNT_SID'))}")
    logger.info(f"TWILIO_PHONE_NUMBER: {os.getenv('TWILIO_PHONE_NUMBER') or '(not set)'}")
    logger.info(f"WEBHOOK_BASE_URL: {os.getenv('WEBHOOK_BASE_URL') or '(not set)'}")

    service = get_reconciler()
    if service.gateway.is_configured:
        logger.info("Twilio gateway initialized successfully")
    else:
        logger.warning("Twilio gateway NOT configured - calls will fail, status answered from cache")

    logger.info("=" * 60)

    yield

    # Shutdown
    await service.shutdown()
    logger.info("Shutting down Call Watch")


app = FastAPI(
    title="Call Watch",
    description="Outbound call tracking with live status fan-out",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware for the browser UI
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    service = get_reconciler()
    return HealthResponse(
        status="healthy",
        providerConfigured=service.gateway.is_configured,
        activeCalls=service.active_call_count(),
        subscriberCount=len(service.hub),
        timestamp=_now_iso(),
    )


# ============================================================
# Call Control
# ============================================================

@app.post("/make-call", response_model=MakeCallResponse)
async def make_call(request: MakeCallRequest) -> MakeCallResponse:
    """
    Place an outbound call via Twilio and start tracking it.

    Errors:
        400: Missing destination number
        500: Twilio not configured, or Twilio rejected the call
    """
    if not request.to or not request.to.strip():
        raise HTTPException(status_code=400, detail="missing_to: Phone number is required")

    name = request.name or request.to
    logger.info(f"Incoming call request for: {name} ({request.to})")

    try:
        snapshot = await get_reconciler().originate(request.to, name=request.name, record=request.record)
    except ProviderUnavailable as e:
        logger.error(f"Call start failed: {e}")
        raise HTTPException(status_code=500, detail=f"twilio_not_configured: {e}")
    except ProviderCallError as e:
        logger.error(f"Call start failed: {e.message} (code={e.code})")
        raise HTTPException(status_code=500, detail=f"twilio_error: {e.message}")

    return MakeCallResponse(
        success=True,
        callSid=snapshot.call_id,
        message=f"Calling {name}...",
        status=snapshot.status,
    )


@app.get("/call-status/{sid}", response_model=CallStatusResponse)
async def call_status(sid: str) -> CallStatusResponse:
    """
    Get the status of a call.

    Calls that are still live are re-polled from Twilio before answering.

    Errors:
        404: Call unknown to both the cache and Twilio
    """
    logger.debug(f"Call status request: sid={sid}")
    try:
        snapshot = await get_reconciler().get_status(sid)
    except CallNotFound:
        logger.warning(f"Call not found: {sid}")
        raise HTTPException(status_code=404, detail=f"call_not_found: No call with ID {sid}")

    return CallStatusResponse(
        status=snapshot.status,
        durationSeconds=snapshot.duration_seconds,
        recordingUrl=snapshot.recording_url,
    )


@app.post("/hangup-call", response_model=HangupResponse)
async def hangup_call(request: HangupRequest) -> HangupResponse:
    """
    Hang up a call. A call Twilio no longer knows counts as hung up.

    Errors:
        400: Missing sid
        404: Unknown call and Twilio not configured
        500: Twilio refused the hangup (local state is still completed)
    """
    if not request.sid:
        raise HTTPException(status_code=400, detail="missing_sid: Call SID is required")

    logger.info(f"Hangup request: sid={request.sid}")
    try:
        snapshot = await get_reconciler().hangup(request.sid)
    except CallNotFound:
        raise HTTPException(status_code=404, detail=f"call_not_found: No call with ID {request.sid}")
    except ProviderCallError as e:
        raise HTTPException(status_code=500, detail=f"twilio_error: {e.message}")

    return HangupResponse(
        success=True,
        status=snapshot.status,
        durationSeconds=snapshot.duration_seconds,
        recordingUrl=snapshot.recording_url,
    )


# ============================================================
# Recordings
# ============================================================

@app.get("/recording/{call_sid}", response_model=RecordingResponse)
async def recording(call_sid: str) -> RecordingResponse:
    """Locate a call's recording in the index, the live record, or Twilio."""
    try:
        descriptor, source = await get_reconciler().get_recording(call_sid)
    except CallNotFound:
        raise HTTPException(status_code=404, detail=f"recording_not_found: No recording for call {call_sid}")

    return RecordingResponse(
        success=True,
        recordingUrl=descriptor.url,
        durationSeconds=descriptor.duration_seconds,
        source=source,
    )


@app.get("/recording-audio/{call_sid}")
async def recording_audio(call_sid: str) -> StreamingResponse:
    """Stream a call's recording audio, forwarding Twilio's content headers."""
    try:
        upstream = await get_reconciler().open_recording_audio(call_sid)
    except CallNotFound:
        raise HTTPException(status_code=404, detail=f"recording_not_found: No recording for call {call_sid}")
    except ProviderUnavailable as e:
        raise HTTPException(status_code=500, detail=f"twilio_not_configured: {e}")
    except ProviderCallError as e:
        logger.error(f"Recording audio fetch failed for {call_sid}: {e.message}")
        status_code = 404 if e.is_not_found else 500
        raise HTTPException(status_code=status_code, detail=f"recording_fetch_failed: {e.message}")

    headers = {}
    if "content-length" in upstream.headers:
        headers["Content-Length"] = upstream.headers["content-length"]

    return StreamingResponse(
        upstream.aiter_raw(),
        media_type=upstream.headers.get("content-type", "audio/mpeg"),
        headers=headers,
        background=BackgroundTask(upstream.aclose),
    )


# ============================================================
# Twilio Webhooks
# ============================================================

def _parse_int(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


@app.post("/webhooks/call-status")
async def call_status_webhook(
    CallSid: str = Form(None),
    CallStatus: str = Form(None),
    CallDuration: str = Form(None),
    RecordingUrl: str = Form(None),
):
    """
    Twilio status callback webhook.

    Always acknowledged with 200 so Twilio does not retry; duplicate or late
    deliveries are harmless to the reconciler.
    """
    duration = _parse_int(CallDuration)
    logger.info(f"Twilio status webhook: CallSid={CallSid}, status={CallStatus}, duration={duration}")

    if not CallSid:
        logger.warning("call-status webhook without CallSid")
        return {"status": "ok"}

    try:
        await get_reconciler().apply_push(CallSid, CallStatus, duration, RecordingUrl)
    except Exception:
        logger.exception(f"Failed to process status webhook for {CallSid}")

    return {"status": "ok"}


@app.post("/webhooks/recording-status")
async def recording_status_webhook(
    CallSid: str = Form(None),
    RecordingSid: str = Form(None),
    RecordingUrl: str = Form(None),
    RecordingStatus: str = Form(None),
    RecordingDuration: str = Form(None),
):
    """
    Twilio recording status callback webhook.

    Only completed recordings are indexed.
    """
    logger.info(
        f"Twilio recording webhook: CallSid={CallSid}, RecordingSid={RecordingSid}, "
        f"status={RecordingStatus}, url={RecordingUrl}"
    )

    if not CallSid:
        logger.warning("recording-status webhook without CallSid")
        return {"status": "ok"}

    try:
        await get_reconciler().record_recording(
            CallSid,
            RecordingSid,
            RecordingUrl,
            RecordingStatus,
            _parse_int(RecordingDuration),
        )
    except Exception:
        logger.exception(f"Failed to process recording webhook for {CallSid}")

    return {"status": "ok"}


# ============================================================
# Live Updates
# ============================================================

@app.websocket("/ws")
async def call_updates(websocket: WebSocket):
    """WebSocket endpoint for real-time call status updates."""
    hub = get_reconciler().hub
    await hub.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            await hub.handle_message(websocket, data)
    except WebSocketDisconnect:
        logger.info("Client disconnected from WebSocket")
    except Exception as e:
        logger.error(f"WebSocket error: {e}")
    finally:
        hub.disconnect(websocket)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "3000"))
    uvicorn.run(app, host="0.0.0.0", port=port)
