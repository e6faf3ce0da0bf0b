"""
Call status vocabulary and pydantic models for the HTTP API.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CallStatus(str, Enum):
    QUEUED = "queued"
    INITIATED = "initiated"
    RINGING = "ringing"
    IN_PROGRESS = "in-progress"  # connected
    COMPLETED = "completed"
    BUSY = "busy"
    NO_ANSWER = "no-answer"
    CANCELED = "canceled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        """Position in the forward-only state machine."""
        return _STATUS_RANK[self]


TERMINAL_STATUSES = frozenset({
    CallStatus.COMPLETED,
    CallStatus.BUSY,
    CallStatus.NO_ANSWER,
    CallStatus.CANCELED,
    CallStatus.FAILED,
})

_STATUS_RANK = {
    CallStatus.QUEUED: 0,
    CallStatus.INITIATED: 1,
    CallStatus.RINGING: 2,
    CallStatus.IN_PROGRESS: 3,
}
for _status in TERMINAL_STATUSES:
    _STATUS_RANK[_status] = 4

_STATUS_ALIASES = {
    "answered": CallStatus.IN_PROGRESS,
    "connected": CallStatus.IN_PROGRESS,
}


def parse_status(raw: Optional[str]) -> Optional[CallStatus]:
    """Parse a provider status string. Returns None for unknown values."""
    if not raw:
        return None
    value = raw.strip().lower()
    if value in _STATUS_ALIASES:
        return _STATUS_ALIASES[value]
    try:
        return CallStatus(value)
    except ValueError:
        return None


# ============================================================
# Request / Response Models
# ============================================================

class MakeCallRequest(BaseModel):
    """Request body for POST /make-call."""
    to: Optional[str] = None
    name: Optional[str] = None
    record: bool = True


class MakeCallResponse(BaseModel):
    success: bool
    callSid: str
    message: str
    status: str


class CallStatusResponse(BaseModel):
    """Response from GET /call-status/{sid}."""
    status: str
    durationSeconds: Optional[int] = None
    recordingUrl: Optional[str] = None


class HangupRequest(BaseModel):
    sid: Optional[str] = None


class HangupResponse(BaseModel):
    success: bool
    status: str
    durationSeconds: Optional[int] = None
    recordingUrl: Optional[str] = None


class RecordingResponse(BaseModel):
    """Response from GET /recording/{callSid}."""
    success: bool
    recordingUrl: str
    durationSeconds: Optional[int] = None
    source: str  # cache, active-cache, provider


class HealthResponse(BaseModel):
    status: str
    providerConfigured: bool
    activeCalls: int
    subscriberCount: int
    timestamp: str
