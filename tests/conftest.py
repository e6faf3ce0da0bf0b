"""
Shared fixtures: an in-memory stand-in for the Twilio gateway, a controllable
clock, and a recording WebSocket double.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from callwatch import main
from callwatch.errors import ProviderCallError, ProviderUnavailable
from callwatch.reconciler import CallReconciler
from callwatch.recording_index import RecordingDescriptor
from callwatch.subscriptions import SubscriptionHub
from callwatch.twilio_service import ProviderCall


class FakeGateway:
    """Plays Twilio: keeps provider-side call state tests can steer."""

    def __init__(self):
        self.is_configured = True
        self.calls: Dict[str, ProviderCall] = {}
        self.recordings: Dict[str, RecordingDescriptor] = {}
        self.started: List[Tuple[str, bool]] = []
        self.hangups: List[str] = []
        self.fetches: List[str] = []
        self.start_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.hangup_error: Optional[Exception] = None
        self.recording_error: Optional[Exception] = None
        self.recording_fetches: List[str] = []
        self.audio = b"ID3-fake-mp3-bytes"
        self.closed = False
        self._next_sid = 1

    def _require(self) -> None:
        if not self.is_configured:
            raise ProviderUnavailable("Twilio credentials are missing")

    async def start_call(self, to: str, record: bool = True) -> ProviderCall:
        self._require()
        if self.start_error is not None:
            raise self.start_error
        sid = f"CA{self._next_sid}"
        self._next_sid += 1
        self.calls[sid] = ProviderCall(sid=sid, status="queued")
        self.started.append((to, record))
        return replace(self.calls[sid])

    async def fetch_call(self, call_sid: str) -> ProviderCall:
        self._require()
        self.fetches.append(call_sid)
        if self.fetch_error is not None:
            raise self.fetch_error
        if call_sid not in self.calls:
            raise ProviderCallError("The requested resource was not found", status=404, code=20404)
        return replace(self.calls[call_sid])

    async def hangup_call(self, call_sid: str) -> None:
        self._require()
        self.hangups.append(call_sid)
        if self.hangup_error is not None:
            raise self.hangup_error
        if call_sid not in self.calls:
            raise ProviderCallError("The requested resource was not found", status=404, code=20404)
        self.calls[call_sid].status = "completed"

    async def fetch_recording(self, call_sid: str) -> Optional[RecordingDescriptor]:
        self._require()
        self.recording_fetches.append(call_sid)
        if self.recording_error is not None:
            raise self.recording_error
        return self.recordings.get(call_sid)

    async def open_recording(self, url: str) -> httpx.Response:
        self._require()
        return httpx.Response(
            200,
            stream=httpx.ByteStream(self.audio),
            headers={"content-type": "audio/mpeg", "content-length": str(len(self.audio))},
        )

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeWebSocket:
    """Collects everything the hub sends; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.accepted = False
        self.sent: List[Dict[str, Any]] = []

    async def accept(self) -> None:
        self.accepted = True

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(data)

    def updates(self) -> List[Dict[str, Any]]:
        return [m for m in self.sent if m["type"] == "CALL_STATUS_UPDATE"]


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def hub() -> SubscriptionHub:
    return SubscriptionHub()


@pytest.fixture
async def reconciler(gateway, hub, clock):
    service = CallReconciler(
        gateway=gateway,
        hub=hub,
        retention_seconds=600,
        recording_lookup_delay=0.01,
        clock=clock,
    )
    yield service
    await service.shutdown()


@pytest.fixture
async def listener(hub) -> FakeWebSocket:
    """A connected subscriber with no filter."""
    websocket = FakeWebSocket()
    await hub.connect(websocket)
    return websocket


@pytest.fixture
async def client(reconciler, monkeypatch):
    """Async test client wired to the test reconciler."""
    monkeypatch.setattr(main, "reconciler", reconciler)
    transport = ASGITransport(app=main.app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
