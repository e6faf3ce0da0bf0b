"""
Tests for the HTTP endpoints.

These tests verify that:
1. POST /make-call validates input and maps provider errors to 500
2. GET /call-status/{sid} re-polls live calls and 404s unknown ones
3. POST /hangup-call is idempotent against calls Twilio already dropped
4. Twilio webhooks always return 200 and update state
5. Recording lookup and audio proxy endpoints
"""

import pytest
from httpx import AsyncClient

from callwatch.errors import ProviderCallError
from callwatch.twilio_service import ProviderCall


async def _make_call(client: AsyncClient) -> str:
    response = await client.post("/make-call", json={"to": "+15550001", "name": "Alice"})
    assert response.status_code == 200
    return response.json()["callSid"]


class TestHealthEndpoint:

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient, gateway, listener):
        await _make_call(client)

        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["providerConfigured"] is True
        assert data["activeCalls"] == 1
        assert data["subscriberCount"] == 1
        assert "timestamp" in data


class TestMakeCallEndpoint:

    @pytest.mark.asyncio
    async def test_places_call(self, client: AsyncClient, gateway):
        response = await client.post("/make-call", json={"to": "+15550001", "name": "Alice"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["callSid"] == "CA1"
        assert data["message"] == "Calling Alice..."
        assert data["status"] == "initiated"
        assert gateway.started == [("+15550001", True)]

    @pytest.mark.asyncio
    async def test_record_flag_is_passed_through(self, client: AsyncClient, gateway):
        await client.post("/make-call", json={"to": "+15550001", "record": False})
        assert gateway.started == [("+15550001", False)]

    @pytest.mark.asyncio
    async def test_missing_to_returns_400(self, client: AsyncClient, reconciler):
        response = await client.post("/make-call", json={"name": "Alice"})

        assert response.status_code == 400
        assert "missing_to" in response.json()["detail"]
        assert len(reconciler.store) == 0

    @pytest.mark.asyncio
    async def test_twilio_not_configured_returns_500(self, client: AsyncClient, gateway, reconciler):
        gateway.is_configured = False

        response = await client.post("/make-call", json={"to": "+15550001"})

        assert response.status_code == 500
        assert "twilio" in response.json()["detail"].lower()
        assert len(reconciler.store) == 0

    @pytest.mark.asyncio
    async def test_provider_error_message_surfaced(self, client: AsyncClient, gateway):
        gateway.start_error = ProviderCallError("The 'To' number +1555 is not a valid phone number.", status=400, code=21211)

        response = await client.post("/make-call", json={"to": "+1555"})

        assert response.status_code == 500
        assert "not a valid phone number" in response.json()["detail"]


class TestCallStatusEndpoint:

    @pytest.mark.asyncio
    async def test_unknown_without_provider_returns_404(self, client: AsyncClient, gateway):
        gateway.is_configured = False

        response = await client.get("/call-status/UNKNOWN")

        assert response.status_code == 404
        assert "call_not_found" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_live_call_is_repolled(self, client: AsyncClient, gateway, clock):
        sid = await _make_call(client)
        await client.post("/webhooks/call-status", data={"CallSid": sid, "CallStatus": "in-progress"})
        clock.advance(5)
        gateway.calls[sid].status = "in-progress"

        response = await client.get(f"/call-status/{sid}")

        assert response.status_code == 200
        assert response.json() == {"status": "in-progress", "durationSeconds": 5, "recordingUrl": None}
        assert gateway.fetches == [sid]

    @pytest.mark.asyncio
    async def test_hangup_caught_by_poll(self, client: AsyncClient, gateway, listener):
        sid = await _make_call(client)
        gateway.calls[sid] = ProviderCall(sid=sid, status="completed", duration_seconds=4)

        response = await client.get(f"/call-status/{sid}")

        assert response.json()["status"] == "completed"
        assert response.json()["durationSeconds"] == 4
        assert listener.updates()[-1]["status"] == "completed"

    @pytest.mark.asyncio
    async def test_untracked_call_read_from_provider(self, client: AsyncClient, gateway):
        gateway.calls["CA77"] = ProviderCall(sid="CA77", status="busy", duration_seconds=0)

        response = await client.get("/call-status/CA77")

        assert response.status_code == 200
        assert response.json()["status"] == "busy"


class TestHangupEndpoint:

    @pytest.mark.asyncio
    async def test_missing_sid_returns_400(self, client: AsyncClient):
        response = await client.post("/hangup-call", json={})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_hangup_call_already_gone(self, client: AsyncClient, gateway, clock):
        sid = await _make_call(client)
        await client.post("/webhooks/call-status", data={"CallSid": sid, "CallStatus": "in-progress"})
        clock.advance(6)
        del gateway.calls[sid]

        response = await client.post("/hangup-call", json={"sid": sid})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["status"] == "completed"
        assert data["durationSeconds"] == 6

    @pytest.mark.asyncio
    async def test_provider_failure_returns_500(self, client: AsyncClient, gateway, reconciler):
        sid = await _make_call(client)
        gateway.hangup_error = ProviderCallError("Authentication Error", status=401, code=20003)

        response = await client.post("/hangup-call", json={"sid": sid})

        assert response.status_code == 500
        assert "Authentication Error" in response.json()["detail"]
        assert reconciler.store.get(sid).status.value == "completed"


class TestCallStatusWebhook:

    @pytest.mark.asyncio
    async def test_status_update(self, client: AsyncClient, reconciler):
        sid = await _make_call(client)

        response = await client.post(
            "/webhooks/call-status",
            data={"CallSid": sid, "CallStatus": "ringing"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert reconciler.store.get(sid).status.value == "ringing"

    @pytest.mark.asyncio
    async def test_completed_status_with_duration(self, client: AsyncClient, reconciler, clock):
        sid = await _make_call(client)
        await client.post("/webhooks/call-status", data={"CallSid": sid, "CallStatus": "in-progress"})
        clock.advance(5)

        await client.post(
            "/webhooks/call-status",
            data={"CallSid": sid, "CallStatus": "completed", "CallDuration": "7"},
        )

        record = reconciler.store.get(sid)
        assert record.status.value == "completed"
        assert record.duration_seconds == 7

    @pytest.mark.asyncio
    async def test_unknown_call_and_bad_payload_still_200(self, client: AsyncClient):
        for data in (
            {"CallSid": "CA-nope", "CallStatus": "ringing"},
            {"CallStatus": "ringing"},
            {"CallSid": "CA-nope", "CallStatus": "completed", "CallDuration": "abc"},
        ):
            response = await client.post("/webhooks/call-status", data=data)
            assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_processing_error_still_200(self, client: AsyncClient, reconciler, monkeypatch):
        async def _explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(reconciler, "apply_push", _explode)

        response = await client.post("/webhooks/call-status", data={"CallSid": "CA1", "CallStatus": "ringing"})
        assert response.status_code == 200


class TestRecordingEndpoints:

    @pytest.mark.asyncio
    async def test_recording_webhook_then_lookup(self, client: AsyncClient):
        sid = await _make_call(client)
        await client.post(
            "/webhooks/call-status",
            data={"CallSid": sid, "CallStatus": "completed", "CallDuration": "7"},
        )

        response = await client.post(
            "/webhooks/recording-status",
            data={
                "CallSid": sid,
                "RecordingSid": "RE1",
                "RecordingUrl": "https://x/y",
                "RecordingStatus": "completed",
                "RecordingDuration": "7",
            },
        )
        assert response.status_code == 200

        response = await client.get(f"/recording/{sid}")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["recordingUrl"] == "https://x/y.mp3"
        assert data["durationSeconds"] == 7
        assert data["source"] == "cache"

    @pytest.mark.asyncio
    async def test_in_progress_recording_ignored(self, client: AsyncClient, gateway):
        gateway.is_configured = False
        await client.post(
            "/webhooks/recording-status",
            data={"CallSid": "CA9", "RecordingSid": "RE9", "RecordingUrl": "https://x/9", "RecordingStatus": "in-progress"},
        )

        response = await client.get("/recording/CA9")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_recording_not_found(self, client: AsyncClient):
        response = await client.get("/recording/CA-none")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_recording_audio_streams_bytes(self, client: AsyncClient, gateway):
        await client.post(
            "/webhooks/recording-status",
            data={"CallSid": "CA1", "RecordingSid": "RE1", "RecordingUrl": "https://x/y", "RecordingStatus": "completed"},
        )

        response = await client.get("/recording-audio/CA1")

        assert response.status_code == 200
        assert response.headers["content-type"] == "audio/mpeg"
        assert response.content == gateway.audio
        assert response.headers["content-length"] == str(len(gateway.audio))

    @pytest.mark.asyncio
    async def test_recording_audio_unknown_returns_404(self, client: AsyncClient):
        response = await client.get("/recording-audio/CA-none")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_recording_audio_without_credentials_returns_500(self, client: AsyncClient, reconciler, gateway):
        await reconciler.record_recording("CA1", "RE1", "https://x/y", "completed", 3)
        gateway.is_configured = False

        response = await client.get("/recording-audio/CA1")
        assert response.status_code == 500
