"""
Twilio Service - the only component that talks to the telephony provider.

This service:
1. Places outbound calls via the Twilio REST API
2. Fetches live call status (bypassing any local cache)
3. Terminates calls
4. Looks up finalized recordings and opens their audio streams

It holds no call state; the reconciler owns that. The Twilio SDK is blocking,
so every SDK call runs in the threadpool.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

import httpx
from fastapi.concurrency import run_in_threadpool
from requests.exceptions import RequestException
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.rest import Client as TwilioClient

from .errors import ProviderCallError, ProviderUnavailable
from .recording_index import RecordingDescriptor, media_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

TWILIO_API_BASE = "https://api.twilio.com"
DEFAULT_TWIML_URL = "http://demo.twilio.com/docs/voice.xml"


@dataclass
class ProviderCall:
    """Call state as reported by Twilio."""
    sid: str
    status: str
    duration_seconds: Optional[int] = None


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TwilioService:
    """Gateway to the Twilio REST API."""

    def __init__(self, client: Optional[TwilioClient] = None):
        """Initialize Twilio client.

        Does NOT crash if Twilio not configured - allows graceful degradation.
        Operations raise ProviderUnavailable instead.
        """
        self.account_sid = os.getenv("TWILIO_ACCOUNT_SID")
        self.auth_token = os.getenv("TWILIO_AUTH_TOKEN")
        self.phone_number = os.getenv("TWILIO_PHONE_NUMBER")
        self.webhook_base_url = os.getenv("WEBHOOK_BASE_URL", "").rstrip("/")
        self.twiml_url = os.getenv("TWIML_URL", DEFAULT_TWIML_URL)

        self.client: Optional[TwilioClient] = client
        self._http: Optional[httpx.AsyncClient] = None

        if self.client is None and self.account_sid and self.auth_token and self.phone_number:
            self.client = TwilioClient(self.account_sid, self.auth_token)

        if self.client is not None:
            logger.info(f"TwilioService configured with phone: {self.phone_number}")
        else:
            logger.warning("TwilioService: Twilio credentials not configured - calls will fail")

    @property
    def is_configured(self) -> bool:
        """Check if Twilio is properly configured."""
        return self.client is not None

    def _require_client(self) -> TwilioClient:
        if self.client is None:
            raise ProviderUnavailable("Twilio credentials are missing")
        return self.client

    async def _call(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking SDK call, translating Twilio and transport errors."""
        try:
            return await run_in_threadpool(fn, *args, **kwargs)
        except TwilioRestException as e:
            raise ProviderCallError(e.msg, status=e.status, code=e.code) from e
        except TwilioException as e:
            raise ProviderCallError(f"Twilio request failed: {e}") from e
        except RequestException as e:
            raise ProviderCallError(f"Twilio unreachable: {e}") from e

    async def start_call(self, to: str, record: bool = True) -> ProviderCall:
        """Start an outbound call via Twilio.

        Status and recording callbacks are only registered when
        WEBHOOK_BASE_URL is set; without them polling does the reconciling.

        Raises:
            ProviderUnavailable: If Twilio not configured
            ProviderCallError: If the Twilio API rejects the call
        """
        client = self._require_client()

        params = {
            "to": to,
            "from_": self.phone_number,
            "url": self.twiml_url,
            "record": record,
        }
        if self.webhook_base_url:
            params.update(
                status_callback=f"{self.webhook_base_url}/webhooks/call-status",
                status_callback_event=["initiated", "ringing", "answered", "completed"],
                status_callback_method="POST",
            )
            if record:
                params.update(
                    recording_status_callback=f"{self.webhook_base_url}/webhooks/recording-status",
                    recording_status_callback_event=["completed"],
                )
        else:
            logger.warning("WEBHOOK_BASE_URL not set - call status will only be tracked by polling")

        logger.info(f"Starting Twilio call from {self.phone_number} to {to}")
        call = await self._call(client.calls.create, **params)

        logger.info(f"Twilio call started: SID={call.sid}, status={call.status}")
        return ProviderCall(sid=call.sid, status=str(call.status))

    async def fetch_call(self, call_sid: str) -> ProviderCall:
        """Fetch live call status from Twilio."""
        client = self._require_client()
        call = await self._call(client.calls(call_sid).fetch)
        return ProviderCall(
            sid=call.sid,
            status=str(call.status),
            duration_seconds=_to_int(call.duration),
        )

    async def hangup_call(self, call_sid: str) -> None:
        """Ask Twilio to terminate the call."""
        client = self._require_client()
        await self._call(client.calls(call_sid).update, status="completed")
        logger.info(f"Twilio hangup requested for {call_sid}")

    async def fetch_recording(self, call_sid: str) -> Optional[RecordingDescriptor]:
        """Find the most recent recording for a call, if Twilio has one."""
        client = self._require_client()
        recordings = await self._call(client.recordings.list, call_sid=call_sid, limit=1)
        if not recordings:
            return None

        recording = recordings[0]
        return RecordingDescriptor(
            id=recording.sid,
            url=media_url(f"{TWILIO_API_BASE}{recording.uri}"),
            duration_seconds=_to_int(recording.duration),
            recorded_at=recording.date_created,
        )

    async def open_recording(self, url: str) -> httpx.Response:
        """Open a streaming GET for recording audio.

        Twilio recording URLs need auth. The caller must aclose() the response.
        """
        self._require_client()
        if self._http is None:
            self._http = httpx.AsyncClient(
                auth=(self.account_sid or "", self.auth_token or ""),
                follow_redirects=True,
                timeout=30.0,
            )

        try:
            response = await self._http.send(self._http.build_request("GET", url), stream=True)
        except httpx.HTTPError as e:
            raise ProviderCallError(f"Recording fetch failed: {e}") from e

        if response.status_code >= 400:
            await response.aclose()
            raise ProviderCallError(
                f"Recording fetch failed with HTTP {response.status_code}",
                status=response.status_code,
            )
        return response

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None


# Singleton instance (created lazily)
_twilio_service: Optional[TwilioService] = None


def get_twilio_service() -> TwilioService:
    """Get or create the TwilioService singleton."""
    global _twilio_service
    if _twilio_service is None:
        _twilio_service = TwilioService()
    return _twilio_service
