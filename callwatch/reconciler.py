"""
Call reconciler - merges every source of truth about a call into one record.

Three channels feed the same transition function:
1. Origination (local action): creates the record in `initiated`
2. Push (Twilio status webhooks): arbitrary order, may be duplicated or lost
3. Poll (status queries): fetches live state from Twilio to catch hangups
   a webhook has not delivered yet

Rules shared by all channels:
- status only moves forward; terminal is sticky
- answered_at is stamped once, on first entry into in-progress
- a provider-reported duration beats the local estimate
- a terminal transition freezes duration, schedules eviction and, when no
  recording is known yet, a delayed recording lookup

Every accepted change is broadcast, except non-terminal poll refreshes which
update the cache silently.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
import phonenumbers
from phonenumbers import NumberParseException

from .call_store import DEFAULT_RETENTION_SECONDS, CallRecord, CallStore, utcnow
from .deferred import DeferredTasks
from .errors import CallNotFound, ProviderCallError, ProviderUnavailable
from .models import CallStatus, parse_status
from .recording_index import RecordingDescriptor, RecordingIndex, media_url
from .subscriptions import SubscriptionHub
from .twilio_service import TwilioService

logger = logging.getLogger(__name__)

DEFAULT_RECORDING_LOOKUP_DELAY = 3.0

SOURCE_CACHE = "cache"
SOURCE_ACTIVE_CACHE = "active-cache"
SOURCE_PROVIDER = "provider"


@dataclass
class StatusUpdate:
    """One observation of a call's state, from any channel."""
    status: Optional[CallStatus] = None
    duration_seconds: Optional[int] = None
    recording_url: Optional[str] = None


@dataclass
class CallSnapshot:
    """Read view of a call, used for query responses and fan-out events."""
    call_id: str
    status: str
    duration_seconds: Optional[int] = None
    recording_url: Optional[str] = None

    def to_event(self, timestamp: datetime) -> Dict[str, Any]:
        return {
            "callId": self.call_id,
            "status": self.status,
            "durationSeconds": self.duration_seconds,
            "recordingUrl": self.recording_url,
            "timestamp": timestamp.isoformat(),
        }


def current_duration(record: CallRecord, now: datetime) -> Optional[int]:
    """Duration in whole seconds.

    Frozen once terminal, provider value when reported, otherwise estimated
    from answered_at while connected.
    """
    if record.is_terminal or record.duration_reported:
        return record.duration_seconds
    if record.status == CallStatus.IN_PROGRESS and record.answered_at is not None:
        estimate = max(0, int((now - record.answered_at).total_seconds()))
        if record.duration_seconds is not None:
            return max(estimate, record.duration_seconds)
        return estimate
    return record.duration_seconds


def apply_update(record: CallRecord, update: StatusUpdate, now: datetime) -> bool:
    """The transition function. Returns False if the update was rejected."""
    if record.is_terminal:
        logger.debug(f"Call {record.id} is {record.status.value}; ignoring {update.status}")
        return False

    status = update.status
    if status is not None and status.rank < record.status.rank:
        logger.info(
            f"Call {record.id}: dropping out-of-order {status.value} "
            f"(already {record.status.value})"
        )
        return False

    if status == CallStatus.IN_PROGRESS and record.answered_at is None:
        record.answered_at = now

    if status is not None and status.is_terminal:
        if update.duration_seconds is not None:
            record.duration_seconds = update.duration_seconds
            record.duration_reported = True
        else:
            # Freeze the local estimate before the status flips
            record.duration_seconds = current_duration(record, now) or 0
    elif update.duration_seconds is not None:
        previous = record.duration_seconds if record.duration_reported else None
        record.duration_seconds = max(update.duration_seconds, previous or 0)
        record.duration_reported = True

    if status is not None:
        record.status = status

    if update.recording_url:
        record.recording_url = media_url(update.recording_url)

    record.last_update = now
    return True


def normalize_destination(to: str, region: str = "US") -> str:
    """Format a destination as E.164 when it parses as a valid number.

    Anything else is passed through untouched and left for Twilio to judge.
    """
    to = to.strip()
    try:
        parsed = phonenumbers.parse(to, region)
    except NumberParseException as e:
        logger.debug(f"Could not parse phone '{to}': {e}")
        return to
    if not phonenumbers.is_valid_number(parsed):
        return to
    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


class CallReconciler:
    """Owns the call store and recording index; the only path that mutates them."""

    def __init__(
        self,
        gateway: TwilioService,
        hub: SubscriptionHub,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        recording_lookup_delay: float = DEFAULT_RECORDING_LOOKUP_DELAY,
        phone_region: str = "US",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.hub = hub
        self.store = CallStore()
        self.recordings = RecordingIndex()
        self.retention_seconds = retention_seconds
        self.recording_lookup_delay = recording_lookup_delay
        self.phone_region = phone_region
        self._now = clock
        self._recording_lookups = DeferredTasks("recording-lookup")

    # ------------------------------------------------------------
    # Views
    # ------------------------------------------------------------

    def snapshot(self, record: CallRecord) -> CallSnapshot:
        return CallSnapshot(
            call_id=record.id,
            status=record.status.value,
            duration_seconds=current_duration(record, self._now()),
            recording_url=record.recording_url,
        )

    def active_call_count(self) -> int:
        return self.store.active_count()

    async def _broadcast(self, record: CallRecord) -> None:
        await self.hub.broadcast(self.snapshot(record).to_event(self._now()))

    # ------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------

    async def _apply(self, call_id: str, update: StatusUpdate, broadcast: bool = True) -> bool:
        """Single mutation path: apply, then broadcast and handle terminal entry."""
        record = self.store.get(call_id)
        if record is None:
            return False

        now = self._now()
        if not self.store.mutate(call_id, lambda r: apply_update(r, update, now)):
            return False

        logger.info(
            f"Call {call_id} -> {record.status.value} "
            f"(duration={record.duration_seconds}, answered_at={record.answered_at})"
        )
        # Terminal records reject updates, so an accepted terminal status is a new one
        if record.is_terminal:
            self._on_terminal(record)
        if broadcast:
            await self._broadcast(record)
        return True

    def _on_terminal(self, record: CallRecord) -> None:
        self.store.schedule_eviction(record.id, self.retention_seconds)
        if record.recording_url or record.id in self.recordings:
            return
        if not self.gateway.is_configured:
            return

        call_id = record.id

        async def _lookup() -> None:
            await self._lookup_recording(call_id)

        self._recording_lookups.schedule(call_id, self.recording_lookup_delay, _lookup)

    async def _lookup_recording(self, call_id: str) -> None:
        descriptor = await self.gateway.fetch_recording(call_id)
        if descriptor is None:
            logger.info(f"No recording available yet for call {call_id}")
            return
        await self._attach_recording(call_id, descriptor)

    async def _attach_recording(self, call_id: str, descriptor: RecordingDescriptor) -> None:
        """Index a recording and overlay it on the live record, if any."""
        self.recordings.put(call_id, descriptor)
        self._recording_lookups.cancel(call_id)

        def _overlay(record: CallRecord) -> CallRecord:
            record.recording_url = descriptor.url
            record.recording_id = descriptor.id
            return record

        record = self.store.mutate(call_id, _overlay)
        if record is not None:
            logger.info(f"Call {call_id} recording ready: {descriptor.url}")
            await self._broadcast(record)

    # ------------------------------------------------------------
    # Channel 1: origination
    # ------------------------------------------------------------

    async def originate(self, to: str, name: Optional[str] = None, record: bool = True) -> CallSnapshot:
        """Place a call and start tracking it.

        Raises:
            ProviderUnavailable: Twilio not configured (nothing is created)
            ProviderCallError: Twilio rejected the call (nothing is created)
        """
        if not self.gateway.is_configured:
            raise ProviderUnavailable("Twilio credentials are missing")

        destination = normalize_destination(to, self.phone_region)
        placed = await self.gateway.start_call(destination, record=record)

        call = self.store.create(placed.sid, destination, name or destination)
        await self._broadcast(call)
        return self.snapshot(call)

    # ------------------------------------------------------------
    # Channel 2: push
    # ------------------------------------------------------------

    async def apply_push(
        self,
        call_id: str,
        raw_status: Optional[str],
        duration_seconds: Optional[int] = None,
        recording_url: Optional[str] = None,
    ) -> bool:
        """Apply a Twilio status webhook. Returns True if the record changed."""
        if call_id not in self.store:
            logger.warning(f"Status webhook for unknown call {call_id}")
            return False

        status = parse_status(raw_status)
        if status is None:
            logger.warning(f"Status webhook for {call_id} with unknown status {raw_status!r}")
            return False

        update = StatusUpdate(
            status=status,
            duration_seconds=duration_seconds,
            recording_url=recording_url,
        )
        return await self._apply(call_id, update)

    async def record_recording(
        self,
        call_id: str,
        recording_id: Optional[str],
        recording_url: Optional[str],
        recording_status: Optional[str],
        duration_seconds: Optional[int] = None,
    ) -> bool:
        """Apply a Twilio recording-status webhook. Only completed recordings count."""
        if recording_status != "completed":
            logger.info(f"Recording {recording_id} for call {call_id} is {recording_status}; ignoring")
            return False
        if not recording_url:
            logger.warning(f"Completed recording {recording_id} for call {call_id} has no URL")
            return False

        descriptor = RecordingDescriptor(
            id=recording_id,
            url=media_url(recording_url),
            duration_seconds=duration_seconds,
            recorded_at=self._now(),
        )
        await self._attach_recording(call_id, descriptor)
        return True

    # ------------------------------------------------------------
    # Channel 3: poll
    # ------------------------------------------------------------

    async def get_status(self, call_id: str) -> CallSnapshot:
        """Current status of a call.

        Non-terminal cached calls are re-polled first so hangups show up even
        when the webhook is late. Unknown calls get a one-shot provider read
        that does not create a record.

        Raises:
            CallNotFound: unknown to both cache and provider
        """
        record = self.store.get(call_id)
        if record is None:
            return await self._fetch_untracked(call_id)

        if record.is_terminal or not self.gateway.is_configured:
            return self.snapshot(record)

        try:
            live = await self.gateway.fetch_call(call_id)
        except (ProviderCallError, ProviderUnavailable) as e:
            logger.warning(f"Poll failed for call {call_id}, answering from cache: {e}")
            return self.snapshot(record)

        return await self._merge_poll(call_id, live.status, live.duration_seconds)

    async def _merge_poll(self, call_id: str, raw_status: str, duration_seconds: Optional[int]) -> CallSnapshot:
        """Fold a polled status into the cache and answer from the record.

        A live status ranking below the cached one (Twilio's `queued` after a
        local `initiated`) is dropped, so the answer keeps the cached status.
        """
        # The record may have moved or been evicted while we awaited Twilio
        record = self.store.get(call_id)
        status = parse_status(raw_status)
        if record is None:
            return CallSnapshot(call_id, raw_status, duration_seconds)
        if status is None:
            logger.warning(f"Poll for {call_id} returned unknown status {raw_status!r}")
            return self.snapshot(record)
        if record.is_terminal:
            return self.snapshot(record)

        update = StatusUpdate(status=status, duration_seconds=duration_seconds)
        if status.is_terminal:
            logger.info(f"Poll caught terminal {status.value} for call {call_id} before its webhook")
            await self._apply(call_id, update)
        else:
            await self._apply(call_id, update, broadcast=False)
        return self.snapshot(record)

    async def _fetch_untracked(self, call_id: str) -> CallSnapshot:
        if not self.gateway.is_configured:
            raise CallNotFound(call_id)
        try:
            live = await self.gateway.fetch_call(call_id)
        except (ProviderCallError, ProviderUnavailable) as e:
            logger.info(f"Provider lookup for untracked call {call_id} failed: {e}")
            raise CallNotFound(call_id) from e

        recording = self.recordings.get(call_id)
        return CallSnapshot(
            call_id=call_id,
            status=live.status,
            duration_seconds=live.duration_seconds,
            recording_url=recording.url if recording else None,
        )

    # ------------------------------------------------------------
    # Local actions
    # ------------------------------------------------------------

    async def hangup(self, call_id: str) -> CallSnapshot:
        """Terminate a call. Idempotent: a call Twilio no longer knows is already gone.

        The local record is marked completed even when Twilio fails for some
        other reason; that error is re-raised afterwards.

        Raises:
            CallNotFound: untracked call and no Twilio configured
            ProviderCallError: Twilio refused for a reason other than not-found
        """
        if call_id not in self.store and not self.gateway.is_configured:
            raise CallNotFound(call_id)

        try:
            if self.gateway.is_configured:
                await self._hangup_at_provider(call_id)
        finally:
            await self._apply(call_id, StatusUpdate(status=CallStatus.COMPLETED))

        record = self.store.get(call_id)
        if record is None:
            return CallSnapshot(call_id, CallStatus.COMPLETED.value)
        snapshot = self.snapshot(record)
        snapshot.status = CallStatus.COMPLETED.value
        return snapshot

    async def _hangup_at_provider(self, call_id: str) -> None:
        try:
            await self.gateway.hangup_call(call_id)
        except ProviderCallError as e:
            if not e.is_not_found:
                logger.error(f"Twilio hangup failed for {call_id}: {e}")
                raise
            logger.info(f"Call {call_id} already gone at Twilio; treating hangup as done")

    # ------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------

    async def get_recording(self, call_id: str) -> Tuple[RecordingDescriptor, str]:
        """Find a call's recording. Returns (descriptor, source).

        Raises:
            CallNotFound: no recording in the index, on the record, or at Twilio
        """
        descriptor = self.recordings.get(call_id)
        if descriptor is not None:
            return descriptor, SOURCE_CACHE

        record = self.store.get(call_id)
        if record is not None and record.recording_url:
            return RecordingDescriptor(id=record.recording_id, url=record.recording_url), SOURCE_ACTIVE_CACHE

        if not self.gateway.is_configured:
            raise CallNotFound(call_id)
        try:
            descriptor = await self.gateway.fetch_recording(call_id)
        except (ProviderCallError, ProviderUnavailable) as e:
            logger.warning(f"Recording lookup for {call_id} failed: {e}")
            raise CallNotFound(call_id) from e
        if descriptor is None:
            raise CallNotFound(call_id)

        self.recordings.put(call_id, descriptor)
        return descriptor, SOURCE_PROVIDER

    async def open_recording_audio(self, call_id: str) -> httpx.Response:
        """Resolve a call's recording and open its audio stream.

        Raises:
            CallNotFound: no recording known
            ProviderUnavailable: no credentials to fetch the media with
            ProviderCallError: the media fetch failed
        """
        descriptor, _ = await self.get_recording(call_id)
        return await self.gateway.open_recording(descriptor.url)

    async def shutdown(self) -> None:
        """Cancel deferred work and release the gateway's HTTP client."""
        self._recording_lookups.cancel_all()
        self.store.cancel_pending()
        await self.gateway.close()
