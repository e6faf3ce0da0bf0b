"""
Call Record Store - in-memory state for outbound calls.

One CallRecord per call attempt, keyed by the Twilio Call SID. Records in a
terminal status are kept for a retention window so late status queries and
recording lookups still find them, then evicted.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Optional, TypeVar

from .deferred import DeferredTasks
from .errors import DuplicateCallError
from .models import CallStatus

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETENTION_SECONDS = 600.0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CallRecord:
    """In-memory state for a single outbound call."""
    id: str  # Twilio Call SID
    destination: str
    display_name: str

    status: CallStatus = CallStatus.INITIATED
    created_at: datetime = field(default_factory=utcnow)
    answered_at: Optional[datetime] = None
    duration_seconds: Optional[int] = None
    duration_reported: bool = False  # provider-reported, not estimated

    recording_url: Optional[str] = None
    recording_id: Optional[str] = None

    last_update: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class CallStore:
    """Owned map of call id -> CallRecord with scheduled eviction."""

    def __init__(self):
        self._records: Dict[str, CallRecord] = {}
        self._evictions = DeferredTasks("eviction")

    def create(self, call_id: str, destination: str, display_name: str) -> CallRecord:
        if call_id in self._records:
            raise DuplicateCallError(call_id)
        record = CallRecord(id=call_id, destination=destination, display_name=display_name)
        self._records[call_id] = record
        logger.info(f"Call {call_id} created for {display_name} ({destination})")
        return record

    def get(self, call_id: str) -> Optional[CallRecord]:
        return self._records.get(call_id)

    def mutate(self, call_id: str, fn: Callable[[CallRecord], T]) -> Optional[T]:
        """Apply fn to the record iff it exists. Returns fn's result, or None."""
        record = self._records.get(call_id)
        if record is None:
            return None
        return fn(record)

    def evict(self, call_id: str) -> bool:
        self._evictions.cancel(call_id)
        record = self._records.pop(call_id, None)
        if record is not None:
            logger.info(f"Call {call_id} evicted (status={record.status.value})")
        return record is not None

    def schedule_eviction(self, call_id: str, delay: float = DEFAULT_RETENTION_SECONDS) -> None:
        """Evict call_id after delay seconds. Rescheduling replaces the timer."""
        if call_id not in self._records:
            return

        async def _evict() -> None:
            self.evict(call_id)

        self._evictions.schedule(call_id, delay, _evict)

    def is_eviction_pending(self, call_id: str) -> bool:
        return self._evictions.is_pending(call_id)

    def active_count(self) -> int:
        return sum(1 for record in self._records.values() if not record.is_terminal)

    def cancel_pending(self) -> None:
        self._evictions.cancel_all()

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._records

    def __len__(self) -> int:
        return len(self._records)
