"""
Recording Index - finalized recordings keyed by call id.

Lives independently of the call records: a recording may be queried long
after its call record has been evicted, so nothing here expires.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class RecordingDescriptor:
    id: Optional[str]  # Twilio Recording SID
    url: str  # fully qualified, directly fetchable media URL
    duration_seconds: Optional[int] = None
    recorded_at: Optional[datetime] = None


def media_url(url: str, extension: str = ".mp3") -> str:
    """Twilio recording URLs are served as media once an extension is added."""
    if url.endswith(".json"):
        return url[: -len(".json")] + extension
    if url.endswith((".mp3", ".wav")):
        return url
    return url + extension


class RecordingIndex:
    def __init__(self):
        self._recordings: Dict[str, RecordingDescriptor] = {}

    def put(self, call_id: str, descriptor: RecordingDescriptor) -> None:
        """Store the recording for call_id. Last write wins."""
        self._recordings[call_id] = descriptor
        logger.info(f"Recording {descriptor.id} indexed for call {call_id}")

    def get(self, call_id: str) -> Optional[RecordingDescriptor]:
        return self._recordings.get(call_id)

    def __contains__(self, call_id: object) -> bool:
        return call_id in self._recordings

    def __len__(self) -> int:
        return len(self._recordings)
