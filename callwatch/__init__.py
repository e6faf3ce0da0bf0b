"""
Call Watch - outbound call tracking and live status fan-out.
"""
from .call_store import CallRecord, CallStore
from .models import CallStatus, parse_status
from .reconciler import CallReconciler, CallSnapshot, StatusUpdate, apply_update, current_duration
from .recording_index import RecordingDescriptor, RecordingIndex
from .subscriptions import SubscriptionHub

__all__ = [
    "CallRecord",
    "CallStore",
    "CallStatus",
    "parse_status",
    "CallReconciler",
    "CallSnapshot",
    "StatusUpdate",
    "apply_update",
    "current_duration",
    "RecordingDescriptor",
    "RecordingIndex",
    "SubscriptionHub",
]
