"""
Error taxonomy shared by the reconciliation engine and the HTTP layer.

Route handlers in main.py translate these into HTTPException responses:
- ProviderUnavailable -> 500
- ProviderCallError   -> 500 (provider message surfaced)
- CallNotFound        -> 404
"""

from typing import Optional

# Twilio's "The requested resource was not found" error code
TWILIO_NOT_FOUND_CODE = 20404


class CallWatchError(Exception):
    """Base class for call-watch errors."""


class ProviderUnavailable(CallWatchError):
    """Telephony credentials are missing or misconfigured."""


class ProviderCallError(CallWatchError):
    """The telephony provider rejected a request."""

    def __init__(self, message: str, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code

    @property
    def is_not_found(self) -> bool:
        """True when the provider says the resource is already gone."""
        return self.status == 404 or self.code == TWILIO_NOT_FOUND_CODE


class CallNotFound(CallWatchError):
    """Unknown call or recording id across cache and provider."""

    def __init__(self, call_id: str):
        super().__init__(f"No call with ID {call_id}")
        self.call_id = call_id


class DuplicateCallError(CallWatchError):
    """A call record with this id already exists."""

    def __init__(self, call_id: str):
        super().__init__(f"Call {call_id} already exists")
        self.call_id = call_id
