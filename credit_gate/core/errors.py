"""
Error taxonomy for gated actions.

Each error carries the HTTP-style status code the request boundary
responds with and a message that is safe to show to the user.
"""

from decimal import Decimal
from typing import Optional


class CreditGateError(Exception):
    """Base class for every error surfaced to callers of a gated action."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class Unauthorized(CreditGateError):
    """Missing or invalid credential."""
    status_code = 401


class AccessDenied(CreditGateError):
    """Caller does not own the referenced application or conversation."""
    status_code = 403


class InvalidInput(CreditGateError):
    """Payload failed length or shape validation."""
    status_code = 400


class RateLimited(CreditGateError):
    """Sliding-window threshold exceeded."""
    status_code = 429

    def __init__(
        self,
        message: str,
        limit: int,
        window: str,
        retry_after_seconds: Optional[int] = None,
    ):
        super().__init__(message)
        self.limit = limit
        self.window = window
        self.retry_after_seconds = retry_after_seconds


class InsufficientCredits(CreditGateError):
    """Balance is below the cost of the requested action."""
    status_code = 402

    def __init__(self, required: Decimal, available: Decimal):
        super().__init__(
            f"Insufficient credits. You need {required} credits "
            f"but have {available:.2f}"
        )
        self.required = required
        self.available = available


class UpstreamUnavailable(CreditGateError):
    """The AI provider call failed or timed out."""
    status_code = 503


class UpstreamInvalidResponse(CreditGateError):
    """The AI provider answered but the content is unusable."""
    status_code = 503


class StorageError(CreditGateError):
    """A ledger or usage read/write failed."""
    status_code = 500
