"""
Action gateway.

The mandatory call sequence for every gated AI operation:

1. Authenticate the caller
2. Rate-limit check for the action's category
3. Validate the input payload
4. Check-and-deduct credits (free tier consulted for allowance features)
5. Run the AI call; on any failure refund the deduction and re-raise
6. On success record usage and report the updated balance

Charging happens before the call and refunds strictly after a failed paid
call, so a user is never charged for output they did not get and usage is
never recorded for a failed attempt.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Optional

from .actions import ActionType
from .auth import TokenAuthenticator
from .errors import UpstreamInvalidResponse, UpstreamUnavailable
from .free_tier import FreeTierCounter, FreeTierStatus
from .ledger import CreditLedger
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayOutcome:
    """Result of a gated action plus the caller's updated billing state."""
    account_id: str
    action: ActionType
    result: Any
    credits_remaining: Decimal
    was_free: bool
    free_tier: Optional[FreeTierStatus] = None


class ActionGateway:
    """Orchestrates authentication, limits, charging and refunds."""

    def __init__(
        self,
        authenticator: TokenAuthenticator,
        rate_limiter: RateLimiter,
        ledger: CreditLedger,
        free_tier: FreeTierCounter,
    ):
        self.authenticator = authenticator
        self.rate_limiter = rate_limiter
        self.ledger = ledger
        self.free_tier = free_tier

    def authenticate(self, credential: Optional[str]) -> str:
        """Resolve the credential to an account, creating it on first sight."""
        account_id = self.authenticator.authenticate(credential)
        self.ledger.ensure_account(account_id)
        return account_id

    def admit(self, credential: Optional[str], action: ActionType) -> str:
        """Steps 1-2: authenticate and apply the category's rate limit."""
        account_id = self.authenticate(credential)
        self.rate_limiter.enforce(account_id, action.category)
        return account_id

    def run(
        self,
        account_id: str,
        action: ActionType,
        call: Callable[[str], Any],
        scope_key: Optional[str] = None,
    ) -> GatewayOutcome:
        """Steps 4-6 for an admitted, validated request.

        Args:
            account_id: Authenticated account
            action: Action being charged
            call: The AI operation; receives the account id
            scope_key: Free-tier scope, also stored on the usage event

        Raises:
            InsufficientCredits: If the action cannot be paid for
            UpstreamUnavailable, UpstreamInvalidResponse: After refunding
        """
        deduction = self.ledger.check_and_deduct(account_id, action, scope_key)

        try:
            result = call(account_id)
        except (UpstreamUnavailable, UpstreamInvalidResponse) as e:
            logger.warning("%s failed upstream for %s: %s", action.value, account_id, e)
            self._refund(account_id, deduction.was_free, action)
            raise
        except Exception:
            logger.exception("%s failed unexpectedly for %s", action.value, account_id)
            self._refund(account_id, deduction.was_free, action)
            raise

        self.rate_limiter.record_usage(account_id, action.category, scope_key)

        free_tier_status = None
        if action.free_tier_feature is not None:
            free_tier_status = self.free_tier.check_free_tier(
                account_id, action.free_tier_feature, scope_key
            )

        return GatewayOutcome(
            account_id=account_id,
            action=action,
            result=result,
            credits_remaining=deduction.new_balance,
            was_free=deduction.was_free,
            free_tier=free_tier_status,
        )

    def execute(
        self,
        credential: Optional[str],
        action: ActionType,
        call: Callable[[str], Any],
        *,
        scope_key: Optional[str] = None,
        validate: Optional[Callable[[str], None]] = None,
    ) -> GatewayOutcome:
        """Run the full sequence for one gated action.

        Args:
            credential: Authorization header value
            action: Action being requested
            call: The AI operation; receives the account id
            scope_key: Free-tier scope (application id for edits)
            validate: Input check run after the rate limit and before any
                charge; receives the account id and raises InvalidInput or
                AccessDenied
        """
        account_id = self.admit(credential, action)
        if validate is not None:
            validate(account_id)
        return self.run(account_id, action, call, scope_key=scope_key)

    def _refund(self, account_id: str, was_free: bool, action: ActionType) -> None:
        if not was_free:
            self.ledger.refund(account_id, action)
