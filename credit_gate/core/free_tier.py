"""
Free-tier allowance tracking.

Grants a fixed number of free actions per feature before the credit ledger
starts charging, with purchasable packs that raise the allowance.

This is a lifetime quota, not a token bucket: usage is the all-time count of
usage events in the feature's category, and nothing replenishes over time.
"""

import logging
import sqlite3
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

from credit_gate.config.loader import FailurePolicy, FreeTierPolicy
from credit_gate.storage.models import from_units, to_units
from credit_gate.storage.repository import Repository

from .actions import FreeTierFeature
from .errors import InsufficientCredits, InvalidInput, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FreeTierStatus:
    """Allowance state for one account and scope."""
    feature: FreeTierFeature
    used: int
    total_allowed: int
    base_allowance: int

    @property
    def remaining(self) -> int:
        return max(0, self.total_allowed - self.used)

    @property
    def is_free(self) -> bool:
        return self.used < self.total_allowed

    @property
    def needs_purchase(self) -> bool:
        return self.remaining == 0

    def as_dict(self) -> Dict[str, int]:
        """Response block shown next to refinement and reply results."""
        return {
            "remaining": self.remaining,
            "total": self.total_allowed,
            "used": self.used,
        }


@dataclass(frozen=True)
class PackPurchase:
    """Outcome of buying one allowance pack."""
    feature: FreeTierFeature
    new_balance: Decimal
    new_remaining: int
    packs: int


class FreeTierCounter:
    """Counts free-tier usage per account, optionally per scope key.

    Scoped features (edits) count usage and packs per scope key, which must be
    supplied. Unscoped features (replies) ignore the scope key entirely.
    """

    def __init__(
        self,
        repository: Repository,
        policy: FreeTierPolicy,
        on_storage_error: FailurePolicy = FailurePolicy.FAIL_CLOSED,
    ):
        self.repository = repository
        self.policy = policy
        self.on_storage_error = on_storage_error

    def _resolve_scope(self, feature: FreeTierFeature, scope_key: Optional[str]) -> str:
        allowance = self.policy.get_allowance(feature)
        if not allowance.scoped:
            return ""
        if not scope_key:
            raise InvalidInput("Application ID is required")
        return scope_key

    def check_free_tier(
        self, account_id: str, feature: FreeTierFeature, scope_key: Optional[str] = None
    ) -> FreeTierStatus:
        """Report whether the next action of this feature is free.

        Raises:
            InvalidInput: If a scoped feature is checked without a scope key
            StorageError: If counting fails and the policy is fail-closed
        """
        allowance = self.policy.get_allowance(feature)
        scope = self._resolve_scope(feature, scope_key)
        try:
            used = self.repository.count_usage_events(
                account_id,
                feature.category.value,
                scope_key=scope if allowance.scoped else None,
            )
            packs = self.repository.get_pack_count(account_id, feature.value, scope)
        except sqlite3.Error as e:
            if self.on_storage_error is FailurePolicy.FAIL_CLOSED:
                raise StorageError("Failed to check free tier usage") from e
            logger.warning("Free tier lookup failed for %s, treating as unused: %s", feature.value, e)
            used, packs = 0, 0

        return FreeTierStatus(
            feature=feature,
            used=used,
            total_allowed=allowance.total_allowed(packs),
            base_allowance=allowance.base_allowance,
        )

    def purchase_pack(
        self, account_id: str, feature: FreeTierFeature, scope_key: Optional[str] = None
    ) -> PackPurchase:
        """Charge the pack cost and raise the allowance by one pack.

        The deduction and the pack increment commit together, so a failed
        increment never keeps the credits.

        Raises:
            InsufficientCredits: If the balance does not cover the pack cost
            StorageError: If the purchase could not be written
        """
        allowance = self.policy.get_allowance(feature)
        scope = self._resolve_scope(feature, scope_key)
        try:
            outcome = self.repository.purchase_pack(
                account_id, feature.value, scope, to_units(allowance.pack_cost)
            )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to purchase {feature.value} pack") from e

        if outcome is None:
            account = self.repository.get_account(account_id)
            available = account.balance if account else Decimal("0")
            raise InsufficientCredits(required=allowance.pack_cost, available=available)

        new_units, packs = outcome
        status = self.check_free_tier(account_id, feature, scope_key)
        logger.info("Account %s bought a %s pack (%d packs total)", account_id, feature.value, packs)
        return PackPurchase(
            feature=feature,
            new_balance=from_units(new_units),
            new_remaining=status.remaining,
            packs=packs,
        )
