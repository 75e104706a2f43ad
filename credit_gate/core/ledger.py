"""
Credit ledger.

Atomic accounting of each account's spendable balance: check-and-deduct
before a paid AI call, refund when that call fails, and grants when credits
are purchased.

The ledger always fails closed: a storage error aborts the action, since
silently allowing an unpaid action or losing a refund corrupts the balance.
"""

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from credit_gate.config.loader import CostTable
from credit_gate.storage.models import Account, from_units, to_units
from credit_gate.storage.repository import Repository

from .actions import ActionType
from .errors import InsufficientCredits, InvalidInput, StorageError
from .free_tier import FreeTierCounter, FreeTierStatus

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Deduction:
    """Result of a successful check-and-deduct."""
    action: ActionType
    new_balance: Decimal
    cost: Decimal
    was_free: bool = False
    free_tier: Optional[FreeTierStatus] = None


def package_name_for(credits: Decimal) -> str:
    """Name of the checkout package a credit amount corresponds to."""
    if credits >= 150:
        return "Pro"
    if credits >= 75:
        return "Standard"
    return "Starter"


class CreditLedger:
    """Per-account credit balance with a fixed cost table."""

    def __init__(
        self,
        repository: Repository,
        costs: CostTable,
        free_tier: Optional[FreeTierCounter] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.costs = costs
        self.free_tier = free_tier
        self.clock = clock

    def ensure_account(self, account_id: str) -> Account:
        """Create a zero-balance account on first sight of a user."""
        try:
            return self.repository.ensure_account(account_id, self.clock())
        except sqlite3.Error as e:
            raise StorageError("Failed to load account") from e

    def get_balance(self, account_id: str) -> Decimal:
        try:
            account = self.repository.get_account(account_id)
        except sqlite3.Error as e:
            raise StorageError("Failed to check credits") from e
        return account.balance if account else Decimal("0")

    def check_and_deduct(
        self, account_id: str, action: ActionType, scope_key: Optional[str] = None
    ) -> Deduction:
        """Charge the cost of an action, unless the free tier covers it.

        Args:
            account_id: Account being charged
            action: Action type, looked up in the cost table
            scope_key: Free-tier scope (application id for edits)

        Returns:
            Deduction with the new balance. Free actions return the unchanged
            balance with was_free set.

        Raises:
            InsufficientCredits: If balance < cost; nothing is deducted
            StorageError: If the balance could not be read or written
        """
        feature = action.free_tier_feature
        if feature is not None and self.free_tier is not None:
            status = self.free_tier.check_free_tier(account_id, feature, scope_key)
            if status.is_free:
                return Deduction(
                    action=action,
                    new_balance=self.get_balance(account_id),
                    cost=Decimal("0"),
                    was_free=True,
                    free_tier=status,
                )

        cost = self.costs.cost_for(action)
        try:
            new_units = self.repository.deduct_balance(account_id, to_units(cost))
        except sqlite3.Error as e:
            raise StorageError("Failed to deduct credits") from e

        if new_units is None:
            raise InsufficientCredits(required=cost, available=self.get_balance(account_id))

        return Deduction(action=action, new_balance=from_units(new_units), cost=cost)

    def refund(self, account_id: str, action: ActionType) -> Decimal:
        """Give back the cost of a deducted action whose AI call failed.

        Callers must refund at most once per deduction and never for a free
        action; the ledger does not deduplicate.
        """
        cost = self.costs.cost_for(action)
        try:
            new_units = self.repository.credit_balance(account_id, to_units(cost))
        except sqlite3.Error as e:
            raise StorageError("Failed to refund credits") from e
        if new_units is None:
            raise StorageError(f"Cannot refund unknown account {account_id}")

        logger.info("Refunded %s credits to %s for %s", cost, account_id, action.value)
        return from_units(new_units)

    def grant(
        self,
        account_id: str,
        credits: Decimal,
        reference: str,
        package_name: Optional[str] = None,
    ) -> Optional[Decimal]:
        """Add purchased credits once per payment reference.

        Returns:
            New balance, or None if this reference was already granted.
        """
        credits = Decimal(credits)
        if credits <= 0:
            raise InvalidInput("Granted credits must be positive")
        if not reference:
            raise InvalidInput("A purchase reference is required")

        try:
            new_units = self.repository.record_purchase(
                account_id,
                to_units(credits),
                reference,
                package_name or package_name_for(credits),
                self.clock(),
            )
        except sqlite3.Error as e:
            raise StorageError("Failed to grant credits") from e

        if new_units is None:
            logger.info("Purchase %s already applied, skipping", reference)
            return None
        logger.info("Granted %s credits to %s (purchase %s)", credits, account_id, reference)
        return from_units(new_units)
