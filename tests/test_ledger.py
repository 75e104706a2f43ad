"""
Unit tests for the credit ledger.

Tests check-and-deduct, refunds, free-tier consultation, grants and
fail-closed storage handling.
"""

import sqlite3
import threading
from decimal import Decimal
from unittest.mock import patch

import pytest

from credit_gate.core.actions import ActionCategory, ActionType
from credit_gate.core.errors import InsufficientCredits, InvalidInput, StorageError
from credit_gate.core.ledger import package_name_for


def _fund(stack, account_id, credits):
    stack.ledger.grant(account_id, Decimal(credits), reference=f"seed-{account_id}-{credits}")


class TestCheckAndDeduct:
    """Test the atomic check-and-deduct operation."""

    def test_happy_path(self, stack):
        """Balance 2.0, full generation costs 1.0."""
        _fund(stack, "user-1", "2.0")

        deduction = stack.ledger.check_and_deduct("user-1", ActionType.GENERATION_FULL)

        assert deduction.new_balance == Decimal("1.0")
        assert deduction.cost == Decimal("1.0")
        assert deduction.was_free is False
        assert stack.ledger.get_balance("user-1") == Decimal("1.0")

    def test_insufficient_funds(self, stack):
        """Balance 0.5 cannot pay for a full generation."""
        _fund(stack, "user-1", "0.5")

        with pytest.raises(InsufficientCredits) as exc_info:
            stack.ledger.check_and_deduct("user-1", ActionType.GENERATION_FULL)

        assert exc_info.value.message == "Insufficient credits. You need 1.0 credits but have 0.50"
        assert exc_info.value.required == Decimal("1.0")
        assert exc_info.value.available == Decimal("0.5")
        assert exc_info.value.status_code == 402
        assert stack.ledger.get_balance("user-1") == Decimal("0.5")

    def test_second_rejected_deduction_leaves_balance(self, stack):
        """After a deduction drains the balance, further attempts change nothing."""
        _fund(stack, "user-1", "1.5")
        stack.ledger.check_and_deduct("user-1", ActionType.GENERATION_FULL)

        for _ in range(2):
            with pytest.raises(InsufficientCredits):
                stack.ledger.check_and_deduct("user-1", ActionType.GENERATION_FULL)
            assert stack.ledger.get_balance("user-1") == Decimal("0.5")

    def test_unknown_account_has_no_credits(self, stack):
        assert stack.ledger.get_balance("ghost") == Decimal("0")
        with pytest.raises(InsufficientCredits):
            stack.ledger.check_and_deduct("ghost", ActionType.SMART_REPLY)

    def test_fractional_costs_are_exact(self, stack):
        """Ten 0.1 credit deductions drain exactly 1.0."""
        _fund(stack, "user-1", "1.0")
        # use up the free replies so every reply is charged
        for _ in range(3):
            stack.rate_limiter.record_usage("user-1", ActionCategory.REPLY)

        for _ in range(10):
            stack.ledger.check_and_deduct("user-1", ActionType.SMART_REPLY)

        assert stack.ledger.get_balance("user-1") == Decimal("0")

    def test_concurrent_deductions_never_overdraw(self, stack):
        """Parallel requests only succeed while the balance covers them."""
        _fund(stack, "user-1", "5")
        outcomes = []

        def attempt():
            try:
                stack.ledger.check_and_deduct("user-1", ActionType.GENERATION_FULL)
                outcomes.append("ok")
            except InsufficientCredits:
                outcomes.append("denied")

        threads = [threading.Thread(target=attempt) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("ok") == 5
        assert outcomes.count("denied") == 7
        assert stack.ledger.get_balance("user-1") == Decimal("0")


class TestFreeTierConsultation:
    """Test that refinement actions use the free tier first."""

    def test_first_five_refinements_free_then_charged(self, stack):
        _fund(stack, "user-1", "1.0")

        for _ in range(5):
            deduction = stack.ledger.check_and_deduct("user-1", ActionType.REFINE_BULLET_SHORTER, "app-1")
            assert deduction.was_free is True
            assert deduction.cost == Decimal("0")
            assert deduction.new_balance == Decimal("1.0")
            stack.rate_limiter.record_usage("user-1", ActionCategory.REFINEMENT, "app-1")

        deduction = stack.ledger.check_and_deduct("user-1", ActionType.REFINE_BULLET_SHORTER, "app-1")
        assert deduction.was_free is False
        assert deduction.new_balance == Decimal("0.75")

    def test_free_tier_is_per_application(self, stack):
        for _ in range(5):
            stack.rate_limiter.record_usage("user-1", ActionCategory.REFINEMENT, "app-1")

        deduction = stack.ledger.check_and_deduct("user-1", ActionType.REFINE_COVER_SHORTER, "app-2")
        assert deduction.was_free is True

    def test_generation_never_free(self, stack):
        with pytest.raises(InsufficientCredits):
            stack.ledger.check_and_deduct("user-1", ActionType.GENERATION_COVER_ONLY)


class TestRefund:
    """Test refunds after failed paid calls."""

    def test_refund_restores_pre_deduction_balance(self, stack):
        _fund(stack, "user-1", "1.0")
        before = stack.ledger.get_balance("user-1")

        for _ in range(5):
            stack.rate_limiter.record_usage("user-1", ActionCategory.REFINEMENT, "app-1")
        deduction = stack.ledger.check_and_deduct("user-1", ActionType.REFINE_COVER_REGENERATE, "app-1")
        assert deduction.new_balance == Decimal("0.5")

        assert stack.ledger.refund("user-1", ActionType.REFINE_COVER_REGENERATE) == before

    def test_refund_unknown_account(self, stack):
        with pytest.raises(StorageError):
            stack.ledger.refund("ghost", ActionType.GENERATION_FULL)


class TestGrant:
    """Test purchased credit grants."""

    def test_grant_is_idempotent_per_reference(self, stack):
        assert stack.ledger.grant("user-1", Decimal("50"), "cs_test_1") == Decimal("50")
        assert stack.ledger.grant("user-1", Decimal("50"), "cs_test_1") is None
        assert stack.ledger.grant("user-1", Decimal("20"), "cs_test_2") == Decimal("70")

        account = stack.repository.get_account("user-1")
        assert account.total_credits_purchased == Decimal("70")

    def test_grant_validation(self, stack):
        with pytest.raises(InvalidInput, match="must be positive"):
            stack.ledger.grant("user-1", Decimal("0"), "cs_test_1")
        with pytest.raises(InvalidInput, match="reference is required"):
            stack.ledger.grant("user-1", Decimal("5"), "")

    def test_package_names(self):
        assert package_name_for(Decimal("150")) == "Pro"
        assert package_name_for(Decimal("75")) == "Standard"
        assert package_name_for(Decimal("74.99")) == "Starter"


class TestStorageFailure:
    """The ledger always fails closed."""

    def test_deduct_failure_aborts(self, stack):
        _fund(stack, "user-1", "2.0")
        with patch.object(stack.repository, "deduct_balance", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(StorageError, match="Failed to deduct credits"):
                stack.ledger.check_and_deduct("user-1", ActionType.GENERATION_FULL)
        assert stack.ledger.get_balance("user-1") == Decimal("2.0")

    def test_refund_failure_is_reported(self, stack):
        with patch.object(stack.repository, "credit_balance", side_effect=sqlite3.OperationalError("locked")):
            with pytest.raises(StorageError, match="Failed to refund credits"):
                stack.ledger.refund("user-1", ActionType.GENERATION_FULL)
