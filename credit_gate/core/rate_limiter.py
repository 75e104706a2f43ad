"""
Sliding-window rate limiting.

Bounds how many actions per category an account may run in the trailing
hour and trailing 24 hours, independent of its credit balance. Every check
is stateless against the usage-event ledger.

By default a failed count fails open: the limiter protects the upstream
provider from abuse, and blocking legitimate traffic on a storage hiccup is
worse than briefly missing enforcement.
"""

import logging
import math
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Optional

from credit_gate.config.loader import FailurePolicy, RateLimitPolicy
from credit_gate.storage.models import UsageEvent
from credit_gate.storage.repository import Repository

from .actions import ActionCategory
from .errors import RateLimited, StorageError

logger = logging.getLogger(__name__)

HOUR = timedelta(hours=1)
DAY = timedelta(hours=24)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RateLimitWindow(Enum):
    HOURLY = "hour"
    DAILY = "day"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a rate-limit check."""
    allowed: bool
    category: ActionCategory
    window: Optional[RateLimitWindow] = None
    limit: Optional[int] = None
    count: Optional[int] = None
    retry_after_seconds: Optional[int] = None
    message: str = ""


class RateLimiter:
    """Two-threshold sliding window counter per account and category."""

    def __init__(
        self,
        repository: Repository,
        policy: RateLimitPolicy,
        on_storage_error: FailurePolicy = FailurePolicy.FAIL_OPEN,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.repository = repository
        self.policy = policy
        self.on_storage_error = on_storage_error
        self.clock = clock

    def _storage_failed(self, error: sqlite3.Error, category: ActionCategory, what: str) -> None:
        if self.on_storage_error is FailurePolicy.FAIL_CLOSED:
            raise StorageError(f"Failed to {what}") from error
        logger.warning("Rate limit %s failed for %s, failing open: %s", what, category.value, error)

    def check_rate_limit(self, account_id: str, category: ActionCategory) -> RateLimitDecision:
        """Check the hourly threshold, then the daily one.

        Hourly denials carry the seconds until the oldest event in the window
        expires. Daily denials carry no retry time.
        """
        limits = self.policy.get_limit(category)
        now = self.clock()
        hour_start = now - HOUR

        try:
            hourly_count = self.repository.count_usage_events(
                account_id, category.value, since=hour_start
            )
            if hourly_count >= limits.per_hour:
                oldest = self.repository.oldest_usage_event_since(
                    account_id, category.value, hour_start
                )
                retry_after = self._retry_after(oldest, now)
                minutes = math.ceil(retry_after / 60)
                return RateLimitDecision(
                    allowed=False,
                    category=category,
                    window=RateLimitWindow.HOURLY,
                    limit=limits.per_hour,
                    count=hourly_count,
                    retry_after_seconds=retry_after,
                    message=(
                        f"Rate limit exceeded. You've reached {limits.per_hour} "
                        f"{category.plural} per hour. Try again in {minutes} minutes."
                    ),
                )

            daily_count = self.repository.count_usage_events(
                account_id, category.value, since=now - DAY
            )
        except sqlite3.Error as e:
            self._storage_failed(e, category, "check usage")
            return RateLimitDecision(allowed=True, category=category)

        if daily_count >= limits.per_day:
            return RateLimitDecision(
                allowed=False,
                category=category,
                window=RateLimitWindow.DAILY,
                limit=limits.per_day,
                count=daily_count,
                message=(
                    f"Daily limit exceeded. You've reached {limits.per_day} "
                    f"{category.plural} per day. Try again tomorrow."
                ),
            )

        return RateLimitDecision(allowed=True, category=category)

    @staticmethod
    def _retry_after(oldest: Optional[datetime], now: datetime) -> int:
        if oldest is None:
            return int(HOUR.total_seconds())
        return max(1, math.ceil((oldest + HOUR - now).total_seconds()))

    def enforce(self, account_id: str, category: ActionCategory) -> RateLimitDecision:
        """Check the limit and raise RateLimited on denial."""
        decision = self.check_rate_limit(account_id, category)
        if not decision.allowed:
            raise RateLimited(
                decision.message,
                limit=decision.limit,
                window=decision.window.value,
                retry_after_seconds=decision.retry_after_seconds,
            )
        return decision

    def record_usage(
        self, account_id: str, category: ActionCategory, scope_key: Optional[str] = None
    ) -> Optional[UsageEvent]:
        """Append one usage event. Call only after the action went through."""
        event = UsageEvent(
            account_id=account_id,
            category=category.value,
            created_at=self.clock(),
            scope_key=scope_key or "",
        )
        try:
            self.repository.insert_usage_event(event)
        except sqlite3.Error as e:
            self._storage_failed(e, category, "record usage")
            return None
        return event

    def snapshot(self, account_id: str, category: ActionCategory) -> Dict[str, int]:
        """Current window counts and thresholds for display."""
        limits = self.policy.get_limit(category)
        now = self.clock()
        try:
            hourly = self.repository.count_usage_events(account_id, category.value, since=now - HOUR)
            daily = self.repository.count_usage_events(account_id, category.value, since=now - DAY)
        except sqlite3.Error as e:
            raise StorageError("Failed to read usage") from e
        return {
            "used_this_hour": hourly,
            "limit_per_hour": limits.per_hour,
            "used_today": daily,
            "limit_per_day": limits.per_day,
        }

    def prune(self, older_than: timedelta = DAY) -> int:
        """Delete generation events outside the longest window.

        Refinement and reply events are kept: they also feed lifetime
        free-tier counts.
        """
        if older_than < DAY:
            raise ValueError("Cannot prune events still inside the daily window")
        try:
            return self.repository.delete_usage_events_before(
                ActionCategory.GENERATION.value, self.clock() - older_than
            )
        except sqlite3.Error as e:
            raise StorageError("Failed to prune usage events") from e
