"""
Data models for storage layer.

Defines database entities and the fixed-point credit representation.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

# Balances are stored as integer units so the conditional
# "balance >= cost" update is exact for fractional costs.
UNITS_PER_CREDIT = 10000


def to_units(credits: Decimal) -> int:
    """Convert a credit amount to integer storage units."""
    return int((Decimal(credits) * UNITS_PER_CREDIT).to_integral_value(rounding=ROUND_HALF_UP))


def from_units(units: int) -> Decimal:
    """Convert integer storage units back to a credit amount."""
    return Decimal(units) / UNITS_PER_CREDIT


def to_db_timestamp(ts: datetime) -> str:
    """Serialize a timestamp so that string order matches time order."""
    if ts.tzinfo is None:
        raise ValueError("timestamps must be timezone-aware")
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Account:
    """Billing state of one user."""
    account_id: str
    balance: Decimal
    total_credits_purchased: Decimal
    created_at: datetime


@dataclass(frozen=True)
class UsageEvent:
    """Immutable record of one gated action that went through.

    Append-only rows used to count rate-limit windows and free-tier usage.
    Once written, these records must never be modified.
    """
    account_id: str
    category: str
    created_at: datetime
    scope_key: str = ""


@dataclass(frozen=True)
class Application:
    """A job application owned by one account."""
    application_id: str
    account_id: str
    company: Optional[str]
    role: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class Conversation:
    """A Smart Reply thread."""
    conversation_id: str
    account_id: str
    message_type: str
    application_id: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class ConversationMessage:
    conversation_id: str
    role: str  # pasted, instruction, subject, assistant
    content: str
    created_at: datetime
    credits_used: Decimal = Decimal("0")
