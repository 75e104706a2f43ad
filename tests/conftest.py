"""
Shared fixtures for Credit Gate tests.
"""

import os
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from jose import jwt

from credit_gate.config.loader import default_config
from credit_gate.core.auth import TokenAuthenticator
from credit_gate.core.free_tier import FreeTierCounter
from credit_gate.core.gateway import ActionGateway
from credit_gate.core.ledger import CreditLedger
from credit_gate.core.rate_limiter import RateLimiter
from credit_gate.storage.repository import Repository, initialize_schema

TEST_SECRET = "test-secret"


class FakeClock:
    """Settable clock so window boundaries can be tested without sleeping."""

    def __init__(self, start=None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path():
    """Initialized SQLite database in a temporary directory."""
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def bearer():
    """Build an Authorization header value for an account id."""

    def _bearer(account_id, secret=TEST_SECRET, audience="authenticated", expires_in=timedelta(hours=1)):
        claims = {"sub": account_id, "exp": datetime.now(timezone.utc) + expires_in}
        if audience:
            claims["aud"] = audience
        return "Bearer " + jwt.encode(claims, secret, algorithm="HS256")

    return _bearer


@pytest.fixture
def stack(db_path, clock):
    """Accounting components wired on the default config."""
    config = default_config()
    repository = Repository(db_path)
    free_tier = FreeTierCounter(repository, config.free_tier)
    ledger = CreditLedger(repository, config.costs, free_tier=free_tier, clock=clock)
    rate_limiter = RateLimiter(repository, config.rate_limits, clock=clock)
    gateway = ActionGateway(
        authenticator=TokenAuthenticator(TEST_SECRET),
        rate_limiter=rate_limiter,
        ledger=ledger,
        free_tier=free_tier,
    )
    return SimpleNamespace(
        config=config,
        repository=repository,
        free_tier=free_tier,
        ledger=ledger,
        rate_limiter=rate_limiter,
        gateway=gateway,
        clock=clock,
        db_path=db_path,
    )
