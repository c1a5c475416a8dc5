"""
Shared fixtures for settlement tests.

Engines run on the in-memory store with simulated latency disabled and a
fixed-value random source, so rail decisions are deterministic.
"""

import random
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from settlement.engine import SettlementEngine
from settlement.models import CardDetails
from settlement.store import InMemoryKeyValueStore


VALID_HASH = "0xreal-" + "ab12" * 8


class FixedRandom(random.Random):
    """random() always returns `value`; choice() and friends stay seeded."""

    def __init__(self, value: float = 0.5, seed: int = 0):
        super().__init__(seed)
        self.value = value

    def random(self):
        return self.value

    # Keeps choice() on the seeded bit stream instead of random()
    def getrandbits(self, k):
        return super().getrandbits(k)


@pytest.fixture(autouse=True)
def no_email_provider(monkeypatch):
    """Emails are recorded in the store, never sent."""
    monkeypatch.delenv("RESEND_API_KEY", raising=False)
    monkeypatch.delenv("ADMIN_EMAILS", raising=False)


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def engine(store):
    return SettlementEngine(store, rng=FixedRandom(0.5), delays_enabled=False, rail_timeout=5.0)


@pytest.fixture
def valid_card():
    return CardDetails(
        cardholder_name="Ada Lovelace",
        card_number="4242 4242 4242 4242",
        expiry_date="12/99",
        cvc="123",
    )


@pytest.fixture
def register(engine):
    """Async factory: register a user, optionally granting tokens."""
    counter = {"n": 0}

    async def _register(email=None, referral_code=None, tokens=0, is_admin=False):
        counter["n"] += 1
        email = email or f"user{counter['n']}@example.com"
        user = await engine.users.register(email, referral_code=referral_code, is_admin=is_admin)
        if tokens:
            await engine.ledger.grant(user.id, tokens, "Test grant")
        return user

    return _register
