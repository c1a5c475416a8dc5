"""
Quota Tracker

Per-user generation counters (image, video, watermark-free export) kept
outside the token ledger. Once a counter is exhausted, generations are
paid from the token balance instead.

Decision for one generation:
1. If the image/video counter is positive, decrement it. No ledger entry.
2. Otherwise debit 10 (image) or 20 (video) tokens if the balance covers it.
3. Otherwise fail and persist nothing.

The watermark-free counter is decremented alongside a successful
generation when requested and positive. It never decides the outcome.
"""

import logging
from typing import Dict

from .config import (
    CREDITS_KEY_PREFIX,
    FREE_TIER_CREDITS,
    PRO_TIER_CREDITS,
    GENERATION_TOKEN_COSTS,
)
from .ledger import LedgerStore
from .models import Credits
from .store import KeyedLocks, KeyValueStore

logger = logging.getLogger(__name__)


def tier_limits(plan: str) -> Credits:
    return Credits(**(PRO_TIER_CREDITS if plan == "pro" else FREE_TIER_CREDITS))


def _credits_key(user_id: str) -> str:
    return f"{CREDITS_KEY_PREFIX}{user_id}"


def _normalize(raw) -> Dict[str, int]:
    """Missing counters fall back to the free tier."""
    merged = dict(FREE_TIER_CREDITS)
    if raw:
        merged.update({k: v for k, v in raw.items() if k in FREE_TIER_CREDITS and v is not None})
    return merged


class QuotaTracker:
    """Gate and meter generations against quota counters and the ledger."""

    def __init__(self, store: KeyValueStore, ledger: LedgerStore):
        self.store = store
        self.ledger = ledger
        self._user_locks = KeyedLocks()

    def tier_limits(self, plan: str) -> Credits:
        return tier_limits(plan)

    async def credits_of(self, user_id: str) -> Credits:
        raw = await self.store.get(_credits_key(user_id), None)
        return Credits(**_normalize(raw))

    async def can_afford(self, user_id: str, resource_kind: str, without_watermark: bool = False) -> bool:
        """
        Same decision as consume(), without mutating anything.

        `without_watermark` is accepted for parity with consume() and does
        not affect the answer: an exhausted watermark-free counter never
        refuses a generation.
        """
        credits = await self.credits_of(user_id)
        if getattr(credits, resource_kind) > 0:
            return True
        return await self.ledger.balance_of(user_id) >= GENERATION_TOKEN_COSTS[resource_kind]

    async def consume(self, user_id: str, resource_kind: str, without_watermark: bool = False) -> bool:
        """
        Meter one generation.

        Returns:
            True if the generation is allowed and has been charged
        """
        if resource_kind not in GENERATION_TOKEN_COSTS:
            raise ValueError(f"Unknown resource kind: {resource_kind}")

        async with self._user_locks.hold(user_id):
            credits = await self.credits_of(user_id)
            use_counter = getattr(credits, resource_kind) > 0

            if not use_counter:
                cost = GENERATION_TOKEN_COSTS[resource_kind]
                spent = await self.ledger.spend(
                    user_id,
                    f"spend-on-{resource_kind}",
                    cost,
                    f"Spent {cost} tokens on {resource_kind} generation",
                )
                if spent is None:
                    logger.info(f"Generation refused for user {user_id}: no {resource_kind} quota and balance below {cost}")
                    return False

            spend_watermark = without_watermark and credits.no_watermark > 0
            if use_counter or spend_watermark:
                def decrement(raw):
                    counters = _normalize(raw)
                    if use_counter:
                        counters[resource_kind] = max(0, counters[resource_kind] - 1)
                    if spend_watermark:
                        counters["no_watermark"] = max(0, counters["no_watermark"] - 1)
                    return counters

                await self.store.update(_credits_key(user_id), decrement, default=None)

        return True

    async def reset_to_pro(self, user_id: str) -> Credits:
        await self.store.set(_credits_key(user_id), dict(PRO_TIER_CREDITS))
        return tier_limits("pro")

    async def reset_to_free(self, user_id: str) -> Credits:
        """Clamp each counter to the free tier. Never grants credits back."""
        def clamp(raw):
            counters = _normalize(raw)
            return {k: min(counters[k], FREE_TIER_CREDITS[k]) for k in FREE_TIER_CREDITS}

        clamped = await self.store.update(_credits_key(user_id), clamp, default=None)
        return Credits(**clamped)
