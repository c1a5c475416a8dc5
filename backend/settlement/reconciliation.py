"""
Reconciliation Loop

Periodically verifies pending bank transfers. Each scan verifies every
pending bank payment concurrently; a VerificationGuard guarantees that a
payment is never verified twice at the same time, even when scans overlap
or an admin triggers verify_now() during a scan.

Runs as an APScheduler interval job (see services/scheduler_setup.py).
"""

import asyncio
import logging
import uuid
from typing import Dict, List, Optional, Set

from .models import Payment
from .payment_store import PaymentStore
from .rails import RailRegistry, VerificationContext
from .settlement_service import SettlementCoordinator

logger = logging.getLogger(__name__)


class VerificationGuard:
    """
    Per-payment in-flight token. A payment is `verifying` while a token is
    held for it and `idle` otherwise.

    Usage:
        token = guard.try_acquire(payment_id)
        if token is None:
            return  # already verifying
        try:
            ...
        finally:
            guard.release(payment_id, token)
    """

    def __init__(self):
        # Format: {payment_id: token}
        self._active: Dict[str, str] = {}

    def try_acquire(self, payment_id: str) -> Optional[str]:
        """Non-blocking. Returns a token, or None if the payment is already held."""
        if payment_id in self._active:
            return None
        token = uuid.uuid4().hex
        self._active[payment_id] = token
        return token

    def release(self, payment_id: str, token: str) -> None:
        if self._active.get(payment_id) == token:
            del self._active[payment_id]

    def is_verifying(self, payment_id: str) -> bool:
        return payment_id in self._active

    def active(self) -> Set[str]:
        return set(self._active)


class ReconciliationLoop:
    def __init__(
        self,
        payments: PaymentStore,
        rails: RailRegistry,
        coordinator: SettlementCoordinator,
        guard: VerificationGuard = None,
    ):
        self.payments = payments
        self.rails = rails
        self.coordinator = coordinator
        self.guard = guard or VerificationGuard()

    async def run_scan(self) -> List[str]:
        """
        Verify all pending bank payments not already in flight.

        Returns:
            IDs of payments settled by this scan
        """
        pending = [
            p for p in await self.payments.list_payments()
            if p.status == "pending" and p.method_type == "bank"
        ]
        if not pending:
            return []

        logger.debug(f"Reconciliation scan: {len(pending)} pending bank payment(s)")
        results = await asyncio.gather(
            *(self._verify_one(p.id) for p in pending),
            return_exceptions=True
        )

        settled = []
        for payment, result in zip(pending, results):
            if isinstance(result, Exception):
                logger.error(f"Reconciliation of payment {payment.id} failed: {result}")
            elif result is not None:
                settled.append(result.id)
        if settled:
            logger.info(f"Reconciliation scan settled {len(settled)} payment(s): {settled}")
        return settled

    async def verify_now(self, payment_id: str) -> Optional[Payment]:
        """Manual trigger for one payment, sharing the scan's guard."""
        return await self._verify_one(payment_id)

    async def _verify_one(self, payment_id: str) -> Optional[Payment]:
        token = self.guard.try_acquire(payment_id)
        if token is None:
            logger.debug(f"Payment {payment_id} already verifying, skipping")
            return None

        try:
            payment = await self.payments.find(payment_id)
            if payment is None or payment.status != "pending" or payment.method_type != "bank":
                return None

            methods = {m.id: m for m in await self.payments.list_methods()}
            context = VerificationContext(
                method=methods.get(payment.method_id),
                payments=await self.payments.list_payments(),
            )
            outcome = await self.rails.verify(payment, context)
            return await self.coordinator.settle_pending(payment_id, outcome)
        finally:
            self.guard.release(payment_id, token)
