"""
Settlement Coordinator

Applies a verification outcome to a payment and produces its side effects:
- success: Pro upgrade, quota reset, upgrade discount debit, referral bonus
- failure: rejection with the rail's reason

CRITICAL: ledger and user writes happen before the payment status write,
and each ledger effect is keyed on (type, related_payment_id). A storage
fault mid-settlement leaves the payment in its prior status and a retry
completes without duplicating anything.

All work on one payment is serialized through lock_for(payment_id).
"""

import logging
from typing import Optional

from .config import REFERRAL_UPGRADE_BONUS, REFERRAL_GOAL_PRO_UPGRADES, REFERRAL_GOAL_BONUS
from .accounts import UserStore
from .ledger import LedgerStore, discount_debit_outstanding, matching
from .models import Payment, TokenTransaction, User, VerificationOutcome
from .notifications import PaymentEmailService
from .payment_store import PaymentStore
from .quota import QuotaTracker
from .store import KeyedLocks

logger = logging.getLogger(__name__)


class SettlementCoordinator:
    def __init__(
        self,
        payments: PaymentStore,
        users: UserStore,
        ledger: LedgerStore,
        quota: QuotaTracker,
        notifier: PaymentEmailService,
    ):
        self.payments = payments
        self.users = users
        self.ledger = ledger
        self.quota = quota
        self.notifier = notifier
        self._payment_locks = KeyedLocks()

    def lock_for(self, payment_id: str):
        """Async context manager serializing all work on one payment."""
        return self._payment_locks.hold(payment_id)

    # ==================== ENTRY POINTS ====================

    async def settle(self, payment: Payment, outcome: VerificationOutcome) -> Payment:
        async with self.lock_for(payment.id):
            return await self.apply_outcome(payment, outcome)

    async def settle_pending(self, payment_id: str, outcome: VerificationOutcome) -> Optional[Payment]:
        """
        Apply an outcome only if the payment is still pending.

        Used by the reconciliation loop, where an admin action may have
        settled the payment while the rail was running.
        """
        async with self.lock_for(payment_id):
            payment = await self.payments.find(payment_id)
            if payment is None or payment.status != "pending":
                logger.warning(f"Payment {payment_id} no longer pending, discarding verification outcome")
                return None
            return await self.apply_outcome(payment, outcome)

    async def apply_outcome(self, payment: Payment, outcome: VerificationOutcome) -> Payment:
        """Caller must hold lock_for(payment.id)."""
        if outcome.success:
            return await self._approve(payment, outcome)
        return await self._reject(payment, outcome.reason or "Verification failed.")

    # ==================== SUCCESS ====================

    async def _approve(self, payment: Payment, outcome: VerificationOutcome) -> Payment:
        user = await self.users.get_user(payment.user_id)

        if user.plan != "pro":
            if payment.tokens_debited > 0:
                await self.ledger.append_if(
                    TokenTransaction(
                        user_id=user.id,
                        type="spend-on-upgrade-discount",
                        amount=-payment.tokens_debited,
                        description=f"Used {payment.tokens_debited} tokens for Pro upgrade discount",
                        related_payment_id=payment.id,
                    ),
                    lambda txns: not discount_debit_outstanding(txns, payment.id),
                )
            await self.quota.reset_to_pro(user.id)
            user = await self.users.upgrade_to_pro(user.id)
            logger.info(f"User {user.id} upgraded to Pro via payment {payment.id}")

        if user.referred_by:
            await self._award_referral_bonus(user, payment)

        updated = await self.payments.update(payment.id, lambda p: p.model_copy(update={
            "status": "approved",
            "verification_error": None,
            "proof": p.proof.model_copy(update=outcome.proof_updates),
        }))
        logger.info(f"Payment {payment.id} approved")

        await self.notify_safely(self.notifier.send_payment_success_email(user, updated), payment.id)
        return updated

    async def _award_referral_bonus(self, user: User, payment: Payment) -> None:
        referrer = await self.users.find_user(user.referred_by)
        if referrer is None:
            logger.warning(f"Referrer {user.referred_by} of user {user.id} not found, no bonus issued")
            return

        bonus = await self.ledger.append_if(
            TokenTransaction(
                user_id=referrer.id,
                type="referral-upgrade-earn",
                amount=REFERRAL_UPGRADE_BONUS,
                description=f"Referral upgrade bonus for {user.email}",
                related_payment_id=payment.id,
            ),
            lambda txns: not matching(txns, type="referral-upgrade-earn", related_payment_id=payment.id),
        )
        if bonus is None:
            logger.warning(f"Referral bonus for payment {payment.id} already issued, skipping")
            return

        def goal_reached(txns):
            upgrades = matching(txns, user_id=referrer.id, type="referral-upgrade-earn")
            already = matching(txns, user_id=referrer.id, type="goal-bonus-earn")
            return len(upgrades) >= REFERRAL_GOAL_PRO_UPGRADES and not already

        await self.ledger.append_if(
            TokenTransaction(
                user_id=referrer.id,
                type="goal-bonus-earn",
                amount=REFERRAL_GOAL_BONUS,
                description=f"Goal bonus for {REFERRAL_GOAL_PRO_UPGRADES} Pro referrals",
                related_payment_id=payment.id,
            ),
            goal_reached,
        )

    # ==================== FAILURE ====================

    async def _reject(self, payment: Payment, reason: str) -> Payment:
        updated = await self.payments.update(payment.id, lambda p: p.model_copy(update={
            "status": "rejected",
            "verification_error": reason,
        }))
        logger.info(f"Payment {payment.id} rejected: {reason}")

        user = await self.users.find_user(payment.user_id)
        if user:
            await self.notify_safely(self.notifier.send_payment_rejected_email(user, updated, reason), payment.id)
        return updated

    async def notify_safely(self, send, payment_id: str) -> None:
        """Await a notification coroutine. Failures never affect settlement."""
        try:
            await send
        except Exception as e:
            logger.error(f"Notification for payment {payment_id} failed: {e}")
