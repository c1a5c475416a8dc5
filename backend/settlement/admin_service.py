"""
Administrative Override Path

Manual payment actions and settings for admins:
- approve (pending only): success settlement without a rail
- reject (pending or approved): approved Pro payments are fully reversed
- requeue (approved only) and revalidate (rejected only): back to pending
- delete (pending only)
- token grants, payment method edits, plan price, user overview

Every payment action holds the coordinator's per-payment lock, so an admin
action never interleaves with a settlement of the same payment.
"""

import asyncio
import logging
from typing import List, Optional, Set

from .config import (
    ADMIN_REVERSAL_REASON,
    ADMIN_REJECTION_REASON,
    ADMIN_REQUEUE_NOTE,
    ERROR_MESSAGES,
    REFERRAL_UPGRADE_BONUS,
)
from .accounts import UserStore
from .errors import InvalidPaymentStateError, PaymentValidationError, UserNotFoundError
from .ledger import LedgerStore, discount_debit_outstanding, matching
from .models import Payment, PaymentMethod, TokenTransaction, User, UserOverview, VerificationOutcome
from .notifications import PaymentEmailService
from .payment_store import PaymentStore
from .quota import QuotaTracker
from .reconciliation import ReconciliationLoop
from .settlement_service import SettlementCoordinator

logger = logging.getLogger(__name__)


class AdminService:
    def __init__(
        self,
        payments: PaymentStore,
        users: UserStore,
        ledger: LedgerStore,
        quota: QuotaTracker,
        coordinator: SettlementCoordinator,
        reconciliation: ReconciliationLoop,
        notifier: PaymentEmailService,
    ):
        self.payments = payments
        self.users = users
        self.ledger = ledger
        self.quota = quota
        self.coordinator = coordinator
        self.reconciliation = reconciliation
        self.notifier = notifier
        self._background: Set[asyncio.Task] = set()

    # ==================== PAYMENT ACTIONS ====================

    async def approve_payment(self, payment_id: str) -> Payment:
        async with self.coordinator.lock_for(payment_id):
            payment = await self.payments.get(payment_id)
            if payment.status != "pending":
                raise InvalidPaymentStateError(
                    f"Only pending payments can be approved (status: {payment.status}).", payment_id
                )
            logger.info(f"Admin approving payment {payment_id}")
            return await self.coordinator.apply_outcome(
                payment, VerificationOutcome.succeeded(reference="manual-approval")
            )

    async def reject_payment(self, payment_id: str, reason: Optional[str] = None) -> Payment:
        """
        Reject a pending payment, or revert an approved one.

        Reverting an approved payment of a Pro user downgrades the user,
        refunds an outstanding upgrade discount and claws back the referrer's
        bonus, each at most once per payment.
        """
        async with self.coordinator.lock_for(payment_id):
            payment = await self.payments.get(payment_id)
            if payment.status == "rejected":
                logger.warning(f"Payment {payment_id} already rejected, nothing to do")
                return payment

            try:
                user = await self.users.get_user(payment.user_id)
            except UserNotFoundError:
                logger.warning(f"User {payment.user_id} of payment {payment_id} not found, rejecting without reversal")
                user = None
            if payment.status == "approved" and user and user.plan == "pro":
                await self._reverse_upgrade(user, payment)
                rejection_reason = reason or ADMIN_REVERSAL_REASON
            else:
                rejection_reason = reason or ADMIN_REJECTION_REASON

            updated = await self.payments.update(payment_id, lambda p: p.model_copy(update={
                "status": "rejected",
                "verification_error": rejection_reason,
            }))
            logger.info(f"Admin rejected payment {payment_id}: {rejection_reason}")

        if user:
            await self.coordinator.notify_safely(
                self.notifier.send_payment_rejected_email(user, updated, rejection_reason), payment_id
            )
        return updated

    async def _reverse_upgrade(self, user: User, payment: Payment) -> None:
        await self.users.downgrade_to_free(user.id)
        await self.quota.reset_to_free(user.id)
        logger.info(f"User {user.id} downgraded to free by reversal of payment {payment.id}")

        if payment.tokens_debited > 0:
            await self.ledger.append_if(
                TokenTransaction(
                    user_id=user.id,
                    type="refund-upgrade-discount",
                    amount=payment.tokens_debited,
                    description=f"Refund for reverted Pro upgrade (payment {payment.id[-6:]})",
                    related_payment_id=payment.id,
                ),
                lambda txns: discount_debit_outstanding(txns, payment.id),
            )

        if user.referred_by:
            def bonus_unreversed(txns):
                issued = matching(txns, type="referral-upgrade-earn", related_payment_id=payment.id)
                reversed_ = matching(txns, type="referral-upgrade-reversal", related_payment_id=payment.id)
                return bool(issued) and not reversed_

            await self.ledger.append_if(
                TokenTransaction(
                    user_id=user.referred_by,
                    type="referral-upgrade-reversal",
                    amount=-REFERRAL_UPGRADE_BONUS,
                    description=f"Referral bonus reverted for payment {payment.id[-6:]}",
                    related_payment_id=payment.id,
                ),
                bonus_unreversed,
            )

    async def requeue_payment(self, payment_id: str) -> Payment:
        async with self.coordinator.lock_for(payment_id):
            payment = await self.payments.get(payment_id)
            if payment.status != "approved":
                raise InvalidPaymentStateError(
                    f"Only approved payments can be re-queued (status: {payment.status}).", payment_id
                )
            updated = await self.payments.update(payment_id, lambda p: p.model_copy(update={
                "status": "pending",
                "verification_error": ADMIN_REQUEUE_NOTE,
            }))
        logger.info(f"Payment {payment_id} re-queued for review")
        return updated

    async def revalidate_payment(self, payment_id: str, wait: bool = False) -> Payment:
        """
        Move a rejected payment back to pending. Bank transfers are handed to
        the reconciliation loop immediately; with wait=True the call returns
        after that verification has settled.
        """
        async with self.coordinator.lock_for(payment_id):
            payment = await self.payments.get(payment_id)
            if payment.status != "rejected":
                raise InvalidPaymentStateError(
                    f"Only rejected payments can be re-validated (status: {payment.status}).", payment_id
                )
            updated = await self.payments.update(payment_id, lambda p: p.model_copy(update={
                "status": "pending",
                "verification_error": None,
            }))
        logger.info(f"Payment {payment_id} moved back to pending for re-validation")

        if updated.method_type == "bank":
            if wait:
                settled = await self.reconciliation.verify_now(payment_id)
                return settled or await self.payments.get(payment_id)
            task = asyncio.create_task(self.reconciliation.verify_now(payment_id))
            self._background.add(task)
            task.add_done_callback(self._background_done)
        return updated

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background verification failed: {task.exception()}")

    async def delete_payment(self, payment_id: str) -> None:
        async with self.coordinator.lock_for(payment_id):
            payment = await self.payments.get(payment_id)
            if payment.status != "pending":
                raise InvalidPaymentStateError(
                    f"Only pending payments can be deleted (status: {payment.status}).", payment_id
                )
            await self.payments.delete(payment_id)
        logger.info(f"Payment {payment_id} deleted")

    async def list_payments(self) -> List[Payment]:
        return await self.payments.list_payments()

    # ==================== SETTINGS ====================

    async def grant_tokens(self, user_id: str, amount: int) -> TokenTransaction:
        if not isinstance(amount, int) or amount == 0:
            raise PaymentValidationError(ERROR_MESSAGES["INVALID_GRANT"])
        await self.users.get_user(user_id)
        return await self.ledger.grant(user_id, amount, f"Admin grant of {amount} tokens.")

    async def save_payment_method(self, method: PaymentMethod) -> PaymentMethod:
        return await self.payments.save_method(method)

    async def set_plan_price(self, price: float) -> float:
        return await self.payments.set_plan_price(price)

    # ==================== USERS ====================

    async def get_user_overview(self, user_id: str) -> UserOverview:
        user = await self.users.get_user(user_id)
        transactions = await self.ledger.transactions_of(user_id)
        all_users = await self.users.list_users()

        referrer_email = None
        if user.referred_by:
            referrer = next((u for u in all_users if u.id == user.referred_by), None)
            referrer_email = referrer.email if referrer else "Unknown"

        referrals = [u for u in all_users if u.referred_by == user.id]
        return UserOverview(
            user=user,
            current_token_balance=sum(t.amount for t in transactions),
            total_tokens_earned=sum(t.amount for t in transactions if t.amount > 0),
            referrer_email=referrer_email,
            free_referrals_count=sum(1 for r in referrals if r.plan == "free"),
            pro_referrals_count=sum(1 for r in referrals if r.plan == "pro"),
            credits=await self.quota.credits_of(user_id),
            token_transactions=transactions,
        )
