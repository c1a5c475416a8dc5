"""
Settlement Engine

Facade wiring the stores, rails, coordinator, reconciliation loop and
admin path over one KeyValueStore. Routes and the scheduler talk to this
object only.

Usage:
    engine = SettlementEngine(InMemoryKeyValueStore(), delays_enabled=False)
    user = await engine.register_user("ada@example.com")
    payment = await engine.submit_card_payment(user.id, "card_default", card)
"""

import logging
import random
import re
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from .config import (
    ERROR_MESSAGES,
    MAX_TOKEN_DISCOUNT_RATIO,
    rail_timeout_seconds,
    simulation_delays_enabled,
)
from .accounts import UserStore
from .admin_service import AdminService
from .crypto_prices import CryptoPriceService
from .errors import PaymentValidationError
from .ledger import LedgerStore
from .models import (
    BankProof,
    CardDetails,
    CardProof,
    Credits,
    CryptoProof,
    Payment,
    PaymentMethod,
    TokenTransaction,
    UpgradeQuote,
    User,
    UserOverview,
)
from .notifications import PaymentEmailService
from .payment_store import PaymentStore, new_payment_id
from .quota import QuotaTracker
from .rails import RailRegistry, VerificationContext, build_default_registry
from .reconciliation import ReconciliationLoop
from .settlement_service import SettlementCoordinator
from .store import KeyValueStore

logger = logging.getLogger(__name__)


def mask_card_number(card_number: str) -> str:
    digits = re.sub(r"\s", "", card_number or "")
    return f"**** **** **** {digits[-4:]}"


class SettlementEngine:
    def __init__(
        self,
        store: KeyValueStore,
        rng: random.Random = None,
        delays_enabled: Optional[bool] = None,
        rail_timeout: Optional[float] = None,
        prices: CryptoPriceService = None,
        rails: RailRegistry = None,
        notifier: PaymentEmailService = None,
    ):
        self.store = store
        self.rng = rng or random.Random()
        if delays_enabled is None:
            delays_enabled = simulation_delays_enabled()
        if rail_timeout is None:
            rail_timeout = rail_timeout_seconds()

        self.ledger = LedgerStore(store)
        self.quota = QuotaTracker(store, self.ledger)
        self.users = UserStore(store, self.ledger, self.quota, rng=self.rng)
        self.payments = PaymentStore(store)
        self.prices = prices or CryptoPriceService(rng=self.rng)
        self.rails = rails or build_default_registry(
            self.prices, rng=self.rng, delays_enabled=delays_enabled, timeout_seconds=rail_timeout
        )
        self.notifier = notifier or PaymentEmailService(store)
        self.coordinator = SettlementCoordinator(
            self.payments, self.users, self.ledger, self.quota, self.notifier
        )
        self.reconciliation = ReconciliationLoop(self.payments, self.rails, self.coordinator)
        self.admin = AdminService(
            self.payments, self.users, self.ledger, self.quota,
            self.coordinator, self.reconciliation, self.notifier
        )

    # ==================== USERS ====================

    async def register_user(
        self, email: str, referral_code: Optional[str] = None, country: str = "", phone: str = ""
    ) -> User:
        return await self.users.register(email, referral_code=referral_code, country=country, phone=phone)

    async def get_user(self, user_id: str) -> User:
        return await self.users.get_user(user_id)

    async def list_users(self) -> List[User]:
        return await self.users.list_users()

    # ==================== LEDGER & QUOTA ====================

    async def get_ledger_balance(self, user_id: str) -> int:
        return await self.ledger.balance_of(user_id)

    async def get_transactions(self, user_id: str) -> List[TokenTransaction]:
        return await self.ledger.transactions_of(user_id)

    async def get_credits(self, user_id: str) -> Credits:
        await self.users.get_user(user_id)
        return await self.quota.credits_of(user_id)

    async def can_generate(self, user_id: str, kind: str, without_watermark: bool = False) -> bool:
        await self.users.get_user(user_id)
        return await self.quota.can_afford(user_id, kind, without_watermark)

    async def consume_on_generate(self, user_id: str, kind: str, without_watermark: bool = False) -> bool:
        await self.users.get_user(user_id)
        return await self.quota.consume(user_id, kind, without_watermark)

    # ==================== PRICING ====================

    async def get_plan_price(self) -> float:
        return await self.payments.plan_price()

    async def quote_upgrade(self, user_id: str, use_tokens: bool = False) -> UpgradeQuote:
        """
        Price a Pro upgrade. Tokens are worth one cent each and can cover at
        most half the plan price; the charged amount never drops below one cent.
        """
        price = await self.payments.plan_price()
        price_cents = int(round(price * 100))
        tokens_to_use = 0

        if use_tokens:
            balance = await self.ledger.balance_of(user_id)
            max_tokens = int(price_cents * MAX_TOKEN_DISCOUNT_RATIO)
            tokens_to_use = max(0, min(balance, max_tokens, price_cents - 1))

        return UpgradeQuote(
            plan_price=price,
            token_discount=tokens_to_use / 100,
            amount_paid=(price_cents - tokens_to_use) / 100,
            tokens_to_use=tokens_to_use,
        )

    # ==================== PAYMENT METHODS ====================

    async def list_payment_methods(self, enabled_only: bool = False) -> List[PaymentMethod]:
        methods = await self.payments.list_methods()
        return [m for m in methods if m.is_enabled] if enabled_only else methods

    async def _resolve_method(self, method_id: str, expected_type: str) -> PaymentMethod:
        method = await self.payments.get_method(method_id)
        if not method.is_enabled:
            raise PaymentValidationError(ERROR_MESSAGES["METHOD_DISABLED"])
        if method.type != expected_type:
            raise PaymentValidationError(ERROR_MESSAGES["METHOD_TYPE_MISMATCH"])
        return method

    # ==================== SUBMISSIONS ====================

    async def _new_payment(self, user: User, method: PaymentMethod, quote: UpgradeQuote, proof, **extra) -> Payment:
        payment = Payment(
            id=new_payment_id(),
            user_id=user.id,
            user_email=user.email,
            method_id=method.id,
            method_name=method.name,
            method_type=method.type,
            proof=proof,
            status="pending",
            created_at=datetime.now(timezone.utc).isoformat(),
            plan_price=quote.plan_price,
            token_discount=quote.token_discount,
            amount_paid=quote.amount_paid,
            tokens_debited=quote.tokens_to_use,
            **extra
        )
        return await self.payments.add(payment)

    async def _verify_inline(self, payment: Payment, context: VerificationContext) -> Payment:
        outcome = await self.rails.verify(payment, context)
        return await self.coordinator.settle(payment, outcome)

    async def submit_card_payment(
        self, user_id: str, method_id: str, card: Optional[CardDetails], use_tokens: bool = False
    ) -> Payment:
        """Create a card payment, verify it through the gateway and settle it."""
        user = await self.users.get_user(user_id)
        method = await self._resolve_method(method_id, "card")
        if card is None:
            raise PaymentValidationError(ERROR_MESSAGES["MISSING_CARD_DETAILS"])

        quote = await self.quote_upgrade(user_id, use_tokens)
        payment = await self._new_payment(
            user, method, quote, CardProof(),
            cardholder_name=card.cardholder_name.strip() or None,
            masked_card_number=mask_card_number(card.card_number),
        )
        return await self._verify_inline(payment, VerificationContext(method=method, card=card))

    async def submit_crypto_payment(
        self, user_id: str, method_id: str, tx_hash: str, use_tokens: bool = False
    ) -> Payment:
        """Create a crypto payment, check the hash against the chain and settle it."""
        user = await self.users.get_user(user_id)
        method = await self._resolve_method(method_id, "crypto")
        if not (tx_hash or "").strip():
            raise PaymentValidationError(ERROR_MESSAGES["MISSING_HASH"])

        quote = await self.quote_upgrade(user_id, use_tokens)
        payment = await self._new_payment(user, method, quote, CryptoProof(hash=tx_hash.strip()))
        context = VerificationContext(method=method, payments=await self.payments.list_payments())
        return await self._verify_inline(payment, context)

    async def submit_bank_payment(
        self, user_id: str, method_id: str, file_data_url: Optional[str], use_tokens: bool = False
    ) -> Payment:
        """Create a pending bank transfer. The reconciliation loop verifies it later."""
        user = await self.users.get_user(user_id)
        method = await self._resolve_method(method_id, "bank")
        if not file_data_url:
            raise PaymentValidationError(ERROR_MESSAGES["MISSING_PROOF"])

        quote = await self.quote_upgrade(user_id, use_tokens)
        payment = await self._new_payment(
            user, method, quote, BankProof(file_data_url=file_data_url, reference=f"ref-{uuid.uuid4().hex[:8]}")
        )
        await self.coordinator.notify_safely(self.notifier.send_payment_pending_email(user, payment), payment.id)
        return payment

    async def get_payments_for_user(self, user_id: str) -> List[Payment]:
        return await self.payments.payments_for_user(user_id)

    async def get_payment(self, payment_id: str) -> Payment:
        return await self.payments.get(payment_id)

    # ==================== ADMIN ====================

    async def approve_payment(self, payment_id: str) -> Payment:
        return await self.admin.approve_payment(payment_id)

    async def reject_payment(self, payment_id: str, reason: Optional[str] = None) -> Payment:
        return await self.admin.reject_payment(payment_id, reason)

    async def requeue_payment(self, payment_id: str) -> Payment:
        return await self.admin.requeue_payment(payment_id)

    async def revalidate_payment(self, payment_id: str, wait: bool = False) -> Payment:
        return await self.admin.revalidate_payment(payment_id, wait=wait)

    async def delete_payment(self, payment_id: str) -> None:
        await self.admin.delete_payment(payment_id)

    async def list_payments(self) -> List[Payment]:
        return await self.admin.list_payments()

    async def grant_tokens(self, user_id: str, amount: int) -> TokenTransaction:
        return await self.admin.grant_tokens(user_id, amount)

    async def save_payment_method(self, method: PaymentMethod) -> PaymentMethod:
        return await self.admin.save_payment_method(method)

    async def set_plan_price(self, price: float) -> float:
        return await self.admin.set_plan_price(price)

    async def get_user_overview(self, user_id: str) -> UserOverview:
        return await self.admin.get_user_overview(user_id)

    async def list_sent_emails(self) -> List[dict]:
        return await self.notifier.list_sent_emails()

    # ==================== BACKGROUND JOBS ====================

    async def run_reconciliation_scan(self) -> List[str]:
        return await self.reconciliation.run_scan()

    def refresh_crypto_rates(self) -> dict:
        return self.prices.fluctuate()
