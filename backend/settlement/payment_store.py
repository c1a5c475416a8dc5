"""
Payment Record Store

Payment records plus the admin-managed settings that price and route them:
payment methods (seeded with defaults on first read) and the Pro plan price.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config import (
    PAYMENTS_KEY,
    PAYMENT_METHODS_KEY,
    PLAN_PRICE_KEY,
    DEFAULT_PAYMENT_METHODS,
    DEFAULT_PLAN_PRICE_USD,
    ERROR_MESSAGES,
)
from .errors import PaymentNotFoundError, PaymentValidationError
from .models import Payment, PaymentMethod
from .store import KeyValueStore

logger = logging.getLogger(__name__)


def new_payment_id() -> str:
    return f"pay-{uuid.uuid4().hex[:12]}"


class PaymentStore:
    """CRUD over payment records. Newest records first."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    # ==================== PAYMENTS ====================

    async def list_payments(self) -> List[Payment]:
        return [Payment(**row) for row in await self.store.get(PAYMENTS_KEY, [])]

    async def payments_for_user(self, user_id: str) -> List[Payment]:
        return [p for p in await self.list_payments() if p.user_id == user_id]

    async def find(self, payment_id: str) -> Optional[Payment]:
        for payment in await self.list_payments():
            if payment.id == payment_id:
                return payment
        return None

    async def get(self, payment_id: str) -> Payment:
        payment = await self.find(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found.", payment_id=payment_id)
        return payment

    async def add(self, payment: Payment) -> Payment:
        await self.store.update(
            PAYMENTS_KEY,
            lambda rows: [payment.model_dump(mode="json")] + rows,
            default=[]
        )
        logger.info(f"Created {payment.method_type} payment {payment.id} for user {payment.user_id}")
        return payment

    async def update(self, payment_id: str, fn: Callable[[Payment], Payment]) -> Payment:
        """Replace one record with fn(record). Stamps updated_at."""
        updated = []

        def apply(rows):
            for i, row in enumerate(rows):
                if row.get("id") == payment_id:
                    payment = fn(Payment(**row)).model_copy(
                        update={"updated_at": datetime.now(timezone.utc).isoformat()}
                    )
                    rows[i] = payment.model_dump(mode="json")
                    updated.append(payment)
                    break
            return rows

        await self.store.update(PAYMENTS_KEY, apply, default=[])
        if not updated:
            raise PaymentNotFoundError(f"Payment {payment_id} not found.", payment_id=payment_id)
        return updated[0]

    async def delete(self, payment_id: str) -> None:
        found = []

        def apply(rows):
            kept = [row for row in rows if row.get("id") != payment_id]
            if len(kept) != len(rows):
                found.append(payment_id)
            return kept

        await self.store.update(PAYMENTS_KEY, apply, default=[])
        if not found:
            raise PaymentNotFoundError(f"Payment {payment_id} not found.", payment_id=payment_id)

    # ==================== PAYMENT METHODS ====================

    async def list_methods(self) -> List[PaymentMethod]:
        rows = await self.store.get(PAYMENT_METHODS_KEY, None)
        if rows is None:
            logger.info("Seeding default payment methods")
            rows = [dict(m) for m in DEFAULT_PAYMENT_METHODS]
            await self.store.set(PAYMENT_METHODS_KEY, rows)
        return [PaymentMethod(**row) for row in rows]

    async def get_method(self, method_id: str) -> PaymentMethod:
        for method in await self.list_methods():
            if method.id == method_id:
                return method
        raise PaymentValidationError(ERROR_MESSAGES["METHOD_NOT_FOUND"])

    async def save_method(self, method: PaymentMethod) -> PaymentMethod:
        """Insert or replace a payment method by id."""
        await self.list_methods()

        def apply(rows):
            row = method.model_dump(mode="json")
            for i, existing in enumerate(rows):
                if existing.get("id") == method.id:
                    rows[i] = row
                    return rows
            return rows + [row]

        await self.store.update(PAYMENT_METHODS_KEY, apply, default=[])
        logger.info(f"Saved payment method {method.id} (enabled={method.is_enabled})")
        return method

    # ==================== PLAN PRICE ====================

    async def plan_price(self) -> float:
        return float(await self.store.get(PLAN_PRICE_KEY, DEFAULT_PLAN_PRICE_USD))

    async def set_plan_price(self, price: float) -> float:
        if price is None or price <= 0:
            raise PaymentValidationError(ERROR_MESSAGES["INVALID_PRICE"])
        price = round(float(price), 2)
        await self.store.set(PLAN_PRICE_KEY, price)
        logger.info(f"Pro plan price set to ${price:.2f}")
        return price
