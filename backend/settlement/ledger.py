"""
Token Ledger Store

Append-only record of token earnings and spending. A user's balance is
always the sum of their transaction amounts; no balance field is stored.

Transactions are never edited or deleted. A reversal is a new
transaction with the negated amount, linked by related_payment_id.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .config import TOKEN_TRANSACTIONS_KEY
from .models import TokenTransaction
from .store import KeyValueStore

logger = logging.getLogger(__name__)

Condition = Callable[[List[TokenTransaction]], bool]


def _load(rows: list) -> List[TokenTransaction]:
    return [TokenTransaction(**row) for row in rows or []]


def _stamp(transaction: TokenTransaction) -> TokenTransaction:
    """Fill id and created_at if the caller left them empty."""
    updates = {}
    if not transaction.id:
        updates["id"] = f"txn-{uuid.uuid4().hex[:12]}"
    if not transaction.created_at:
        updates["created_at"] = datetime.now(timezone.utc).isoformat()
    return transaction.model_copy(update=updates) if updates else transaction


def matching(
    transactions: List[TokenTransaction],
    user_id: Optional[str] = None,
    type: Optional[str] = None,
    related_payment_id: Optional[str] = None,
) -> List[TokenTransaction]:
    return [
        t for t in transactions
        if (user_id is None or t.user_id == user_id)
        and (type is None or t.type == type)
        and (related_payment_id is None or t.related_payment_id == related_payment_id)
    ]


def discount_debit_outstanding(transactions: List[TokenTransaction], payment_id: str) -> bool:
    """True when an upgrade discount debit for the payment has not been refunded."""
    debits = matching(transactions, type="spend-on-upgrade-discount", related_payment_id=payment_id)
    refunds = matching(transactions, type="refund-upgrade-discount", related_payment_id=payment_id)
    return len(debits) > len(refunds)


class LedgerStore:
    """Ledger operations over the token_transactions key."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def all_transactions(self) -> List[TokenTransaction]:
        return _load(await self.store.get(TOKEN_TRANSACTIONS_KEY, []))

    async def append(self, transaction: TokenTransaction) -> TokenTransaction:
        """Append a transaction unconditionally."""
        return await self.append_if(transaction, lambda _: True)

    async def append_if(self, transaction: TokenTransaction, condition: Condition) -> Optional[TokenTransaction]:
        """
        Append a transaction only if `condition(all_transactions)` holds.

        The check and the append run inside one store update, so concurrent
        callers cannot both pass the same check.

        Returns:
            The stored transaction, or None if the condition failed
        """
        stamped = _stamp(transaction)
        appended = []

        def apply(rows):
            if not condition(_load(rows)):
                return rows
            appended.append(stamped)
            return (rows or []) + [stamped.model_dump(mode="json")]

        await self.store.update(TOKEN_TRANSACTIONS_KEY, apply, default=[])
        if not appended:
            logger.debug(
                f"Skipped {stamped.type} for user {stamped.user_id} "
                f"(payment {stamped.related_payment_id}): condition not met"
            )
            return None
        logger.info(f"Ledger {stamped.type} {stamped.amount:+d} for user {stamped.user_id}")
        return stamped

    async def spend(self, user_id: str, type: str, cost: int, description: str) -> Optional[TokenTransaction]:
        """Debit `cost` tokens if the balance covers it. Never drives a balance negative."""
        transaction = TokenTransaction(user_id=user_id, type=type, amount=-cost, description=description)

        def covered(transactions: List[TokenTransaction]) -> bool:
            return sum(t.amount for t in matching(transactions, user_id=user_id)) >= cost

        return await self.append_if(transaction, covered)

    async def balance_of(self, user_id: str) -> int:
        return sum(t.amount for t in await self.find(user_id=user_id))

    async def transactions_of(self, user_id: str) -> List[TokenTransaction]:
        """User's transactions, newest first."""
        return list(reversed(await self.find(user_id=user_id)))

    async def find(
        self,
        user_id: Optional[str] = None,
        type: Optional[str] = None,
        related_payment_id: Optional[str] = None,
    ) -> List[TokenTransaction]:
        return matching(
            await self.all_transactions(),
            user_id=user_id,
            type=type,
            related_payment_id=related_payment_id,
        )

    async def grant(self, user_id: str, amount: int, reason: str = "") -> TokenTransaction:
        """Administrative grant (or clawback when negative)."""
        description = reason or f"Admin grant of {amount} tokens"
        return await self.append(
            TokenTransaction(user_id=user_id, type="admin-grant", amount=amount, description=description)
        )
