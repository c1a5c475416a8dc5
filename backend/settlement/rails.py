"""
Verification Rails

One simulated verifier per payment method type:
- CardRail: synchronous gateway check of card details
- CryptoRail: synchronous block explorer lookup with duplicate/amount checks
- BankRail: slow proof-of-transfer review, driven by the reconciliation loop

Rails never raise for a failed verification. They return a
VerificationOutcome that the settlement coordinator records on the payment.
Randomness and latency are injectable so tests can run deterministically.
"""

import asyncio
import logging
import random
import re
import string
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from .config import (
    RAIL_DELAYS,
    CARD_TEST_NUMBER_SUFFIX,
    CARD_FAILURE_RATE,
    CARD_DECLINE_REASONS,
    BANK_FAILURE_RATE,
    BANK_REJECTION_REASONS,
    CRYPTO_HASH_MARKER,
    CRYPTO_HASH_MIN_LENGTH,
    CRYPTO_AMOUNT_TOLERANCE,
    CRYPTO_DECIMALS,
    CRYPTO_SYMBOLS_BY_METHOD,
    BLOCK_EXPLORERS,
)
from .crypto_prices import CryptoPriceService
from .models import CardDetails, Payment, PaymentMethod, VerificationOutcome

logger = logging.getLogger(__name__)

BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(BASE36[rem])
    return "".join(reversed(digits))


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class VerificationContext:
    """Transient inputs a rail may need beyond the stored payment."""

    def __init__(
        self,
        method: Optional[PaymentMethod] = None,
        card: Optional[CardDetails] = None,
        payments: Optional[List[Payment]] = None,
    ):
        self.method = method
        self.card = card
        self.payments = payments or []


class Rail:
    """Base verifier. Subclasses set method_type and implement _check()."""

    method_type: str = ""

    def __init__(
        self,
        rng: random.Random = None,
        delays_enabled: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rng = rng or random.Random()
        self.delays_enabled = delays_enabled
        self._sleep = sleep

    async def simulate_latency(self, delay_range=None):
        if not self.delays_enabled:
            return
        low, high = delay_range or RAIL_DELAYS.get(self.method_type, (0.0, 0.0))
        await self._sleep(low + self.rng.random() * (high - low))

    async def verify(self, payment: Payment, context: VerificationContext) -> VerificationOutcome:
        await self.simulate_latency()
        outcome = self._check(payment, context)
        if outcome.success:
            logger.info(f"{self.method_type} verification passed for payment {payment.id}")
        else:
            logger.info(f"{self.method_type} verification failed for payment {payment.id}: {outcome.reason}")
        return outcome

    def _check(self, payment: Payment, context: VerificationContext) -> VerificationOutcome:
        raise NotImplementedError


# ==================== CARD ====================

class CardRail(Rail):
    method_type = "card"

    def __init__(self, rng: random.Random = None, delays_enabled: bool = True,
                 sleep=asyncio.sleep, clock: Callable[[], datetime] = None):
        super().__init__(rng=rng, delays_enabled=delays_enabled, sleep=sleep)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _parse_expiry(self, expiry: str):
        parts = expiry.split("/")
        if len(parts) < 2:
            return None, None
        try:
            return int(parts[0].strip()), int(parts[1].strip())
        except ValueError:
            return None, None

    def _check(self, payment: Payment, context: VerificationContext) -> VerificationOutcome:
        card = context.card
        if card is None or not all(
            field.strip() for field in (card.cardholder_name, card.card_number, card.expiry_date, card.cvc)
        ):
            return VerificationOutcome.failed("Incomplete card details provided.")

        month, year = self._parse_expiry(card.expiry_date)
        if not month or not year or month < 1 or month > 12:
            return VerificationOutcome.failed("Invalid expiration date format.")

        now = self.clock()
        current_year = now.year % 100
        if year < current_year or (year == current_year and month < now.month):
            return VerificationOutcome.failed("Card has expired.")

        if len(card.cvc) < 3 or len(card.cvc) > 4:
            return VerificationOutcome.failed("Invalid CVC.")

        number = re.sub(r"\s", "", card.card_number)
        if not re.fullmatch(r"\d{13,16}", number):
            return VerificationOutcome.failed("Invalid card number format.")

        if not number.endswith(CARD_TEST_NUMBER_SUFFIX) and self.rng.random() < CARD_FAILURE_RATE:
            return VerificationOutcome.failed(self.rng.choice(CARD_DECLINE_REASONS))

        if payment.amount_paid <= 0:
            return VerificationOutcome.failed("Payment amount must be greater than zero.")

        suffix = "".join(self.rng.choice(BASE36) for _ in range(7))
        transaction_id = f"ch_{_to_base36(_epoch_ms())}_{suffix}"
        return VerificationOutcome.succeeded(transaction_id, {"transaction_id": transaction_id})


# ==================== CRYPTO ====================

class ExplorerTransaction:
    def __init__(self, amount: float, recipient: str, timestamp: str):
        self.amount = amount
        self.recipient = recipient
        self.timestamp = timestamp


class SimulatedBlockExplorer:
    """Stands in for a chain explorer API. Reports a transfer slightly above the expected amount."""

    def __init__(self, rng: random.Random = None):
        self.rng = rng or random.Random()

    async def lookup(self, tx_hash: str, expected_address: str, expected_amount: float) -> ExplorerTransaction:
        return ExplorerTransaction(
            amount=expected_amount * (1 + self.rng.random() * 0.01),
            recipient=expected_address.lower(),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )


def normalize_hash(tx_hash: Optional[str]) -> str:
    return (tx_hash or "").strip().lower()


class CryptoRail(Rail):
    method_type = "crypto"

    def __init__(self, prices: CryptoPriceService, explorer: SimulatedBlockExplorer = None,
                 rng: random.Random = None, delays_enabled: bool = True, sleep=asyncio.sleep):
        super().__init__(rng=rng, delays_enabled=delays_enabled, sleep=sleep)
        self.prices = prices
        self.explorer = explorer or SimulatedBlockExplorer(self.rng)

    def _find_duplicate(self, payment: Payment, tx_hash: str, payments: List[Payment]) -> Optional[Payment]:
        for other in payments:
            if other.id == payment.id or other.status == "rejected":
                continue
            if getattr(other.proof, "hash", None) and normalize_hash(other.proof.hash) == tx_hash:
                return other
        return None

    async def verify(self, payment: Payment, context: VerificationContext) -> VerificationOutcome:
        tx_hash = (getattr(payment.proof, "hash", "") or "").strip()

        if not tx_hash.lower().startswith(CRYPTO_HASH_MARKER) or len(tx_hash) < CRYPTO_HASH_MIN_LENGTH:
            return VerificationOutcome.failed(
                "Invalid transaction format. Please provide a real transaction hash from a blockchain explorer."
            )

        duplicate = self._find_duplicate(payment, tx_hash.lower(), context.payments)
        if duplicate:
            logger.warning(f"Duplicate hash on payment {payment.id}, already used by {duplicate.id}")
            return VerificationOutcome.failed(
                f"Duplicate transaction hash. This hash was already used for payment ID {duplicate.id[-6:]}."
            )

        method = context.method
        symbol = (method.crypto_symbol if method and method.crypto_symbol
                  else CRYPTO_SYMBOLS_BY_METHOD.get(payment.method_name))
        if not symbol or symbol.upper() not in CRYPTO_DECIMALS:
            return VerificationOutcome.failed(f"Verification for {payment.method_name} is not supported.")
        symbol = symbol.upper()

        address = method.address if method else None
        if not address:
            return VerificationOutcome.failed(f"Recipient address for {payment.method_name} is not configured.")

        expected = self.prices.convert_usd_to_crypto(payment.amount_paid, symbol)
        if expected is None:
            return VerificationOutcome.failed(f"Could not determine crypto conversion rate for {symbol}.")

        await self.simulate_latency()
        transaction = await self.explorer.lookup(tx_hash, address, expected)

        if transaction.recipient.lower() != address.lower():
            return VerificationOutcome.failed("Recipient mismatch. Funds were sent to an incorrect address.")

        if transaction.amount < expected * CRYPTO_AMOUNT_TOLERANCE:
            decimals = CRYPTO_DECIMALS[symbol]
            return VerificationOutcome.failed(
                f"Underpayment detected. Expected ~{expected:.{decimals}f} {symbol}, "
                f"but transaction was for {transaction.amount:.{decimals}f} {symbol}."
            )

        explorer_url = BLOCK_EXPLORERS[symbol].format(hash=tx_hash)
        logger.info(f"crypto verification passed for payment {payment.id}: {transaction.amount} {symbol}")
        return VerificationOutcome.succeeded(explorer_url, {"explorer_url": explorer_url})


# ==================== BANK ====================

class BankRail(Rail):
    method_type = "bank"

    def _check(self, payment: Payment, context: VerificationContext) -> VerificationOutcome:
        if not getattr(payment.proof, "file_data_url", None):
            return VerificationOutcome.failed("Verification failed: No proof of payment was uploaded.")

        if self.rng.random() < BANK_FAILURE_RATE:
            return VerificationOutcome.failed(self.rng.choice(BANK_REJECTION_REASONS))

        reference = f"BANK_TXN_{_epoch_ms()}"
        return VerificationOutcome.succeeded(reference, {"reference": reference})


# ==================== REGISTRY ====================

class RailRegistry:
    """Looks up the rail for a payment's method type and bounds each call with a timeout."""

    def __init__(self, rails: List[Rail] = None, timeout_seconds: float = 30.0):
        self._rails: Dict[str, Rail] = {}
        self.timeout_seconds = timeout_seconds
        for rail in rails or []:
            self.register(rail)

    def register(self, rail: Rail) -> None:
        self._rails[rail.method_type] = rail

    def get(self, method_type: str) -> Rail:
        rail = self._rails.get(method_type)
        if rail is None:
            raise KeyError(f"No rail registered for method type '{method_type}'")
        return rail

    async def verify(self, payment: Payment, context: VerificationContext) -> VerificationOutcome:
        rail = self.get(payment.method_type)
        try:
            return await asyncio.wait_for(rail.verify(payment, context), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Verification of payment {payment.id} timed out after {self.timeout_seconds:g}s")
            return VerificationOutcome.failed(
                f"Verification timed out after {self.timeout_seconds:g} seconds."
            )


def build_default_registry(
    prices: CryptoPriceService,
    rng: random.Random = None,
    delays_enabled: bool = True,
    timeout_seconds: float = 30.0,
) -> RailRegistry:
    rng = rng or random.Random()
    return RailRegistry(
        rails=[
            CardRail(rng=rng, delays_enabled=delays_enabled),
            CryptoRail(prices, rng=rng, delays_enabled=delays_enabled),
            BankRail(rng=rng, delays_enabled=delays_enabled),
        ],
        timeout_seconds=timeout_seconds,
    )
