"""
Crypto Price Service

Simulated live USD exchange rates for the supported coins. A scheduler
job calls fluctuate() on a short interval to emulate market movement.
"""

import logging
import random
from typing import Dict, Optional

from .config import CRYPTO_BASE_RATES, CRYPTO_VOLATILITY, CRYPTO_DECIMALS

logger = logging.getLogger(__name__)

# USDT stays pegged with a tiny jitter
USDT_JITTER = 0.0002


class CryptoPriceService:
    def __init__(self, rng: random.Random = None, rates: Optional[Dict[str, float]] = None):
        self.rng = rng or random.Random()
        self._rates = dict(rates or CRYPTO_BASE_RATES)

    def fluctuate(self) -> Dict[str, float]:
        """Apply one random market move to every rate."""
        for symbol, swing in CRYPTO_VOLATILITY.items():
            if symbol in self._rates:
                self._rates[symbol] *= 1 + (self.rng.random() - 0.5) * swing
        if "USDT" in self._rates:
            self._rates["USDT"] = 1 + (self.rng.random() - 0.5) * USDT_JITTER
        logger.debug(f"Crypto rates refreshed: {self._rates}")
        return self.get_rates()

    def get_rates(self) -> Dict[str, float]:
        return dict(self._rates)

    def get_rate(self, symbol: str) -> Optional[float]:
        return self._rates.get((symbol or "").upper())

    def convert_usd_to_crypto(self, usd_amount: float, symbol: str) -> Optional[float]:
        """
        Convert a USD amount at the current rate, rounded to the coin's precision.

        Returns:
            Coin amount, or None for an unsupported symbol
        """
        symbol = (symbol or "").upper()
        rate = self._rates.get(symbol)
        if not rate or symbol not in CRYPTO_DECIMALS:
            logger.warning(f"Unsupported crypto symbol for conversion: {symbol}")
            return None
        return round(usd_amount / rate, CRYPTO_DECIMALS[symbol])
