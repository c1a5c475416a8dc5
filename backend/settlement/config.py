"""
Settlement Configuration and Constants

Plan tiers, token costs, referral bonuses, rail behaviour and default
payment methods are defined here. Money values are in USD.
"""

import os

# ==================== STORE KEYS ====================
USERS_KEY = "users"
TOKEN_TRANSACTIONS_KEY = "token_transactions"
PAYMENTS_KEY = "payments"
PAYMENT_METHODS_KEY = "payment_methods"
PLAN_PRICE_KEY = "plan_price"
SENT_EMAILS_KEY = "sent_emails"
CREDITS_KEY_PREFIX = "credits:"

DATA_CHANGED_EVENT = "data_changed"

# ==================== PLAN ====================
DEFAULT_PLAN_PRICE_USD = 9.99
PLAN_DURATION_DAYS = 30

# Generation quotas per plan tier
FREE_TIER_CREDITS = {
    "image": 5,
    "video": 2,
    "no_watermark": 2,
}

PRO_TIER_CREDITS = {
    "image": 9999,
    "video": 9999,
    "no_watermark": 9999,
}

# ==================== TOKENS ====================
# Token cost of a generation once the matching quota is exhausted
GENERATION_TOKEN_COSTS = {
    "image": 10,
    "video": 20,
}

TOKEN_VALUE_USD = 0.01
MAX_TOKEN_DISCOUNT_RATIO = 0.5
MIN_AMOUNT_PAID_USD = 0.01

REFERRAL_SIGNUP_BONUS = 1
REFERRAL_UPGRADE_BONUS = 10
REFERRAL_GOAL_PRO_UPGRADES = 5
REFERRAL_GOAL_BONUS = 50

# ==================== RAILS ====================
CARD_TEST_NUMBER_SUFFIX = "4242"
CARD_FAILURE_RATE = 0.15
CARD_DECLINE_REASONS = [
    "Card declined by the bank.",
    "Insufficient funds.",
    "Transaction blocked for suspected fraud.",
]

BANK_FAILURE_RATE = 0.15
BANK_REJECTION_REASONS = [
    "Bank transfer rejected: Amount did not match invoice.",
    "Bank transfer rejected: Reference number not found.",
    "Unable to confirm deposit from provided proof.",
]

CRYPTO_HASH_MARKER = "0xreal-"
CRYPTO_HASH_MIN_LENGTH = 25
CRYPTO_AMOUNT_TOLERANCE = 0.99

# Simulated latency per rail, (min_seconds, max_seconds)
RAIL_DELAYS = {
    "card": (1.0, 2.0),
    "crypto": (1.5, 2.5),
    "bank": (5.0, 10.0),
}

# ==================== CRYPTO RATES ====================
CRYPTO_BASE_RATES = {
    "BTC": 65000.0,
    "ETH": 3500.0,
    "USDT": 1.0,
    "SOL": 150.0,
    "LTC": 75.0,
}

# Maximum relative swing applied on each refresh
CRYPTO_VOLATILITY = {
    "BTC": 0.005,
    "ETH": 0.005,
    "SOL": 0.008,
    "LTC": 0.006,
}

CRYPTO_DECIMALS = {
    "BTC": 8,
    "ETH": 6,
    "USDT": 2,
    "SOL": 4,
    "LTC": 5,
}

# Fallback when a method has no crypto_symbol configured
CRYPTO_SYMBOLS_BY_METHOD = {
    "Bitcoin": "BTC",
    "Ethereum": "ETH",
    "Tether": "USDT",
    "Solana": "SOL",
    "Litecoin": "LTC",
}

BLOCK_EXPLORERS = {
    "BTC": "https://mempool.space/tx/{hash}",
    "ETH": "https://etherscan.io/tx/{hash}",
    "USDT": "https://etherscan.io/tx/{hash}",
    "SOL": "https://solscan.io/tx/{hash}",
    "LTC": "https://blockchair.com/litecoin/transaction/{hash}",
}

# ==================== MESSAGES ====================
ERROR_MESSAGES = {
    "METHOD_NOT_FOUND": "Payment method not found.",
    "METHOD_DISABLED": "This payment method is currently disabled.",
    "METHOD_TYPE_MISMATCH": "Selected payment method does not match this payment type.",
    "MISSING_CARD_DETAILS": "Card details are required.",
    "MISSING_HASH": "Please provide the transaction hash.",
    "MISSING_PROOF": "Please upload proof of payment.",
    "INVALID_PRICE": "Plan price must be greater than zero.",
    "INVALID_GRANT": "Grant amount must be a non-zero integer.",
}

ADMIN_REVERSAL_REASON = "Payment reverted by administrator."
ADMIN_REJECTION_REASON = "Manually rejected by admin."
ADMIN_REQUEUE_NOTE = "Marked as pending for re-validation by admin."

# ==================== DEFAULT PAYMENT METHODS ====================
DEFAULT_PAYMENT_METHODS = [
    {
        "id": "card_default",
        "name": "Credit Card",
        "type": "card",
        "description": "Pay with Visa, Mastercard, etc.",
        "is_enabled": True,
    },
    {
        "id": "bank_default",
        "name": "Bank Transfer",
        "type": "bank",
        "account_holder": "Z-Ai Inc.",
        "account_number": "1234567890",
        "iban": "US12345678901234567890",
        "swift": "ZAIIUS33",
        "description": "Transfer funds to the account below. Use your email as reference.",
        "is_enabled": True,
    },
    {
        "id": "btc_default",
        "name": "Bitcoin",
        "type": "crypto",
        "address": "bc1qxy2kgdygjrsqtzq2n0yrf2493p83kkfjhx0wlh",
        "network": "Bitcoin",
        "crypto_symbol": "BTC",
        "description": "Send the exact amount of BTC to the address, then paste the transaction hash.",
        "is_enabled": True,
    },
    {
        "id": "eth_default",
        "name": "Ethereum",
        "type": "crypto",
        "address": "0x321a42321a42321a42321a42321a42321a42321a",
        "network": "ERC-20",
        "crypto_symbol": "ETH",
        "description": "Send the exact amount of ETH (ERC-20), then paste the transaction hash.",
        "is_enabled": True,
    },
    {
        "id": "usdt_default",
        "name": "Tether",
        "type": "crypto",
        "address": "0x987b654987b654987b654987b654987b654987b6",
        "network": "ERC-20",
        "crypto_symbol": "USDT",
        "description": "Send the exact amount of USDT (ERC-20), then paste the transaction hash.",
        "is_enabled": True,
    },
    {
        "id": "sol_default",
        "name": "Solana",
        "type": "crypto",
        "address": "So11111111111111111111111111111111111111112",
        "network": "Solana",
        "crypto_symbol": "SOL",
        "description": "Send the exact amount of SOL, then paste the transaction hash.",
        "is_enabled": True,
    },
    {
        "id": "ltc_default",
        "name": "Litecoin",
        "type": "crypto",
        "address": "ltc1qcl8935fu7wzfxsk3j2s5un4pfde8pcgwd9arty",
        "network": "Litecoin",
        "crypto_symbol": "LTC",
        "description": "Send the exact amount of LTC, then paste the transaction hash.",
        "is_enabled": True,
    },
]


# ==================== RUNTIME SETTINGS ====================

def reconciliation_interval_seconds() -> int:
    """Period of the bank transfer reconciliation job."""
    return int(os.environ.get("RECONCILIATION_INTERVAL_SECONDS", "5"))


def crypto_rate_refresh_seconds() -> int:
    return int(os.environ.get("CRYPTO_RATE_REFRESH_SECONDS", "3"))


def rail_timeout_seconds() -> float:
    """External bound on a single rail verification."""
    return float(os.environ.get("RAIL_TIMEOUT_SECONDS", "30"))


def simulation_delays_enabled() -> bool:
    return os.environ.get("SIMULATION_DELAYS", "1") not in ("0", "false", "False")


def admin_emails() -> set:
    """Emails registered with admin rights, from comma-separated ADMIN_EMAILS."""
    raw = os.environ.get("ADMIN_EMAILS", "")
    return {e.strip().lower() for e in raw.split(",") if e.strip()}
