"""
Settlement Module
Token ledger and payment settlement engine for Z-Ai Pro subscriptions

This module provides:
- Append-only token ledger (balance is always derived, never stored)
- Per-user generation quotas (image / video / watermark-free)
- Payment records across three rails (card, crypto, bank transfer)
- Settlement of verification outcomes into plan, quota and ledger effects
- Background reconciliation of pending bank transfers
- Administrative overrides, including full reversal of approved upgrades

Keys used in the key-value store (see store.py):
- users: User accounts
- token_transactions: Immutable ledger entries
- payments: Payment attempts
- payment_methods: Rail configuration
- plan_price: Pro plan price (USD)
- credits:<user_id>: Generation quotas
- sent_emails: Outbound notification log
"""

__version__ = "1.0.0"
