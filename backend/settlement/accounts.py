"""
User Accounts

User records, referral codes and plan state. Plan fields are changed only
by settlement, administrative reversal and the passive expiration check
applied whenever a user is read through get_user().
"""

import logging
import random
import string
import uuid
from datetime import datetime, timezone, timedelta
from typing import Callable, List, Optional

from .config import USERS_KEY, PLAN_DURATION_DAYS, REFERRAL_SIGNUP_BONUS, admin_emails
from .errors import SettlementError, UserNotFoundError
from .ledger import LedgerStore
from .models import TokenTransaction, User
from .quota import QuotaTracker
from .store import KeyValueStore

logger = logging.getLogger(__name__)

REFERRAL_CODE_LENGTH = 6
REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except (ValueError, AttributeError):
        return None


class UserStore:
    """Account reads and writes over the users key."""

    def __init__(self, store: KeyValueStore, ledger: LedgerStore, quota: QuotaTracker, rng: random.Random = None):
        self.store = store
        self.ledger = ledger
        self.quota = quota
        self.rng = rng or random.Random()

    async def list_users(self) -> List[User]:
        return [User(**row) for row in await self.store.get(USERS_KEY, [])]

    async def find_user(self, user_id: str) -> Optional[User]:
        """Raw lookup with no expiration check."""
        for user in await self.list_users():
            if user.id == user_id:
                return user
        return None

    async def find_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        for user in await self.list_users():
            if user.email.lower() == email:
                return user
        return None

    async def find_by_referral_code(self, code: str) -> Optional[User]:
        if not code:
            return None
        code = code.strip().upper()
        for user in await self.list_users():
            if user.referral_code == code:
                return user
        return None

    async def get_user(self, user_id: str) -> User:
        """Load a user, downgrading an expired pro plan on the way."""
        user = await self.find_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User {user_id} not found.")

        expiration = _parse_iso(user.plan_expiration_date)
        if user.plan == "pro" and expiration and expiration < datetime.now(timezone.utc):
            logger.info(f"Pro plan expired for user {user_id}, downgrading to free")
            user = await self.downgrade_to_free(user_id)
            await self.quota.reset_to_free(user_id)
        return user

    async def update_user(self, user_id: str, fn: Callable[[User], User]) -> User:
        updated = []

        def apply(rows):
            for i, row in enumerate(rows):
                if row.get("id") == user_id:
                    user = fn(User(**row))
                    rows[i] = user.model_dump(mode="json")
                    updated.append(user)
                    break
            return rows

        await self.store.update(USERS_KEY, apply, default=[])
        if not updated:
            raise UserNotFoundError(f"User {user_id} not found.")
        return updated[0]

    async def upgrade_to_pro(self, user_id: str, now: Optional[datetime] = None) -> User:
        now = now or datetime.now(timezone.utc)
        return await self.update_user(user_id, lambda u: u.model_copy(update={
            "plan": "pro",
            "subscription_start_date": now.isoformat(),
            "plan_expiration_date": (now + timedelta(days=PLAN_DURATION_DAYS)).isoformat(),
        }))

    async def downgrade_to_free(self, user_id: str) -> User:
        return await self.update_user(user_id, lambda u: u.model_copy(update={
            "plan": "free",
            "subscription_start_date": None,
            "plan_expiration_date": None,
        }))

    async def _unique_referral_code(self) -> str:
        taken = {u.referral_code for u in await self.list_users()}
        while True:
            code = "".join(self.rng.choice(REFERRAL_CODE_ALPHABET) for _ in range(REFERRAL_CODE_LENGTH))
            if code not in taken:
                return code

    async def register(
        self,
        email: str,
        referral_code: Optional[str] = None,
        country: str = "",
        phone: str = "",
        is_admin: Optional[bool] = None,
    ) -> User:
        """
        Create a free-plan user with fresh free-tier credits.

        A valid referral code links the new user to the referrer and earns
        the referrer a signup bonus. Unknown codes are ignored.
        """
        email = (email or "").strip()
        if not email or "@" not in email:
            raise SettlementError("A valid email address is required.")
        if await self.find_by_email(email):
            raise SettlementError("Email already registered.")

        referrer = await self.find_by_referral_code(referral_code) if referral_code else None
        if referral_code and referrer is None:
            logger.warning(f"Unknown referral code '{referral_code}' ignored for {email}")

        user = User(
            id=f"user-{uuid.uuid4().hex[:12]}",
            email=email,
            plan="free",
            created_at=datetime.now(timezone.utc).isoformat(),
            referred_by=referrer.id if referrer else None,
            referral_code=await self._unique_referral_code(),
            country=country,
            phone=phone,
            is_admin=is_admin if is_admin is not None else email.lower() in admin_emails(),
        )
        await self.store.update(USERS_KEY, lambda rows: rows + [user.model_dump(mode="json")], default=[])
        await self.quota.reset_to_free(user.id)

        if referrer:
            await self.ledger.append(TokenTransaction(
                user_id=referrer.id,
                type="referral-signup-earn",
                amount=REFERRAL_SIGNUP_BONUS,
                description=f"Referred user {user.email}",
            ))

        logger.info(f"Registered user {user.id} ({email})")
        return user
