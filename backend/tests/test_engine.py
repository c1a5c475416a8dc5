"""
Test Suite: Settlement Engine Facade
====================================

Submission validation, upgrade quotes, registration and referrals,
passive plan expiration, and payment emails.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import VALID_HASH
from settlement.config import ERROR_MESSAGES, FREE_TIER_CREDITS, PAYMENTS_KEY
from settlement.errors import PaymentValidationError, SettlementError, UserNotFoundError
from settlement.notifications import PaymentEmailService

PROOF = "data:image/png;base64,iVBORw0KGgo="


class TestSubmissionValidation:
    """Malformed submissions fail before any record or rail call."""

    async def assert_rejected(self, engine, message, submit):
        with pytest.raises(PaymentValidationError) as exc_info:
            await submit
        assert exc_info.value.message == message
        assert await engine.list_payments() == []

    @pytest.mark.asyncio
    async def test_unknown_method(self, engine, register, valid_card):
        user = await register()
        await self.assert_rejected(
            engine, ERROR_MESSAGES["METHOD_NOT_FOUND"],
            engine.submit_card_payment(user.id, "paypal", valid_card),
        )

    @pytest.mark.asyncio
    async def test_disabled_method(self, engine, register):
        user = await register()
        btc = await engine.payments.get_method("btc_default")
        await engine.save_payment_method(btc.model_copy(update={"is_enabled": False}))

        await self.assert_rejected(
            engine, ERROR_MESSAGES["METHOD_DISABLED"],
            engine.submit_crypto_payment(user.id, "btc_default", VALID_HASH),
        )

    @pytest.mark.asyncio
    async def test_method_type_mismatch(self, engine, register, valid_card):
        user = await register()
        await self.assert_rejected(
            engine, ERROR_MESSAGES["METHOD_TYPE_MISMATCH"],
            engine.submit_card_payment(user.id, "bank_default", valid_card),
        )

    @pytest.mark.asyncio
    async def test_missing_card(self, engine, register):
        user = await register()
        await self.assert_rejected(
            engine, ERROR_MESSAGES["MISSING_CARD_DETAILS"],
            engine.submit_card_payment(user.id, "card_default", None),
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tx_hash", ["", "   "])
    async def test_missing_hash(self, engine, register, tx_hash):
        user = await register()
        await self.assert_rejected(
            engine, ERROR_MESSAGES["MISSING_HASH"],
            engine.submit_crypto_payment(user.id, "eth_default", tx_hash),
        )

    @pytest.mark.asyncio
    async def test_missing_bank_proof(self, engine, register):
        user = await register()
        await self.assert_rejected(
            engine, ERROR_MESSAGES["MISSING_PROOF"],
            engine.submit_bank_payment(user.id, "bank_default", None),
        )

    @pytest.mark.asyncio
    async def test_unknown_user(self, engine, valid_card):
        with pytest.raises(UserNotFoundError):
            await engine.submit_card_payment("user-missing", "card_default", valid_card)


class TestCardRecords:
    @pytest.mark.asyncio
    async def test_card_number_never_persisted(self, engine, store, register, valid_card):
        user = await register()

        payment = await engine.submit_card_payment(user.id, "card_default", valid_card)

        assert payment.masked_card_number == "**** **** **** 4242"
        assert payment.cardholder_name == "Ada Lovelace"
        raw = str(await store.get(PAYMENTS_KEY))
        assert "4242 4242 4242 4242" not in raw
        assert "4242424242424242" not in raw
        assert valid_card.cvc not in [p.get("cvc") for p in await store.get(PAYMENTS_KEY)]

    @pytest.mark.asyncio
    async def test_invalid_card_recorded_as_rejected(self, engine, register, valid_card):
        user = await register()
        bad = valid_card.model_copy(update={"cvc": "1"})

        payment = await engine.submit_card_payment(user.id, "card_default", bad)

        assert payment.status == "rejected"
        assert payment.verification_error == "Invalid CVC."
        assert [p.id for p in await engine.get_payments_for_user(user.id)] == [payment.id]


class TestUpgradeQuote:
    """Token discount: 1 token = $0.01, capped at half the price."""

    @pytest.mark.asyncio
    async def test_without_tokens(self, engine, register):
        user = await register(tokens=300)

        quote = await engine.quote_upgrade(user.id, use_tokens=False)

        assert (quote.plan_price, quote.token_discount, quote.amount_paid, quote.tokens_to_use) == (9.99, 0, 9.99, 0)

    @pytest.mark.asyncio
    async def test_partial_balance(self, engine, register):
        user = await register(tokens=100)

        quote = await engine.quote_upgrade(user.id, use_tokens=True)

        assert quote.tokens_to_use == 100
        assert quote.token_discount == 1.00
        assert quote.amount_paid == 8.99

    @pytest.mark.asyncio
    async def test_capped_at_half_price(self, engine, register):
        user = await register(tokens=10000)

        quote = await engine.quote_upgrade(user.id, use_tokens=True)

        assert quote.tokens_to_use == 499
        assert quote.token_discount == 4.99
        assert quote.amount_paid == 5.00

    @pytest.mark.asyncio
    async def test_amount_never_below_one_cent(self, engine, register):
        user = await register(tokens=10000)
        await engine.set_plan_price(0.02)

        quote = await engine.quote_upgrade(user.id, use_tokens=True)

        assert quote.tokens_to_use == 1
        assert quote.amount_paid == 0.01

    @pytest.mark.asyncio
    async def test_no_balance(self, engine, register):
        user = await register()

        quote = await engine.quote_upgrade(user.id, use_tokens=True)

        assert quote.tokens_to_use == 0
        assert quote.amount_paid == 9.99


class TestRegistration:
    @pytest.mark.asyncio
    async def test_new_user_is_free_with_free_credits(self, engine):
        user = await engine.register_user("ada@example.com", country="UK")

        assert user.plan == "free"
        assert user.country == "UK"
        assert len(user.referral_code) == 6
        assert not user.is_admin
        assert (await engine.get_credits(user.id)).model_dump() == FREE_TIER_CREDITS

    @pytest.mark.asyncio
    async def test_referral_signup_bonus(self, engine):
        referrer = await engine.register_user("ada@example.com")

        referee = await engine.register_user("bob@example.com", referral_code=referrer.referral_code.lower())

        assert referee.referred_by == referrer.id
        signups = await engine.ledger.find(user_id=referrer.id, type="referral-signup-earn")
        assert [t.amount for t in signups] == [1]

    @pytest.mark.asyncio
    async def test_unknown_referral_code_ignored(self, engine):
        user = await engine.register_user("ada@example.com", referral_code="NOPE00")

        assert user.referred_by is None
        assert await engine.ledger.all_transactions() == []

    @pytest.mark.asyncio
    async def test_duplicate_email(self, engine):
        await engine.register_user("ada@example.com")

        with pytest.raises(SettlementError):
            await engine.register_user("ADA@example.com")

    @pytest.mark.asyncio
    async def test_invalid_email(self, engine):
        with pytest.raises(SettlementError):
            await engine.register_user("not-an-email")

    @pytest.mark.asyncio
    async def test_admin_emails_env(self, engine, monkeypatch):
        monkeypatch.setenv("ADMIN_EMAILS", "ops@example.com, root@example.com")

        admin = await engine.register_user("Ops@example.com")
        user = await engine.register_user("ada@example.com")

        assert admin.is_admin
        assert not user.is_admin


class TestPlanExpiration:
    @pytest.mark.asyncio
    async def test_expired_plan_downgraded_on_read(self, engine, register, valid_card):
        user = await register()
        await engine.submit_card_payment(user.id, "card_default", valid_card)
        past = (datetime.now(timezone.utc) - timedelta(days=1)).isoformat()
        await engine.users.update_user(user.id, lambda u: u.model_copy(update={"plan_expiration_date": past}))

        current = await engine.get_user(user.id)

        assert current.plan == "free"
        assert current.plan_expiration_date is None
        assert (await engine.get_credits(user.id)).model_dump() == FREE_TIER_CREDITS

    @pytest.mark.asyncio
    async def test_active_plan_untouched(self, engine, register, valid_card):
        user = await register()
        await engine.submit_card_payment(user.id, "card_default", valid_card)

        assert (await engine.get_user(user.id)).plan == "pro"


class TestGenerationGate:
    @pytest.mark.asyncio
    async def test_consume_through_engine(self, engine, register):
        user = await register(tokens=20)

        for _ in range(FREE_TIER_CREDITS["video"]):
            assert await engine.consume_on_generate(user.id, "video")
        assert await engine.can_generate(user.id, "video")
        assert await engine.consume_on_generate(user.id, "video")
        assert not await engine.can_generate(user.id, "video")
        assert not await engine.consume_on_generate(user.id, "video")

    @pytest.mark.asyncio
    async def test_unknown_user(self, engine):
        with pytest.raises(UserNotFoundError):
            await engine.can_generate("user-missing", "image")


class TestPaymentEmails:
    @pytest.mark.asyncio
    async def test_pending_email_recorded_for_bank_transfer(self, engine, register):
        user = await register(email="ada@example.com")

        payment = await engine.submit_bank_payment(user.id, "bank_default", PROOF)

        assert payment.status == "pending"
        assert payment.proof.reference.startswith("ref-")
        emails = await engine.list_sent_emails()
        assert len(emails) == 1
        assert emails[0]["template"] == "payment_pending"
        assert emails[0]["status"] == "recorded"
        assert emails[0]["subject"] == "⏳ Your Z-Ai Payment is Under Review"
        assert "Hi ada," in emails[0]["body"]
        assert "Bank Transfer" in emails[0]["body"]

    @pytest.mark.asyncio
    async def test_sent_through_resend_when_configured(self, store, monkeypatch):
        monkeypatch.setenv("RESEND_API_KEY", "re_test_key")
        service = PaymentEmailService(store)

        with patch("settlement.notifications.resend.Emails.send", return_value={"id": "re_123"}) as send:
            result = await service.send_email("ada@example.com", "payment_rejected", {
                "name": "ada", "amount": "$9.99", "method": "Bitcoin", "reason": "Underpayment",
            })

        assert result["status"] == "success"
        params = send.call_args[0][0]
        assert params["to"] == ["ada@example.com"]
        assert "Underpayment" in params["html"]
        recorded = await service.list_sent_emails()
        assert recorded[0]["status"] == "sent"
        assert recorded[0]["provider_id"] == "re_123"

    @pytest.mark.asyncio
    async def test_provider_failure_recorded(self, store, monkeypatch):
        monkeypatch.setenv("RESEND_API_KEY", "re_test_key")
        service = PaymentEmailService(store)

        with patch("settlement.notifications.resend.Emails.send", side_effect=RuntimeError("rate limited")):
            result = await service.send_email("ada@example.com", "payment_success", {
                "name": "ada", "amount": "$9.99", "method": "Credit Card",
            })

        assert result["status"] == "error"
        assert (await service.list_sent_emails())[0]["status"] == "failed"
