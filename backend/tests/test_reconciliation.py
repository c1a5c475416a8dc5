"""
Test Suite: Bank Reconciliation Loop
====================================

- VerificationGuard token semantics
- overlapping scans verify each pending payment once
- manual verify_now shares the guard with scans
- rail errors are contained per payment
"""

import asyncio

import pytest

from conftest import FixedRandom
from settlement.engine import SettlementEngine
from settlement.models import VerificationOutcome
from settlement.rails import BankRail, RailRegistry
from settlement.reconciliation import VerificationGuard

PROOF = "data:image/png;base64,iVBORw0KGgo="


class CountingBankRail(BankRail):
    """Bank rail that yields to the loop and counts verifications per payment."""

    def __init__(self, fail_with=None):
        super().__init__(rng=FixedRandom(0.5), delays_enabled=False)
        self.calls = []
        self.fail_with = fail_with

    async def verify(self, payment, context):
        self.calls.append(payment.id)
        await asyncio.sleep(0.01)
        if self.fail_with:
            raise self.fail_with
        return VerificationOutcome.succeeded("BANK_TXN_TEST", {"reference": "BANK_TXN_TEST"})


@pytest.fixture
def rail():
    return CountingBankRail()


@pytest.fixture
def loop_engine(store, rail):
    return SettlementEngine(
        store,
        rng=FixedRandom(0.5),
        delays_enabled=False,
        rails=RailRegistry([rail], timeout_seconds=5),
    )


async def bank_payment(engine, email):
    user = await engine.users.register(email)
    return await engine.submit_bank_payment(user.id, "bank_default", PROOF)


class TestVerificationGuard:
    def test_second_acquire_refused(self):
        guard = VerificationGuard()

        token = guard.try_acquire("pay-1")

        assert token is not None
        assert guard.try_acquire("pay-1") is None
        assert guard.is_verifying("pay-1")
        assert guard.try_acquire("pay-2") is not None

    def test_release_requires_matching_token(self):
        guard = VerificationGuard()
        token = guard.try_acquire("pay-1")

        guard.release("pay-1", "stale-token")
        assert guard.is_verifying("pay-1")

        guard.release("pay-1", token)
        assert not guard.is_verifying("pay-1")
        assert guard.active() == set()


class TestReconciliationScan:
    """Pending bank transfers settled by the periodic scan."""

    @pytest.mark.asyncio
    async def test_scan_settles_pending_bank_payments(self, loop_engine, rail):
        first = await bank_payment(loop_engine, "a@example.com")
        second = await bank_payment(loop_engine, "b@example.com")

        settled = await loop_engine.run_reconciliation_scan()

        assert sorted(settled) == sorted([first.id, second.id])
        for payment_id in settled:
            payment = await loop_engine.get_payment(payment_id)
            assert payment.status == "approved"
            assert payment.proof.reference == "BANK_TXN_TEST"

    @pytest.mark.asyncio
    async def test_overlapping_scans_verify_once(self, loop_engine, rail):
        payment = await bank_payment(loop_engine, "a@example.com")

        results = await asyncio.gather(
            loop_engine.run_reconciliation_scan(),
            loop_engine.run_reconciliation_scan(),
            loop_engine.run_reconciliation_scan(),
        )

        assert rail.calls == [payment.id]
        assert sum(len(r) for r in results) == 1
        print(f"✓ Overlapping scans verified {payment.id} once")

    @pytest.mark.asyncio
    async def test_empty_scan(self, loop_engine, rail):
        assert await loop_engine.run_reconciliation_scan() == []
        assert rail.calls == []

    @pytest.mark.asyncio
    async def test_scan_skips_settled_payments(self, loop_engine, rail):
        payment = await bank_payment(loop_engine, "a@example.com")
        await loop_engine.reject_payment(payment.id)

        assert await loop_engine.run_reconciliation_scan() == []
        assert rail.calls == []

    @pytest.mark.asyncio
    async def test_verify_now_during_scan(self, loop_engine, rail):
        payment = await bank_payment(loop_engine, "a@example.com")

        scan, manual = await asyncio.gather(
            loop_engine.run_reconciliation_scan(),
            loop_engine.reconciliation.verify_now(payment.id),
        )

        assert rail.calls == [payment.id]
        # Exactly one of the two callers performed the verification
        assert (scan == [payment.id]) != (manual is not None)
        assert (await loop_engine.get_payment(payment.id)).status == "approved"

    @pytest.mark.asyncio
    async def test_admin_action_during_verification_wins(self, loop_engine, rail):
        payment = await bank_payment(loop_engine, "a@example.com")

        async def approve_mid_flight():
            await asyncio.sleep(0)
            return await loop_engine.approve_payment(payment.id)

        settled, approved = await asyncio.gather(
            loop_engine.run_reconciliation_scan(),
            approve_mid_flight(),
        )

        assert settled == []
        assert approved.status == "approved"
        assert (await loop_engine.get_payment(payment.id)).proof.reference != "BANK_TXN_TEST"

    @pytest.mark.asyncio
    async def test_rail_error_is_contained(self, store):
        rail = CountingBankRail(fail_with=RuntimeError("bank api down"))
        engine = SettlementEngine(store, rng=FixedRandom(0.5), delays_enabled=False,
                                  rails=RailRegistry([rail], timeout_seconds=5))
        payment = await bank_payment(engine, "a@example.com")

        assert await engine.run_reconciliation_scan() == []

        assert (await engine.get_payment(payment.id)).status == "pending"
        assert engine.reconciliation.guard.active() == set()

    @pytest.mark.asyncio
    async def test_bank_rejection_recorded(self, store):
        engine = SettlementEngine(store, rng=FixedRandom(0.05), delays_enabled=False)
        payment = await bank_payment(engine, "a@example.com")

        await engine.run_reconciliation_scan()

        rejected = await engine.get_payment(payment.id)
        assert rejected.status == "rejected"
        assert rejected.verification_error
        assert (await engine.get_user(payment.user_id)).plan == "free"
