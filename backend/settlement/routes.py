"""
Settlement API Routes

User endpoints:
- POST /api/settlement/register - Create account (optional referral code)
- GET  /api/settlement/me - Account, plan, credits and token balance
- GET  /api/settlement/ledger - Token transactions, newest first
- GET  /api/settlement/payment-methods - Enabled payment methods
- GET  /api/settlement/quote - Pro upgrade price with optional token discount
- POST /api/settlement/payments/{card|crypto|bank} - Submit a payment
- GET  /api/settlement/payments - Own payment history
- POST /api/settlement/generation/{check|consume} - Generation gate

Admin endpoints live under /api/settlement/admin.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from utils.auth import create_token, get_current_user, get_admin_user
from .engine import SettlementEngine
from .errors import SettlementError
from .models import (
    BankPaymentRequest,
    CardPaymentRequest,
    CryptoPaymentRequest,
    GenerationRequest,
    GrantRequest,
    PaymentMethod,
    PlanPriceRequest,
    RegisterRequest,
    RejectRequest,
    User,
)

logger = logging.getLogger(__name__)

settlement_router = APIRouter(prefix="/settlement", tags=["Settlement"])


def get_engine(request: Request) -> SettlementEngine:
    return request.app.state.engine


async def settlement_error_handler(request: Request, exc: SettlementError):
    """Map engine errors to HTTP responses. Registered on the app by server.py."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, **exc.to_dict()})


# ==================== ACCOUNT ENDPOINTS ====================

@settlement_router.post("/register")
async def register(request: RegisterRequest, engine: SettlementEngine = Depends(get_engine)):
    """Create a free account. A valid referral code credits the referrer."""
    user = await engine.register_user(
        request.email,
        referral_code=request.referral_code,
        country=request.country,
        phone=request.phone,
    )
    return {
        "user": user,
        "token": create_token(user.id, user.email, user.is_admin),
    }


@settlement_router.get("/me")
async def get_me(user: User = Depends(get_current_user), engine: SettlementEngine = Depends(get_engine)):
    current = await engine.get_user(user.id)
    return {
        "user": current,
        "credits": await engine.get_credits(user.id),
        "token_balance": await engine.get_ledger_balance(user.id),
    }


@settlement_router.get("/ledger")
async def get_ledger(
    limit: int = Query(50, ge=1, le=500),
    user: User = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_engine)
):
    """Token transactions (earnings, spends, refunds, reversals)."""
    transactions = await engine.get_transactions(user.id)
    return {
        "balance": sum(t.amount for t in transactions),
        "transactions": transactions[:limit],
        "count": len(transactions),
    }


# ==================== PAYMENT ENDPOINTS ====================

@settlement_router.get("/payment-methods")
async def list_payment_methods(engine: SettlementEngine = Depends(get_engine)):
    return {"methods": await engine.list_payment_methods(enabled_only=True)}


@settlement_router.get("/quote")
async def quote_upgrade(
    use_tokens: bool = Query(False),
    user: User = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_engine)
):
    return await engine.quote_upgrade(user.id, use_tokens)


@settlement_router.post("/payments/card")
async def submit_card_payment(
    request: CardPaymentRequest,
    user: User = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_engine)
):
    """Card payments are verified and settled before the response is returned."""
    return await engine.submit_card_payment(user.id, request.method_id, request.card, request.use_tokens)


@settlement_router.post("/payments/crypto")
async def submit_crypto_payment(
    request: CryptoPaymentRequest,
    user: User = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_engine)
):
    return await engine.submit_crypto_payment(user.id, request.method_id, request.hash, request.use_tokens)


@settlement_router.post("/payments/bank")
async def submit_bank_payment(
    request: BankPaymentRequest,
    user: User = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_engine)
):
    """Bank transfers stay pending until the reconciliation loop verifies them."""
    return await engine.submit_bank_payment(user.id, request.method_id, request.file_data_url, request.use_tokens)


@settlement_router.get("/payments")
async def get_my_payments(user: User = Depends(get_current_user), engine: SettlementEngine = Depends(get_engine)):
    payments = await engine.get_payments_for_user(user.id)
    return {"payments": payments, "count": len(payments)}


# ==================== GENERATION GATE ====================

@settlement_router.post("/generation/check")
async def check_generation(
    request: GenerationRequest,
    user: User = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_engine)
):
    allowed = await engine.can_generate(user.id, request.kind, request.without_watermark)
    return {"allowed": allowed}


@settlement_router.post("/generation/consume")
async def consume_generation(
    request: GenerationRequest,
    user: User = Depends(get_current_user),
    engine: SettlementEngine = Depends(get_engine)
):
    """Charge one generation. 402 when neither quota nor tokens cover it."""
    if not await engine.consume_on_generate(user.id, request.kind, request.without_watermark):
        raise HTTPException(status_code=402, detail="Not enough credits or tokens for this generation.")
    return {
        "allowed": True,
        "credits": await engine.get_credits(user.id),
        "token_balance": await engine.get_ledger_balance(user.id),
    }


# ==================== ADMIN ENDPOINTS ====================

@settlement_router.get("/admin/payments")
async def admin_list_payments(
    status: str = Query(None, description="Filter by status"),
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    payments = await engine.list_payments()
    if status:
        payments = [p for p in payments if p.status == status]
    return {"payments": payments, "count": len(payments)}


@settlement_router.post("/admin/payments/{payment_id}/approve")
async def admin_approve_payment(
    payment_id: str,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    logger.info(f"Admin {admin.email} approving payment {payment_id}")
    return await engine.approve_payment(payment_id)


@settlement_router.post("/admin/payments/{payment_id}/reject")
async def admin_reject_payment(
    payment_id: str,
    request: Optional[RejectRequest] = None,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    """Reject a pending payment or revert an approved one."""
    logger.info(f"Admin {admin.email} rejecting payment {payment_id}")
    return await engine.reject_payment(payment_id, request.reason if request else None)


@settlement_router.post("/admin/payments/{payment_id}/requeue")
async def admin_requeue_payment(
    payment_id: str,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    return await engine.requeue_payment(payment_id)


@settlement_router.post("/admin/payments/{payment_id}/revalidate")
async def admin_revalidate_payment(
    payment_id: str,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    return await engine.revalidate_payment(payment_id)


@settlement_router.delete("/admin/payments/{payment_id}")
async def admin_delete_payment(
    payment_id: str,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    await engine.delete_payment(payment_id)
    return {"deleted": payment_id}


@settlement_router.get("/admin/users")
async def admin_list_users(admin: User = Depends(get_admin_user), engine: SettlementEngine = Depends(get_engine)):
    users = await engine.list_users()
    return {"users": users, "count": len(users)}


@settlement_router.get("/admin/users/{user_id}")
async def admin_user_overview(
    user_id: str,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    return await engine.get_user_overview(user_id)


@settlement_router.post("/admin/users/{user_id}/grant")
async def admin_grant_tokens(
    user_id: str,
    request: GrantRequest,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    logger.info(f"Admin {admin.email} granting {request.amount} tokens to {user_id}")
    return await engine.grant_tokens(user_id, request.amount)


@settlement_router.put("/admin/payment-methods/{method_id}")
async def admin_save_payment_method(
    method_id: str,
    method: PaymentMethod,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    if method.id != method_id:
        raise HTTPException(status_code=400, detail="Method ID in path and body must match.")
    return await engine.save_payment_method(method)


@settlement_router.put("/admin/plan-price")
async def admin_set_plan_price(
    request: PlanPriceRequest,
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    return {"plan_price": await engine.set_plan_price(request.price)}


@settlement_router.get("/admin/emails")
async def admin_list_emails(admin: User = Depends(get_admin_user), engine: SettlementEngine = Depends(get_engine)):
    emails = await engine.list_sent_emails()
    return {"emails": emails, "count": len(emails)}


@settlement_router.post("/admin/reconciliation/run")
async def admin_run_reconciliation(
    admin: User = Depends(get_admin_user),
    engine: SettlementEngine = Depends(get_engine)
):
    """Run one reconciliation scan now instead of waiting for the scheduler."""
    settled = await engine.run_reconciliation_scan()
    return {"settled": settled, "count": len(settled)}
