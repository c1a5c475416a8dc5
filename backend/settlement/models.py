"""
Settlement Data Models

Pydantic models for ledger, account and payment records.
These define the structure of the documents held in the key-value store.
"""

from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Literal, Union, Dict, Any


TransactionType = Literal[
    "referral-signup-earn",
    "referral-upgrade-earn",
    "goal-bonus-earn",
    "admin-grant",
    "spend-on-image",
    "spend-on-video",
    "spend-on-upgrade-discount",
    "refund-upgrade-discount",
    "referral-upgrade-reversal",
]

MethodType = Literal["card", "crypto", "bank"]
PaymentStatus = Literal["pending", "approved", "rejected"]
Plan = Literal["free", "pro"]
ResourceKind = Literal["image", "video"]


# ==================== LEDGER MODELS ====================

class TokenTransaction(BaseModel):
    """Immutable ledger entry. Positive amounts earn, negative amounts spend."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    user_id: str
    type: TransactionType
    amount: int
    description: str = ""
    created_at: Optional[str] = None  # ISO datetime string
    related_payment_id: Optional[str] = None


# ==================== ACCOUNT MODELS ====================

class Credits(BaseModel):
    """Generation quotas, kept outside the ledger"""
    image: int = 0
    video: int = 0
    no_watermark: int = 0


class User(BaseModel):
    id: str
    email: str
    plan: Plan = "free"
    created_at: str
    subscription_start_date: Optional[str] = None
    plan_expiration_date: Optional[str] = None
    referred_by: Optional[str] = None
    referral_code: Optional[str] = None
    country: str = ""
    phone: str = ""
    is_admin: bool = False


class UserOverview(BaseModel):
    """Admin view of a user with ledger-derived figures"""
    user: User
    current_token_balance: int
    total_tokens_earned: int
    referrer_email: Optional[str] = None
    free_referrals_count: int = 0
    pro_referrals_count: int = 0
    credits: Credits
    token_transactions: List[TokenTransaction] = Field(default_factory=list)


# ==================== PAYMENT METHOD MODELS ====================

class PaymentMethod(BaseModel):
    """Rail configuration, edited from admin settings only"""
    id: str
    name: str
    type: MethodType
    description: str = ""
    is_enabled: bool = True
    # Bank
    account_holder: Optional[str] = None
    account_number: Optional[str] = None
    iban: Optional[str] = None
    swift: Optional[str] = None
    # Crypto
    address: Optional[str] = None
    network: Optional[str] = None
    crypto_symbol: Optional[str] = None


# ==================== PAYMENT MODELS ====================

class CardProof(BaseModel):
    kind: Literal["card"] = "card"
    transaction_id: Optional[str] = None


class CryptoProof(BaseModel):
    kind: Literal["crypto"] = "crypto"
    hash: str = ""
    explorer_url: Optional[str] = None


class BankProof(BaseModel):
    kind: Literal["bank"] = "bank"
    file_data_url: Optional[str] = None
    reference: Optional[str] = None


PaymentProof = Union[CardProof, CryptoProof, BankProof]


class Payment(BaseModel):
    """One settlement attempt. Only status and verification_error change after creation."""
    id: str
    user_id: str
    user_email: str
    method_id: Optional[str] = None
    method_name: str
    method_type: MethodType
    proof: PaymentProof = Field(..., discriminator="kind")
    status: PaymentStatus = "pending"
    created_at: str
    updated_at: Optional[str] = None
    # All amounts in USD
    plan_price: float
    token_discount: float = 0.0
    amount_paid: float
    tokens_debited: int = 0
    verification_error: Optional[str] = None
    # Card display fields
    cardholder_name: Optional[str] = None
    masked_card_number: Optional[str] = None


class CardDetails(BaseModel):
    """Sensitive card input. Never persisted."""
    cardholder_name: str = ""
    card_number: str = ""
    expiry_date: str = ""  # MM/YY
    cvc: str = ""


class UpgradeQuote(BaseModel):
    """Price breakdown for a Pro upgrade with optional token discount"""
    plan_price: float
    token_discount: float
    amount_paid: float
    tokens_to_use: int


# ==================== VERIFICATION MODELS ====================

class VerificationOutcome(BaseModel):
    """Result of a rail verification: success with a reference, or failure with a reason"""
    success: bool
    reference: Optional[str] = None
    reason: Optional[str] = None
    proof_updates: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def succeeded(cls, reference: str, proof_updates: Optional[Dict[str, Any]] = None) -> "VerificationOutcome":
        return cls(success=True, reference=reference, proof_updates=proof_updates or {})

    @classmethod
    def failed(cls, reason: str) -> "VerificationOutcome":
        return cls(success=False, reason=reason)


# ==================== REQUEST MODELS ====================

class UpgradeSelection(BaseModel):
    """Common fields of every payment submission"""
    method_id: str = Field(..., description="Payment method ID, e.g. card_default")
    use_tokens: bool = False


class CardPaymentRequest(UpgradeSelection):
    card: Optional[CardDetails] = None


class CryptoPaymentRequest(UpgradeSelection):
    hash: str = Field("", description="Transaction hash from a block explorer")


class BankPaymentRequest(UpgradeSelection):
    file_data_url: Optional[str] = Field(None, description="Proof of transfer as a data URL")


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class GenerationRequest(BaseModel):
    kind: ResourceKind
    without_watermark: bool = False


class GrantRequest(BaseModel):
    amount: int


class PlanPriceRequest(BaseModel):
    price: float


class RegisterRequest(BaseModel):
    email: str
    referral_code: Optional[str] = None
    country: str = ""
    phone: str = ""
