"""Shared data models for the Memorychain settlement core.

All Pydantic models used across the verifier, the disclosure engine, the
stores and the HTTP surface.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Currency(str, Enum):
    """Supported settlement currencies."""

    MATIC = "MATIC"
    ETH = "ETH"
    BTC = "BTC"
    USDC = "USDC"


class PaymentStatus(str, Enum):
    """Payment intent lifecycle states."""

    CREATED = "created"
    AWAITING_TX = "awaiting_tx"
    CONFIRMING = "confirming"
    VERIFIED = "verified"
    EXPIRED = "expired"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (PaymentStatus.VERIFIED, PaymentStatus.EXPIRED, PaymentStatus.FAILED)


class CouponState(str, Enum):
    """Coupon disclosure lifecycle states."""

    LOCKED = "locked"
    REVEALED = "revealed"
    CLAIMED = "claimed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in (CouponState.CLAIMED, CouponState.EXPIRED)


class PaymentIntent(BaseModel):
    """A tracked cryptocurrency payment for a fiat price."""

    id: str = Field(description="Intent identifier, doubles as idempotency key")
    fiat_amount: Decimal = Field(description="Price in fiat (USD)")
    currency: Currency = Field(description="Settlement currency, fixed at creation")
    token_amount: Decimal = Field(description="Frozen token amount computed at creation")
    destination_address: str = Field(description="Address the payment must reach")
    required_confirmations: int = Field(description="Confirmations needed for Verified")

    status: PaymentStatus = Field(default=PaymentStatus.CREATED)
    tx_hash: Optional[str] = Field(default=None, description="Bound transaction, set once")
    confirmations: int = Field(default=0, description="Last observed confirmations")
    peak_confirmations: int = Field(default=0, description="Highest confirmations observed")
    reorg_suspected: bool = Field(
        default=False, description="A confirmation regression awaits recheck"
    )
    failure_reason: Optional[str] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0, description="Optimistic concurrency counter")
    metadata: dict[str, str] = Field(default_factory=dict, description="Opaque passthrough")

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class CouponDisclosure(BaseModel):
    """A threshold-encrypted promotional code tied to a receipt."""

    id: str
    receipt_id: str = Field(description="Owning receipt")
    holder_address: str = Field(description="Address allowed to reveal and claim")
    capsule: str
    ciphertext: str
    policy_id: str
    valid_from: datetime
    valid_until: datetime

    state: CouponState = Field(default=CouponState.LOCKED)
    revealed_plaintext: Optional[str] = Field(default=None, repr=False)
    claimed_by: Optional[str] = Field(default=None)
    claimed_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = Field(default=0)

    def in_window(self, now: datetime) -> bool:
        return self.valid_from <= now <= self.valid_until

    def public_view(self) -> dict:
        """Serializable view without the revealed code."""
        return self.model_dump(mode="json", exclude={"revealed_plaintext"})


class HolderProof(BaseModel):
    """Authorization credential presented when revealing or claiming a coupon."""

    holder: str = Field(description="Claimed holder address")
    signature: str = Field(description="Signature over the subject challenge")


class TransactionOutput(BaseModel):
    """One value transfer inside a transaction."""

    to: str
    value: Decimal


class TransactionInfo(BaseModel):
    """Chain view of a transaction, normalized across networks."""

    tx_hash: str
    exists: bool
    pending: bool = False
    outputs: list[TransactionOutput] = Field(default_factory=list)
    block_number: Optional[int] = None

    @property
    def to(self) -> Optional[str]:
        return self.outputs[0].to if self.outputs else None

    @property
    def value(self) -> Decimal:
        return self.outputs[0].value if self.outputs else Decimal(0)

    def amount_paid_to(self, address: str) -> Decimal:
        """Sum of outputs paying ``address`` (case-insensitive)."""
        target = address.lower()
        return sum((o.value for o in self.outputs if o.to.lower() == target), Decimal(0))


class EncryptedPayload(BaseModel):
    """Threshold encryption artifacts for a disclosure policy."""

    capsule: str
    ciphertext: str
    policy_id: str


class CurrencyInfo(BaseModel):
    """Public description of a supported currency."""

    code: Currency
    name: str
    network: str
    enabled: bool


# Largest price a single intent may carry, in USD
MAX_FIAT_AMOUNT = Decimal("1000000000")


# HTTP request / response bodies


class CreateIntentRequest(BaseModel):
    fiat_amount: Decimal = Field(gt=0, le=MAX_FIAT_AMOUNT)
    currency: Currency = Field(default=Currency.MATIC)
    metadata: dict[str, str] = Field(default_factory=dict)
    idempotency_key: Optional[str] = Field(default=None, min_length=1, max_length=128)


class VerifyPaymentRequest(BaseModel):
    tx_hash: str


class PaymentStatusResponse(BaseModel):
    """Summary used by polling clients."""

    payment_id: str
    status: Literal["pending", "completed", "expired", "failed"]
    intent_status: PaymentStatus
    tx_hash: Optional[str] = None
    confirmations: int = 0
    required_confirmations: int = 0


class CreateCouponRequest(BaseModel):
    receipt_id: str
    holder_address: str = Field(min_length=1)
    code: str = Field(min_length=1)
    valid_from: datetime
    valid_until: datetime
    coupon_id: Optional[str] = None


class HolderProofRequest(BaseModel):
    holder_proof: HolderProof


class RevealResponse(BaseModel):
    coupon_id: str
    code: str
