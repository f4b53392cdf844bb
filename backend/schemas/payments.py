# schemas/payments.py
# ============================================================================
# CANONICAL PAYMENT RECORDS
# ============================================================================
# Provider-neutral models shared by the normalizer, materializer and
# document pipeline. Money is always an int of minor units (cents).
# ============================================================================

import random
import string
import time
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def major_to_minor(value) -> int:
    """Decimal major units ("49.99") -> int minor units, half-up."""
    amount = Decimal(str(value)) * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def minor_to_major(value: int) -> Decimal:
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def random_suffix(length: int = 5) -> str:
    """Upper-case alphanumeric suffix used in order, LMN and invoice numbers."""
    alphabet = string.ascii_uppercase + string.digits
    return "".join(random.choices(alphabet, k=length))


# ============================================================================
# ENUMS
# ============================================================================

class Provider(str, Enum):
    CARD_DIRECT = "card_direct"      # Stripe
    CARD_GATEWAY = "card_gateway"    # Authorize.net
    BNPL_A = "bnpl_a"                # Affirm
    BNPL_B = "bnpl_b"                # Klarna

    @property
    def slug(self) -> str:
        return PROVIDER_SLUGS[self]

    @property
    def display_name(self) -> str:
        return PROVIDER_DISPLAY_NAMES[self]

    @classmethod
    def from_slug(cls, value: str) -> "Provider":
        """Accept a URL slug ("authorize-net") or a raw enum value."""
        for provider, slug in PROVIDER_SLUGS.items():
            if value == slug:
                return provider
        return cls(value)


PROVIDER_SLUGS = {
    Provider.CARD_DIRECT: "stripe",
    Provider.CARD_GATEWAY: "authorize-net",
    Provider.BNPL_A: "affirm",
    Provider.BNPL_B: "klarna",
}

PROVIDER_DISPLAY_NAMES = {
    Provider.CARD_DIRECT: "Stripe",
    Provider.CARD_GATEWAY: "Authorize.net",
    Provider.BNPL_A: "Affirm",
    Provider.BNPL_B: "Klarna",
}


class CheckoutMode(str, Enum):
    SUBSCRIPTION = "subscription"
    ONE_TIME = "one_time"


class OrderStatus(str, Enum):
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


# paid is the only status that can move; refunded and cancelled are terminal
ALLOWED_ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PAID: frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


# ============================================================================
# LINE ITEMS & CONFIRMATIONS
# ============================================================================

class OrderLineItem(BaseModel):
    sku: str
    name: str
    quantity: int = Field(gt=0)
    unit_price_minor: int = Field(ge=0)
    category: str

    @computed_field
    @property
    def total_minor(self) -> int:
        return self.unit_price_minor * self.quantity


class PaymentConfirmation(BaseModel):
    """
    Canonical, provider-independent confirmation.

    Produced by the normalizer and consumed by the materializer. Every field
    is in internal units; nothing downstream looks at provider payloads.
    """

    provider: Provider
    external_reference: str = Field(min_length=1)
    amount_minor: int = Field(ge=0)
    currency: str = "USD"
    customer_email: str = ""
    customer_name: Optional[str] = None
    line_items: list[OrderLineItem] = Field(default_factory=list)
    mode: CheckoutMode = CheckoutMode.ONE_TIME

    order_status: OrderStatus = OrderStatus.PAID
    membership_status: MembershipStatus = MembershipStatus.ACTIVE
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    plan_tier: Optional[str] = None
    merchant_order_number: Optional[str] = None
    provider_event_id: Optional[str] = None
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @computed_field
    @property
    def items_total_minor(self) -> int:
        return sum(item.total_minor for item in self.line_items)

    @property
    def amount_matches_items(self) -> bool:
        """One-time confirmations with items should agree within one minor unit."""
        if self.mode != CheckoutMode.ONE_TIME or not self.line_items:
            return True
        return abs(self.amount_minor - self.items_total_minor) <= 1


# ============================================================================
# PERSISTED ENTITIES
# ============================================================================

class Order(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    order_number: str = Field(default_factory=lambda: Order.generate_order_number())
    customer_email: str
    customer_name: Optional[str] = None
    external_payment_reference: str
    provider: Provider
    status: OrderStatus = OrderStatus.PAID
    total_amount_minor: int = Field(ge=0)
    currency: str = "USD"
    items: list[OrderLineItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @staticmethod
    def generate_order_number() -> str:
        return f"ORD-{int(time.time() * 1000)}-{random_suffix()}"

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        return new_status in ALLOWED_ORDER_TRANSITIONS[self.status]

    def transition_to(self, new_status: OrderStatus) -> "Order":
        """Immutable status change; callers check can_transition_to first."""
        return self.model_copy(update={"status": new_status, "updated_at": utcnow()})


class Membership(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    subscription_id: str
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None
    plan_tier: Optional[str] = None
    subscription_status: MembershipStatus = MembershipStatus.ACTIVE
    provider: Provider
    cancelled_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
