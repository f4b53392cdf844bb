# schemas/events.py
# ============================================================================
# VERIFIED PROVIDER EVENTS
# ============================================================================
# Tagged union of provider events that have passed verification. Nothing is
# constructed here unless its authenticity was established first (signature,
# provider round trip or API read-back).
# ============================================================================

from decimal import Decimal
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from schemas.payments import Provider


EventSource = Literal["webhook", "push", "redirect"]


# ============================================================================
# INBOUND ENVELOPES (shape checks before a verified event is built)
# ============================================================================

class StripeEnvelopeData(BaseModel):
    object: dict[str, Any]


class StripeEnvelope(BaseModel):
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: StripeEnvelopeData


class AuthorizeNetPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    entity_name: Optional[str] = Field(default=None, alias="entityName")
    response_code: Optional[int] = Field(default=None, alias="responseCode")
    auth_code: Optional[str] = Field(default=None, alias="authCode")
    auth_amount: Optional[Decimal] = Field(default=None, alias="authAmount")
    merchant_reference_id: Optional[str] = Field(default=None, alias="merchantReferenceId")
    invoice_number: Optional[str] = Field(default=None, alias="invoiceNumber")
    status: Optional[str] = None
    name: Optional[str] = None
    profile: Optional[dict[str, Any]] = None


class AuthorizeNetEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    notification_id: str = Field(alias="notificationId")
    event_type: str = Field(alias="eventType")
    event_date: Optional[str] = Field(default=None, alias="eventDate")
    webhook_id: Optional[str] = Field(default=None, alias="webhookId")
    payload: AuthorizeNetPayload


class AffirmPushData(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    order_id: Optional[str] = None
    amount: Optional[int] = None
    status: Optional[str] = None


class AffirmPush(BaseModel):
    type: str
    data: AffirmPushData


class KlarnaPush(BaseModel):
    event_id: Optional[str] = None
    event_type: str
    order_id: str


class CheckoutItem(BaseModel):
    """Cart line echoed back by the storefront on a Klarna redirect."""

    sku: str
    name: Optional[str] = None
    quantity: int = Field(default=1, gt=0)
    unit_price: int = Field(ge=0)  # minor units


# ============================================================================
# VERIFIED EVENTS
# ============================================================================

class StripeEvent(BaseModel):
    provider: Literal[Provider.CARD_DIRECT] = Provider.CARD_DIRECT
    source: EventSource = "webhook"
    event_id: str
    event_type: str
    data_object: dict[str, Any]
    created: Optional[int] = None


class AuthorizeNetEvent(BaseModel):
    provider: Literal[Provider.CARD_GATEWAY] = Provider.CARD_GATEWAY
    source: EventSource = "webhook"
    notification_id: str
    event_type: str
    payload: AuthorizeNetPayload


class AffirmEvent(BaseModel):
    provider: Literal[Provider.BNPL_A] = Provider.BNPL_A
    source: EventSource = "redirect"
    event_type: str
    charge_id: str
    order_id: Optional[str] = None
    charge: dict[str, Any] = Field(default_factory=dict)


class KlarnaEvent(BaseModel):
    provider: Literal[Provider.BNPL_B] = Provider.BNPL_B
    source: EventSource = "redirect"
    event_type: str
    event_id: Optional[str] = None
    order_id: str
    fraud_status: Optional[str] = None
    order: dict[str, Any] = Field(default_factory=dict)


VerifiedEvent = Annotated[
    Union[StripeEvent, AuthorizeNetEvent, AffirmEvent, KlarnaEvent],
    Field(discriminator="provider"),
]
