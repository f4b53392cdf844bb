"""
Confirmation Normalizer
=======================
Turns a VerifiedEvent into the canonical PaymentConfirmation.

Features:
- Per-provider registry (@normalizer.register(Provider.X))
- Mode detection from the provider's own mode flag
- Line items taken from the payload, else fetched; a failed fetch degrades
  to an empty list instead of failing the confirmation
- All amounts converted to int minor units here and nowhere else
"""

import uuid
from typing import Any, Awaitable, Callable, Optional

import structlog

from pipeline.catalog import resolve_category, resolve_sku
from pipeline.errors import DegradedPipelineError, ProviderAPIError
from pipeline.providers import AuthorizeNetClient, StripeGateway
from pipeline.verifier import STRIPE_PAID_STATUSES
from schemas.events import AffirmEvent, AuthorizeNetEvent, KlarnaEvent, StripeEvent, VerifiedEvent
from schemas.payments import (
    CheckoutMode,
    MembershipStatus,
    OrderLineItem,
    OrderStatus,
    PaymentConfirmation,
    Provider,
    major_to_minor,
)


NormalizeHandler = Callable[[Any, str], Awaitable[PaymentConfirmation]]


# =============================================================================
# EVENT TYPE TABLES
# =============================================================================

# Delayed payment methods complete unpaid and settle via async_payment_succeeded
STRIPE_CHECKOUT_EVENTS = frozenset({
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
})

STRIPE_ONE_TIME_EVENTS = {
    "charge.refunded": OrderStatus.REFUNDED,
}

STRIPE_SUBSCRIPTION_EVENTS = {
    "customer.subscription.created": None,
    "customer.subscription.updated": None,
    "customer.subscription.deleted": MembershipStatus.CANCELLED,
    "invoice.payment_succeeded": MembershipStatus.ACTIVE,
    "invoice.payment_failed": MembershipStatus.PAST_DUE,
}

STRIPE_SUBSCRIPTION_STATUS = {
    "active": MembershipStatus.ACTIVE,
    "trialing": MembershipStatus.ACTIVE,
    "past_due": MembershipStatus.PAST_DUE,
    "unpaid": MembershipStatus.PAST_DUE,
    "incomplete": MembershipStatus.PAST_DUE,
    "canceled": MembershipStatus.CANCELLED,
    "incomplete_expired": MembershipStatus.CANCELLED,
}

AUTHORIZE_NET_PAYMENT_EVENTS = {
    "net.authorize.payment.authcapture.created": OrderStatus.PAID,
    "net.authorize.payment.capture.created": OrderStatus.PAID,
    "net.authorize.payment.fraud.approved": OrderStatus.PAID,
    "net.authorize.payment.void.created": OrderStatus.CANCELLED,
    "net.authorize.payment.fraud.declined": OrderStatus.CANCELLED,
    "net.authorize.payment.refund.created": OrderStatus.REFUNDED,
}

AUTHORIZE_NET_SUBSCRIPTION_EVENTS = {
    "net.authorize.customer.subscription.created": MembershipStatus.ACTIVE,
    "net.authorize.customer.subscription.updated": MembershipStatus.ACTIVE,
    "net.authorize.customer.subscription.suspended": MembershipStatus.PAST_DUE,
    "net.authorize.customer.subscription.terminated": MembershipStatus.CANCELLED,
    "net.authorize.customer.subscription.cancelled": MembershipStatus.CANCELLED,
}

AFFIRM_EVENTS = {
    "charge.captured": OrderStatus.PAID,
    "charge.voided": OrderStatus.CANCELLED,
    "charge.refunded": OrderStatus.REFUNDED,
}

KLARNA_EVENTS = {
    "checkout_complete": OrderStatus.PAID,
    "order_approved": OrderStatus.PAID,
    "order_captured": OrderStatus.PAID,
    "order_cancelled": OrderStatus.CANCELLED,
    "order_refunded": OrderStatus.REFUNDED,
}

KLARNA_NON_PRODUCT_LINES = frozenset({"discount", "shipping_fee", "sales_tax", "surcharge"})


def _object_id(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _stripe_invoice_subscription(invoice: dict) -> Optional[str]:
    subscription = _object_id(invoice.get("subscription"))
    if subscription:
        return subscription
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def _build_item(sku: Optional[str], name: Optional[str], quantity: Any, unit_price_minor: int,
                declared_category: Optional[str] = None) -> OrderLineItem:
    sku = sku or (name or "UNKNOWN")
    return OrderLineItem(
        sku=sku,
        name=name or resolve_sku(sku).name,
        quantity=max(int(quantity or 1), 1),
        unit_price_minor=max(unit_price_minor, 0),
        category=resolve_category(sku, declared_category),
    )


# =============================================================================
# NORMALIZER
# =============================================================================

class ConfirmationNormalizer:
    """
    Registry-dispatched normalizer.

    Example:
        normalizer = ConfirmationNormalizer(stripe_gateway=gw, authorize_net=anet)
        if normalizer.supports(event):
            confirmation = await normalizer.normalize(event, correlation_id)
    """

    def __init__(
        self,
        stripe_gateway: Optional[StripeGateway] = None,
        authorize_net: Optional[AuthorizeNetClient] = None,
        default_currency: str = "USD",
    ):
        self.stripe = stripe_gateway
        self.authorize_net = authorize_net
        self.default_currency = default_currency
        self._handlers: dict[Provider, NormalizeHandler] = {}
        self._logger = structlog.get_logger().bind(component="normalizer")
        self._register_handlers()

    def register(self, provider: Provider):
        """Decorator to register the normalizer for a provider"""
        def decorator(handler: NormalizeHandler):
            self._handlers[provider] = handler
            self._logger.debug("normalizer_registered", provider=provider.value)
            return handler
        return decorator

    def supports(self, event: VerifiedEvent) -> bool:
        if event.provider not in self._handlers:
            return False

        if isinstance(event, StripeEvent):
            if event.event_type in STRIPE_CHECKOUT_EVENTS:
                if event.data_object.get("mode") == "subscription":
                    return event.event_type == "checkout.session.completed"
                return event.data_object.get("payment_status") in STRIPE_PAID_STATUSES
            if event.event_type in STRIPE_ONE_TIME_EVENTS:
                return bool(event.data_object.get("payment_intent"))
            if event.event_type.startswith("invoice."):
                return (
                    event.event_type in STRIPE_SUBSCRIPTION_EVENTS
                    and _stripe_invoice_subscription(event.data_object) is not None
                )
            return event.event_type in STRIPE_SUBSCRIPTION_EVENTS

        if isinstance(event, AuthorizeNetEvent):
            return (
                event.event_type in AUTHORIZE_NET_PAYMENT_EVENTS
                or event.event_type in AUTHORIZE_NET_SUBSCRIPTION_EVENTS
            )

        if isinstance(event, AffirmEvent):
            return event.event_type in AFFIRM_EVENTS

        if isinstance(event, KlarnaEvent):
            return event.event_type in KLARNA_EVENTS

        return False

    async def normalize(self, event: VerifiedEvent, correlation_id: Optional[str] = None) -> PaymentConfirmation:
        correlation_id = correlation_id or str(uuid.uuid4())
        handler = self._handlers[event.provider]
        confirmation = await handler(event, correlation_id)

        if not confirmation.amount_matches_items:
            self._logger.warning(
                "amount_discrepancy",
                correlation_id=correlation_id,
                provider=confirmation.provider.value,
                external_reference=confirmation.external_reference,
                amount_minor=confirmation.amount_minor,
                items_total_minor=confirmation.items_total_minor,
            )
        return confirmation

    def _line_items_unavailable(self, provider: Provider, reference: str, error: Exception, correlation_id: str):
        degraded = DegradedPipelineError("line_items", str(error))
        self._logger.warning(
            "line_items_unavailable",
            correlation_id=correlation_id,
            provider=provider.value,
            external_reference=reference,
            error=str(degraded),
        )

    # =========================================================================
    # PROVIDER HANDLERS
    # =========================================================================

    def _register_handlers(self):

        @self.register(Provider.CARD_DIRECT)
        async def normalize_stripe(event: StripeEvent, correlation_id: str):
            return await self._normalize_stripe(event, correlation_id)

        @self.register(Provider.CARD_GATEWAY)
        async def normalize_authorize_net(event: AuthorizeNetEvent, correlation_id: str):
            return await self._normalize_authorize_net(event, correlation_id)

        @self.register(Provider.BNPL_A)
        async def normalize_affirm(event: AffirmEvent, correlation_id: str):
            return self._normalize_affirm(event, correlation_id)

        @self.register(Provider.BNPL_B)
        async def normalize_klarna(event: KlarnaEvent, correlation_id: str):
            return self._normalize_klarna(event, correlation_id)

    # -------------------------------------------------------------------------
    # Stripe
    # -------------------------------------------------------------------------

    async def _normalize_stripe(self, event: StripeEvent, correlation_id: str) -> PaymentConfirmation:
        obj = event.data_object
        metadata = obj.get("metadata") or {}

        if event.event_type in STRIPE_CHECKOUT_EVENTS:
            details = obj.get("customer_details") or {}
            email = details.get("email") or obj.get("customer_email") or ""
            common = dict(
                provider=Provider.CARD_DIRECT,
                amount_minor=int(obj.get("amount_total") or 0),
                currency=obj.get("currency") or self.default_currency,
                customer_email=email,
                customer_name=details.get("name"),
                customer_id=_object_id(obj.get("customer")),
                provider_event_id=event.event_id,
                correlation_id=correlation_id,
            )

            if obj.get("mode") == "subscription":
                subscription_id = _object_id(obj.get("subscription")) or obj["id"]
                return PaymentConfirmation(
                    **common,
                    external_reference=subscription_id,
                    mode=CheckoutMode.SUBSCRIPTION,
                    subscription_id=subscription_id,
                    plan_tier=metadata.get("plan_tier") or metadata.get("tier"),
                )

            reference = _object_id(obj.get("payment_intent")) or obj["id"]
            return PaymentConfirmation(
                **common,
                external_reference=reference,
                mode=CheckoutMode.ONE_TIME,
                line_items=await self._stripe_line_items(obj, reference, correlation_id),
                merchant_order_number=metadata.get("order_number"),
            )

        if event.event_type in STRIPE_ONE_TIME_EVENTS:
            return PaymentConfirmation(
                provider=Provider.CARD_DIRECT,
                external_reference=_object_id(obj.get("payment_intent")),
                amount_minor=int(obj.get("amount") or 0),
                currency=obj.get("currency") or self.default_currency,
                customer_email=(obj.get("billing_details") or {}).get("email") or obj.get("receipt_email") or "",
                mode=CheckoutMode.ONE_TIME,
                order_status=STRIPE_ONE_TIME_EVENTS[event.event_type],
                merchant_order_number=metadata.get("order_number"),
                provider_event_id=event.event_id,
                correlation_id=correlation_id,
            )

        # Subscription lifecycle
        if event.event_type.startswith("invoice."):
            subscription_id = _stripe_invoice_subscription(obj)
            status = STRIPE_SUBSCRIPTION_EVENTS[event.event_type]
            amount = int(obj.get("amount_paid") or obj.get("amount_due") or 0)
            email = obj.get("customer_email") or ""
        else:
            subscription_id = obj["id"]
            status = STRIPE_SUBSCRIPTION_EVENTS[event.event_type] or STRIPE_SUBSCRIPTION_STATUS.get(
                obj.get("status"), MembershipStatus.ACTIVE
            )
            amount = 0
            email = ""

        return PaymentConfirmation(
            provider=Provider.CARD_DIRECT,
            external_reference=subscription_id,
            amount_minor=amount,
            currency=obj.get("currency") or self.default_currency,
            customer_email=email,
            mode=CheckoutMode.SUBSCRIPTION,
            membership_status=status,
            subscription_id=subscription_id,
            customer_id=_object_id(obj.get("customer")),
            plan_tier=metadata.get("plan_tier") or metadata.get("tier"),
            provider_event_id=event.event_id,
            correlation_id=correlation_id,
        )

    async def _stripe_line_items(self, session: dict, reference: str, correlation_id: str) -> list[OrderLineItem]:
        raw_items = (session.get("line_items") or {}).get("data")
        if raw_items is None:
            if self.stripe is None:
                self._line_items_unavailable(
                    Provider.CARD_DIRECT, reference, RuntimeError("stripe not configured"), correlation_id
                )
                return []
            try:
                raw_items = await self.stripe.list_line_items(session["id"])
            except ProviderAPIError as e:
                self._line_items_unavailable(Provider.CARD_DIRECT, reference, e, correlation_id)
                return []

        items = []
        for raw in raw_items:
            price = raw.get("price") or {}
            product = price.get("product") if isinstance(price.get("product"), dict) else {}
            product_meta = product.get("metadata") or {}
            price_meta = price.get("metadata") or {}
            quantity = int(raw.get("quantity") or 1)
            unit_price = price.get("unit_amount")
            if unit_price is None:
                unit_price = int(raw.get("amount_subtotal") or raw.get("amount_total") or 0) // quantity
            items.append(_build_item(
                sku=product_meta.get("sku") or price_meta.get("sku") or price.get("lookup_key"),
                name=raw.get("description") or product.get("name"),
                quantity=quantity,
                unit_price_minor=int(unit_price),
                declared_category=product_meta.get("category") or price_meta.get("category"),
            ))
        return items

    # -------------------------------------------------------------------------
    # Authorize.net
    # -------------------------------------------------------------------------

    async def _normalize_authorize_net(self, event: AuthorizeNetEvent, correlation_id: str) -> PaymentConfirmation:
        payload = event.payload

        if event.event_type in AUTHORIZE_NET_SUBSCRIPTION_EVENTS:
            subscription_id = f"authnet_{payload.id}"
            profile = payload.profile or {}
            return PaymentConfirmation(
                provider=Provider.CARD_GATEWAY,
                external_reference=subscription_id,
                amount_minor=major_to_minor(payload.auth_amount or 0),
                customer_email=profile.get("email") or "",
                customer_id=profile.get("customerProfileId"),
                mode=CheckoutMode.SUBSCRIPTION,
                membership_status=AUTHORIZE_NET_SUBSCRIPTION_EVENTS[event.event_type],
                subscription_id=subscription_id,
                plan_tier=payload.name,
                provider_event_id=event.notification_id,
                correlation_id=correlation_id,
            )

        reference = f"authnet_{payload.id}"
        order_status = AUTHORIZE_NET_PAYMENT_EVENTS[event.event_type]
        transaction: dict = {}
        items: list[OrderLineItem] = []

        # Status-change events only need the reference; paid events need the cart
        if order_status == OrderStatus.PAID:
            if self.authorize_net is None:
                self._line_items_unavailable(
                    Provider.CARD_GATEWAY, reference, RuntimeError("authorize.net not configured"), correlation_id
                )
            else:
                try:
                    transaction = await self.authorize_net.get_transaction_details(payload.id)
                    items = self._authorize_net_line_items(transaction)
                except ProviderAPIError as e:
                    self._line_items_unavailable(Provider.CARD_GATEWAY, reference, e, correlation_id)

        amount = payload.auth_amount
        if amount is None:
            amount = transaction.get("settleAmount") or transaction.get("authAmount") or 0
        bill_to = transaction.get("billTo") or {}
        name = " ".join(part for part in (bill_to.get("firstName"), bill_to.get("lastName")) if part)

        return PaymentConfirmation(
            provider=Provider.CARD_GATEWAY,
            external_reference=reference,
            amount_minor=major_to_minor(amount),
            customer_email=(transaction.get("customer") or {}).get("email") or "",
            customer_name=name or None,
            line_items=items,
            mode=CheckoutMode.ONE_TIME,
            order_status=order_status,
            merchant_order_number=(
                payload.merchant_reference_id
                or payload.invoice_number
                or (transaction.get("order") or {}).get("invoiceNumber")
            ),
            provider_event_id=event.notification_id,
            correlation_id=correlation_id,
        )

    @staticmethod
    def _authorize_net_line_items(transaction: dict) -> list[OrderLineItem]:
        raw = transaction.get("lineItems") or []
        if isinstance(raw, dict):
            raw = raw.get("lineItem") or []
        if isinstance(raw, dict):
            raw = [raw]
        return [
            _build_item(
                sku=line.get("itemId"),
                name=line.get("name"),
                quantity=int(float(line.get("quantity") or 1)),
                unit_price_minor=major_to_minor(line.get("unitPrice") or 0),
            )
            for line in raw
        ]

    # -------------------------------------------------------------------------
    # Affirm
    # -------------------------------------------------------------------------

    def _normalize_affirm(self, event: AffirmEvent, correlation_id: str) -> PaymentConfirmation:
        charge = event.charge
        details = charge.get("details") or {}
        billing = details.get("billing") or {}
        billing_name = billing.get("name") or {}
        name = billing_name.get("full") or " ".join(
            part for part in (billing_name.get("first"), billing_name.get("last")) if part
        )

        raw_items = details.get("items") or {}
        if isinstance(raw_items, dict):
            raw_items = list(raw_items.values())
        items = [
            _build_item(
                sku=item.get("sku"),
                name=item.get("display_name"),
                quantity=item.get("qty"),
                unit_price_minor=int(item.get("unit_price") or 0),
                declared_category=(item.get("metadata") or {}).get("category"),
            )
            for item in raw_items
        ]

        return PaymentConfirmation(
            provider=Provider.BNPL_A,
            external_reference=f"affirm_{event.charge_id}",
            amount_minor=int(charge.get("amount") or details.get("total") or 0),
            currency=charge.get("currency") or details.get("currency") or self.default_currency,
            customer_email=billing.get("email") or "",
            customer_name=name or None,
            line_items=items,
            mode=CheckoutMode.ONE_TIME,
            order_status=AFFIRM_EVENTS[event.event_type],
            merchant_order_number=event.order_id,
            correlation_id=correlation_id,
        )

    # -------------------------------------------------------------------------
    # Klarna
    # -------------------------------------------------------------------------

    def _normalize_klarna(self, event: KlarnaEvent, correlation_id: str) -> PaymentConfirmation:
        order = event.order
        billing = order.get("billing_address") or {}
        name = " ".join(part for part in (billing.get("given_name"), billing.get("family_name")) if part)

        items = [
            _build_item(
                sku=line.get("reference"),
                name=line.get("name"),
                quantity=line.get("quantity"),
                unit_price_minor=int(line.get("unit_price") or 0),
            )
            for line in order.get("order_lines") or []
            if line.get("type") not in KLARNA_NON_PRODUCT_LINES
        ]

        return PaymentConfirmation(
            provider=Provider.BNPL_B,
            external_reference=f"klarna_{event.order_id}",
            amount_minor=int(order.get("order_amount") or order.get("original_order_amount") or 0),
            currency=order.get("purchase_currency") or self.default_currency,
            customer_email=billing.get("email") or "",
            customer_name=name or None,
            line_items=items,
            mode=CheckoutMode.ONE_TIME,
            order_status=KLARNA_EVENTS[event.event_type],
            merchant_order_number=order.get("merchant_reference1"),
            provider_event_id=event.event_id,
            correlation_id=correlation_id,
        )
