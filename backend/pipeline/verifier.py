"""
Provider Event Verifier
=======================
Establishes that an inbound confirmation really came from the payment
provider, then parses it into a VerifiedEvent.

Three protocols:
- Signed webhooks (Stripe, Authorize.net): HMAC over the raw body, checked
  before any JSON parsing.
- Unsigned pushes (Affirm, Klarna): the referenced charge/order is read back
  from the provider API; only the API answer is trusted.
- Redirect confirmations: a server-side round trip (session retrieval,
  charge authorize + capture, order creation).

No automatic retry anywhere in this module.
"""

import hashlib
import hmac
import json
from typing import Any, Mapping, Optional

import stripe
import structlog
from pydantic import ValidationError

from config import Settings
from pipeline.catalog import resolve_sku
from pipeline.errors import ProviderAPIError, VerificationError, VerificationFailure
from pipeline.providers import AffirmClient, KlarnaClient, StripeGateway
from schemas.events import (
    AffirmEvent,
    AffirmPush,
    AuthorizeNetEnvelope,
    AuthorizeNetEvent,
    CheckoutItem,
    KlarnaEvent,
    KlarnaPush,
    StripeEnvelope,
    StripeEvent,
    VerifiedEvent,
)
from schemas.payments import Provider


STRIPE_SIGNATURE_HEADER = "stripe-signature"
AUTHORIZE_NET_SIGNATURE_HEADER = "x-anet-signature"

SIGNED_WEBHOOK_PROVIDERS = frozenset({Provider.CARD_DIRECT, Provider.CARD_GATEWAY})
PUSH_PROVIDERS = frozenset({Provider.BNPL_A, Provider.BNPL_B})

STRIPE_PAID_STATUSES = frozenset({"paid", "no_payment_required"})

# Push events that claim money moved must be backed by a live charge/order
AFFIRM_PAID_EVENTS = frozenset({"charge.captured"})
AFFIRM_LIVE_CHARGE_STATUSES = frozenset({"authorized", "captured"})
KLARNA_PAID_EVENTS = frozenset({"checkout_complete", "order_approved", "order_captured"})


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, candidate in headers.items():
        if key.lower() == lowered:
            return candidate
    return None


# =============================================================================
# SIGNATURE CHECKS (pure, synchronous)
# =============================================================================

def verify_stripe_signature(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
    tolerance: int = 300,
) -> None:
    """Stripe-Signature: t=<ts>,v1=<hex hmac-sha256 of "t.body">"""
    signature = _header(headers, STRIPE_SIGNATURE_HEADER)
    if not secret:
        raise VerificationError(VerificationFailure.INVALID_SIGNATURE, "stripe webhook secret not configured")
    if not signature:
        raise VerificationError(VerificationFailure.INVALID_SIGNATURE, "missing Stripe-Signature header")

    try:
        payload = raw_body.decode("utf-8")
    except UnicodeDecodeError as e:
        raise VerificationError(VerificationFailure.INVALID_SIGNATURE, "body is not UTF-8") from e

    try:
        stripe.WebhookSignature.verify_header(payload, signature, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise VerificationError(VerificationFailure.INVALID_SIGNATURE, str(e)) from e


def verify_authorize_net_signature(
    raw_body: bytes,
    headers: Mapping[str, str],
    secret: Optional[str],
) -> None:
    """X-ANET-Signature: sha512=<HEX hmac-sha512 of body>"""
    signature = _header(headers, AUTHORIZE_NET_SIGNATURE_HEADER)
    if not secret:
        raise VerificationError(VerificationFailure.INVALID_SIGNATURE, "signature key not configured")
    if not signature:
        raise VerificationError(VerificationFailure.INVALID_SIGNATURE, "missing X-ANET-Signature header")

    scheme, _, provided = signature.partition("=")
    if scheme.strip().lower() != "sha512" or not provided:
        raise VerificationError(VerificationFailure.INVALID_SIGNATURE, "unsupported signature scheme")

    expected = hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest().upper()
    if not hmac.compare_digest(expected, provided.strip().upper()):
        raise VerificationError(VerificationFailure.INVALID_SIGNATURE, "signature mismatch")


def _load_json(raw_body: bytes) -> Any:
    try:
        return json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise VerificationError(VerificationFailure.MALFORMED_PAYLOAD, "body is not valid JSON") from e


def _require(params: Mapping[str, Any], *names: str) -> str:
    for name in names:
        value = params.get(name)
        if value:
            return str(value)
    raise VerificationError(VerificationFailure.MALFORMED_PAYLOAD, f"missing {' or '.join(names)}")


# =============================================================================
# VERIFIER
# =============================================================================

class ProviderEventVerifier:
    """
    Single entry point for every inbound confirmation.

    Example:
        verifier = ProviderEventVerifier(settings, stripe_gateway=gw, affirm=affirm, klarna=klarna)
        event = verifier.verify_webhook(Provider.CARD_DIRECT, body, request.headers)
    """

    def __init__(
        self,
        settings: Settings,
        stripe_gateway: Optional[StripeGateway] = None,
        affirm: Optional[AffirmClient] = None,
        klarna: Optional[KlarnaClient] = None,
    ):
        self.settings = settings
        self.stripe = stripe_gateway or StripeGateway(settings.stripe_secret_key)
        self.affirm = affirm or AffirmClient(settings)
        self.klarna = klarna or KlarnaClient(settings)
        self._logger = structlog.get_logger().bind(component="verifier")

    # -------------------------------------------------------------------------
    # Signed webhooks
    # -------------------------------------------------------------------------

    def verify_webhook(self, provider: Provider, raw_body: bytes, headers: Mapping[str, str]) -> VerifiedEvent:
        if provider == Provider.CARD_DIRECT:
            verify_stripe_signature(
                raw_body,
                headers,
                self.settings.stripe_webhook_secret,
                self.settings.stripe_webhook_tolerance_seconds,
            )
            try:
                envelope = StripeEnvelope.model_validate(_load_json(raw_body))
            except ValidationError as e:
                raise VerificationError(VerificationFailure.MALFORMED_PAYLOAD, str(e)) from e
            return StripeEvent(
                event_id=envelope.id,
                event_type=envelope.type,
                data_object=envelope.data.object,
                created=envelope.created,
            )

        if provider == Provider.CARD_GATEWAY:
            verify_authorize_net_signature(raw_body, headers, self.settings.authorize_net_signature_key)
            try:
                envelope = AuthorizeNetEnvelope.model_validate(_load_json(raw_body))
            except ValidationError as e:
                raise VerificationError(VerificationFailure.MALFORMED_PAYLOAD, str(e)) from e
            return AuthorizeNetEvent(
                notification_id=envelope.notification_id,
                event_type=envelope.event_type,
                payload=envelope.payload,
            )

        raise VerificationError(
            VerificationFailure.INVALID_SIGNATURE,
            f"{provider.value} does not sign webhooks",
        )

    # -------------------------------------------------------------------------
    # Unsigned pushes (API read-back)
    # -------------------------------------------------------------------------

    async def verify_push(self, provider: Provider, raw_body: bytes) -> VerifiedEvent:
        data = _load_json(raw_body)

        if provider == Provider.BNPL_A:
            try:
                push = AffirmPush.model_validate(data)
            except ValidationError as e:
                raise VerificationError(VerificationFailure.MALFORMED_PAYLOAD, str(e)) from e

            charge = await self._provider_call(self.affirm.read_charge(push.data.id))
            if push.type in AFFIRM_PAID_EVENTS and charge.get("status") not in AFFIRM_LIVE_CHARGE_STATUSES:
                raise VerificationError(
                    VerificationFailure.NOT_APPROVED,
                    f"charge {push.data.id} status is {charge.get('status')}",
                )
            return AffirmEvent(
                source="push",
                event_type=push.type,
                charge_id=charge.get("id") or push.data.id,
                order_id=charge.get("order_id") or push.data.order_id,
                charge=charge,
            )

        if provider == Provider.BNPL_B:
            try:
                push = KlarnaPush.model_validate(data)
            except ValidationError as e:
                raise VerificationError(VerificationFailure.MALFORMED_PAYLOAD, str(e)) from e

            order = await self._provider_call(self.klarna.get_order(push.order_id))
            fraud_status = order.get("fraud_status")
            if push.event_type in KLARNA_PAID_EVENTS and fraud_status != "ACCEPTED":
                raise VerificationError(
                    VerificationFailure.NOT_APPROVED,
                    f"order {push.order_id} fraud_status is {fraud_status}",
                )
            await self._acknowledge_klarna(push.order_id)
            return KlarnaEvent(
                source="push",
                event_type=push.event_type,
                event_id=push.event_id,
                order_id=push.order_id,
                fraud_status=fraud_status,
                order=order,
            )

        raise VerificationError(
            VerificationFailure.INVALID_SIGNATURE,
            f"{provider.value} webhooks must be signed",
        )

    # -------------------------------------------------------------------------
    # Redirect confirmations (provider round trip)
    # -------------------------------------------------------------------------

    async def verify_redirect(self, provider: Provider, params: Mapping[str, Any]) -> VerifiedEvent:
        if provider == Provider.CARD_DIRECT:
            session_id = _require(params, "session_id")
            session = await self._provider_call(self.stripe.retrieve_session(session_id))
            if session.get("payment_status") not in STRIPE_PAID_STATUSES:
                raise VerificationError(
                    VerificationFailure.NOT_APPROVED,
                    f"session {session_id} payment_status is {session.get('payment_status')}",
                )
            return StripeEvent(
                source="redirect",
                event_id=f"redirect_{session_id}",
                event_type="checkout.session.completed",
                data_object=session,
            )

        if provider == Provider.BNPL_A:
            checkout_token = _require(params, "checkout_token", "token")
            order_id = params.get("order_id")
            charge = await self._provider_call(self.affirm.authorize(checkout_token, order_id))
            charge_id = charge.get("id")
            if not charge_id:
                raise VerificationError(VerificationFailure.NOT_APPROVED, "authorization returned no charge id")
            await self._provider_call(self.affirm.capture(charge_id, order_id or charge.get("order_id")))
            return AffirmEvent(
                event_type="charge.captured",
                charge_id=charge_id,
                order_id=order_id or charge.get("order_id"),
                charge={**charge, "status": "captured"},
            )

        if provider == Provider.BNPL_B:
            authorization_token = _require(params, "authorization_token", "token")
            order_request = self._klarna_order_request(params)
            created = await self._provider_call(self.klarna.create_order(authorization_token, order_request))
            fraud_status = created.get("fraud_status")
            if fraud_status != "ACCEPTED" or not created.get("order_id"):
                raise VerificationError(
                    VerificationFailure.NOT_APPROVED,
                    f"klarna fraud_status is {fraud_status}",
                )
            return KlarnaEvent(
                event_type="checkout_complete",
                order_id=created["order_id"],
                fraud_status=fraud_status,
                order={**order_request, **created},
            )

        raise VerificationError(
            VerificationFailure.MALFORMED_PAYLOAD,
            f"{provider.value} has no redirect confirmation",
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _provider_call(self, call) -> dict:
        try:
            return await call
        except ProviderAPIError as e:
            self._logger.warning(
                "provider_not_approved",
                provider=e.provider,
                status_code=e.status_code,
                detail=e.detail,
            )
            raise VerificationError(VerificationFailure.NOT_APPROVED, str(e)) from e

    async def _acknowledge_klarna(self, order_id: str) -> None:
        try:
            await self.klarna.acknowledge_order(order_id)
        except ProviderAPIError as e:
            self._logger.warning("klarna_acknowledge_failed", order_id=order_id, error=str(e))

    def _klarna_order_request(self, params: Mapping[str, Any]) -> dict:
        try:
            items = [CheckoutItem.model_validate(item) for item in params.get("items") or []]
        except ValidationError as e:
            raise VerificationError(VerificationFailure.MALFORMED_PAYLOAD, str(e)) from e
        if not items:
            raise VerificationError(VerificationFailure.MALFORMED_PAYLOAD, "klarna order needs items")

        order_lines = []
        for item in items:
            order_lines.append({
                "type": "physical",
                "reference": item.sku,
                "name": item.name or resolve_sku(item.sku).name,
                "quantity": item.quantity,
                "unit_price": item.unit_price,
                "total_amount": item.unit_price * item.quantity,
                "total_tax_amount": 0,
                "tax_rate": 0,
            })

        request = {
            "purchase_country": self.settings.klarna_purchase_country,
            "purchase_currency": str(params.get("currency") or self.settings.default_currency).upper(),
            "locale": "en-US",
            "order_amount": sum(line["total_amount"] for line in order_lines),
            "order_tax_amount": 0,
            "order_lines": order_lines,
        }
        if params.get("order_id"):
            request["merchant_reference1"] = str(params["order_id"])
        if params.get("email"):
            request["billing_address"] = {"email": str(params["email"])}
        return request
