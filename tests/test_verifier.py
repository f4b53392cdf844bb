import json
import time
from decimal import Decimal

import httpx
import pytest

from pipeline.errors import VerificationError, VerificationFailure
from pipeline.providers import AffirmClient, KlarnaClient, StripeGateway
from pipeline.verifier import (
    ProviderEventVerifier,
    verify_authorize_net_signature,
    verify_stripe_signature,
)
from schemas.events import AffirmEvent, AuthorizeNetEvent, KlarnaEvent, StripeEvent
from schemas.payments import Provider

from conftest import AUTHORIZE_NET_SIGNATURE_KEY, STRIPE_WEBHOOK_SECRET


def _json_response(payload: dict, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, json=payload)


@pytest.fixture
def build_verifier(settings, fake_stripe, mock_http):
    def build(affirm_handler=None, klarna_handler=None):
        affirm_handler = affirm_handler or (lambda request: _json_response({}, 404))
        klarna_handler = klarna_handler or (lambda request: _json_response({}, 404))
        affirm = AffirmClient(settings, client=mock_http(affirm_handler, settings.affirm_api_url))
        klarna = KlarnaClient(settings, client=mock_http(klarna_handler, settings.klarna_api_url))
        verifier = ProviderEventVerifier(
            settings,
            stripe_gateway=StripeGateway(settings.stripe_secret_key, fake_stripe),
            affirm=affirm,
            klarna=klarna,
        )
        return verifier, affirm._client.recorded, klarna._client.recorded
    return build


# =============================================================================
# SIGNATURES
# =============================================================================

class TestStripeSignature:

    def test_valid_signature_accepted(self, sign_stripe):
        body = b'{"id": "evt_1"}'
        verify_stripe_signature(body, sign_stripe(body), STRIPE_WEBHOOK_SECRET)

    def test_header_lookup_is_case_insensitive(self, sign_stripe):
        body = b'{"id": "evt_1"}'
        headers = {"stripe-signature": sign_stripe(body)["Stripe-Signature"]}
        verify_stripe_signature(body, headers, STRIPE_WEBHOOK_SECRET)

    def test_tampered_body_rejected(self, sign_stripe):
        headers = sign_stripe(b'{"amount": 100}')
        with pytest.raises(VerificationError) as exc:
            verify_stripe_signature(b'{"amount": 1}', headers, STRIPE_WEBHOOK_SECRET)
        assert exc.value.reason == VerificationFailure.INVALID_SIGNATURE

    def test_wrong_secret_rejected(self, sign_stripe):
        body = b"{}"
        with pytest.raises(VerificationError) as exc:
            verify_stripe_signature(body, sign_stripe(body, secret="whsec_other"), STRIPE_WEBHOOK_SECRET)
        assert exc.value.reason == VerificationFailure.INVALID_SIGNATURE

    def test_stale_timestamp_rejected(self, sign_stripe):
        body = b"{}"
        headers = sign_stripe(body, timestamp=int(time.time()) - 3600)
        with pytest.raises(VerificationError) as exc:
            verify_stripe_signature(body, headers, STRIPE_WEBHOOK_SECRET, tolerance=300)
        assert exc.value.reason == VerificationFailure.INVALID_SIGNATURE

    def test_missing_header_rejected(self):
        with pytest.raises(VerificationError) as exc:
            verify_stripe_signature(b"{}", {}, STRIPE_WEBHOOK_SECRET)
        assert exc.value.reason == VerificationFailure.INVALID_SIGNATURE

    def test_unconfigured_secret_rejects_everything(self, sign_stripe):
        body = b"{}"
        with pytest.raises(VerificationError) as exc:
            verify_stripe_signature(body, sign_stripe(body), None)
        assert exc.value.reason == VerificationFailure.INVALID_SIGNATURE


class TestAuthorizeNetSignature:

    def test_valid_signature_accepted(self, sign_authorize_net):
        body = b'{"notificationId": "n1"}'
        verify_authorize_net_signature(body, sign_authorize_net(body), AUTHORIZE_NET_SIGNATURE_KEY)

    def test_lowercase_hex_accepted(self, sign_authorize_net):
        body = b'{"notificationId": "n1"}'
        header = sign_authorize_net(body)["X-ANET-Signature"]
        scheme, digest = header.split("=", 1)
        headers = {"x-anet-signature": f"{scheme}={digest.lower()}"}
        verify_authorize_net_signature(body, headers, AUTHORIZE_NET_SIGNATURE_KEY)

    def test_modified_body_rejected(self, sign_authorize_net):
        headers = sign_authorize_net(b'{"authAmount": 500.00}')
        with pytest.raises(VerificationError) as exc:
            verify_authorize_net_signature(b'{"authAmount": 5.00}', headers, AUTHORIZE_NET_SIGNATURE_KEY)
        assert exc.value.reason == VerificationFailure.INVALID_SIGNATURE

    def test_unsupported_scheme_rejected(self):
        with pytest.raises(VerificationError) as exc:
            verify_authorize_net_signature(b"{}", {"X-ANET-Signature": "md5=abc"}, AUTHORIZE_NET_SIGNATURE_KEY)
        assert exc.value.reason == VerificationFailure.INVALID_SIGNATURE


# =============================================================================
# SIGNED WEBHOOKS
# =============================================================================

class TestVerifyWebhook:

    def test_stripe_event_parsed_after_signature(self, build_verifier, sign_stripe, stripe_session, stripe_event_body):
        verifier, _, _ = build_verifier()
        body = stripe_event_body(stripe_session())

        event = verifier.verify_webhook(Provider.CARD_DIRECT, body, sign_stripe(body))

        assert isinstance(event, StripeEvent)
        assert event.event_id == "evt_123"
        assert event.event_type == "checkout.session.completed"
        assert event.data_object["payment_intent"] == "pi_123"
        assert event.source == "webhook"

    def test_signed_but_malformed_payload(self, build_verifier, sign_stripe):
        verifier, _, _ = build_verifier()
        body = json.dumps({"unexpected": True}).encode()

        with pytest.raises(VerificationError) as exc:
            verifier.verify_webhook(Provider.CARD_DIRECT, body, sign_stripe(body))
        assert exc.value.reason == VerificationFailure.MALFORMED_PAYLOAD

    def test_signed_but_not_json(self, build_verifier, sign_stripe):
        verifier, _, _ = build_verifier()
        body = b"not json at all"

        with pytest.raises(VerificationError) as exc:
            verifier.verify_webhook(Provider.CARD_DIRECT, body, sign_stripe(body))
        assert exc.value.reason == VerificationFailure.MALFORMED_PAYLOAD

    def test_authorize_net_event_parsed(self, build_verifier, sign_authorize_net):
        verifier, _, _ = build_verifier()
        body = json.dumps({
            "notificationId": "n-1",
            "eventType": "net.authorize.payment.authcapture.created",
            "eventDate": "2026-01-01T00:00:00Z",
            "webhookId": "wh-1",
            "payload": {"id": "60012345", "responseCode": 1, "authAmount": 500.00, "entityName": "transaction"},
        }).encode()

        event = verifier.verify_webhook(Provider.CARD_GATEWAY, body, sign_authorize_net(body))

        assert isinstance(event, AuthorizeNetEvent)
        assert event.payload.id == "60012345"
        assert event.payload.auth_amount == Decimal("500")

    def test_unsigned_provider_cannot_use_signed_path(self, build_verifier):
        verifier, _, _ = build_verifier()
        with pytest.raises(VerificationError) as exc:
            verifier.verify_webhook(Provider.BNPL_A, b"{}", {})
        assert exc.value.reason == VerificationFailure.INVALID_SIGNATURE


# =============================================================================
# UNSIGNED PUSHES
# =============================================================================

class TestVerifyPush:

    async def test_affirm_push_trusts_api_read_back(self, build_verifier):
        charge = {"id": "CHG-1", "order_id": "ORD-1", "status": "captured", "amount": 50000}
        verifier, affirm_calls, _ = build_verifier(affirm_handler=lambda request: _json_response(charge))
        body = json.dumps({"type": "charge.captured", "data": {"id": "CHG-1", "amount": 1}}).encode()

        event = await verifier.verify_push(Provider.BNPL_A, body)

        assert isinstance(event, AffirmEvent)
        assert event.source == "push"
        assert event.charge["amount"] == 50000
        assert affirm_calls[0].url.path == "/api/v2/charges/CHG-1"

    async def test_affirm_push_for_dead_charge_not_approved(self, build_verifier):
        charge = {"id": "CHG-1", "status": "voided"}
        verifier, _, _ = build_verifier(affirm_handler=lambda request: _json_response(charge))
        body = json.dumps({"type": "charge.captured", "data": {"id": "CHG-1"}}).encode()

        with pytest.raises(VerificationError) as exc:
            await verifier.verify_push(Provider.BNPL_A, body)
        assert exc.value.reason == VerificationFailure.NOT_APPROVED

    async def test_affirm_read_back_failure_not_approved(self, build_verifier):
        verifier, _, _ = build_verifier(affirm_handler=lambda request: _json_response({"message": "no"}, 404))
        body = json.dumps({"type": "charge.captured", "data": {"id": "CHG-404"}}).encode()

        with pytest.raises(VerificationError) as exc:
            await verifier.verify_push(Provider.BNPL_A, body)
        assert exc.value.reason == VerificationFailure.NOT_APPROVED

    async def test_klarna_push_verified_and_acknowledged(self, build_verifier):
        order = {"order_id": "K-1", "fraud_status": "ACCEPTED", "order_amount": 50000}

        def handler(request):
            if request.method == "POST":
                return httpx.Response(204)
            return _json_response(order)

        verifier, _, klarna_calls = build_verifier(klarna_handler=handler)
        body = json.dumps({"event_id": "e-1", "event_type": "order_captured", "order_id": "K-1"}).encode()

        event = await verifier.verify_push(Provider.BNPL_B, body)

        assert isinstance(event, KlarnaEvent)
        assert event.fraud_status == "ACCEPTED"
        assert [c.url.path for c in klarna_calls] == [
            "/ordermanagement/v1/orders/K-1",
            "/ordermanagement/v1/orders/K-1/acknowledge",
        ]

    async def test_klarna_acknowledge_failure_does_not_reject(self, build_verifier):
        def handler(request):
            if request.method == "POST":
                return httpx.Response(500)
            return _json_response({"order_id": "K-1", "fraud_status": "ACCEPTED"})

        verifier, _, _ = build_verifier(klarna_handler=handler)
        body = json.dumps({"event_type": "order_captured", "order_id": "K-1"}).encode()

        event = await verifier.verify_push(Provider.BNPL_B, body)
        assert event.order_id == "K-1"

    async def test_klarna_pending_fraud_status_not_approved(self, build_verifier):
        verifier, _, _ = build_verifier(
            klarna_handler=lambda request: _json_response({"order_id": "K-1", "fraud_status": "PENDING"})
        )
        body = json.dumps({"event_type": "order_approved", "order_id": "K-1"}).encode()

        with pytest.raises(VerificationError) as exc:
            await verifier.verify_push(Provider.BNPL_B, body)
        assert exc.value.reason == VerificationFailure.NOT_APPROVED

    async def test_malformed_push_body(self, build_verifier):
        verifier, _, _ = build_verifier()
        with pytest.raises(VerificationError) as exc:
            await verifier.verify_push(Provider.BNPL_B, b'{"event_type": "order_captured"}')
        assert exc.value.reason == VerificationFailure.MALFORMED_PAYLOAD


# =============================================================================
# REDIRECTS
# =============================================================================

class TestVerifyRedirect:

    async def test_stripe_session_paid(self, build_verifier, fake_stripe, stripe_session):
        fake_stripe.checkout.Session.sessions["cs_test_123"] = stripe_session()
        verifier, _, _ = build_verifier()

        event = await verifier.verify_redirect(Provider.CARD_DIRECT, {"session_id": "cs_test_123"})

        assert isinstance(event, StripeEvent)
        assert event.source == "redirect"
        assert event.event_type == "checkout.session.completed"

    async def test_stripe_session_unpaid_not_approved(self, build_verifier, fake_stripe, stripe_session):
        fake_stripe.checkout.Session.sessions["cs_test_123"] = stripe_session(payment_status="unpaid")
        verifier, _, _ = build_verifier()

        with pytest.raises(VerificationError) as exc:
            await verifier.verify_redirect(Provider.CARD_DIRECT, {"session_id": "cs_test_123"})
        assert exc.value.reason == VerificationFailure.NOT_APPROVED

    async def test_stripe_unknown_session_not_approved(self, build_verifier):
        verifier, _, _ = build_verifier()
        with pytest.raises(VerificationError) as exc:
            await verifier.verify_redirect(Provider.CARD_DIRECT, {"session_id": "cs_missing"})
        assert exc.value.reason == VerificationFailure.NOT_APPROVED

    async def test_stripe_missing_session_id(self, build_verifier):
        verifier, _, _ = build_verifier()
        with pytest.raises(VerificationError) as exc:
            await verifier.verify_redirect(Provider.CARD_DIRECT, {})
        assert exc.value.reason == VerificationFailure.MALFORMED_PAYLOAD

    async def test_affirm_authorize_then_capture(self, build_verifier):
        def handler(request):
            if request.url.path == "/api/v2/charges":
                return _json_response({"id": "CHG-9", "order_id": "ORD-9", "amount": 50000, "status": "authorized"})
            return _json_response({"id": "cap-1", "type": "capture", "amount": 50000})

        verifier, affirm_calls, _ = build_verifier(affirm_handler=handler)

        event = await verifier.verify_redirect(Provider.BNPL_A, {"checkout_token": "tok_1", "order_id": "ORD-9"})

        assert isinstance(event, AffirmEvent)
        assert event.event_type == "charge.captured"
        assert event.charge_id == "CHG-9"
        assert [c.url.path for c in affirm_calls] == ["/api/v2/charges", "/api/v2/charges/CHG-9/capture"]
        assert json.loads(affirm_calls[0].content) == {"checkout_token": "tok_1", "order_id": "ORD-9"}

    async def test_affirm_declined_authorization(self, build_verifier):
        verifier, affirm_calls, _ = build_verifier(
            affirm_handler=lambda request: _json_response({"code": "auth-declined"}, 400)
        )
        with pytest.raises(VerificationError) as exc:
            await verifier.verify_redirect(Provider.BNPL_A, {"token": "tok_1"})
        assert exc.value.reason == VerificationFailure.NOT_APPROVED
        assert len(affirm_calls) == 1

    async def test_klarna_order_created(self, build_verifier):
        verifier, _, klarna_calls = build_verifier(
            klarna_handler=lambda request: _json_response({"order_id": "K-7", "fraud_status": "ACCEPTED"})
        )
        params = {
            "authorization_token": "auth_1",
            "order_id": "ORD-7",
            "email": "pat@example.com",
            "items": [{"sku": "BPC157-10MG-03ML", "quantity": 2, "unit_price": 9900}],
        }

        event = await verifier.verify_redirect(Provider.BNPL_B, params)

        assert isinstance(event, KlarnaEvent)
        assert event.order_id == "K-7"
        sent = json.loads(klarna_calls[0].content)
        assert klarna_calls[0].url.path == "/payments/v1/authorizations/auth_1/order"
        assert sent["order_amount"] == 19800
        assert sent["merchant_reference1"] == "ORD-7"
        assert event.order["order_lines"][0]["name"] == "BPC-157 10mg"

    async def test_klarna_rejected_fraud_status(self, build_verifier):
        verifier, _, _ = build_verifier(
            klarna_handler=lambda request: _json_response({"order_id": "K-7", "fraud_status": "REJECTED"})
        )
        params = {"token": "auth_1", "items": [{"sku": "BPC157-10MG-03ML", "unit_price": 9900}]}

        with pytest.raises(VerificationError) as exc:
            await verifier.verify_redirect(Provider.BNPL_B, params)
        assert exc.value.reason == VerificationFailure.NOT_APPROVED

    async def test_klarna_requires_items(self, build_verifier):
        verifier, _, klarna_calls = build_verifier()
        with pytest.raises(VerificationError) as exc:
            await verifier.verify_redirect(Provider.BNPL_B, {"token": "auth_1"})
        assert exc.value.reason == VerificationFailure.MALFORMED_PAYLOAD

    async def test_card_gateway_has_no_redirect(self, build_verifier):
        verifier, _, _ = build_verifier()
        with pytest.raises(VerificationError) as exc:
            await verifier.verify_redirect(Provider.CARD_GATEWAY, {"token": "x"})
        assert exc.value.reason == VerificationFailure.MALFORMED_PAYLOAD
