import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import httpx
import pytest
import stripe

from config import Settings
from schemas.payments import Order, OrderLineItem, Provider
from storage.repositories import (
    InMemoryDocumentRepository,
    InMemoryMembershipRepository,
    InMemoryOrderRepository,
    InMemoryTables,
)


STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
AUTHORIZE_NET_SIGNATURE_KEY = "C0FFEE0123456789ABCDEF"


# =============================================================================
# SETTINGS & STORAGE
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        authorize_net_api_login_id="login",
        authorize_net_transaction_key="txkey",
        authorize_net_signature_key=AUTHORIZE_NET_SIGNATURE_KEY,
        authorize_net_api_url="https://anet.test/xml/v1/request.api",
        affirm_public_key="affirm_pub",
        affirm_private_key="affirm_priv",
        affirm_api_url="https://affirm.test",
        klarna_api_key="klarna_user",
        klarna_api_secret="klarna_pass",
        klarna_api_url="https://klarna.test",
        frontend_url="https://shop.test",
        internal_api_key="internal-key",
        backfill_enabled=False,
    )


@pytest.fixture
def tables():
    return InMemoryTables()


@pytest.fixture
def order_repo(tables):
    return InMemoryOrderRepository(tables)


@pytest.fixture
def membership_repo(tables):
    return InMemoryMembershipRepository(tables)


@pytest.fixture
def document_repo(tables):
    return InMemoryDocumentRepository(tables)


# =============================================================================
# SIGNING
# =============================================================================

@pytest.fixture
def sign_stripe():
    def sign(body: bytes, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: int = None) -> dict:
        timestamp = int(time.time()) if timestamp is None else timestamp
        signed = f"{timestamp}.{body.decode('utf-8')}".encode()
        digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
        return {"Stripe-Signature": f"t={timestamp},v1={digest}"}
    return sign


@pytest.fixture
def sign_authorize_net():
    def sign(body: bytes, key: str = AUTHORIZE_NET_SIGNATURE_KEY) -> dict:
        digest = hmac.new(key.encode(), body, hashlib.sha512).hexdigest().upper()
        return {"X-ANET-Signature": f"sha512={digest}"}
    return sign


# =============================================================================
# PROVIDER FAKES
# =============================================================================

class FakeCheckoutSessions:
    """Stands in for stripe.checkout.Session."""

    def __init__(self):
        self.sessions: dict[str, dict] = {}
        self.line_items: dict[str, list[dict]] = {}
        self.fail_line_items = False
        self.list_calls = 0

    def retrieve(self, session_id, **kwargs):
        if session_id not in self.sessions:
            raise stripe.InvalidRequestError(f"No such checkout.session: '{session_id}'", "id", http_status=404)
        return self.sessions[session_id]

    def list_line_items(self, session_id, **kwargs):
        self.list_calls += 1
        if self.fail_line_items:
            raise stripe.APIConnectionError("connection reset")
        return {"object": "list", "data": self.line_items.get(session_id, [])}


@pytest.fixture
def fake_stripe():
    return SimpleNamespace(checkout=SimpleNamespace(Session=FakeCheckoutSessions()))


@pytest.fixture
def mock_http():
    """Build an httpx.AsyncClient whose requests go to `handler` and are recorded."""

    def build(handler, base_url: str = "https://provider.test"):
        requests: list[httpx.Request] = []

        def recording(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return handler(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(recording), base_url=base_url)
        client.recorded = requests
        return client

    return build


# =============================================================================
# PAYLOADS
# =============================================================================

def stripe_line_item(sku: str, unit_amount: int, quantity: int = 1, name: str = None) -> dict:
    return {
        "id": f"li_{sku}",
        "object": "item",
        "description": name,
        "quantity": quantity,
        "amount_total": unit_amount * quantity,
        "price": {
            "id": f"price_{sku}",
            "unit_amount": unit_amount,
            "metadata": {"sku": sku},
            "product": {"id": f"prod_{sku}", "name": name or sku, "metadata": {"sku": sku}},
        },
    }


@pytest.fixture
def stripe_session():
    def build(
        session_id: str = "cs_test_123",
        payment_intent: str = "pi_123",
        amount_total: int = 50000,
        items: list[dict] = None,
        mode: str = "payment",
        **overrides,
    ) -> dict:
        session = {
            "id": session_id,
            "object": "checkout.session",
            "mode": mode,
            "payment_status": "paid",
            "status": "complete",
            "amount_total": amount_total,
            "currency": "usd",
            "payment_intent": payment_intent,
            "customer": "cus_123",
            "customer_details": {"email": "pat@example.com", "name": "Pat Example"},
            "metadata": {},
        }
        if items is not None:
            session["line_items"] = {"object": "list", "data": items}
        session.update(overrides)
        return session
    return build


@pytest.fixture
def stripe_event_body():
    def build(obj: dict, event_type: str = "checkout.session.completed", event_id: str = "evt_123") -> bytes:
        return json.dumps({
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "livemode": False,
            "data": {"object": obj},
        }).encode()
    return build


@pytest.fixture
def paid_order():
    def build(items: list[OrderLineItem] = None, total: int = None, **overrides) -> Order:
        items = items if items is not None else [
            OrderLineItem(sku="GLP-1-2T-10MG-03ML", name="GLP-1 (Tirzepatide) 10mg",
                          quantity=1, unit_price_minor=50000, category="metabolic"),
        ]
        values = dict(
            customer_email="pat@example.com",
            customer_name="Pat Example",
            external_payment_reference="pi_123",
            provider=Provider.CARD_DIRECT,
            total_amount_minor=total if total is not None else sum(i.total_minor for i in items),
            items=items,
        )
        values.update(overrides)
        return Order(**values)
    return build


@pytest.fixture
def stripe_item():
    return stripe_line_item
