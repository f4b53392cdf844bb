import pytest
from fastapi.testclient import TestClient

import api.server
from api.server import create_app
from api.services import build_services
from pipeline.notifications import NullEmailClient


@pytest.fixture
def email():
    return NullEmailClient()


@pytest.fixture
def services(settings, fake_stripe, tables, email):
    return build_services(settings, stripe_client=fake_stripe, email_client=email, tables=tables)


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


@pytest.fixture
def post_checkout(client, sign_stripe, stripe_session, stripe_event_body, stripe_item):
    def post():
        body = stripe_event_body(stripe_session(items=[stripe_item("GLP-1-2T-10MG-03ML", 50000)]))
        return client.post(
            "/webhook/stripe",
            content=body,
            headers={**sign_stripe(body), "Content-Type": "application/json"},
        )
    return post


AUTH = {"Authorization": "Bearer internal-key"}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["storage"] == "memory"
        assert data["stripe_configured"] is True
        assert "X-Request-ID" in response.headers
        assert "X-Response-Time-Ms" in response.headers


class TestLifespan:

    def test_factory_app_configures_logging(self, settings, services, monkeypatch):
        calls = []
        monkeypatch.setattr(api.server, "configure_logging", lambda: calls.append(True))
        monkeypatch.setattr(api.server, "build_services", lambda s: services)

        with TestClient(create_app(settings=settings)) as client:
            assert client.get("/health").json()["storage"] == "memory"

        assert calls == [True]

    def test_injected_services_leave_logging_alone(self, services, monkeypatch):
        calls = []
        monkeypatch.setattr(api.server, "configure_logging", lambda: calls.append(True))

        with TestClient(create_app(services=services)):
            pass

        assert calls == []


class TestWebhook:

    def test_signed_checkout_creates_order(self, post_checkout, email):
        response = post_checkout()

        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["created"] is True
        assert data["order_number"].startswith("ORD-")
        assert data["lmn_number"].startswith("LMN-")
        assert data["invoice_number"].startswith("INV-")
        assert len(email.sent) == 1

    def test_redelivery_acknowledged_without_creating(self, post_checkout, email):
        first = post_checkout().json()
        second = post_checkout().json()

        assert second["received"] is True
        assert second["created"] is False
        assert second["order_number"] == first["order_number"]
        assert len(email.sent) == 1

    def test_unpaid_checkout_ignored(self, client, sign_stripe, stripe_session, stripe_event_body, stripe_item,
                                     tables, email):
        session = stripe_session(payment_status="unpaid", items=[stripe_item("GLP-1-2T-10MG-03ML", 50000)])
        body = stripe_event_body(session)

        response = client.post("/webhook/stripe", content=body, headers=sign_stripe(body))

        assert response.status_code == 200
        assert response.json()["ignored"] is True
        assert tables.orders == {}
        assert tables.lmns == {}
        assert email.sent == []

    def test_async_payment_succeeded_creates_order(self, client, sign_stripe, stripe_session, stripe_event_body,
                                                   stripe_item, email):
        session = stripe_session(items=[stripe_item("GLP-1-2T-10MG-03ML", 50000)])
        body = stripe_event_body(session, "checkout.session.async_payment_succeeded")

        response = client.post("/webhook/stripe", content=body, headers=sign_stripe(body))

        assert response.json()["created"] is True
        assert len(email.sent) == 1

    def test_invalid_signature_is_400(self, client, stripe_event_body, stripe_session):
        body = stripe_event_body(stripe_session())

        response = client.post("/webhook/stripe", content=body, headers={"Stripe-Signature": "t=1,v1=deadbeef"})

        assert response.status_code == 400
        assert response.json() == {
            "received": False,
            "error": "INVALID_SIGNATURE",
            "correlation_id": response.json()["correlation_id"],
        }

    def test_unknown_provider_is_404(self, client):
        assert client.post("/webhook/paypal", content=b"{}").status_code == 404


class TestConfirmRedirect:

    def test_paid_session_redirects_to_success(self, client, fake_stripe, stripe_session, stripe_item):
        fake_stripe.checkout.Session.sessions["cs_test_123"] = stripe_session(
            items=[stripe_item("GLP-1-2T-10MG-03ML", 50000)]
        )

        response = client.get("/confirm/stripe", params={"session_id": "cs_test_123"}, follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"].startswith("https://shop.test/success?order=ORD-")

    def test_unpaid_session_redirects_to_error(self, client, fake_stripe, stripe_session):
        fake_stripe.checkout.Session.sessions["cs_test_123"] = stripe_session(payment_status="unpaid")

        response = client.get("/confirm/stripe", params={"session_id": "cs_test_123"}, follow_redirects=False)

        assert response.status_code == 303
        assert response.headers["location"] == "https://shop.test/checkout/error?provider=stripe"

    def test_post_body_merged_with_query(self, client, fake_stripe, stripe_session):
        fake_stripe.checkout.Session.sessions["cs_test_123"] = stripe_session(items=[])

        response = client.post("/confirm/stripe", json={"session_id": "cs_test_123"}, follow_redirects=False)

        assert response.status_code == 303
        assert "/success?order=" in response.headers["location"]


class TestDocuments:

    def test_document_pdf_served(self, client, post_checkout):
        created = post_checkout().json()

        response = client.get(f"/document/{created['lmn_number']}", headers=AUTH)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/pdf"
        assert response.content.startswith(b"%PDF")

    def test_document_requires_internal_key(self, client, post_checkout):
        created = post_checkout().json()

        assert client.get(f"/document/{created['lmn_number']}").status_code == 401
        wrong = client.get(f"/document/{created['lmn_number']}", headers={"Authorization": "Bearer wrong"})
        assert wrong.status_code == 401

    def test_document_owner_check(self, client, post_checkout):
        created = post_checkout().json()
        url = f"/document/{created['lmn_number']}"

        other = client.get(url, headers={**AUTH, "X-Customer-Email": "someone@example.com"})
        owner = client.get(url, headers={**AUTH, "X-Customer-Email": "PAT@example.com"})

        assert other.status_code == 403
        assert owner.status_code == 200

    def test_documents_closed_without_configured_key(self, settings, fake_stripe, tables, email):
        open_settings = settings.model_copy(update={"internal_api_key": None})
        services = build_services(open_settings, stripe_client=fake_stripe, email_client=email, tables=tables)
        client = TestClient(create_app(services=services))

        assert client.get("/document/LMN-20260101-ZZZZZ").status_code == 401

    def test_unknown_document_is_404(self, client):
        assert client.get("/document/LMN-20260101-ZZZZZ", headers=AUTH).status_code == 404

    def test_order_documents_listing(self, client, post_checkout):
        created = post_checkout().json()

        response = client.get(f"/orders/{created['order_number']}/documents", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "paid"
        assert data["lmn"]["lmn_number"] == created["lmn_number"]
        assert data["lmn"]["url"] == f"/document/{created['lmn_number']}"
        assert data["invoice"]["invoice_number"] == created["invoice_number"]
        assert "pdf" not in data["invoice"]

    def test_order_documents_auth(self, client, post_checkout):
        created = post_checkout().json()
        url = f"/orders/{created['order_number']}/documents"

        assert client.get(url).status_code == 401
        assert client.get(url, headers={**AUTH, "X-Customer-Email": "someone@example.com"}).status_code == 403

    def test_order_documents_unknown_order(self, client):
        assert client.get("/orders/ORD-NOPE/documents", headers=AUTH).status_code == 404


class TestCustomerLmns:

    def test_lists_own_lmns(self, client, post_checkout):
        created = post_checkout().json()

        response = client.get("/customers/lmns", headers={**AUTH, "X-Customer-Email": "Pat@Example.com"})

        assert response.status_code == 200
        data = response.json()
        assert data["count"] == 1
        assert data["lmns"][0]["lmn_number"] == created["lmn_number"]
        assert data["lmns"][0]["url"] == f"/document/{created['lmn_number']}"
        assert "customer_name" not in data["lmns"][0]

    def test_other_customer_sees_nothing(self, client, post_checkout):
        post_checkout()

        response = client.get("/customers/lmns", headers={**AUTH, "X-Customer-Email": "someone@example.com"})

        assert response.json() == {"lmns": [], "count": 0}

    def test_requires_key_and_email(self, client):
        assert client.get("/customers/lmns", headers={"X-Customer-Email": "pat@example.com"}).status_code == 401
        assert client.get("/customers/lmns", headers=AUTH).status_code == 400


class TestAdmin:

    def test_requires_internal_key(self, client, post_checkout):
        created = post_checkout().json()

        response = client.post(
            f"/admin/orders/{created['order_number']}/documents",
            headers={"Authorization": "Bearer wrong"},
        )

        assert response.status_code == 401

    def test_regenerate_is_idempotent(self, client, post_checkout, email):
        created = post_checkout().json()

        response = client.post(f"/admin/orders/{created['order_number']}/documents", headers=AUTH)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["lmn_number"] == created["lmn_number"]
        assert data["invoice_number"] == created["invoice_number"]
        assert len(email.sent) == 1

    def test_unknown_order(self, client):
        response = client.post("/admin/orders/ORD-NOPE/documents", headers=AUTH)
        assert response.status_code == 404
