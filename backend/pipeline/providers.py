"""
Provider API Clients
====================
Thin async clients for the four payment providers.

Features:
- StripeGateway: Stripe SDK wrapper (Checkout Session retrieval, line items)
- AuthorizeNetClient: getTransactionDetailsRequest over the JSON API
- AffirmClient: charge authorize / capture / read (Basic auth)
- KlarnaClient: order creation, order read-back, acknowledgement (Basic auth)

Every transport failure or non-2xx answer surfaces as ProviderAPIError.
No client retries on its own; redelivery is the provider's job.

pip install stripe httpx structlog
"""

import asyncio
import json
from typing import Any, Optional

import httpx
import stripe
import structlog

from config import Settings
from pipeline.errors import ProviderAPIError


def stripe_to_dict(obj: Any) -> dict:
    """StripeObject -> plain dict. Plain dicts pass through untouched."""
    if type(obj) is dict:
        return obj
    return json.loads(str(obj))


# =============================================================================
# STRIPE (card_direct)
# =============================================================================

class StripeGateway:
    """
    Read-only access to Checkout Sessions.

    The SDK is synchronous, so calls run in a worker thread. The SDK module
    is injectable for tests.
    """

    def __init__(self, api_key: Optional[str], stripe_client: Any = stripe):
        self._api_key = api_key
        self._stripe = stripe_client
        self._logger = structlog.get_logger().bind(component="stripe_gateway")

    async def retrieve_session(self, session_id: str) -> dict:
        try:
            session = await asyncio.to_thread(
                self._stripe.checkout.Session.retrieve,
                session_id,
                api_key=self._api_key,
                expand=["line_items", "line_items.data.price.product"],
            )
        except stripe.StripeError as e:
            self._logger.warning("stripe_session_retrieve_failed", session_id=session_id, error=str(e))
            raise ProviderAPIError("stripe", getattr(e, "http_status", None), str(e)) from e
        return stripe_to_dict(session)

    async def list_line_items(self, session_id: str) -> list[dict]:
        try:
            page = await asyncio.to_thread(
                self._stripe.checkout.Session.list_line_items,
                session_id,
                api_key=self._api_key,
                limit=100,
                expand=["data.price.product"],
            )
        except stripe.StripeError as e:
            raise ProviderAPIError("stripe", getattr(e, "http_status", None), str(e)) from e
        return stripe_to_dict(page).get("data", [])


# =============================================================================
# HTTP BASE
# =============================================================================

class ProviderHTTPClient:
    """Shared httpx plumbing. Pass `client` to inject a mock transport."""

    provider_name = "provider"

    def __init__(
        self,
        base_url: str,
        timeout: float,
        auth: Optional[httpx.Auth] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, auth=auth)
        self._logger = structlog.get_logger().bind(component=f"{self.provider_name}_client")

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            self._logger.warning("provider_transport_error", path=path, error=str(e))
            raise ProviderAPIError(self.provider_name, None, str(e)) from e

        if not response.is_success:
            self._logger.warning(
                "provider_non_2xx",
                path=path,
                status_code=response.status_code,
            )
            raise ProviderAPIError(self.provider_name, response.status_code, response.text[:500])
        return response

    async def _json(self, method: str, path: str, **kwargs) -> dict:
        response = await self._request(method, path, **kwargs)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise ProviderAPIError(self.provider_name, response.status_code, "invalid JSON body") from e


# =============================================================================
# AUTHORIZE.NET (card_gateway)
# =============================================================================

class AuthorizeNetClient(ProviderHTTPClient):
    provider_name = "authorize_net"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        super().__init__(settings.authorize_net_api_url, settings.provider_timeout_seconds, client=client)
        self._endpoint = settings.authorize_net_api_url
        self._login_id = settings.authorize_net_api_login_id
        self._transaction_key = settings.authorize_net_transaction_key

    async def get_transaction_details(self, trans_id: str) -> dict:
        body = {
            "getTransactionDetailsRequest": {
                "merchantAuthentication": {
                    "name": self._login_id,
                    "transactionKey": self._transaction_key,
                },
                "transId": trans_id,
            }
        }
        response = await self._request("POST", self._endpoint, json=body)

        # The API prefixes its JSON with a UTF-8 BOM
        try:
            data = json.loads(response.content.decode("utf-8-sig"))
        except ValueError as e:
            raise ProviderAPIError(self.provider_name, response.status_code, "invalid JSON body") from e

        result_code = data.get("messages", {}).get("resultCode")
        if result_code != "Ok":
            messages = data.get("messages", {}).get("message", [])
            detail = messages[0].get("text", "") if messages else "unknown error"
            raise ProviderAPIError(self.provider_name, response.status_code, detail)
        return data.get("transaction", {})


# =============================================================================
# AFFIRM (bnpl_a)
# =============================================================================

class AffirmClient(ProviderHTTPClient):
    provider_name = "affirm"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        auth = httpx.BasicAuth(settings.affirm_public_key or "", settings.affirm_private_key or "")
        super().__init__(settings.affirm_api_url, settings.provider_timeout_seconds, auth=auth, client=client)

    async def authorize(self, checkout_token: str, order_id: Optional[str] = None) -> dict:
        body = {"checkout_token": checkout_token}
        if order_id:
            body["order_id"] = order_id
        return await self._json("POST", "/api/v2/charges", json=body)

    async def capture(self, charge_id: str, order_id: Optional[str] = None) -> dict:
        body = {"order_id": order_id} if order_id else {}
        return await self._json("POST", f"/api/v2/charges/{charge_id}/capture", json=body)

    async def read_charge(self, charge_id: str) -> dict:
        return await self._json("GET", f"/api/v2/charges/{charge_id}")


# =============================================================================
# KLARNA (bnpl_b)
# =============================================================================

class KlarnaClient(ProviderHTTPClient):
    provider_name = "klarna"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        auth = httpx.BasicAuth(settings.klarna_api_key or "", settings.klarna_api_secret or "")
        super().__init__(settings.klarna_api_url, settings.provider_timeout_seconds, auth=auth, client=client)

    async def create_order(self, authorization_token: str, order: dict) -> dict:
        return await self._json(
            "POST",
            f"/payments/v1/authorizations/{authorization_token}/order",
            json=order,
        )

    async def get_order(self, order_id: str) -> dict:
        return await self._json("GET", f"/ordermanagement/v1/orders/{order_id}")

    async def acknowledge_order(self, order_id: str) -> None:
        await self._request("POST", f"/ordermanagement/v1/orders/{order_id}/acknowledge")
