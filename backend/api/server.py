"""
Payment Reconciliation Server
=============================
FastAPI surface for provider confirmations and fulfilment documents:
- POST /webhook/{provider}        signed webhooks and unsigned BNPL pushes
- GET|POST /confirm/{provider}    customer redirect after checkout
- GET /document/{number}          LMN / invoice PDF
- GET /orders/{order_number}/documents
- GET /customers/lmns              LMNs for the signed-in customer
- POST /admin/orders/{order_number}/documents   support re-run
- GET /health

Run: uvicorn api.server:create_app --factory

Document routes carry medical data. Callers present the internal bearer key;
the storefront also forwards the signed-in customer as X-Customer-Email and
only that customer's records are returned.

pip install fastapi uvicorn pydantic structlog
"""

import asyncio
import hmac
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response

from api.services import Services, build_services
from config import Settings, configure_logging
from database import close_database, init_database
from pipeline.router import ConfirmationState, RouterOutcome
from schemas.payments import Provider

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


def _resolve_provider(slug: str) -> Provider:
    try:
        return Provider.from_slug(slug)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown payment provider '{slug}'")


def _services(request: Request) -> Services:
    return request.app.state.services


# =============================================================================
# APP FACTORY
# =============================================================================

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    """
    Build the application. Passing `services` skips logging and database setup, which is
    how tests run the full HTTP surface on in-memory storage.
    """
    settings = settings or (services.settings if services else Settings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.services is None:
            configure_logging()
        logger.info(
            "server_starting",
            version=VERSION,
            storage_configured=settings.storage_configured,
            email_configured=settings.email_configured,
        )
        owns_database = False
        if app.state.services is None:
            if settings.storage_configured:
                await init_database(settings)
                owns_database = True
            app.state.services = build_services(settings)

        backfill_task = None
        if settings.backfill_enabled:
            backfill_task = asyncio.create_task(app.state.services.backfill.backfill_loop())

        yield

        logger.info("server_shutting_down")
        if backfill_task is not None:
            backfill_task.cancel()
            try:
                await backfill_task
            except asyncio.CancelledError:
                pass
        await app.state.services.close()
        if owns_database:
            await close_database()

    app = FastAPI(
        title="Payment Reconciliation Service",
        description="Provider confirmations to orders, memberships, LMNs and invoices",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_url],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health")
    async def health_check(request: Request):
        services = _services(request)
        uptime = (datetime.now(timezone.utc) - request.app.state.started_at).total_seconds()
        return {
            "status": "healthy",
            "version": VERSION,
            "uptime_seconds": round(uptime, 2),
            "storage": services.storage_backend if services else "uninitialized",
            "storage_configured": settings.storage_configured,
            "email_configured": settings.email_configured,
            "stripe_configured": settings.stripe_configured,
        }

    # =========================================================================
    # CONFIRMATIONS
    # =========================================================================

    @app.post("/webhook/{provider_slug}")
    async def provider_webhook(provider_slug: str, request: Request):
        provider = _resolve_provider(provider_slug)
        raw_body = await request.body()

        outcome = await _services(request).router.handle_webhook(provider, raw_body, request.headers)
        return JSONResponse(_webhook_body(outcome), status_code=outcome.http_status)

    @app.api_route("/confirm/{provider_slug}", methods=["GET", "POST"])
    async def confirm_redirect(provider_slug: str, request: Request):
        provider = _resolve_provider(provider_slug)

        params: dict = dict(request.query_params)
        if request.method == "POST":
            try:
                body = await request.json()
            except ValueError:
                body = None
            if isinstance(body, dict):
                params.update(body)

        outcome = await _services(request).router.handle_redirect(provider, params)
        frontend = settings.frontend_url.rstrip("/")

        if outcome.state == ConfirmationState.REJECTED:
            query = urlencode({"provider": provider.slug})
            return RedirectResponse(f"{frontend}/checkout/error?{query}", status_code=303)

        if outcome.state == ConfirmationState.RETRY:
            return JSONResponse(
                {
                    "error": "Payment received but could not be recorded yet. Please retry shortly.",
                    "correlation_id": outcome.correlation_id,
                },
                status_code=503,
            )

        query = urlencode({"order": outcome.order_number}) if outcome.order_number else ""
        return RedirectResponse(f"{frontend}/success" + (f"?{query}" if query else ""), status_code=303)

    # =========================================================================
    # AUTH
    # =========================================================================

    def require_internal_key(authorization: Optional[str], required: bool = True):
        if not settings.internal_api_key:
            if required:
                raise HTTPException(status_code=401, detail="Unauthorized")
            return
        expected = f"Bearer {settings.internal_api_key}"
        if not authorization or not hmac.compare_digest(authorization, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")

    def require_owner(customer_email: Optional[str], record_email: str):
        """Support callers omit X-Customer-Email; customer callers see only their own records."""
        if customer_email is None:
            return
        if customer_email.strip().lower() != (record_email or "").strip().lower():
            raise HTTPException(status_code=403, detail="Forbidden")

    # =========================================================================
    # DOCUMENTS
    # =========================================================================

    @app.get("/document/{number}")
    async def get_document(
        number: str,
        request: Request,
        authorization: Optional[str] = Header(default=None),
        x_customer_email: Optional[str] = Header(default=None),
    ):
        require_internal_key(authorization)
        documents = _services(request).documents
        record = await documents.get_record(number)
        if record is None:
            raise HTTPException(status_code=404, detail="Document not found")
        require_owner(x_customer_email, record.customer_email)

        return Response(
            content=documents.pdf_for(record),
            media_type="application/pdf",
            headers={"Content-Disposition": f'inline; filename="{number}.pdf"'},
        )

    @app.get("/orders/{order_number}/documents")
    async def list_order_documents(
        order_number: str,
        request: Request,
        authorization: Optional[str] = Header(default=None),
        x_customer_email: Optional[str] = Header(default=None),
    ):
        require_internal_key(authorization)
        services = _services(request)
        order = await services.orders.get_by_order_number(order_number)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        require_owner(x_customer_email, order.customer_email)

        bundle = await services.documents.list_documents(order_number)
        lmn = bundle.lmn.model_dump(mode="json") if bundle.lmn else None
        invoice = bundle.invoice.model_dump(mode="json") if bundle.invoice else None
        if lmn:
            lmn["url"] = f"/document/{bundle.lmn_number}"
        if invoice:
            invoice["url"] = f"/document/{bundle.invoice_number}"

        return {
            "order_number": order.order_number,
            "status": order.status.value,
            "lmn": lmn,
            "invoice": invoice,
        }

    @app.get("/customers/lmns")
    async def list_customer_lmns(
        request: Request,
        authorization: Optional[str] = Header(default=None),
        x_customer_email: Optional[str] = Header(default=None),
    ):
        require_internal_key(authorization)
        if not x_customer_email or not x_customer_email.strip():
            raise HTTPException(status_code=400, detail="X-Customer-Email header required")

        records = await _services(request).documents.list_lmns(x_customer_email.strip())
        lmns = []
        for record in records:
            entry = record.model_dump(mode="json", include={
                "lmn_number", "order_number", "issue_date", "eligible_total_minor", "currency",
            })
            entry["item_count"] = len(record.items)
            entry["url"] = f"/document/{record.lmn_number}"
            lmns.append(entry)
        return {"lmns": lmns, "count": len(lmns)}

    @app.post("/admin/orders/{order_number}/documents")
    async def regenerate_documents(
        order_number: str,
        request: Request,
        authorization: Optional[str] = Header(default=None),
    ):
        require_internal_key(authorization, required=False)

        result = await _services(request).backfill.manual_backfill(order_number)
        if not result["success"] and result.get("error") == "Order not found":
            raise HTTPException(status_code=404, detail=result["error"])
        if not result["success"] and "error" in result:
            raise HTTPException(status_code=409, detail=result["error"])
        return result

    return app


def _webhook_body(outcome: RouterOutcome) -> dict:
    if outcome.state == ConfirmationState.REJECTED:
        return {
            "received": False,
            "error": outcome.rejection_reason.value if outcome.rejection_reason else "rejected",
            "correlation_id": outcome.correlation_id,
        }
    if outcome.state == ConfirmationState.RETRY:
        return {
            "received": False,
            "error": "storage_unavailable",
            "correlation_id": outcome.correlation_id,
        }
    return {
        "received": True,
        "ignored": outcome.ignored,
        "created": outcome.created,
        "order_number": outcome.order_number,
        "lmn_number": outcome.lmn_number,
        "invoice_number": outcome.invoice_number,
        "correlation_id": outcome.correlation_id,
    }


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level="info",
    )
