# api/services.py
# ============================================================================
# SERVICE WIRING
# ============================================================================
# Every component is built once here, from one Settings value, behind the
# capability checks: Postgres when DATABASE_URL is set (in-memory otherwise),
# Resend when RESEND_API_KEY is set (no-op otherwise).
# ============================================================================

from dataclasses import dataclass, field
from typing import Any, Optional

import stripe
import structlog

from config import Settings
from pipeline.documents import DocumentPipeline
from pipeline.materializer import OrderMaterializer
from pipeline.normalizer import ConfirmationNormalizer
from pipeline.notifications import IEmailClient, NotificationDispatcher, NullEmailClient, ResendEmailClient
from pipeline.providers import AffirmClient, AuthorizeNetClient, KlarnaClient, StripeGateway
from pipeline.router import EventRouter
from pipeline.verifier import ProviderEventVerifier
from storage.repositories import (
    IDocumentRepository,
    IMembershipRepository,
    IOrderRepository,
    InMemoryDocumentRepository,
    InMemoryMembershipRepository,
    InMemoryOrderRepository,
    InMemoryTables,
)
from tasks.backfill import DocumentBackfill

logger = structlog.get_logger().bind(component="services")


@dataclass
class Services:
    settings: Settings
    orders: IOrderRepository
    memberships: IMembershipRepository
    documents_repo: IDocumentRepository
    router: EventRouter
    documents: DocumentPipeline
    backfill: DocumentBackfill
    email: IEmailClient
    storage_backend: str = "memory"
    closables: list[Any] = field(default_factory=list)

    async def close(self):
        for client in self.closables:
            try:
                await client.close()
            except Exception as e:
                logger.warning("client_close_failed", client=type(client).__name__, error=str(e))


def build_services(
    settings: Settings,
    *,
    stripe_client: Any = stripe,
    authorize_net: Optional[AuthorizeNetClient] = None,
    affirm: Optional[AffirmClient] = None,
    klarna: Optional[KlarnaClient] = None,
    email_client: Optional[IEmailClient] = None,
    tables: Optional[InMemoryTables] = None,
) -> Services:
    """Wire the pipeline. Postgres repositories require Database.initialize() first."""
    if settings.storage_configured:
        # Imported here so the in-memory path never needs a pool
        from storage.postgres import (
            PostgresDocumentRepository,
            PostgresMembershipRepository,
            PostgresOrderRepository,
        )

        orders = PostgresOrderRepository()
        memberships = PostgresMembershipRepository()
        documents_repo = PostgresDocumentRepository()
        storage_backend = "postgres"
    else:
        tables = tables or InMemoryTables()
        orders = InMemoryOrderRepository(tables)
        memberships = InMemoryMembershipRepository(tables)
        documents_repo = InMemoryDocumentRepository(tables)
        storage_backend = "memory"
        logger.warning("storage_not_configured", fallback="in_memory")

    if email_client is None:
        if settings.email_configured:
            email_client = ResendEmailClient(settings)
        else:
            email_client = NullEmailClient()
            logger.warning("email_not_configured", fallback="null_client")

    stripe_gateway = StripeGateway(settings.stripe_secret_key, stripe_client)
    authorize_net = authorize_net or AuthorizeNetClient(settings)
    affirm = affirm or AffirmClient(settings)
    klarna = klarna or KlarnaClient(settings)

    documents = DocumentPipeline(documents_repo, excluded_categories=settings.lmn_excluded_categories)
    router = EventRouter(
        verifier=ProviderEventVerifier(settings, stripe_gateway=stripe_gateway, affirm=affirm, klarna=klarna),
        normalizer=ConfirmationNormalizer(
            stripe_gateway=stripe_gateway,
            authorize_net=authorize_net,
            default_currency=settings.default_currency,
        ),
        materializer=OrderMaterializer(orders, memberships),
        documents=documents,
        notifier=NotificationDispatcher(email_client, settings.frontend_url),
        post_materialization_budget_seconds=settings.post_materialization_budget_seconds,
    )
    backfill = DocumentBackfill(
        orders,
        documents,
        interval_seconds=settings.backfill_interval_seconds,
        batch_size=settings.backfill_batch_size,
        excluded_categories=settings.lmn_excluded_categories,
    )

    return Services(
        settings=settings,
        orders=orders,
        memberships=memberships,
        documents_repo=documents_repo,
        router=router,
        documents=documents,
        backfill=backfill,
        email=email_client,
        storage_backend=storage_backend,
        closables=[authorize_net, affirm, klarna, email_client],
    )
