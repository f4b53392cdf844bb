"""
Eligibility & Document Pipeline
===============================
Decides which order items belong on a Letter of Medical Necessity and
produces the LMN and invoice for a paid order.

Features:
- Category-based LMN eligibility (non-therapeutic supplies excluded)
- Two independent stages, each behind its own fault boundary
- Idempotent per order_number: a second run returns the stored records
- Records persisted before any email goes out
- Stored PDFs served as-is, or re-rendered from the structured record
"""

from typing import Callable, Iterable, Optional, TypeVar, Union

import structlog

from config import DEFAULT_LMN_EXCLUDED_CATEGORIES
from pipeline.catalog import ALL_CATEGORIES
from pipeline.errors import DuplicateKeyError, RetryableStorageError
from pipeline.rendering import render_invoice_pdf, render_lmn_pdf
from schemas.documents import (
    DEFAULT_PAYMENT_METHOD,
    DocumentBundle,
    DocumentItem,
    DocumentKind,
    InvoiceData,
    InvoiceRecord,
    LmnData,
    LmnRecord,
    generate_invoice_number,
    generate_lmn_number,
)
from schemas.payments import Order, Provider, utcnow
from storage.repositories import IDocumentRepository, InMemoryDocumentRepository


NUMBER_ATTEMPTS = 3

PAYMENT_METHODS = {
    Provider.CARD_DIRECT: DEFAULT_PAYMENT_METHOD,
    Provider.CARD_GATEWAY: DEFAULT_PAYMENT_METHOD,
    Provider.BNPL_A: "Buy Now, Pay Later",
    Provider.BNPL_B: "Buy Now, Pay Later",
}

T = TypeVar("T")


# =============================================================================
# ELIGIBILITY
# =============================================================================

def is_lmn_eligible_category(category: str, excluded: Iterable[str] = DEFAULT_LMN_EXCLUDED_CATEGORIES) -> bool:
    return category not in set(excluded)


def filter_lmn_eligible_items(items: Iterable[T], excluded: Iterable[str] = DEFAULT_LMN_EXCLUDED_CATEGORIES) -> list[T]:
    excluded = set(excluded)
    return [item for item in items if item.category not in excluded]


def has_lmn_eligible_items(items: Iterable, excluded: Iterable[str] = DEFAULT_LMN_EXCLUDED_CATEGORIES) -> bool:
    return bool(filter_lmn_eligible_items(items, excluded))


def calculate_lmn_eligible_total(items: Iterable, excluded: Iterable[str] = DEFAULT_LMN_EXCLUDED_CATEGORIES) -> int:
    """Sum of total_minor over eligible items; ineligible items contribute nothing."""
    return sum(item.total_minor for item in filter_lmn_eligible_items(items, excluded))


def lmn_eligible_categories(excluded: Iterable[str] = DEFAULT_LMN_EXCLUDED_CATEGORIES) -> list[str]:
    excluded = set(excluded)
    return [category for category in ALL_CATEGORIES if category not in excluded]


# =============================================================================
# DOCUMENT PIPELINE
# =============================================================================

class DocumentPipeline:
    """
    Example:
        pipeline = DocumentPipeline(document_repo)
        bundle = await pipeline.process(order)
        bundle.lmn_number, bundle.invoice_number  # either may be None
    """

    def __init__(
        self,
        document_repo: Optional[IDocumentRepository] = None,
        excluded_categories: Iterable[str] = DEFAULT_LMN_EXCLUDED_CATEGORIES,
        lmn_renderer: Callable[[LmnData], bytes] = render_lmn_pdf,
        invoice_renderer: Callable[[InvoiceData], bytes] = render_invoice_pdf,
    ):
        self.documents = document_repo or InMemoryDocumentRepository()
        self.excluded_categories = frozenset(excluded_categories)
        self.render_lmn = lmn_renderer
        self.render_invoice = invoice_renderer
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None):
        return self._base_logger.bind(component="document_pipeline", correlation_id=correlation_id)

    async def process(self, order: Order, correlation_id: Optional[str] = None) -> DocumentBundle:
        log = self._get_logger(correlation_id)
        bundle = DocumentBundle(order_number=order.order_number)

        try:
            lmn = await self._lmn_stage(order, log)
            if lmn is not None:
                bundle.lmn, bundle.lmn_pdf = lmn
        except Exception as e:
            log.error("lmn_stage_failed", order_number=order.order_number, error=str(e), exc_info=True)
            bundle.errors.append(f"lmn: {e}")

        try:
            bundle.invoice, bundle.invoice_pdf = await self._invoice_stage(order, log)
        except Exception as e:
            log.error("invoice_stage_failed", order_number=order.order_number, error=str(e), exc_info=True)
            bundle.errors.append(f"invoice: {e}")

        log.info(
            "documents_processed",
            order_number=order.order_number,
            lmn_number=bundle.lmn_number,
            invoice_number=bundle.invoice_number,
            errors=len(bundle.errors),
        )
        return bundle

    # =========================================================================
    # LMN STAGE
    # =========================================================================

    async def _lmn_stage(self, order: Order, log) -> Optional[tuple[LmnRecord, bytes]]:
        eligible = filter_lmn_eligible_items(order.items, self.excluded_categories)
        if not eligible:
            log.info("lmn_skipped_no_eligible_items", order_number=order.order_number)
            return None

        existing = await self.documents.get_lmn_by_order(order.order_number)
        if existing is not None:
            log.info("lmn_exists", order_number=order.order_number, lmn_number=existing.lmn_number)
            return existing, existing.pdf or self.render_lmn(existing.to_data())

        issue_date = utcnow()
        for attempt in range(1, NUMBER_ATTEMPTS + 1):
            data = LmnData(
                lmn_number=generate_lmn_number(issue_date.date()),
                order_number=order.order_number,
                customer_email=order.customer_email,
                customer_name=order.customer_name,
                items=[DocumentItem.from_line_item(item) for item in eligible],
                eligible_total_minor=calculate_lmn_eligible_total(order.items, self.excluded_categories),
                currency=order.currency,
                issue_date=issue_date,
            )
            pdf = self.render_lmn(data)
            try:
                record = await self.documents.insert_lmn(LmnRecord.from_data(data, pdf=pdf, order_id=order.id))
            except DuplicateKeyError as e:
                if e.constraint == "order_number":
                    # Concurrent run won; its record is the LMN for this order
                    winner = await self.documents.get_lmn_by_order(order.order_number)
                    if winner is None:
                        raise RetryableStorageError(f"lmn for {order.order_number} reported duplicate but not found")
                    return winner, winner.pdf or self.render_lmn(winner.to_data())
                log.warning("lmn_number_collision", lmn_number=data.lmn_number, attempt=attempt)
                continue

            log.info(
                "lmn_created",
                order_number=order.order_number,
                lmn_number=record.lmn_number,
                eligible_total_minor=record.eligible_total_minor,
                eligible_items=len(record.items),
            )
            return record, pdf

        raise RetryableStorageError(f"lmn_number collided {NUMBER_ATTEMPTS} times for {order.order_number}")

    # =========================================================================
    # INVOICE STAGE
    # =========================================================================

    async def _invoice_stage(self, order: Order, log) -> tuple[InvoiceRecord, bytes]:
        existing = await self.documents.get_invoice_by_order(order.order_number)
        if existing is not None:
            log.info("invoice_exists", order_number=order.order_number, invoice_number=existing.invoice_number)
            return existing, existing.pdf or self.render_invoice(existing.to_data())

        items = [DocumentItem.from_line_item(item) for item in order.items]
        subtotal = sum(item.total_minor for item in items)
        if abs(subtotal - order.total_amount_minor) > 1:
            log.warning(
                "document_amount_discrepancy",
                order_number=order.order_number,
                items_total_minor=subtotal,
                provider_total_minor=order.total_amount_minor,
            )

        issue_date = utcnow()
        for attempt in range(1, NUMBER_ATTEMPTS + 1):
            data = InvoiceData(
                invoice_number=generate_invoice_number(issue_date.date()),
                order_number=order.order_number,
                customer_email=order.customer_email,
                customer_name=order.customer_name,
                items=items,
                subtotal_minor=subtotal,
                tax_minor=0,
                total_minor=order.total_amount_minor,
                currency=order.currency,
                payment_method=PAYMENT_METHODS[order.provider],
                payment_provider=order.provider.display_name,
                issue_date=issue_date,
            )
            pdf = self.render_invoice(data)
            try:
                record = await self.documents.insert_invoice(InvoiceRecord.from_data(data, pdf=pdf, order_id=order.id))
            except DuplicateKeyError as e:
                if e.constraint == "order_number":
                    winner = await self.documents.get_invoice_by_order(order.order_number)
                    if winner is None:
                        raise RetryableStorageError(
                            f"invoice for {order.order_number} reported duplicate but not found"
                        )
                    return winner, winner.pdf or self.render_invoice(winner.to_data())
                log.warning("invoice_number_collision", invoice_number=data.invoice_number, attempt=attempt)
                continue

            log.info(
                "invoice_created",
                order_number=order.order_number,
                invoice_number=record.invoice_number,
                total_minor=record.total_minor,
            )
            return record, pdf

        raise RetryableStorageError(f"invoice_number collided {NUMBER_ATTEMPTS} times for {order.order_number}")

    # =========================================================================
    # RETRIEVAL
    # =========================================================================

    async def get_record(self, number: str) -> Optional[Union[LmnRecord, InvoiceRecord]]:
        kind = DocumentKind.from_number(number)
        if kind == DocumentKind.LMN:
            return await self.documents.get_lmn(number)
        if kind == DocumentKind.INVOICE:
            return await self.documents.get_invoice(number)
        return None

    def pdf_for(self, record: Union[LmnRecord, InvoiceRecord]) -> bytes:
        """Stored bytes, or a fresh render from the structured record."""
        if record.pdf:
            return record.pdf
        if isinstance(record, LmnRecord):
            return self.render_lmn(record.to_data())
        return self.render_invoice(record.to_data())

    async def render_document(self, number: str) -> Optional[bytes]:
        record = await self.get_record(number)
        return self.pdf_for(record) if record is not None else None

    async def list_lmns(self, customer_email: str) -> list[LmnRecord]:
        return await self.documents.list_lmns_by_email(customer_email)

    async def list_documents(self, order_number: str) -> DocumentBundle:
        return DocumentBundle(
            order_number=order_number,
            lmn=await self.documents.get_lmn_by_order(order_number),
            invoice=await self.documents.get_invoice_by_order(order_number),
        )
