import asyncio
import re
from datetime import datetime, timezone

import pytest
from structlog.testing import capture_logs

from pipeline.documents import (
    DocumentPipeline,
    calculate_lmn_eligible_total,
    filter_lmn_eligible_items,
    has_lmn_eligible_items,
    is_lmn_eligible_category,
    lmn_eligible_categories,
)
from pipeline.rendering import format_money, render_invoice_pdf, render_lmn_pdf
from schemas.documents import DocumentItem, InvoiceData, LmnData
from schemas.payments import OrderLineItem, Provider


def _item(sku: str, category: str, unit_price: int, quantity: int = 1) -> OrderLineItem:
    return OrderLineItem(sku=sku, name=sku, quantity=quantity, unit_price_minor=unit_price, category=category)


GLP1 = _item("GLP-1-2T-10MG-03ML", "metabolic", 50000)
BPC = _item("BPC157-10MG-03ML", "repair", 9900, quantity=2)
WATER = _item("BACWATER-30ML", "accessory", 1500)
MYSTERY = _item("MYSTERY-1", "uncategorized", 700)


@pytest.fixture
def pipeline(document_repo):
    return DocumentPipeline(document_repo)


# =============================================================================
# ELIGIBILITY
# =============================================================================

class TestEligibility:

    def test_accessories_and_unknown_items_are_not_eligible(self):
        assert is_lmn_eligible_category("metabolic")
        assert not is_lmn_eligible_category("accessory")
        assert not is_lmn_eligible_category("uncategorized")

    def test_filter_keeps_order(self):
        assert filter_lmn_eligible_items([WATER, BPC, MYSTERY, GLP1]) == [BPC, GLP1]

    def test_has_eligible_items(self):
        assert has_lmn_eligible_items([WATER, GLP1])
        assert not has_lmn_eligible_items([WATER, MYSTERY])
        assert not has_lmn_eligible_items([])

    def test_eligible_total_ignores_excluded_items(self):
        assert calculate_lmn_eligible_total([GLP1, WATER]) == 50000
        assert calculate_lmn_eligible_total([BPC, WATER, MYSTERY]) == 19800

    def test_custom_exclusions(self):
        assert calculate_lmn_eligible_total([GLP1, BPC], excluded={"metabolic"}) == 19800

    def test_eligible_categories_listing(self):
        categories = lmn_eligible_categories()
        assert "metabolic" in categories
        assert "accessory" not in categories


# =============================================================================
# PIPELINE
# =============================================================================

class TestDocumentPipeline:

    async def test_eligible_order_gets_lmn_and_invoice(self, pipeline, paid_order):
        order = paid_order()

        bundle = await pipeline.process(order, "corr-1")

        assert bundle.errors == []
        assert re.fullmatch(r"LMN-\d{8}-[A-Z0-9]{5}", bundle.lmn_number)
        assert re.fullmatch(r"INV-\d{8}-[A-Z0-9]{5}", bundle.invoice_number)
        assert bundle.lmn.eligible_total_minor == 50000
        assert bundle.lmn_pdf.startswith(b"%PDF")
        assert bundle.invoice_pdf.startswith(b"%PDF")
        assert bundle.invoice.payment_provider == "Stripe"
        assert bundle.invoice.payment_method == "Credit Card"

    async def test_lmn_lists_only_eligible_items(self, pipeline, paid_order):
        order = paid_order(items=[GLP1, WATER])

        bundle = await pipeline.process(order)

        assert [item.sku for item in bundle.lmn.items] == ["GLP-1-2T-10MG-03ML"]
        assert bundle.lmn.eligible_total_minor == 50000
        assert [item.sku for item in bundle.invoice.items] == ["GLP-1-2T-10MG-03ML", "BACWATER-30ML"]
        assert bundle.invoice.total_minor == 51500

    async def test_accessory_only_order_gets_invoice_only(self, pipeline, paid_order):
        order = paid_order(items=[WATER])

        with capture_logs() as logs:
            bundle = await pipeline.process(order)

        assert bundle.lmn is None
        assert bundle.invoice_number is not None
        assert any(entry["event"] == "lmn_skipped_no_eligible_items" for entry in logs)

    async def test_bnpl_payment_method(self, pipeline, paid_order):
        bundle = await pipeline.process(paid_order(provider=Provider.BNPL_B, external_payment_reference="klarna_K"))
        assert bundle.invoice.payment_method == "Buy Now, Pay Later"
        assert bundle.invoice.payment_provider == "Klarna"

    async def test_second_run_returns_same_documents(self, pipeline, paid_order, tables):
        order = paid_order()

        first = await pipeline.process(order)
        second = await pipeline.process(order)

        assert second.lmn_number == first.lmn_number
        assert second.invoice_number == first.invoice_number
        assert len(tables.lmns) == 1
        assert len(tables.invoices) == 1

    async def test_concurrent_runs_yield_one_record_each(self, pipeline, paid_order, tables):
        order = paid_order()

        bundles = await asyncio.gather(*[pipeline.process(order) for _ in range(5)])

        assert len({b.lmn_number for b in bundles}) == 1
        assert len({b.invoice_number for b in bundles}) == 1
        assert len(tables.lmns) == 1
        assert len(tables.invoices) == 1

    async def test_lmn_failure_does_not_block_invoice(self, document_repo, paid_order):
        def broken_renderer(data):
            raise RuntimeError("font missing")

        pipeline = DocumentPipeline(document_repo, lmn_renderer=broken_renderer)

        with capture_logs() as logs:
            bundle = await pipeline.process(paid_order())

        assert bundle.lmn is None
        assert bundle.invoice_number is not None
        assert bundle.errors == ["lmn: font missing"]
        assert any(entry["event"] == "lmn_stage_failed" for entry in logs)

    async def test_invoice_failure_keeps_lmn(self, document_repo, paid_order):
        def broken_renderer(data):
            raise RuntimeError("disk full")

        pipeline = DocumentPipeline(document_repo, invoice_renderer=broken_renderer)

        bundle = await pipeline.process(paid_order())

        assert bundle.lmn_number is not None
        assert bundle.invoice is None
        assert bundle.errors == ["invoice: disk full"]

    async def test_amount_discrepancy_logged(self, pipeline, paid_order):
        order = paid_order(total=40000)

        with capture_logs() as logs:
            bundle = await pipeline.process(order)

        assert bundle.invoice.total_minor == 40000
        assert bundle.invoice.subtotal_minor == 50000
        assert any(entry["event"] == "document_amount_discrepancy" for entry in logs)


# =============================================================================
# RETRIEVAL
# =============================================================================

class TestRetrieval:

    async def test_stored_pdf_served(self, pipeline, paid_order):
        bundle = await pipeline.process(paid_order())

        assert await pipeline.render_document(bundle.lmn_number) == bundle.lmn_pdf
        assert await pipeline.render_document(bundle.invoice_number) == bundle.invoice_pdf

    async def test_missing_pdf_bytes_re_rendered(self, pipeline, paid_order, tables):
        bundle = await pipeline.process(paid_order())
        tables.invoices[bundle.invoice_number] = bundle.invoice.model_copy(update={"pdf": None})

        pdf = await pipeline.render_document(bundle.invoice_number)

        assert pdf == bundle.invoice_pdf

    async def test_unknown_numbers(self, pipeline):
        assert await pipeline.render_document("LMN-20260101-ZZZZZ") is None
        assert await pipeline.render_document("INV-20260101-ZZZZZ") is None
        assert await pipeline.render_document("ORD-1") is None

    async def test_list_documents(self, pipeline, paid_order):
        order = paid_order()
        created = await pipeline.process(order)

        listed = await pipeline.list_documents(order.order_number)

        assert listed.lmn_number == created.lmn_number
        assert listed.invoice_number == created.invoice_number


# =============================================================================
# RENDERING
# =============================================================================

class TestRendering:

    ISSUED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def _items(self):
        return [DocumentItem.from_line_item(GLP1)]

    def test_lmn_pdf_is_deterministic(self):
        data = LmnData(
            lmn_number="LMN-20260301-AAAAA",
            order_number="ORD-1",
            customer_email="pat@example.com",
            customer_name="Pat Example",
            items=self._items(),
            eligible_total_minor=50000,
            issue_date=self.ISSUED,
        )

        first = render_lmn_pdf(data)

        assert first.startswith(b"%PDF")
        assert render_lmn_pdf(data) == first

    def test_invoice_pdf_is_deterministic(self):
        data = InvoiceData(
            invoice_number="INV-20260301-AAAAA",
            order_number="ORD-1",
            customer_email="pat@example.com",
            items=self._items(),
            subtotal_minor=50000,
            total_minor=50000,
            payment_provider="Stripe",
            issue_date=self.ISSUED,
        )

        first = render_invoice_pdf(data)

        assert first.startswith(b"%PDF")
        assert render_invoice_pdf(data) == first

    def test_format_money(self):
        assert format_money(50000) == "$500.00"
        assert format_money(199998) == "$1,999.98"
