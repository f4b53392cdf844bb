"""
PDF Rendering
=============
Pure functions from document value objects to PDF bytes. The same input
always yields the same bytes (ReportLab invariant mode), so a stored record
can be re-rendered at any time.

pip install reportlab
"""

from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from schemas.documents import DocumentItem, InvoiceData, LmnData
from schemas.payments import minor_to_major


BRAND_NAME = "CULTR Health"
BRAND_COLOR = colors.HexColor("#2A4542")
MUTED_COLOR = colors.HexColor("#6B7280")

_styles = getSampleStyleSheet()
STYLE_BRAND = ParagraphStyle("Brand", parent=_styles["Title"], textColor=BRAND_COLOR, alignment=0, fontSize=20)
STYLE_TITLE = ParagraphStyle("DocTitle", parent=_styles["Heading2"], textColor=BRAND_COLOR)
STYLE_BODY = ParagraphStyle("Body", parent=_styles["BodyText"], fontSize=10, leading=14)
STYLE_SMALL = ParagraphStyle("Small", parent=STYLE_BODY, fontSize=8, leading=11, textColor=MUTED_COLOR)
STYLE_LABEL = ParagraphStyle("Label", parent=STYLE_BODY, fontName="Helvetica-Bold")


def format_money(amount_minor: int, currency: str = "USD") -> str:
    value = minor_to_major(amount_minor)
    if currency.upper() == "USD":
        return f"${value:,.2f}"
    return f"{value:,.2f} {currency.upper()}"


def _text(value) -> str:
    return escape(str(value)) if value is not None else ""


def _items_table(items: list[DocumentItem], currency: str) -> Table:
    rows = [["Product", "SKU", "Qty", "Unit Price", "Total"]]
    for item in items:
        rows.append([
            Paragraph(_text(item.name), STYLE_BODY),
            Paragraph(_text(item.sku), STYLE_SMALL),
            str(item.quantity),
            format_money(item.unit_price_minor, currency),
            format_money(item.total_minor, currency),
        ])

    table = Table(rows, colWidths=[2.6 * inch, 1.6 * inch, 0.5 * inch, 1.0 * inch, 1.0 * inch], repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), BRAND_COLOR),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("ALIGN", (2, 0), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("LINEBELOW", (0, 0), (-1, -1), 0.25, colors.lightgrey),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
    ]))
    return table


def _totals_table(rows: list[tuple[str, str]]) -> Table:
    table = Table(rows, colWidths=[5.7 * inch, 1.0 * inch])
    table.setStyle(TableStyle([
        ("ALIGN", (0, 0), (-1, -1), "RIGHT"),
        ("FONTSIZE", (0, 0), (-1, -1), 10),
        ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
        ("LINEABOVE", (0, -1), (-1, -1), 0.75, BRAND_COLOR),
    ]))
    return table


def _meta_table(rows: list[tuple[str, str]]) -> Table:
    table = Table(
        [[Paragraph(_text(label), STYLE_LABEL), Paragraph(_text(value), STYLE_BODY)] for label, value in rows],
        colWidths=[1.6 * inch, 5.1 * inch],
    )
    table.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))
    return table


def _build(story: list, title: str, subject: str) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=letter,
        leftMargin=0.9 * inch,
        rightMargin=0.9 * inch,
        topMargin=0.8 * inch,
        bottomMargin=0.8 * inch,
        title=title,
        author=BRAND_NAME,
        subject=subject,
        creator=BRAND_NAME,
        invariant=1,
    )
    doc.build(story)
    return buffer.getvalue()


# =============================================================================
# LETTER OF MEDICAL NECESSITY
# =============================================================================

def render_lmn_pdf(data: LmnData) -> bytes:
    issued = data.issue_date.strftime("%B %d, %Y")
    story = [
        Paragraph(BRAND_NAME, STYLE_BRAND),
        Paragraph("Letter of Medical Necessity", STYLE_TITLE),
        Spacer(1, 0.15 * inch),
        _meta_table([
            ("LMN Number", data.lmn_number),
            ("Issue Date", issued),
            ("Order Number", data.order_number),
            ("Patient", data.customer_name or data.customer_email),
            ("Email", data.customer_email),
        ]),
        Spacer(1, 0.25 * inch),
        Paragraph("Prescribed Products", STYLE_LABEL),
        Spacer(1, 0.08 * inch),
        _items_table(data.items, data.currency),
        Spacer(1, 0.1 * inch),
        _totals_table([("HSA/FSA Eligible Total", format_money(data.eligible_total_minor, data.currency))]),
        Spacer(1, 0.3 * inch),
        Paragraph("Medical Necessity Attestation", STYLE_LABEL),
        Spacer(1, 0.08 * inch),
    ]
    for paragraph in data.attestation_text.split("\n\n"):
        story.append(Paragraph(_text(paragraph.strip()), STYLE_BODY))
        story.append(Spacer(1, 0.1 * inch))

    story.extend([
        Spacer(1, 0.2 * inch),
        Paragraph(f"Provider: {_text(data.provider_reference)}", STYLE_BODY),
        Spacer(1, 0.3 * inch),
        Paragraph(
            "Keep this letter with your HSA/FSA records. Reimbursement eligibility is "
            "determined by your plan administrator.",
            STYLE_SMALL,
        ),
    ])
    return _build(story, title=f"Letter of Medical Necessity {data.lmn_number}", subject=data.order_number)


# =============================================================================
# INVOICE
# =============================================================================

def render_invoice_pdf(data: InvoiceData) -> bytes:
    issued = data.issue_date.strftime("%B %d, %Y")
    story = [
        Paragraph(BRAND_NAME, STYLE_BRAND),
        Paragraph("Invoice", STYLE_TITLE),
        Spacer(1, 0.15 * inch),
        _meta_table([
            ("Invoice Number", data.invoice_number),
            ("Issue Date", issued),
            ("Order Number", data.order_number),
            ("Bill To", data.customer_name or data.customer_email),
            ("Email", data.customer_email),
        ]),
        Spacer(1, 0.25 * inch),
        _items_table(data.items, data.currency),
        Spacer(1, 0.1 * inch),
        _totals_table([
            ("Subtotal", format_money(data.subtotal_minor, data.currency)),
            ("Tax", format_money(data.tax_minor, data.currency)),
            ("Total Paid", format_money(data.total_minor, data.currency)),
        ]),
        Spacer(1, 0.3 * inch),
        _meta_table([
            ("Payment Method", data.payment_method),
            ("Processed By", data.payment_provider),
            ("Status", "Paid"),
        ]),
        Spacer(1, 0.3 * inch),
        Paragraph(f"Thank you for choosing {BRAND_NAME}.", STYLE_SMALL),
    ]
    return _build(story, title=f"Invoice {data.invoice_number}", subject=data.order_number)
