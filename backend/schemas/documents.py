# schemas/documents.py
# ============================================================================
# DOCUMENT RECORDS - LMN & INVOICE
# ============================================================================
# Value objects handed to the PDF renderer plus the persisted records.
# A record keeps enough structured data to re-render its PDF at any time.
# ============================================================================

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from schemas.payments import OrderLineItem, random_suffix, utcnow


LMN_ATTESTATION_TEXT = (
    "This letter certifies that the products listed above have been determined to be "
    "medically necessary as part of a physician-supervised treatment protocol conducted "
    "through CULTR Health's telehealth platform. These peptide therapeutics are prescribed "
    "for the treatment, mitigation, or prevention of disease, or for the purpose of "
    "affecting a structure or function of the body.\n\n"
    "This documentation is provided for HSA (Health Savings Account) and FSA (Flexible "
    "Spending Account) reimbursement purposes in accordance with IRS regulations "
    "governing qualified medical expenses.\n\n"
    "The patient has undergone a telehealth consultation with a licensed healthcare "
    "provider who has evaluated their medical history, current health status, and "
    "treatment goals before prescribing these products."
)

LMN_PROVIDER_REFERENCE = "CULTR Health Medical Team - Telehealth Provider Network"

DEFAULT_PAYMENT_METHOD = "Credit Card"


def generate_lmn_number(today: Optional[date] = None) -> str:
    """LMN-YYYYMMDD-XXXXX"""
    today = today or utcnow().date()
    return f"LMN-{today.strftime('%Y%m%d')}-{random_suffix()}"


def generate_invoice_number(today: Optional[date] = None) -> str:
    """INV-YYYYMMDD-XXXXX"""
    today = today or utcnow().date()
    return f"INV-{today.strftime('%Y%m%d')}-{random_suffix()}"


class DocumentKind(str, Enum):
    LMN = "lmn"
    INVOICE = "invoice"

    @classmethod
    def from_number(cls, number: str) -> Optional["DocumentKind"]:
        if number.startswith("LMN-"):
            return cls.LMN
        if number.startswith("INV-"):
            return cls.INVOICE
        return None


class DocumentItem(BaseModel):
    sku: str
    name: str
    quantity: int
    unit_price_minor: int
    total_minor: int
    category: str

    @classmethod
    def from_line_item(cls, item: OrderLineItem) -> "DocumentItem":
        return cls(
            sku=item.sku,
            name=item.name,
            quantity=item.quantity,
            unit_price_minor=item.unit_price_minor,
            total_minor=item.total_minor,
            category=item.category,
        )


# ============================================================================
# RENDERER INPUTS
# ============================================================================

class LmnData(BaseModel):
    lmn_number: str
    order_number: str
    customer_email: str
    customer_name: Optional[str] = None
    items: list[DocumentItem]
    eligible_total_minor: int
    currency: str = "USD"
    issue_date: datetime
    attestation_text: str = LMN_ATTESTATION_TEXT
    provider_reference: str = LMN_PROVIDER_REFERENCE


class InvoiceData(BaseModel):
    invoice_number: str
    order_number: str
    customer_email: str
    customer_name: Optional[str] = None
    items: list[DocumentItem]
    subtotal_minor: int
    tax_minor: int = 0
    total_minor: int
    currency: str = "USD"
    payment_method: str = DEFAULT_PAYMENT_METHOD
    payment_provider: str
    issue_date: datetime


# ============================================================================
# PERSISTED RECORDS
# ============================================================================

class LmnRecord(LmnData):
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    pdf: Optional[bytes] = Field(default=None, exclude=True, repr=False)

    def to_data(self) -> LmnData:
        return LmnData.model_validate(self.model_dump(exclude={"order_id", "created_at"}))

    @classmethod
    def from_data(cls, data: LmnData, pdf: Optional[bytes] = None, order_id: Optional[str] = None) -> "LmnRecord":
        return cls(**data.model_dump(), pdf=pdf, order_id=order_id)


class InvoiceRecord(InvoiceData):
    order_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    pdf: Optional[bytes] = Field(default=None, exclude=True, repr=False)

    def to_data(self) -> InvoiceData:
        return InvoiceData.model_validate(self.model_dump(exclude={"order_id", "created_at"}))

    @classmethod
    def from_data(cls, data: InvoiceData, pdf: Optional[bytes] = None, order_id: Optional[str] = None) -> "InvoiceRecord":
        return cls(**data.model_dump(), pdf=pdf, order_id=order_id)


class DocumentBundle(BaseModel):
    """Outcome of one document pipeline run. Either half may be missing."""

    order_number: str
    lmn: Optional[LmnRecord] = None
    invoice: Optional[InvoiceRecord] = None
    lmn_pdf: Optional[bytes] = Field(default=None, exclude=True, repr=False)
    invoice_pdf: Optional[bytes] = Field(default=None, exclude=True, repr=False)
    errors: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def lmn_number(self) -> Optional[str]:
        return self.lmn.lmn_number if self.lmn else None

    @computed_field
    @property
    def invoice_number(self) -> Optional[str]:
        return self.invoice.invoice_number if self.invoice else None
