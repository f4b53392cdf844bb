# storage/postgres.py
# ============================================================================
# POSTGRES REPOSITORIES (asyncpg)
# ============================================================================
# Money is NUMERIC(12,2) major units in the database and int minor units
# everywhere else; conversion happens only in this module.
# ============================================================================

import json
from datetime import datetime
from typing import Iterable, Optional

import asyncpg

from database import CONSTRAINT_COLUMNS, Database
from pipeline.errors import DuplicateKeyError
from schemas.documents import DocumentItem, InvoiceRecord, LmnRecord
from schemas.payments import (
    Membership,
    Order,
    OrderLineItem,
    OrderStatus,
    Provider,
    major_to_minor,
    minor_to_major,
    utcnow,
)
from storage.repositories import IDocumentRepository, IMembershipRepository, IOrderRepository


def _duplicate(error: asyncpg.UniqueViolationError) -> DuplicateKeyError:
    constraint = error.constraint_name or ""
    return DuplicateKeyError(CONSTRAINT_COLUMNS.get(constraint, constraint), error.detail or "")


def _load_json(value):
    return json.loads(value) if isinstance(value, str) else value


# ============================================================================
# ROW MAPPERS
# ============================================================================

def _order_from_row(row: asyncpg.Record) -> Order:
    return Order(
        id=str(row["id"]),
        order_number=row["order_number"],
        customer_email=row["customer_email"],
        customer_name=row["customer_name"],
        external_payment_reference=row["external_payment_reference"],
        provider=Provider(row["provider"]),
        status=OrderStatus(row["status"]),
        total_amount_minor=major_to_minor(row["total_amount"]),
        currency=row["currency"],
        items=[OrderLineItem.model_validate(i) for i in _load_json(row["items"])],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _membership_from_row(row: asyncpg.Record) -> Membership:
    return Membership(
        id=str(row["id"]),
        subscription_id=row["subscription_id"],
        customer_id=row["customer_id"],
        customer_email=row["customer_email"],
        plan_tier=row["plan_tier"],
        subscription_status=row["subscription_status"],
        provider=Provider(row["provider"]),
        cancelled_at=row["cancelled_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _lmn_from_row(row: asyncpg.Record) -> LmnRecord:
    return LmnRecord(
        lmn_number=row["lmn_number"],
        order_id=str(row["order_id"]) if row["order_id"] else None,
        order_number=row["order_number"],
        customer_email=row["customer_email"],
        customer_name=row["customer_name"],
        items=[DocumentItem.model_validate(i) for i in _load_json(row["items"])],
        eligible_total_minor=major_to_minor(row["eligible_total"]),
        currency=row["currency"],
        issue_date=row["issue_date"],
        attestation_text=row["attestation_text"],
        provider_reference=row["provider_reference"],
        pdf=bytes(row["pdf"]) if row["pdf"] is not None else None,
        created_at=row["created_at"],
    )


def _invoice_from_row(row: asyncpg.Record) -> InvoiceRecord:
    return InvoiceRecord(
        invoice_number=row["invoice_number"],
        order_id=str(row["order_id"]) if row["order_id"] else None,
        order_number=row["order_number"],
        customer_email=row["customer_email"],
        customer_name=row["customer_name"],
        items=[DocumentItem.model_validate(i) for i in _load_json(row["items"])],
        subtotal_minor=major_to_minor(row["subtotal"]),
        tax_minor=major_to_minor(row["tax"]),
        total_minor=major_to_minor(row["total"]),
        currency=row["currency"],
        payment_method=row["payment_method"],
        payment_provider=row["payment_provider"],
        issue_date=row["issue_date"],
        pdf=bytes(row["pdf"]) if row["pdf"] is not None else None,
        created_at=row["created_at"],
    )


# ============================================================================
# ORDERS
# ============================================================================

class PostgresOrderRepository(IOrderRepository):

    async def insert(self, order: Order) -> Order:
        try:
            row = await Database.fetch_one(
                """
                INSERT INTO orders
                (id, order_number, customer_email, customer_name, external_payment_reference,
                 provider, status, total_amount, currency, items, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                RETURNING *
                """,
                order.id,
                order.order_number,
                order.customer_email,
                order.customer_name,
                order.external_payment_reference,
                order.provider.value,
                order.status.value,
                minor_to_major(order.total_amount_minor),
                order.currency,
                json.dumps([item.model_dump(mode="json") for item in order.items]),
                order.created_at,
                order.updated_at,
            )
        except asyncpg.UniqueViolationError as e:
            raise _duplicate(e) from e
        return _order_from_row(row)

    async def get_by_reference(self, external_reference: str) -> Optional[Order]:
        row = await Database.fetch_one(
            "SELECT * FROM orders WHERE external_payment_reference = $1",
            external_reference,
        )
        return _order_from_row(row) if row else None

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        row = await Database.fetch_one("SELECT * FROM orders WHERE order_number = $1", order_number)
        return _order_from_row(row) if row else None

    async def update_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        row = await Database.fetch_one(
            """
            UPDATE orders
            SET status = $2, updated_at = $3
            WHERE id = $1
            RETURNING *
            """,
            order_id,
            status.value,
            utcnow(),
        )
        return _order_from_row(row) if row else None

    async def list_missing_documents(
        self,
        excluded_categories: Iterable[str],
        older_than: datetime,
        limit: int = 25,
        skip_order_numbers: Iterable[str] = (),
    ) -> list[Order]:
        rows = await Database.fetch_all(
            """
            SELECT o.*
            FROM orders o
            LEFT JOIN invoice_records i ON i.order_number = o.order_number
            LEFT JOIN lmn_records l ON l.order_number = o.order_number
            WHERE o.status = 'paid'
              AND o.created_at <= $1
              AND NOT (o.order_number = ANY($4::text[]))
              AND (
                i.id IS NULL
                OR (
                  l.id IS NULL
                  AND EXISTS (
                    SELECT 1 FROM jsonb_array_elements(o.items) AS item
                    WHERE NOT ((item->>'category') = ANY($2::text[]))
                  )
                )
              )
            ORDER BY o.created_at ASC
            LIMIT $3
            """,
            older_than,
            list(excluded_categories),
            limit,
            list(skip_order_numbers),
        )
        return [_order_from_row(row) for row in rows]


# ============================================================================
# MEMBERSHIPS
# ============================================================================

class PostgresMembershipRepository(IMembershipRepository):

    async def upsert(self, membership: Membership) -> tuple[Membership, bool]:
        # xmax = 0 only for a freshly inserted tuple
        row = await Database.fetch_one(
            """
            INSERT INTO memberships
            (id, subscription_id, customer_id, customer_email, plan_tier,
             subscription_status, provider, cancelled_at, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
            ON CONFLICT (subscription_id) DO UPDATE SET
                subscription_status = EXCLUDED.subscription_status,
                plan_tier = COALESCE(EXCLUDED.plan_tier, memberships.plan_tier),
                customer_id = COALESCE(EXCLUDED.customer_id, memberships.customer_id),
                customer_email = COALESCE(NULLIF(EXCLUDED.customer_email, ''), memberships.customer_email),
                cancelled_at = CASE
                    WHEN EXCLUDED.subscription_status = 'cancelled'
                    THEN COALESCE(memberships.cancelled_at, EXCLUDED.cancelled_at, NOW())
                    ELSE memberships.cancelled_at
                END,
                updated_at = NOW()
            RETURNING *, (xmax = 0) AS inserted
            """,
            membership.id,
            membership.subscription_id,
            membership.customer_id,
            membership.customer_email,
            membership.plan_tier,
            membership.subscription_status.value,
            membership.provider.value,
            membership.cancelled_at,
            membership.created_at,
            membership.updated_at,
        )
        return _membership_from_row(row), bool(row["inserted"])

    async def get_by_subscription_id(self, subscription_id: str) -> Optional[Membership]:
        row = await Database.fetch_one(
            "SELECT * FROM memberships WHERE subscription_id = $1",
            subscription_id,
        )
        return _membership_from_row(row) if row else None


# ============================================================================
# DOCUMENTS
# ============================================================================

class PostgresDocumentRepository(IDocumentRepository):

    async def insert_lmn(self, record: LmnRecord) -> LmnRecord:
        try:
            row = await Database.fetch_one(
                """
                INSERT INTO lmn_records
                (lmn_number, order_id, order_number, customer_email, customer_name, items,
                 eligible_total, currency, issue_date, attestation_text, provider_reference, pdf)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                RETURNING *
                """,
                record.lmn_number,
                record.order_id,
                record.order_number,
                record.customer_email,
                record.customer_name,
                json.dumps([item.model_dump(mode="json") for item in record.items]),
                minor_to_major(record.eligible_total_minor),
                record.currency,
                record.issue_date,
                record.attestation_text,
                record.provider_reference,
                record.pdf,
            )
        except asyncpg.UniqueViolationError as e:
            raise _duplicate(e) from e
        return _lmn_from_row(row)

    async def get_lmn(self, lmn_number: str) -> Optional[LmnRecord]:
        row = await Database.fetch_one("SELECT * FROM lmn_records WHERE lmn_number = $1", lmn_number)
        return _lmn_from_row(row) if row else None

    async def get_lmn_by_order(self, order_number: str) -> Optional[LmnRecord]:
        row = await Database.fetch_one("SELECT * FROM lmn_records WHERE order_number = $1", order_number)
        return _lmn_from_row(row) if row else None

    async def list_lmns_by_email(self, email: str) -> list[LmnRecord]:
        rows = await Database.fetch_all(
            """
            SELECT * FROM lmn_records
            WHERE LOWER(customer_email) = LOWER($1)
            ORDER BY issue_date DESC
            """,
            email,
        )
        return [_lmn_from_row(row) for row in rows]

    async def insert_invoice(self, record: InvoiceRecord) -> InvoiceRecord:
        try:
            row = await Database.fetch_one(
                """
                INSERT INTO invoice_records
                (invoice_number, order_id, order_number, customer_email, customer_name, items,
                 subtotal, tax, total, currency, payment_method, payment_provider, issue_date, pdf)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                RETURNING *
                """,
                record.invoice_number,
                record.order_id,
                record.order_number,
                record.customer_email,
                record.customer_name,
                json.dumps([item.model_dump(mode="json") for item in record.items]),
                minor_to_major(record.subtotal_minor),
                minor_to_major(record.tax_minor),
                minor_to_major(record.total_minor),
                record.currency,
                record.payment_method,
                record.payment_provider,
                record.issue_date,
                record.pdf,
            )
        except asyncpg.UniqueViolationError as e:
            raise _duplicate(e) from e
        return _invoice_from_row(row)

    async def get_invoice(self, invoice_number: str) -> Optional[InvoiceRecord]:
        row = await Database.fetch_one(
            "SELECT * FROM invoice_records WHERE invoice_number = $1",
            invoice_number,
        )
        return _invoice_from_row(row) if row else None

    async def get_invoice_by_order(self, order_number: str) -> Optional[InvoiceRecord]:
        row = await Database.fetch_one(
            "SELECT * FROM invoice_records WHERE order_number = $1",
            order_number,
        )
        return _invoice_from_row(row) if row else None
