# storage/repositories.py
# ============================================================================
# PERSISTENCE INTERFACES + IN-MEMORY IMPLEMENTATIONS
# ============================================================================
# Unique constraints are the only mutual exclusion in the system. Inserts
# that hit one raise DuplicateKeyError(constraint) where constraint is the
# column name. The in-memory tables emulate this with one asyncio.Lock so
# concurrent deliveries race exactly as they would against Postgres.
# ============================================================================

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional

from pipeline.errors import DuplicateKeyError
from schemas.documents import InvoiceRecord, LmnRecord
from schemas.payments import Membership, MembershipStatus, Order, OrderStatus, utcnow


# ============================================================================
# INTERFACES
# ============================================================================

class IOrderRepository(ABC):

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        """Raises DuplicateKeyError on external_payment_reference or order_number."""

    @abstractmethod
    async def get_by_reference(self, external_reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def update_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        pass

    @abstractmethod
    async def list_missing_documents(
        self,
        excluded_categories: Iterable[str],
        older_than: datetime,
        limit: int = 25,
        skip_order_numbers: Iterable[str] = (),
    ) -> list[Order]:
        """Paid orders with no invoice, or with eligible items but no LMN. Oldest first."""


class IMembershipRepository(ABC):

    @abstractmethod
    async def upsert(self, membership: Membership) -> tuple[Membership, bool]:
        """Insert or update keyed by subscription_id. Returns (row, created)."""

    @abstractmethod
    async def get_by_subscription_id(self, subscription_id: str) -> Optional[Membership]:
        pass


class IDocumentRepository(ABC):

    @abstractmethod
    async def insert_lmn(self, record: LmnRecord) -> LmnRecord:
        """Raises DuplicateKeyError on order_number or lmn_number."""

    @abstractmethod
    async def get_lmn(self, lmn_number: str) -> Optional[LmnRecord]:
        pass

    @abstractmethod
    async def get_lmn_by_order(self, order_number: str) -> Optional[LmnRecord]:
        pass

    @abstractmethod
    async def list_lmns_by_email(self, email: str) -> list[LmnRecord]:
        pass

    @abstractmethod
    async def insert_invoice(self, record: InvoiceRecord) -> InvoiceRecord:
        """Raises DuplicateKeyError on order_number or invoice_number."""

    @abstractmethod
    async def get_invoice(self, invoice_number: str) -> Optional[InvoiceRecord]:
        pass

    @abstractmethod
    async def get_invoice_by_order(self, order_number: str) -> Optional[InvoiceRecord]:
        pass


# ============================================================================
# IN-MEMORY IMPLEMENTATIONS
# ============================================================================

class InMemoryTables:
    """Shared row storage so repositories can see each other's tables."""

    def __init__(self):
        self.orders: dict[str, Order] = {}
        self.memberships: dict[str, Membership] = {}
        self.lmns: dict[str, LmnRecord] = {}
        self.invoices: dict[str, InvoiceRecord] = {}
        self.lock = asyncio.Lock()


class InMemoryOrderRepository(IOrderRepository):

    def __init__(self, tables: Optional[InMemoryTables] = None):
        self._tables = tables or InMemoryTables()

    async def insert(self, order: Order) -> Order:
        async with self._tables.lock:
            for existing in self._tables.orders.values():
                if existing.external_payment_reference == order.external_payment_reference:
                    raise DuplicateKeyError("external_payment_reference", order.external_payment_reference)
                if existing.order_number == order.order_number:
                    raise DuplicateKeyError("order_number", order.order_number)
            self._tables.orders[order.id] = order
            return order

    async def get_by_reference(self, external_reference: str) -> Optional[Order]:
        async with self._tables.lock:
            for order in self._tables.orders.values():
                if order.external_payment_reference == external_reference:
                    return order
            return None

    async def get_by_order_number(self, order_number: str) -> Optional[Order]:
        async with self._tables.lock:
            for order in self._tables.orders.values():
                if order.order_number == order_number:
                    return order
            return None

    async def update_status(self, order_id: str, status: OrderStatus) -> Optional[Order]:
        async with self._tables.lock:
            order = self._tables.orders.get(order_id)
            if order is None:
                return None
            updated = order.transition_to(status)
            self._tables.orders[order_id] = updated
            return updated

    async def list_missing_documents(
        self,
        excluded_categories: Iterable[str],
        older_than: datetime,
        limit: int = 25,
        skip_order_numbers: Iterable[str] = (),
    ) -> list[Order]:
        excluded = set(excluded_categories)
        skipped = set(skip_order_numbers)
        async with self._tables.lock:
            invoiced = {record.order_number for record in self._tables.invoices.values()}
            with_lmn = {record.order_number for record in self._tables.lmns.values()}
            candidates = []
            for order in sorted(self._tables.orders.values(), key=lambda o: o.created_at):
                if order.status != OrderStatus.PAID or order.created_at > older_than:
                    continue
                if order.order_number in skipped:
                    continue
                eligible = any(item.category not in excluded for item in order.items)
                if order.order_number not in invoiced or (eligible and order.order_number not in with_lmn):
                    candidates.append(order)
                if len(candidates) >= limit:
                    break
            return candidates


class InMemoryMembershipRepository(IMembershipRepository):

    def __init__(self, tables: Optional[InMemoryTables] = None):
        self._tables = tables or InMemoryTables()

    async def upsert(self, membership: Membership) -> tuple[Membership, bool]:
        async with self._tables.lock:
            existing = self._tables.memberships.get(membership.subscription_id)
            if existing is None:
                self._tables.memberships[membership.subscription_id] = membership
                return membership, True

            update = {
                "subscription_status": membership.subscription_status,
                "updated_at": utcnow(),
            }
            if membership.subscription_status == MembershipStatus.CANCELLED:
                update["cancelled_at"] = membership.cancelled_at or utcnow()
            for field in ("plan_tier", "customer_id", "customer_email"):
                value = getattr(membership, field)
                if value:
                    update[field] = value
            merged = existing.model_copy(update=update)
            self._tables.memberships[membership.subscription_id] = merged
            return merged, False

    async def get_by_subscription_id(self, subscription_id: str) -> Optional[Membership]:
        async with self._tables.lock:
            return self._tables.memberships.get(subscription_id)


class InMemoryDocumentRepository(IDocumentRepository):

    def __init__(self, tables: Optional[InMemoryTables] = None):
        self._tables = tables or InMemoryTables()

    async def insert_lmn(self, record: LmnRecord) -> LmnRecord:
        async with self._tables.lock:
            if record.lmn_number in self._tables.lmns:
                raise DuplicateKeyError("lmn_number", record.lmn_number)
            if any(r.order_number == record.order_number for r in self._tables.lmns.values()):
                raise DuplicateKeyError("order_number", record.order_number)
            self._tables.lmns[record.lmn_number] = record
            return record

    async def get_lmn(self, lmn_number: str) -> Optional[LmnRecord]:
        async with self._tables.lock:
            return self._tables.lmns.get(lmn_number)

    async def get_lmn_by_order(self, order_number: str) -> Optional[LmnRecord]:
        async with self._tables.lock:
            for record in self._tables.lmns.values():
                if record.order_number == order_number:
                    return record
            return None

    async def list_lmns_by_email(self, email: str) -> list[LmnRecord]:
        async with self._tables.lock:
            records = [r for r in self._tables.lmns.values() if r.customer_email.lower() == email.lower()]
            return sorted(records, key=lambda r: r.issue_date, reverse=True)

    async def insert_invoice(self, record: InvoiceRecord) -> InvoiceRecord:
        async with self._tables.lock:
            if record.invoice_number in self._tables.invoices:
                raise DuplicateKeyError("invoice_number", record.invoice_number)
            if any(r.order_number == record.order_number for r in self._tables.invoices.values()):
                raise DuplicateKeyError("order_number", record.order_number)
            self._tables.invoices[record.invoice_number] = record
            return record

    async def get_invoice(self, invoice_number: str) -> Optional[InvoiceRecord]:
        async with self._tables.lock:
            return self._tables.invoices.get(invoice_number)

    async def get_invoice_by_order(self, order_number: str) -> Optional[InvoiceRecord]:
        async with self._tables.lock:
            for record in self._tables.invoices.values():
                if record.order_number == order_number:
                    return record
            return None
