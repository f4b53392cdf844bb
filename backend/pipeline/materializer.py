"""
Idempotent Order Materializer
=============================
Creates or updates exactly one Order or Membership per external payment
reference, however many times (and however concurrently) the provider
delivers the same confirmation.

Features:
- Insert-first: a unique violation on the reference switches to the update
  path, so the database decides the race
- order_number collisions regenerate the number (bounded attempts)
- Status-change events (cancelled/refunded) never create rows
- Memberships are upserted keyed by subscription_id
- Any other storage failure becomes RetryableStorageError
"""

from enum import Enum
from typing import Optional

import structlog
from pydantic import BaseModel

from pipeline.errors import DuplicateKeyError, RetryableStorageError
from schemas.payments import (
    CheckoutMode,
    Membership,
    MembershipStatus,
    Order,
    OrderStatus,
    PaymentConfirmation,
    utcnow,
)
from storage.repositories import (
    IMembershipRepository,
    IOrderRepository,
    InMemoryMembershipRepository,
    InMemoryOrderRepository,
)


ORDER_NUMBER_ATTEMPTS = 3


class EntityKind(str, Enum):
    ORDER = "order"
    MEMBERSHIP = "membership"


class MaterializeResult(BaseModel):
    entity_id: Optional[str]
    kind: EntityKind
    created: bool
    order: Optional[Order] = None
    membership: Optional[Membership] = None


class OrderMaterializer:
    """
    Example:
        materializer = OrderMaterializer(order_repo, membership_repo)
        result = await materializer.materialize(confirmation)
        if result.created:
            ...  # first delivery, run side effects
    """

    def __init__(
        self,
        order_repo: Optional[IOrderRepository] = None,
        membership_repo: Optional[IMembershipRepository] = None,
    ):
        # Dependency injection with defaults
        self.orders = order_repo or InMemoryOrderRepository()
        self.memberships = membership_repo or InMemoryMembershipRepository()
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="materializer", correlation_id=correlation_id)

    async def materialize(self, confirmation: PaymentConfirmation) -> MaterializeResult:
        try:
            if confirmation.mode == CheckoutMode.SUBSCRIPTION:
                return await self._upsert_membership(confirmation)
            if confirmation.order_status == OrderStatus.PAID:
                return await self._create_order(confirmation)
            return await self._apply_status_change(confirmation)
        except RetryableStorageError:
            raise
        except Exception as e:
            self._get_logger(confirmation.correlation_id).error(
                "materialize_storage_failed",
                external_reference=confirmation.external_reference,
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            raise RetryableStorageError(str(e)) from e

    # =========================================================================
    # ONE-TIME ORDERS
    # =========================================================================

    async def _create_order(self, confirmation: PaymentConfirmation) -> MaterializeResult:
        log = self._get_logger(confirmation.correlation_id)
        order_number = confirmation.merchant_order_number

        for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
            order = Order(
                order_number=order_number or Order.generate_order_number(),
                customer_email=confirmation.customer_email,
                customer_name=confirmation.customer_name,
                external_payment_reference=confirmation.external_reference,
                provider=confirmation.provider,
                status=OrderStatus.PAID,
                total_amount_minor=confirmation.amount_minor,
                currency=confirmation.currency,
                items=confirmation.line_items,
            )
            try:
                stored = await self.orders.insert(order)
            except DuplicateKeyError as e:
                if e.constraint == "external_payment_reference":
                    log.info(
                        "order_already_materialized",
                        external_reference=confirmation.external_reference,
                    )
                    return await self._update_existing(confirmation)
                if e.constraint == "order_number":
                    log.warning("order_number_collision", order_number=order.order_number, attempt=attempt)
                    # A merchant-chosen number may belong to this very payment
                    existing = await self.orders.get_by_reference(confirmation.external_reference)
                    if existing is not None:
                        return await self._update_existing(confirmation)
                    order_number = None
                    continue
                raise

            log.info(
                "order_created",
                order_id=stored.id,
                order_number=stored.order_number,
                provider=stored.provider.value,
                amount_minor=stored.total_amount_minor,
            )
            return MaterializeResult(entity_id=stored.id, kind=EntityKind.ORDER, created=True, order=stored)

        raise RetryableStorageError(
            f"order_number collided {ORDER_NUMBER_ATTEMPTS} times for {confirmation.external_reference}"
        )

    async def _update_existing(self, confirmation: PaymentConfirmation) -> MaterializeResult:
        existing = await self.orders.get_by_reference(confirmation.external_reference)
        if existing is None:
            raise RetryableStorageError(
                f"reference {confirmation.external_reference} reported duplicate but not found"
            )
        order = await self._transition(existing, confirmation.order_status, confirmation.correlation_id)
        return MaterializeResult(entity_id=order.id, kind=EntityKind.ORDER, created=False, order=order)

    async def _apply_status_change(self, confirmation: PaymentConfirmation) -> MaterializeResult:
        log = self._get_logger(confirmation.correlation_id)

        existing = await self.orders.get_by_reference(confirmation.external_reference)
        if existing is None and confirmation.merchant_order_number:
            existing = await self.orders.get_by_order_number(confirmation.merchant_order_number)

        if existing is None:
            log.warning(
                "status_change_for_unknown_order",
                external_reference=confirmation.external_reference,
                merchant_order_number=confirmation.merchant_order_number,
                status=confirmation.order_status.value,
            )
            return MaterializeResult(entity_id=None, kind=EntityKind.ORDER, created=False)

        order = await self._transition(existing, confirmation.order_status, confirmation.correlation_id)
        return MaterializeResult(entity_id=order.id, kind=EntityKind.ORDER, created=False, order=order)

    async def _transition(self, order: Order, status: OrderStatus, correlation_id: str) -> Order:
        log = self._get_logger(correlation_id)

        if order.status == status:
            return order

        if not order.can_transition_to(status):
            log.warning(
                "order_transition_ignored",
                order_number=order.order_number,
                current_status=order.status.value,
                requested_status=status.value,
            )
            return order

        updated = await self.orders.update_status(order.id, status)
        if updated is None:
            raise RetryableStorageError(f"order {order.id} vanished during status update")

        log.info(
            "order_status_changed",
            order_number=order.order_number,
            previous_status=order.status.value,
            status=updated.status.value,
        )
        return updated

    # =========================================================================
    # MEMBERSHIPS
    # =========================================================================

    async def _upsert_membership(self, confirmation: PaymentConfirmation) -> MaterializeResult:
        log = self._get_logger(confirmation.correlation_id)
        subscription_id = confirmation.subscription_id or confirmation.external_reference
        status = confirmation.membership_status

        candidate = Membership(
            subscription_id=subscription_id,
            customer_id=confirmation.customer_id,
            customer_email=confirmation.customer_email or None,
            plan_tier=confirmation.plan_tier,
            subscription_status=status,
            provider=confirmation.provider,
            cancelled_at=utcnow() if status == MembershipStatus.CANCELLED else None,
        )
        membership, created = await self.memberships.upsert(candidate)

        log.info(
            "membership_created" if created else "membership_updated",
            subscription_id=subscription_id,
            status=membership.subscription_status.value,
            plan_tier=membership.plan_tier,
        )
        return MaterializeResult(
            entity_id=membership.id,
            kind=EntityKind.MEMBERSHIP,
            created=created,
            membership=membership,
        )
