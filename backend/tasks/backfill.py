"""
Document Backfill Loop - The Safety Net
=======================================
Background task that finds paid orders whose documents never landed
(timeout, renderer crash, storage hiccup during fulfilment) and re-runs
the document pipeline for them.

The document pipeline is idempotent per order_number, so a backfill that
races a slow webhook can only ever fill gaps.

Features:
- Runs every BACKFILL_INTERVAL seconds (default 5 minutes)
- Skips orders younger than the grace period (fulfilment may be in flight)
- Bounded batch per cycle
- Orders that failed sit out a cooldown so they cannot fill every batch
- Manual trigger for support tooling
- Stats for monitoring
"""

import asyncio
from datetime import datetime, timedelta
from typing import Iterable, Optional

import structlog
from pydantic import BaseModel, Field

from config import DEFAULT_LMN_EXCLUDED_CATEGORIES
from pipeline.documents import DocumentPipeline
from schemas.payments import OrderStatus, utcnow
from storage.repositories import IOrderRepository


logger = structlog.get_logger().bind(component="backfill")

DEFAULT_GRACE_PERIOD = timedelta(minutes=2)
DEFAULT_RETRY_COOLDOWN = timedelta(minutes=30)


class BackfillReport(BaseModel):
    found: int = 0
    cooling_down: int = 0
    completed: int = 0
    still_missing: int = 0
    failed: int = 0
    order_numbers: list[str] = Field(default_factory=list)
    finished_at: Optional[str] = None


class DocumentBackfill:
    """
    Example:
        backfill = DocumentBackfill(order_repo, document_pipeline, interval_seconds=300)
        task = asyncio.create_task(backfill.backfill_loop())
    """

    def __init__(
        self,
        order_repo: IOrderRepository,
        documents: DocumentPipeline,
        interval_seconds: int = 300,
        batch_size: int = 25,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
        retry_cooldown: timedelta = DEFAULT_RETRY_COOLDOWN,
        excluded_categories: Iterable[str] = DEFAULT_LMN_EXCLUDED_CATEGORIES,
    ):
        self.orders = order_repo
        self.documents = documents
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.grace_period = grace_period
        self.retry_cooldown = retry_cooldown
        self.excluded_categories = frozenset(excluded_categories)
        self.cycles = 0
        self.last_report: Optional[BackfillReport] = None
        self._retry_after: dict[str, datetime] = {}

    # =========================================================================
    # CYCLE
    # =========================================================================

    def _cooling_down(self) -> list[str]:
        now = utcnow()
        self._retry_after = {number: at for number, at in self._retry_after.items() if at > now}
        return list(self._retry_after)

    def _defer(self, order_number: str):
        self._retry_after[order_number] = utcnow() + self.retry_cooldown

    async def run_backfill_cycle(self) -> BackfillReport:
        report = BackfillReport()
        cooling = self._cooling_down()
        report.cooling_down = len(cooling)
        candidates = await self.orders.list_missing_documents(
            self.excluded_categories,
            older_than=utcnow() - self.grace_period,
            limit=self.batch_size,
            skip_order_numbers=cooling,
        )
        report.found = len(candidates)

        if candidates:
            logger.warning("orders_missing_documents", count=len(candidates))

        for order in candidates:
            report.order_numbers.append(order.order_number)
            try:
                bundle = await self.documents.process(order, correlation_id=f"backfill-{order.order_number}")
            except Exception as e:
                report.failed += 1
                self._defer(order.order_number)
                logger.error("backfill_order_failed", order_number=order.order_number, error=str(e), exc_info=True)
                continue

            if bundle.errors:
                report.still_missing += 1
                self._defer(order.order_number)
                logger.warning("backfill_incomplete", order_number=order.order_number, errors=bundle.errors)
            else:
                report.completed += 1
                logger.info(
                    "backfill_completed",
                    order_number=order.order_number,
                    lmn_number=bundle.lmn_number,
                    invoice_number=bundle.invoice_number,
                )

        self.cycles += 1
        report.finished_at = utcnow().isoformat()
        self.last_report = report
        logger.info(
            "backfill_cycle_complete",
            found=report.found,
            completed=report.completed,
            still_missing=report.still_missing,
            failed=report.failed,
        )
        return report

    async def backfill_loop(self):
        """Runs until cancelled."""
        logger.info("backfill_loop_started", interval=self.interval_seconds, batch_size=self.batch_size)

        while True:
            try:
                await self.run_backfill_cycle()
            except Exception as e:
                logger.error("backfill_loop_error", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    # =========================================================================
    # MANUAL BACKFILL (support tooling)
    # =========================================================================

    async def manual_backfill(self, order_number: str) -> dict:
        order = await self.orders.get_by_order_number(order_number)

        if order is None:
            return {"success": False, "error": "Order not found"}

        if order.status != OrderStatus.PAID:
            return {
                "success": False,
                "error": f"Order status is '{order.status.value}', documents are only issued for paid orders",
            }

        bundle = await self.documents.process(order, correlation_id=f"manual-{order_number}")
        logger.info(
            "manual_backfill",
            order_number=order_number,
            lmn_number=bundle.lmn_number,
            invoice_number=bundle.invoice_number,
            errors=len(bundle.errors),
        )
        return {
            "success": not bundle.errors,
            "order_number": order_number,
            "lmn_number": bundle.lmn_number,
            "invoice_number": bundle.invoice_number,
            "errors": bundle.errors,
        }

    # =========================================================================
    # HEALTH CHECK
    # =========================================================================

    async def get_backfill_stats(self) -> dict:
        try:
            pending = await self.orders.list_missing_documents(
                self.excluded_categories,
                older_than=utcnow() - self.grace_period,
                limit=1000,
            )
        except Exception as e:
            return {"interval_seconds": self.interval_seconds, "error": str(e)}

        return {
            "interval_seconds": self.interval_seconds,
            "batch_size": self.batch_size,
            "cycles": self.cycles,
            "cooling_down": len(self._cooling_down()),
            "currently_missing": len(pending),
            "last_cycle": self.last_report.model_dump() if self.last_report else None,
        }
