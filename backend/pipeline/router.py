"""
Event Router
============
Drives one inbound confirmation through the reconciliation state machine:

    received -> verified -> normalized -> materialized
             -> documents_processed -> notified -> done

Features:
- rejected only from received (verification failure, HTTP 400)
- retry only before anything downstream ran (materialization failure, HTTP 503)
- Documents and email only for a newly created paid order
- Post-materialization stages share one asyncio.timeout budget
- Every post-materialization failure is logged and the machine still reaches done
"""

import asyncio
import uuid
from enum import Enum
from typing import Any, Mapping, Optional

import structlog
from pydantic import BaseModel, Field, computed_field

from pipeline.documents import DocumentPipeline
from pipeline.errors import RetryableStorageError, VerificationError, VerificationFailure
from pipeline.materializer import MaterializeResult, OrderMaterializer
from pipeline.normalizer import ConfirmationNormalizer
from pipeline.notifications import NotificationDispatcher
from pipeline.verifier import SIGNED_WEBHOOK_PROVIDERS, ProviderEventVerifier
from schemas.events import VerifiedEvent
from schemas.payments import Order, OrderStatus, Provider


DEFAULT_BUDGET_SECONDS = 5.0


class ConfirmationState(str, Enum):
    RECEIVED = "received"
    VERIFIED = "verified"
    NORMALIZED = "normalized"
    MATERIALIZED = "materialized"
    DOCUMENTS_PROCESSED = "documents_processed"
    NOTIFIED = "notified"
    DONE = "done"
    REJECTED = "rejected"
    RETRY = "retry"


ALLOWED_STATE_TRANSITIONS: dict[ConfirmationState, frozenset[ConfirmationState]] = {
    ConfirmationState.RECEIVED: frozenset({ConfirmationState.VERIFIED, ConfirmationState.REJECTED}),
    ConfirmationState.VERIFIED: frozenset({
        ConfirmationState.NORMALIZED,
        ConfirmationState.DONE,
        ConfirmationState.RETRY,
    }),
    ConfirmationState.NORMALIZED: frozenset({ConfirmationState.MATERIALIZED, ConfirmationState.RETRY}),
    ConfirmationState.MATERIALIZED: frozenset({ConfirmationState.DOCUMENTS_PROCESSED, ConfirmationState.DONE}),
    ConfirmationState.DOCUMENTS_PROCESSED: frozenset({ConfirmationState.NOTIFIED, ConfirmationState.DONE}),
    ConfirmationState.NOTIFIED: frozenset({ConfirmationState.DONE}),
    ConfirmationState.DONE: frozenset(),
    ConfirmationState.REJECTED: frozenset(),
    ConfirmationState.RETRY: frozenset(),
}

HTTP_STATUS_BY_STATE = {
    ConfirmationState.REJECTED: 400,
    ConfirmationState.RETRY: 503,
}


class RouterOutcome(BaseModel):
    """What happened to one confirmation. The API layer maps it to a response."""

    provider: Provider
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    state: ConfirmationState = ConfirmationState.RECEIVED
    history: list[ConfirmationState] = Field(default_factory=lambda: [ConfirmationState.RECEIVED])

    event_type: Optional[str] = None
    ignored: bool = False
    rejection_reason: Optional[VerificationFailure] = None
    created: bool = False
    entity_id: Optional[str] = None
    order_number: Optional[str] = None
    lmn_number: Optional[str] = None
    invoice_number: Optional[str] = None
    errors: list[str] = Field(default_factory=list)

    @computed_field
    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_STATE.get(self.state, 200)

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_STATE_TRANSITIONS[self.state]

    def advance(self, new_state: ConfirmationState) -> None:
        if new_state not in ALLOWED_STATE_TRANSITIONS[self.state]:
            raise ValueError(f"Cannot move confirmation from {self.state.value} to {new_state.value}")
        self.state = new_state
        self.history.append(new_state)


class EventRouter:
    """
    Example:
        router = EventRouter(verifier, normalizer, materializer, documents, notifier)
        outcome = await router.handle_webhook(Provider.CARD_DIRECT, body, headers)
        return JSONResponse(..., status_code=outcome.http_status)
    """

    def __init__(
        self,
        verifier: ProviderEventVerifier,
        normalizer: ConfirmationNormalizer,
        materializer: Optional[OrderMaterializer] = None,
        documents: Optional[DocumentPipeline] = None,
        notifier: Optional[NotificationDispatcher] = None,
        post_materialization_budget_seconds: float = DEFAULT_BUDGET_SECONDS,
    ):
        self.verifier = verifier
        self.normalizer = normalizer
        self.materializer = materializer or OrderMaterializer()
        self.documents = documents or DocumentPipeline()
        self.notifier = notifier or NotificationDispatcher()
        self.budget_seconds = post_materialization_budget_seconds
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: str):
        return self._base_logger.bind(component="event_router", correlation_id=correlation_id)

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def handle_webhook(
        self,
        provider: Provider,
        raw_body: bytes,
        headers: Mapping[str, str],
    ) -> RouterOutcome:
        outcome = RouterOutcome(provider=provider)
        log = self._get_logger(outcome.correlation_id).bind(provider=provider.value)
        log.info("confirmation_received", source="webhook", body_bytes=len(raw_body))

        try:
            if provider in SIGNED_WEBHOOK_PROVIDERS:
                event = self.verifier.verify_webhook(provider, raw_body, headers)
            else:
                event = await self.verifier.verify_push(provider, raw_body)
        except VerificationError as e:
            return self._reject(outcome, e, log)

        return await self._process(event, outcome, log)

    async def handle_redirect(self, provider: Provider, params: Mapping[str, Any]) -> RouterOutcome:
        outcome = RouterOutcome(provider=provider)
        log = self._get_logger(outcome.correlation_id).bind(provider=provider.value)
        log.info("confirmation_received", source="redirect", params=sorted(params.keys()))

        try:
            event = await self.verifier.verify_redirect(provider, params)
        except VerificationError as e:
            return self._reject(outcome, e, log)

        return await self._process(event, outcome, log)

    # =========================================================================
    # STATE MACHINE
    # =========================================================================

    def _reject(self, outcome: RouterOutcome, error: VerificationError, log) -> RouterOutcome:
        log.warning("confirmation_rejected", reason=error.reason.value, detail=error.detail)
        outcome.rejection_reason = error.reason
        outcome.errors.append(str(error))
        outcome.advance(ConfirmationState.REJECTED)
        return outcome

    async def _process(self, event: VerifiedEvent, outcome: RouterOutcome, log) -> RouterOutcome:
        outcome.advance(ConfirmationState.VERIFIED)
        outcome.event_type = event.event_type
        log = log.bind(event_type=event.event_type, source=event.source)

        if not self.normalizer.supports(event):
            log.info("event_ignored")
            outcome.ignored = True
            outcome.advance(ConfirmationState.DONE)
            return outcome

        try:
            confirmation = await self.normalizer.normalize(event, outcome.correlation_id)
        except Exception as e:
            # Nothing persisted yet; the provider's redelivery is safe
            log.error("normalization_failed", error=str(e), error_type=type(e).__name__, exc_info=True)
            outcome.errors.append(f"normalize: {e}")
            outcome.advance(ConfirmationState.RETRY)
            return outcome
        outcome.advance(ConfirmationState.NORMALIZED)

        try:
            result = await self.materializer.materialize(confirmation)
        except RetryableStorageError as e:
            log.error("materialization_failed", external_reference=confirmation.external_reference, error=str(e))
            outcome.errors.append(f"materialize: {e}")
            outcome.advance(ConfirmationState.RETRY)
            return outcome
        outcome.advance(ConfirmationState.MATERIALIZED)
        self._record_materialization(outcome, result)

        order = result.order
        if result.created and order is not None and order.status == OrderStatus.PAID:
            await self._run_side_effects(order, outcome, log)
        else:
            log.info(
                "side_effects_skipped",
                created=result.created,
                kind=result.kind.value,
                entity_id=result.entity_id,
            )

        outcome.advance(ConfirmationState.DONE)
        log.info(
            "confirmation_done",
            history=[s.value for s in outcome.history],
            created=outcome.created,
            order_number=outcome.order_number,
            errors=len(outcome.errors),
        )
        return outcome

    @staticmethod
    def _record_materialization(outcome: RouterOutcome, result: MaterializeResult) -> None:
        outcome.created = result.created
        outcome.entity_id = result.entity_id
        if result.order is not None:
            outcome.order_number = result.order.order_number

    async def _run_side_effects(self, order: Order, outcome: RouterOutcome, log) -> None:
        """Documents then email, under one time budget. Never raises."""
        try:
            async with asyncio.timeout(self.budget_seconds):
                bundle = await self.documents.process(order, outcome.correlation_id)
                outcome.lmn_number = bundle.lmn_number
                outcome.invoice_number = bundle.invoice_number
                outcome.errors.extend(bundle.errors)
                outcome.advance(ConfirmationState.DOCUMENTS_PROCESSED)

                try:
                    await self.notifier.notify(order, bundle, outcome.correlation_id)
                except Exception as e:
                    log.error("notification_failed", order_number=order.order_number, error=str(e), exc_info=True)
                    outcome.errors.append(f"notify: {e}")
                else:
                    outcome.advance(ConfirmationState.NOTIFIED)
        except TimeoutError:
            log.error(
                "post_materialization_timeout",
                order_number=order.order_number,
                budget_seconds=self.budget_seconds,
                reached=outcome.state.value,
            )
            outcome.errors.append(f"timeout after {self.budget_seconds}s in {outcome.state.value}")
        except Exception as e:
            log.error("post_materialization_failed", order_number=order.order_number, error=str(e), exc_info=True)
            outcome.errors.append(f"documents: {e}")
