"""Gateway notification reconciliation.

One reconciler serves every provider; a `ProviderAdapter` supplies the
correlation id and the normalized status. The status write and fulfillment
share one transaction, and the conditional write on `fulfilled_at` is the only
thing that decides whether fulfillment runs.
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from dealpay.common.logging import logger
from dealpay.common.metrics import (
    duplicate_completions_skipped_total,
    fulfillment_aborts_total,
    status_persist_failures_total,
    webhook_notifications_total,
)
from dealpay.common.state_machine import is_terminal, triggers_fulfillment, validate_status
from dealpay.common.tracing import tracer
from dealpay.services.payments.fulfillment import FulfillmentService
from dealpay.services.payments.models import PaymentOrder
from dealpay.services.payments.normalizers import ProviderAdapter
from dealpay.services.payments.schemas import ReconcileOutcome


class StatusPersistError(Exception):
    """The order status write failed; the gateway should redeliver."""


class Reconciler:
    """Applies gateway notifications to payment orders."""

    def __init__(self, session_factory, fulfillment: FulfillmentService, service_name: str = "payments") -> None:
        self.session_factory = session_factory
        self.fulfillment = fulfillment
        self.service_name = service_name

    def _count(self, provider: str, outcome: str) -> None:
        webhook_notifications_total.labels(service=self.service_name, provider=provider, outcome=outcome).inc()

    def reconcile(self, adapter: ProviderAdapter, payload: dict[str, Any], trace_id: str = "") -> ReconcileOutcome:
        """Reconcile one raw notification payload.

        Missing correlation ids and unknown orders are acknowledged without
        effect. Raises `StatusPersistError` only when the status write fails.
        """

        with tracer.start_as_current_span("payments.reconcile") as span:
            span.set_attribute("payment.provider", adapter.name)
            result = self._reconcile(adapter, payload, trace_id)
            span.set_attribute("payment.outcome", result.outcome)
            if result.correlation_id:
                span.set_attribute("payment.correlation_id", result.correlation_id)
            return result

    def _reconcile(self, adapter: ProviderAdapter, payload: dict[str, Any], trace_id: str) -> ReconcileOutcome:
        correlation_id = adapter.correlation_id(payload)
        if not correlation_id:
            logger.warning("notification_without_correlation_id provider=%s", adapter.name)
            self._count(adapter.name, "missing_correlation_id")
            return ReconcileOutcome(outcome="missing_correlation_id")

        with self.session_factory() as db:
            try:
                order = db.execute(
                    select(PaymentOrder).where(PaymentOrder.correlation_id == correlation_id)
                ).scalar_one_or_none()
            except SQLAlchemyError as exc:
                logger.error("order_lookup_failed correlation_id=%s error=%s", correlation_id, exc)
                order = None
            if order is None:
                logger.warning("order_not_found provider=%s correlation_id=%s", adapter.name, correlation_id)
                self._count(adapter.name, "order_not_found")
                return ReconcileOutcome(outcome="order_not_found", correlation_id=correlation_id)

            status = adapter.normalize(payload)
            validate_status(status)
            previous_status = order.status
            if is_terminal(previous_status) and previous_status != status:
                logger.warning(
                    "terminal_status_overwritten order_id=%s from=%s to=%s",
                    order.order_id,
                    previous_status,
                    status,
                )

            try:
                first_completion = self._persist_status(db, correlation_id, status, payload)
            except (SQLAlchemyError, StatusPersistError) as exc:
                db.rollback()
                self._escalate(adapter.name, correlation_id, exc)

            report = None
            if first_completion:
                # Item and cart failures are contained by savepoints; anything
                # escaping here would leave the status write uncommitted.
                try:
                    report = self.fulfillment.fulfill(db, order, trace_id=trace_id)
                except Exception as exc:
                    db.rollback()
                    self._escalate(adapter.name, correlation_id, exc, event="fulfillment_aborted")

            try:
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                self._escalate(adapter.name, correlation_id, exc)

        if first_completion:
            outcome = "fulfilled"
        elif triggers_fulfillment(status):
            outcome = "duplicate_completion"
            logger.info("duplicate_completion_skipped order_id=%s", order.order_id)
            duplicate_completions_skipped_total.labels(service=self.service_name, provider=adapter.name).inc()
        else:
            outcome = "status_updated"
        logger.info(
            "order_status_updated order_id=%s from=%s to=%s outcome=%s",
            order.order_id,
            previous_status,
            status,
            outcome,
        )
        self._count(adapter.name, outcome)
        return ReconcileOutcome(outcome=outcome, correlation_id=correlation_id, status=status, fulfillment=report)

    def _persist_status(self, db, correlation_id: str, status: str, payload: dict[str, Any]) -> bool:
        """Write status, raw payload, and timestamp for the order.

        Returns True only when this write is the one that moved the order into
        `completed` for the first time.
        """

        now = datetime.now(timezone.utc)
        values = {
            "status": status,
            "payment_response": payload,
            "updated_at": now,
            "state_version": PaymentOrder.state_version + 1,
        }
        if triggers_fulfillment(status):
            result = db.execute(
                update(PaymentOrder)
                .where(
                    PaymentOrder.correlation_id == correlation_id,
                    PaymentOrder.fulfilled_at.is_(None),
                )
                .values(fulfilled_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                return True

        result = db.execute(
            update(PaymentOrder)
            .where(PaymentOrder.correlation_id == correlation_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StatusPersistError(f"order {correlation_id} disappeared during status write")
        return False

    def _escalate(self, provider: str, correlation_id: str, exc: Exception, event: str = "status_persist_failed"):
        logger.error("%s correlation_id=%s error=%s", event, correlation_id, exc, exc_info=exc)
        if event == "fulfillment_aborted":
            fulfillment_aborts_total.labels(service=self.service_name, provider=provider).inc()
        else:
            status_persist_failures_total.labels(service=self.service_name, provider=provider).inc()
        self._count(provider, event)
        raise StatusPersistError(f"failed to persist status for order {correlation_id}") from exc
