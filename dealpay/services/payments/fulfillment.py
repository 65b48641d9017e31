"""Order fulfillment: purchases, inventory, cart, and the item retry queue.

`fulfill` runs inside the reconciler's transaction. Every order item gets its
own SAVEPOINT so that its purchase row and inventory counters commit or roll
back together, and a failed item never takes the rest of the order with it.
Failed items are written to the outbox in the same transaction and retried by
the `fulfillment.retry` consumer.
"""

import asyncio

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from dealpay.common.events import EventEnvelope, KafkaBus, consume_forever
from dealpay.common.logging import logger
from dealpay.common.metrics import (
    dlq_published_total,
    duplicate_events_skipped_total,
    fulfillment_item_failures_total,
    fulfillments_total,
    retries_total,
)
from dealpay.services.payments import outbox
from dealpay.services.payments.models import CartItem, Deal, InboxEvent, PaymentOrder, Purchase
from dealpay.services.payments.schemas import FulfillmentReport, OrderItem, merge_order_items

RETRY_TOPIC = "fulfillment.retry"
DLQ_TOPIC = "fulfillment.dlq"


class FulfillmentError(Exception):
    """Item-level fulfillment failure."""

    reason = "fulfillment_error"
    retryable = True


class InsufficientStockError(FulfillmentError):
    reason = "insufficient_stock"
    retryable = False

    def __init__(self, deal_id: str, quantity: int) -> None:
        super().__init__(f"deal {deal_id} cannot cover quantity {quantity}")
        self.deal_id = deal_id
        self.quantity = quantity


class FulfillmentService:
    """Materializes purchases for completed orders and retries failed items."""

    def __init__(
        self,
        session_factory,
        service_name: str = "payments",
        allow_negative_stock: bool = False,
        max_retries: int = 3,
    ) -> None:
        self.session_factory = session_factory
        self.kafka = KafkaBus()
        self.service_name = service_name
        self.allow_negative_stock = allow_negative_stock
        self.max_retries = max_retries

    def fulfill(self, db, order: PaymentOrder, trace_id: str = "") -> FulfillmentReport:
        """Fulfill every item of `order`, then clear the buyer's cart.

        Must only be called by the writer that moved the order into
        `completed`. Does not commit; the caller owns the transaction.
        """

        report = FulfillmentReport()
        valid_items = []
        for raw_item in order.order_items or []:
            try:
                valid_items.append(OrderItem.model_validate(raw_item))
            except ValidationError as exc:
                logger.error("order_item_invalid order_id=%s item=%s error=%s", order.order_id, raw_item, exc)
                deal_id = raw_item.get("dealId", "") if isinstance(raw_item, dict) else ""
                report.failed_deal_ids.append(str(deal_id))
                self._record_item_failure(
                    db, order, raw_item, reason="invalid_item", retryable=False, attempt=1, trace_id=trace_id
                )

        for item in merge_order_items(valid_items):
            raw_item = item.model_dump(mode="json", by_alias=True, exclude_none=True)
            try:
                with db.begin_nested():
                    deal_found = self._apply_item(db, order, item)
            except FulfillmentError as exc:
                logger.error(
                    "fulfillment_item_failed order_id=%s deal_id=%s reason=%s error=%s",
                    order.order_id,
                    item.deal_id,
                    exc.reason,
                    exc,
                )
                report.failed_deal_ids.append(item.deal_id)
                self._record_item_failure(
                    db, order, raw_item, reason=exc.reason, retryable=exc.retryable, attempt=1, trace_id=trace_id
                )
                continue
            except SQLAlchemyError as exc:
                logger.error(
                    "fulfillment_item_failed order_id=%s deal_id=%s reason=database_error error=%s",
                    order.order_id,
                    item.deal_id,
                    exc,
                )
                report.failed_deal_ids.append(item.deal_id)
                self._record_item_failure(
                    db, order, raw_item, reason="database_error", retryable=True, attempt=1, trace_id=trace_id
                )
                continue

            report.fulfilled_deal_ids.append(item.deal_id)
            if not deal_found:
                report.missing_deal_ids.append(item.deal_id)

        report.cart_cleared = self._clear_cart(db, order.user_id)
        fulfillments_total.labels(service=self.service_name).inc()
        logger.info(
            "order_fulfilled order_id=%s fulfilled=%s failed=%s cart_cleared=%s",
            order.order_id,
            len(report.fulfilled_deal_ids),
            len(report.failed_deal_ids),
            report.cart_cleared,
        )
        return report

    def _apply_item(self, db, order: PaymentOrder, item: OrderItem) -> bool:
        """Insert the purchase and move inventory for one item.

        Returns False when the deal row does not exist; the purchase is kept.
        """

        db.add(
            Purchase(
                payment_order_id=order.id,
                user_id=order.user_id,
                deal_id=item.deal_id,
                quantity=item.quantity,
                purchase_price=item.price,
                status="confirmed",
            )
        )
        db.flush()
        return self._decrement_inventory(db, item.deal_id, item.quantity)

    def _decrement_inventory(self, db, deal_id: str, quantity: int) -> bool:
        """Move `quantity` from stock to sold in one UPDATE statement.

        The stock guard lives in the WHERE clause so concurrent fulfillments of
        the same deal cannot lose updates or oversell.
        """

        stmt = update(Deal).where(Deal.id == deal_id)
        if not self.allow_negative_stock:
            stmt = stmt.where(Deal.stock_quantity >= quantity)
        result = db.execute(
            stmt.values(
                stock_quantity=Deal.stock_quantity - quantity,
                sold_quantity=Deal.sold_quantity + quantity,
            ).execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return True
        if db.execute(select(Deal.id).where(Deal.id == deal_id)).scalar_one_or_none() is None:
            logger.warning("deal_not_found deal_id=%s quantity=%s", deal_id, quantity)
            return False
        raise InsufficientStockError(deal_id, quantity)

    def _clear_cart(self, db, user_id: str) -> bool:
        try:
            with db.begin_nested():
                db.execute(delete(CartItem).where(CartItem.user_id == user_id))
        except SQLAlchemyError as exc:
            logger.error("cart_clear_failed user_id=%s error=%s", user_id, exc)
            return False
        return True

    def _record_item_failure(
        self,
        db,
        order: PaymentOrder,
        raw_item,
        reason: str,
        retryable: bool,
        attempt: int,
        trace_id: str,
    ) -> None:
        """Queue a failed item for retry, or for the DLQ once retries are spent."""

        fulfillment_item_failures_total.labels(service=self.service_name, reason=reason).inc()
        topic = RETRY_TOPIC if retryable and attempt <= self.max_retries else DLQ_TOPIC
        envelope = EventEnvelope(
            event_type=topic,
            aggregate_id=order.correlation_id,
            trace_id=trace_id,
            payload={
                "payment_order_id": order.id,
                "order_id": order.order_id,
                "user_id": order.user_id,
                "item": raw_item,
                "attempt": attempt,
                "reason": reason,
                "retryable": retryable,
            },
        )
        outbox.enqueue(db, topic, envelope)
        if topic == DLQ_TOPIC:
            error_type = "RETRY_EXHAUSTED" if retryable else "NON_RETRYABLE"
            dlq_published_total.labels(service=self.service_name, topic=DLQ_TOPIC, error_type=error_type).inc()

    def _inbox_seen(self, db, event_id: str) -> bool:
        return (
            db.execute(
                select(InboxEvent).where(
                    InboxEvent.event_id == event_id,
                    InboxEvent.consumed_by_service == self.service_name,
                )
            ).scalar_one_or_none()
            is not None
        )

    def _mark_inbox(self, db, event_id: str) -> None:
        db.add(InboxEvent(event_id=event_id, consumed_by_service=self.service_name))

    async def handle_item_retry(self, event: EventEnvelope) -> None:
        """Re-apply one failed order item from the retry topic."""

        payload = event.payload
        attempt = int(payload.get("attempt", 1))
        with self.session_factory() as db:
            if self._inbox_seen(db, event.event_id):
                logger.info("duplicate event skipped topic=%s event_id=%s", RETRY_TOPIC, event.event_id)
                duplicate_events_skipped_total.labels(service=self.service_name, topic=RETRY_TOPIC).inc()
                return
            self._mark_inbox(db, event.event_id)

            order = db.get(PaymentOrder, payload.get("payment_order_id"))
            if order is None:
                logger.warning("retry_order_missing payment_order_id=%s", payload.get("payment_order_id"))
                db.commit()
                return

            raw_item = payload.get("item")
            try:
                item = OrderItem.model_validate(raw_item)
            except ValidationError as exc:
                logger.error("retry_item_invalid order_id=%s error=%s", order.order_id, exc)
                self._record_item_failure(
                    db, order, raw_item, "invalid_item", retryable=False, attempt=attempt, trace_id=event.trace_id
                )
                db.commit()
                return

            already_applied = db.execute(
                select(Purchase.id).where(
                    Purchase.payment_order_id == order.id,
                    Purchase.deal_id == item.deal_id,
                )
            ).scalar_one_or_none()
            if already_applied is not None:
                logger.info("retry_item_already_applied order_id=%s deal_id=%s", order.order_id, item.deal_id)
                db.commit()
                return

            retries_total.labels(service=self.service_name, dependency="fulfillment").inc()
            try:
                with db.begin_nested():
                    self._apply_item(db, order, item)
            except FulfillmentError as exc:
                logger.warning(
                    "retry_item_failed order_id=%s deal_id=%s attempt=%s reason=%s",
                    order.order_id,
                    item.deal_id,
                    attempt,
                    exc.reason,
                )
                self._record_item_failure(
                    db, order, raw_item, exc.reason, exc.retryable, attempt=attempt + 1, trace_id=event.trace_id
                )
            except SQLAlchemyError as exc:
                logger.warning(
                    "retry_item_failed order_id=%s deal_id=%s attempt=%s error=%s",
                    order.order_id,
                    item.deal_id,
                    attempt,
                    exc,
                )
                self._record_item_failure(
                    db, order, raw_item, "database_error", True, attempt=attempt + 1, trace_id=event.trace_id
                )
            except Exception:
                logger.exception(
                    "retry_item_crashed order_id=%s deal_id=%s attempt=%s", order.order_id, item.deal_id, attempt
                )
                self._record_item_failure(
                    db, order, raw_item, "unexpected_error", False, attempt=attempt + 1, trace_id=event.trace_id
                )
            else:
                logger.info("retry_item_applied order_id=%s deal_id=%s attempt=%s", order.order_id, item.deal_id, attempt)
            db.commit()

    async def publish_outbox_once(self, limit: int = 100) -> int:
        """Ship one claimed batch to Kafka. Returns the number delivered."""

        with self.session_factory() as db:
            claimed = [(row.id, row.topic, row.payload) for row in outbox.claim_batch(db, limit=limit)]
            db.commit()

        delivered = 0
        for event_id, topic, payload in claimed:
            try:
                await self.kafka.publish(topic, EventEnvelope.model_validate(payload))
                ok = True
            except Exception as exc:
                logger.error("outbox_publish_failed topic=%s event_id=%s error=%s", topic, event_id, exc)
                ok = False
            with self.session_factory() as db:
                outbox.settle(db, event_id, delivered=ok)
                db.commit()
            if ok:
                delivered += 1

        with self.session_factory() as db:
            outbox.update_backlog_metrics(db, self.service_name)
        return delivered

    async def outbox_publisher(self) -> None:
        """Publish outbox rows until cancelled."""

        while True:
            try:
                await self.publish_outbox_once()
            except SQLAlchemyError as exc:
                logger.error("outbox_publisher_db_error error=%s", exc)
            await asyncio.sleep(0.5)

    async def start_consumers(self) -> None:
        """Start the Kafka consumer for failed-item retries."""

        await consume_forever(RETRY_TOPIC, "payments-fulfillment-retry", self.handle_item_retry)
