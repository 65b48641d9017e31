"""Outbox for fulfillment retry and dead-letter events.

Rows are staged in the same transaction as the fulfillment attempt that
produced them, so a failed item is never lost and never queued for an attempt
that rolled back. The publisher loop claims rows, ships them to Kafka, then
settles them as sent or hands them back for the next pass.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select, update

from dealpay.common.events import EventEnvelope
from dealpay.common.metrics import outbox_oldest_pending_age_seconds, outbox_pending_total
from dealpay.services.payments.models import OutboxEvent

PENDING = "PENDING"
PROCESSING = "PROCESSING"
SENT = "SENT"


def enqueue(db, topic: str, envelope: EventEnvelope, aggregate_type: str = "payment_order") -> OutboxEvent:
    """Stage `envelope` for `topic`; the caller commits."""

    row = OutboxEvent(
        aggregate_type=aggregate_type,
        aggregate_id=envelope.aggregate_id,
        event_type=envelope.event_type,
        topic=topic,
        payload=envelope.model_dump(),
        status=PENDING,
    )
    db.add(row)
    return row


def claim_batch(db, limit: int = 100, stale_after: timedelta = timedelta(seconds=30)) -> list[OutboxEvent]:
    """Mark up to `limit` rows as PROCESSING and return them.

    Rows left in PROCESSING by a publisher that died are reclaimed once older
    than `stale_after`. Concurrent publishers skip each other's locked rows.
    """

    now = datetime.now(timezone.utc)
    rows = (
        db.execute(
            select(OutboxEvent)
            .where(
                or_(
                    OutboxEvent.status == PENDING,
                    and_(OutboxEvent.status == PROCESSING, OutboxEvent.sent_at < now - stale_after),
                )
            )
            .order_by(OutboxEvent.created_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        .scalars()
        .all()
    )
    for row in rows:
        row.status = PROCESSING
        row.sent_at = now
    db.flush()
    return list(rows)


def settle(db, event_id: str, delivered: bool) -> None:
    """Close out one claimed row: SENT on delivery, back to PENDING otherwise."""

    if delivered:
        values = {"status": SENT, "sent_at": datetime.now(timezone.utc)}
    else:
        values = {"status": PENDING, "sent_at": None}
    db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.status == PROCESSING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )


def backlog(db) -> tuple[int, float]:
    """Unsent row count and the age in seconds of the oldest one."""

    unsent = OutboxEvent.status.in_((PENDING, PROCESSING))
    count, oldest = db.execute(select(func.count(), func.min(OutboxEvent.created_at)).where(unsent)).one()
    if oldest is None:
        return count, 0.0
    if oldest.tzinfo is None:
        oldest = oldest.replace(tzinfo=timezone.utc)
    return count, max(0.0, (datetime.now(timezone.utc) - oldest).total_seconds())


def update_backlog_metrics(db, service_name: str) -> None:
    count, age = backlog(db)
    outbox_pending_total.labels(service=service_name).set(float(count))
    outbox_oldest_pending_age_seconds.labels(service=service_name).set(age)
