"""Outbox claim/settle cycle, the publisher pass, and envelope dispatch."""

import asyncio
import json

from sqlalchemy import select

from dealpay.common.events import EventEnvelope, dispatch
from dealpay.common.logging import correlation_id_ctx, log_context, provider_ctx, trace_id_ctx
from dealpay.services.payments import outbox
from dealpay.services.payments.fulfillment import DLQ_TOPIC, RETRY_TOPIC
from dealpay.services.payments.models import OutboxEvent


def _envelope(topic, code="O1"):
    return EventEnvelope(event_type=topic, aggregate_id=code, payload={"item": {"dealId": "D1"}, "attempt": 1})


def _statuses(session_factory):
    with session_factory() as db:
        return {row.topic: row.status for row in db.execute(select(OutboxEvent)).scalars()}


class _FakeBus:
    def __init__(self, failing_topics=()):
        self.failing_topics = set(failing_topics)
        self.sent = []

    async def publish(self, topic, event):
        if topic in self.failing_topics:
            raise ConnectionError("broker unavailable")
        self.sent.append((topic, event))


def test_claim_then_settle(session_factory):
    with session_factory() as db:
        outbox.enqueue(db, RETRY_TOPIC, _envelope(RETRY_TOPIC))
        outbox.enqueue(db, DLQ_TOPIC, _envelope(DLQ_TOPIC))
        db.commit()

    with session_factory() as db:
        claimed = outbox.claim_batch(db)
        db.commit()
    assert sorted(row.topic for row in claimed) == [DLQ_TOPIC, RETRY_TOPIC]
    assert set(_statuses(session_factory).values()) == {"PROCESSING"}

    with session_factory() as db:
        assert outbox.claim_batch(db) == []
        by_topic = {row.topic: row.id for row in claimed}
        outbox.settle(db, by_topic[RETRY_TOPIC], delivered=True)
        outbox.settle(db, by_topic[DLQ_TOPIC], delivered=False)
        db.commit()

    assert _statuses(session_factory) == {RETRY_TOPIC: "SENT", DLQ_TOPIC: "PENDING"}
    with session_factory() as db:
        count, age = outbox.backlog(db)
    assert count == 1
    assert age >= 0.0


def test_publisher_pass_settles_each_row(fulfillment, session_factory):
    with session_factory() as db:
        outbox.enqueue(db, RETRY_TOPIC, _envelope(RETRY_TOPIC))
        outbox.enqueue(db, DLQ_TOPIC, _envelope(DLQ_TOPIC))
        db.commit()
    bus = _FakeBus(failing_topics={DLQ_TOPIC})
    fulfillment.kafka = bus

    delivered = asyncio.run(fulfillment.publish_outbox_once())

    assert delivered == 1
    assert [(topic, event.aggregate_id) for topic, event in bus.sent] == [(RETRY_TOPIC, "O1")]
    assert _statuses(session_factory) == {RETRY_TOPIC: "SENT", DLQ_TOPIC: "PENDING"}


def test_dispatch_binds_log_context():
    seen = []

    async def handler(event):
        seen.append((event.event_id, correlation_id_ctx.get(), trace_id_ctx.get()))

    raw = json.dumps(
        {"event_id": "e-1", "event_type": RETRY_TOPIC, "aggregate_id": "O7", "trace_id": "t-9", "payload": {}}
    )

    assert asyncio.run(dispatch(RETRY_TOPIC, raw.encode("utf-8"), handler)) is True
    assert seen == [("e-1", "O7", "t-9")]
    assert correlation_id_ctx.get() == ""


def test_dispatch_drops_malformed_messages():
    async def handler(event):
        raise AssertionError("must not be called")

    assert asyncio.run(dispatch(RETRY_TOPIC, b"not json", handler)) is False
    assert asyncio.run(dispatch(RETRY_TOPIC, b'{"payload": {}}', handler)) is False


def test_log_context_nests_and_resets():
    with log_context(provider="mypos", trace_id="t-1"):
        with log_context(correlation_id="O1"):
            assert (provider_ctx.get(), correlation_id_ctx.get(), trace_id_ctx.get()) == ("mypos", "O1", "t-1")
        assert correlation_id_ctx.get() == ""
        with log_context(correlation_id=None):
            assert correlation_id_ctx.get() == ""
    assert provider_ctx.get() == ""
