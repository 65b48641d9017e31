"""Kafka transport for the fulfillment retry queue.

Failed order items travel as `EventEnvelope`s: outbox row, Kafka topic, retry
consumer. Envelopes are JSON on the wire in both directions.
"""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from pydantic import BaseModel, Field, ValidationError

from dealpay.common.config import settings
from dealpay.common.logging import log_context, logger


class EventEnvelope(BaseModel):
    """Retry queue message. `aggregate_id` is the gateway order code."""

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str
    aggregate_id: str
    occurred_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    trace_id: str = ""
    payload: dict[str, Any]


EventHandler = Callable[[EventEnvelope], Awaitable[None]]


class KafkaBus:
    """Producer started on first publish and reused afterwards."""

    def __init__(self, bootstrap_servers: str | None = None) -> None:
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap_servers
        self._producer: AIOKafkaProducer | None = None

    async def publish(self, topic: str, event: EventEnvelope) -> None:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                value_serializer=lambda value: value.encode("utf-8"),
                acks="all",
            )
            await self._producer.start()
        await self._producer.send_and_wait(topic, event.model_dump_json(), key=event.aggregate_id.encode("utf-8"))

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None


async def make_consumer(topic: str, group_id: str) -> AIOKafkaConsumer:
    """Manual-commit consumer that starts from the earliest offset."""

    consumer = AIOKafkaConsumer(
        topic,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=group_id,
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    await consumer.start()
    return consumer


async def dispatch(topic: str, raw: bytes, handler: EventHandler) -> bool:
    """Parse one message and run `handler` inside its log context.

    Returns False for messages that are not envelopes; they are logged and
    dropped rather than blocking the partition.
    """

    try:
        event = EventEnvelope.model_validate(json.loads(raw.decode("utf-8")))
    except (ValueError, ValidationError) as exc:
        logger.error("event_malformed topic=%s error=%s", topic, exc)
        return False
    with log_context(trace_id=event.trace_id, correlation_id=event.aggregate_id):
        logger.info("event_received topic=%s event_id=%s", topic, event.event_id)
        await handler(event)
    return True


async def consume_forever(topic: str, group_id: str, handler: EventHandler) -> None:
    """Consume `topic` until cancelled, reconnecting after broker errors.

    Handler errors are logged and the offset still advances; handlers own
    their retry policy by re-enqueueing through the outbox.
    """

    while True:
        consumer = None
        try:
            consumer = await make_consumer(topic, group_id)
            async for msg in consumer:
                try:
                    await dispatch(topic, msg.value, handler)
                except Exception as exc:
                    logger.error(
                        "handler_error topic=%s group=%s offset=%s error=%s", topic, group_id, msg.offset, exc
                    )
                await consumer.commit()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("consumer_loop_error topic=%s group=%s error=%s", topic, group_id, exc)
            await asyncio.sleep(2)
        finally:
            if consumer is not None:
                await consumer.stop()
