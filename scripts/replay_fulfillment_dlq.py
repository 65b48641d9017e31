"""Replay dead-lettered fulfillment items back onto the retry topic.

The retry consumer skips items whose purchase already exists, so replaying an
item twice never double-fulfills it.
"""

import argparse
import asyncio
import json
from uuid import uuid4

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer


def build_replay(event: dict) -> dict:
    """Fresh retry envelope for one DLQ envelope, with the attempt counter reset."""

    payload = dict(event.get("payload", {}))
    payload["attempt"] = 1
    payload["replayed_from"] = event.get("event_id")
    return {
        "event_id": str(uuid4()),
        "event_type": "fulfillment.retry",
        "aggregate_id": event.get("aggregate_id", ""),
        "occurred_at": event.get("occurred_at", ""),
        "trace_id": event.get("trace_id", ""),
        "payload": payload,
    }


async def replay(
    bootstrap_servers: str,
    dlq_topic: str,
    retry_topic: str,
    order_code: str | None,
    event_id: str | None,
    dry_run: bool,
    timeout_seconds: int,
) -> int:
    """Replay every matching DLQ event seen before the timeout."""

    if not order_code and not event_id:
        raise ValueError("Provide --order-code or --event-id")

    consumer = AIOKafkaConsumer(
        dlq_topic,
        bootstrap_servers=bootstrap_servers,
        group_id=f"fulfillment-dlq-replay-{uuid4()}",
        auto_offset_reset="earliest",
        enable_auto_commit=False,
    )
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
    await consumer.start()
    await producer.start()
    replayed = 0
    try:
        deadline = asyncio.get_running_loop().time() + timeout_seconds
        while asyncio.get_running_loop().time() < deadline:
            results = await consumer.getmany(timeout_ms=1000, max_records=200)
            for _, messages in results.items():
                for msg in messages:
                    event = json.loads(msg.value.decode("utf-8"))
                    if event_id and event.get("event_id") != event_id:
                        continue
                    if order_code and event.get("aggregate_id") != order_code:
                        continue

                    item = event.get("payload", {}).get("item")
                    reason = event.get("payload", {}).get("reason")
                    print(f"Matched event_id={event.get('event_id')} item={item} reason={reason}")
                    if dry_run:
                        continue
                    await producer.send_and_wait(retry_topic, json.dumps(build_replay(event)).encode("utf-8"))
                    replayed += 1
    finally:
        await consumer.stop()
        await producer.stop()

    if dry_run:
        print("Dry run only; no publish performed.")
    print(f"Replayed {replayed} item(s) to {retry_topic}")
    return 0 if replayed or dry_run else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay dead-lettered fulfillment items.")
    parser.add_argument("--bootstrap-servers", default="localhost:9092")
    parser.add_argument("--dlq-topic", default="fulfillment.dlq")
    parser.add_argument("--retry-topic", default="fulfillment.retry")
    parser.add_argument("--order-code", default=None, help="Gateway order code (envelope aggregate_id)")
    parser.add_argument("--event-id", default=None, help="DLQ envelope event_id to replay")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--timeout-seconds", type=int, default=15)
    args = parser.parse_args()

    rc = asyncio.run(
        replay(
            bootstrap_servers=args.bootstrap_servers,
            dlq_topic=args.dlq_topic,
            retry_topic=args.retry_topic,
            order_code=args.order_code,
            event_id=args.event_id,
            dry_run=args.dry_run,
            timeout_seconds=args.timeout_seconds,
        )
    )
    raise SystemExit(rc)


if __name__ == "__main__":
    main()
