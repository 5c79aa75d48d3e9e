from prometheus_client import Counter, Gauge, Histogram
from alphasup.redis_client import redis_client
from typing import Dict, Iterable
import asyncio

# Redis list lengths: the Celery notifications queue and its dead-letter list
QUEUE_DEPTH = Gauge("alphasup_queue_depth", "Redis list length per queue", ["queue"])
MONITORED_QUEUES = ("notifications", "notification_dlq")

# Payment lifecycle
PAYMENT_SUCCESS = Counter("alphasup_payments_success_total", "Successful payments processed", ["provider"])
PAYMENT_FAILURE = Counter("alphasup_payments_failure_total", "Failed or canceled payments", ["provider"])
PAYMENT_INTENTS_CREATED = Counter("alphasup_payment_intents_created_total", "Payment intents created", ["deposit_only"])
REFUNDS_CREATED = Counter("alphasup_refunds_total", "Refunds issued", ["reason", "full"])
WEBHOOK_EVENTS = Counter("alphasup_webhook_events_total", "Gateway webhook deliveries", ["event_type", "outcome"])

GATEWAY_LATENCY = Histogram("alphasup_gateway_call_seconds", "Latency of payment gateway calls", ["operation"])


async def update_queue_depth(queues: Iterable[str] = MONITORED_QUEUES) -> Dict[str, int]:
    """Refresh QUEUE_DEPTH; an unreachable Redis reports -1 rather than a stale value."""
    queues = list(queues)

    async def _get_len(name):
        try:
            return await redis_client.llen(name)
        except Exception:
            return -1

    depths = dict(zip(queues, await asyncio.gather(*[_get_len(q) for q in queues])))
    for name, depth in depths.items():
        QUEUE_DEPTH.labels(queue=name).set(depth)
    return depths
