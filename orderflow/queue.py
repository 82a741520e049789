"""
Hand reconciliation requests to the worker: Redis list, LPUSH here, BRPOP in the worker.
"""
import json

from orderflow.redis_client import get_redis

RECONCILE_QUEUE_KEY = "queue:reconcile_requests"

# checkout: new attempt, start polling
# webhook: provider notified us, reconcile now and keep polling if unresolved
# operator: restart polling with a fresh budget
SOURCES = ("checkout", "webhook", "operator")


def _make_body(payment_id: str, source: str) -> dict:
    return {
        "payment_id": payment_id,
        "source": source,
    }


async def push_reconcile_request(payment_id: str, source: str) -> None:
    if source not in SOURCES:
        raise ValueError(f"unknown reconcile source {source!r}")
    r = await get_redis()
    await r.lpush(RECONCILE_QUEUE_KEY, json.dumps(_make_body(payment_id, source)))
