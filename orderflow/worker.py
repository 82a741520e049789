"""
Worker: owns payment reconciliation.
- Pulls reconcile requests from Redis (pushed by checkout, the webhook receiver and operators).
- Runs one bounded polling loop per payment attempt; resumes open attempts on start.
- Prometheus /metrics on settings.worker_metrics_port.
- Graceful shutdown on SIGTERM.
Run: python -m orderflow.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading

import redis.asyncio as redis

from orderflow.config import settings
from orderflow.db import PostgresOrderStore, close_pool, get_pool, init_schema
from orderflow.errors import ProviderUnavailable, UnknownPayment
from orderflow.provider_client import HttpProviderClient
from orderflow.queue import RECONCILE_QUEUE_KEY
from orderflow.reconciliation import ReconciliationEngine, ReconciliationScheduler
from orderflow.store import OrderStore
from orderflow.transitions import TransitionAuthority

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(settings.worker_metrics_port)


async def handle_request(
    scheduler: ReconciliationScheduler,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("Invalid JSON from queue: %s", e)
        return
    payment_id = data.get("payment_id")
    source = data.get("source", "checkout")
    if not payment_id:
        logger.warning("Message missing payment_id, skipping")
        return

    if source == "webhook":
        async with sem:
            try:
                outcome = await scheduler.engine.reconcile(payment_id)
            except UnknownPayment:
                logger.warning("Webhook for unknown payment %s, dropped", payment_id)
                return
            except ProviderUnavailable as e:
                logger.warning("Webhook reconcile for %s deferred to polling: %s", payment_id, e)
            else:
                logger.info("Webhook reconcile payment_id=%s outcome=%s", payment_id, outcome.value)
                if outcome.is_terminal:
                    scheduler.cancel(payment_id)
                    return
        scheduler.watch(payment_id)
    elif source == "operator":
        await scheduler.restart(payment_id)
        logger.info("Operator restarted polling for payment_id=%s", payment_id)
    else:
        scheduler.watch(payment_id)


async def resume_open_attempts(store: OrderStore, scheduler: ReconciliationScheduler) -> int:
    """Restart polling for attempts left open by a previous worker, within their remaining budget."""
    resumed = 0
    for attempt in await store.list_open_attempts():
        if attempt.check_count >= scheduler.max_attempts:
            continue
        scheduler.watch(attempt.payment_id, checks_done=attempt.check_count)
        resumed += 1
    return resumed


async def run_worker(shutdown_event: asyncio.Event) -> None:
    pool = await get_pool()
    await init_schema(pool)
    store = PostgresOrderStore(pool)
    provider = HttpProviderClient()
    engine = ReconciliationEngine(store, provider, TransitionAuthority(store), settings.provider_timeout_seconds)
    scheduler = ReconciliationScheduler(engine, settings.poll_interval_seconds, settings.poll_max_attempts)
    sem = asyncio.Semaphore(settings.worker_concurrency)

    resumed = await resume_open_attempts(store, scheduler)
    logger.info(
        "Schema ready. Resumed %d payment watcher(s). Listening on %s (interval=%.1fs, max_attempts=%d) ...",
        resumed,
        RECONCILE_QUEUE_KEY,
        settings.poll_interval_seconds,
        settings.poll_max_attempts,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(RECONCILE_QUEUE_KEY, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(handle_request(scheduler, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        if tasks:
            logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
            _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        # open attempts are resumed by the next worker
        await scheduler.shutdown(GRACEFUL_SHUTDOWN_WAIT_SEC)
        await r.aclose()
        await provider.aclose()
        await close_pool()
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", settings.worker_metrics_port)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()
