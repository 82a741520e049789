import asyncio
import json

import pytest

from orderflow.models import PaymentMethod, ProviderStatus
from orderflow.order_state import OrderStatus
from orderflow.orders import ItemRequest
from orderflow.reconciliation import ReconciliationScheduler
from orderflow.worker import handle_request, resume_open_attempts


@pytest.fixture
async def scheduler(services):
    s = ReconciliationScheduler(services.engine, interval=10, max_attempts=3)
    yield s
    await s.shutdown(timeout=1)


@pytest.fixture
def sem():
    return asyncio.Semaphore(2)


async def _card_payment(services) -> str:
    _, attempt = await services.orders.create_order(
        "cust-1", [ItemRequest("borscht", 1)], "addr-1", PaymentMethod.CARD
    )
    return attempt.payment_id


def _msg(payment_id, source):
    return json.dumps({"payment_id": payment_id, "source": source})


async def test_webhook_reconciles_immediately(services, store, provider, scheduler, sem):
    payment_id = await _card_payment(services)
    provider.statuses[payment_id] = ProviderStatus.SUCCEEDED

    await handle_request(scheduler, _msg(payment_id, "webhook"), sem)

    attempt = await store.get_attempt(payment_id)
    assert attempt.applied
    assert (await store.get_order(attempt.order_id)).status == OrderStatus.CONFIRMED
    assert scheduler.active == set()


async def test_unresolved_webhook_falls_back_to_polling(services, scheduler, sem):
    payment_id = await _card_payment(services)

    await handle_request(scheduler, _msg(payment_id, "webhook"), sem)

    assert scheduler.active == {payment_id}


async def test_checkout_starts_polling(services, provider, scheduler, sem):
    payment_id = await _card_payment(services)

    await handle_request(scheduler, _msg(payment_id, "checkout"), sem)

    assert scheduler.active == {payment_id}
    assert provider.status_calls == 0


async def test_operator_restarts_polling(services, scheduler, sem):
    payment_id = await _card_payment(services)
    old = scheduler.watch(payment_id)

    await handle_request(scheduler, _msg(payment_id, "operator"), sem)

    assert old.cancelled()
    assert scheduler.active == {payment_id}


async def test_bad_messages_are_skipped(scheduler, sem):
    await handle_request(scheduler, "not json", sem)
    await handle_request(scheduler, json.dumps({"source": "checkout"}), sem)
    await handle_request(scheduler, _msg("pay-unknown", "webhook"), sem)
    assert scheduler.active == set()


async def test_resume_open_attempts(services, store, provider, scheduler):
    open_id = await _card_payment(services)
    done_id = await _card_payment(services)
    exhausted_id = await _card_payment(services)
    provider.statuses[done_id] = ProviderStatus.CANCELED
    await services.engine.reconcile(done_id)
    for _ in range(3):
        await services.engine.reconcile(exhausted_id)

    resumed = await resume_open_attempts(store, scheduler)

    assert resumed == 1
    assert scheduler.active == {open_id}
