#!/usr/bin/env python3
"""
Scenario 2: Duplicate provider notifications.

Create a card order, then post the same payment.succeeded notification 5 times.

Expect:
- First delivery 202, the rest 200 (already_processed)
- Reconcile queue grew by at most one message
- Order still PENDING unless the provider really reports the payment as succeeded
  (the worker always re-reads the status; the notification body is never trusted)

Run: python test/scenario_02_webhook_dedupe.py
Requires: API running with webhook_secret unset, Redis, Postgres, provider sandbox credentials.
"""
import asyncio
import json
import os
import sys
import urllib.error
import urllib.request

_test_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, _test_dir)

from _helper import API_BASE, call_api, create_order, get_queue_length, seed_reference_data

DELIVERIES = 5


def post_notification(payment_id: str) -> int:
    body = json.dumps({"event": "payment.succeeded", "object": {"id": payment_id, "status": "succeeded"}})
    req = urllib.request.Request(
        f"{API_BASE}/payments/webhook",
        data=body.encode(),
        headers={"Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req) as resp:
            return resp.status
    except urllib.error.HTTPError as e:
        return e.code


def main() -> None:
    asyncio.run(seed_reference_data())
    status, body = create_order("CARD")
    if status != 201:
        print(f"  FAIL create: status={status} body={body}")
        sys.exit(1)
    order_id = body["order"]["id"]
    payment_id = body["payment"]["payment_id"]
    print(f"Order ID: {order_id}  Payment ID: {payment_id}")

    queue_before = get_queue_length()
    codes = [post_notification(payment_id) for _ in range(DELIVERIES)]
    queue_after = get_queue_length()
    print(f"  Deliveries: {codes}")
    print(f"  Queue length: {queue_before} -> {queue_after}")

    _, view = call_api("GET", f"/payments/{payment_id}", "CUSTOMER", "scn-customer")
    print(f"  Payment view: {view}")

    ok = codes[0] == 202 and all(c == 200 for c in codes[1:]) and queue_after - queue_before <= 1
    if ok:
        print("Scenario 2: Webhook dedupe: PASSED")
    else:
        print("Scenario 2: Webhook dedupe: FAILED")
        sys.exit(1)


if __name__ == "__main__":
    main()
