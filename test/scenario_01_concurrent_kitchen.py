#!/usr/bin/env python3
"""
Scenario 1: Concurrent kitchen requests.

Create a cash order (comes back CONFIRMED), then fire 20 parallel
CONFIRMED -> PREPARING requests from the kitchen.

Expect:
- Exactly one 200, nineteen 409 INVALID_TRANSITION
- order_events holds exactly one PREPARING row for the order

Run: python test/scenario_01_concurrent_kitchen.py
Requires: API running (e.g. docker compose up), Postgres.
"""
import asyncio
import os
import sys
from concurrent.futures import ThreadPoolExecutor

_test_dir = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, _test_dir)

from _helper import create_order, fetch_statuses_for_order, request_transition, seed_reference_data

PARALLEL = 20


def main() -> None:
    asyncio.run(seed_reference_data())
    status, body = create_order("CASH")
    if status != 201:
        print(f"  FAIL create: status={status} body={body}")
        sys.exit(1)
    order_id = body["order"]["id"]
    print(f"Order ID: {order_id} ({body['order']['status']})")

    print(f"Sending {PARALLEL} parallel PREPARING requests ...")
    with ThreadPoolExecutor(max_workers=PARALLEL) as pool:
        results = list(pool.map(
            lambda _: request_transition(order_id, "PREPARING", "KITCHEN", "scn-kitchen"),
            range(PARALLEL),
        ))
    codes = [code for code, _ in results]
    ok_count = codes.count(200)
    conflict_count = codes.count(409)
    print(f"  200: {ok_count}  409: {conflict_count}  other: {PARALLEL - ok_count - conflict_count}")

    persisted = asyncio.run(fetch_statuses_for_order(order_id))
    preparing_rows = persisted.count("PREPARING")
    print(f"  History: {persisted}")

    ok = ok_count == 1 and conflict_count == PARALLEL - 1 and preparing_rows == 1
    if ok:
        print("Scenario 1: Concurrent kitchen: PASSED")
    else:
        print("Scenario 1: Concurrent kitchen: FAILED")
        sys.exit(1)


if __name__ == "__main__":
    main()
