"""
Order Lifecycle Simulation Script

Drives many orders through their lifecycle concurrently against a running
API and runs a courier location tracker for each delivery.
Run from project root: python scripts/simulate.py

Checks printed at the end:
    - Every order's status equals the last entry of its history
    - Racing transitions on one order never both succeed
    - Location pushes respect the tracker throttle

Author: Khalil Bannouri
Version: 1.0.0
"""

import argparse
import asyncio
import os
import random
import sys
import time
from datetime import datetime
from typing import Any, Optional

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from orderflow.core.config import Settings  # noqa: E402
from orderflow.services.tracking import (  # noqa: E402
    LocationTracker,
    LocationUploader,
    MockLocationProvider,
)

# Configuration
API_BASE_URL = "http://localhost:8001"
TOTAL_ORDERS = 20
PAYMENT_METHODS = ["cash", "card", "transfer"]
FIRST_NAMES = ["John", "Jane", "Mike", "Sarah", "Tom", "Emma", "David", "Lisa", "Chris", "Amy"]


# =============================================================================
# API HELPERS
# =============================================================================

async def create_order(client: httpx.AsyncClient) -> dict[str, Any]:
    response = await client.post(
        f"{API_BASE_URL}/api/orders",
        json={
            "total": f"{random.uniform(8, 60):.2f}",
            "customer_name": random.choice(FIRST_NAMES),
            "payment_method": random.choice(PAYMENT_METHODS),
        },
    )
    response.raise_for_status()
    return response.json()


async def transition(
    client: httpx.AsyncClient,
    order_id: int,
    status: str,
    actor: str = "admin",
    delivery_person_id: Optional[int] = None,
) -> httpx.Response:
    body = {"status": status}
    if delivery_person_id is not None:
        body["delivery_person_id"] = delivery_person_id
    return await client.put(
        f"{API_BASE_URL}/api/orders/{order_id}/status",
        json=body,
        headers={"X-Actor": actor},
    )


# =============================================================================
# ONE ORDER
# =============================================================================

async def run_order(client: httpx.AsyncClient, order_num: int, ticks: int) -> dict[str, Any]:
    """Create an order, race courier pickup against cancellation, track the delivery."""
    start_time = time.time()
    result: dict[str, Any] = {"order_num": order_num, "success": False}

    try:
        order = await create_order(client)
        order_id = order["id"]
        result["order_id"] = order_id

        await transition(client, order_id, "preparing")
        if order["requires_receipt"]:
            await client.put(f"{API_BASE_URL}/api/orders/{order_id}/receipt/verify", json={"verified": True})

        # Courier pickup and admin cancellation race; exactly one may be accepted
        delivering, cancelled = await asyncio.gather(
            transition(client, order_id, "delivering", actor="delivery", delivery_person_id=1),
            transition(client, order_id, "cancelled", actor="admin"),
        )
        accepted = [r for r in (delivering, cancelled) if r.status_code == 200]
        result["race_ok"] = len(accepted) == 1

        if delivering.status_code == 200:
            # Courier device: push through the public API at a fast simulated tick
            uploader = LocationUploader(base_url=API_BASE_URL, client=client)
            provider = MockLocationProvider()
            tracker = LocationTracker(
                order_id,
                provider,
                uploader,
                settings=Settings(tracking_sample_interval_seconds=3600),
            )
            await tracker.permission_changed(granted=True, background=False)
            await tracker.order_status_changed("delivering")
            for _ in range(ticks):
                provider.move_by(random.uniform(-0.002, 0.002), random.uniform(-0.002, 0.002))
                await tracker.tick()
            result["pushes"] = tracker.push_count

            await transition(client, order_id, "completed", actor="delivery")
            await tracker.order_status_changed("completed")
            await tracker.teardown()

        final = (await client.get(f"{API_BASE_URL}/api/orders/{order_id}")).json()
        history = final["status_history"]
        result["status"] = final["status"]
        result["projection_ok"] = bool(history) and history[-1]["to_status"] == final["status"]
        result["success"] = result["race_ok"] and result["projection_ok"]
    except httpx.HTTPError as e:
        result["error"] = str(e)

    result["time"] = round(time.time() - start_time, 3)
    return result


# =============================================================================
# SIMULATION
# =============================================================================

async def run_simulation(num_orders: int = TOTAL_ORDERS, ticks: int = 10) -> dict[str, Any]:
    print("=" * 70)
    print("ORDER LIFECYCLE SIMULATION")
    print("=" * 70)
    print(f"Total Orders: {num_orders}")
    print(f"Target: {API_BASE_URL}")
    print(f"Tracker ticks per delivery: {ticks}")
    print(f"Started: {datetime.now().strftime('%H:%M:%S')}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(timeout=30.0) as client:
        health = await client.get(f"{API_BASE_URL}/health")
        health.raise_for_status()
        results = await asyncio.gather(*(run_order(client, i + 1, ticks) for i in range(num_orders)))
    total_time = round(time.time() - start_time, 2)

    successful = [r for r in results if r["success"]]
    failed = [r for r in results if not r["success"]]

    print("\n" + "=" * 70)
    print("SIMULATION RESULTS")
    print("=" * 70)
    print(f"\nConsistent orders: {len(successful)}/{num_orders}")
    print(f"Total Time: {total_time}s")

    tracked = [r for r in results if "pushes" in r]
    if tracked:
        # All ticks of one tracker land inside the throttle window
        over = [r for r in tracked if r["pushes"] > 1]
        print(f"Tracked deliveries: {len(tracked)} (throttle violations: {len(over)})")

    statuses: dict[str, int] = {}
    for r in results:
        statuses[r.get("status", "unknown")] = statuses.get(r.get("status", "unknown"), 0) + 1
    print(f"Final statuses: {statuses}")

    if failed:
        print("\nInconsistent or failed orders (showing first 5):")
        for f in failed[:5]:
            print(f"   Order #{f.get('order_id', f['order_num'])}: {f.get('error', f)}")

    print("=" * 70)
    return {
        "total": num_orders,
        "successful": len(successful),
        "failed": len(failed),
        "total_time": total_time,
        "results": results,
    }


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Order lifecycle simulation")
    parser.add_argument("--orders", type=int, default=TOTAL_ORDERS, help="Number of orders")
    parser.add_argument("--ticks", type=int, default=10, help="Tracker ticks per delivery")
    parser.add_argument("--api", default=API_BASE_URL, help="API base URL")
    args = parser.parse_args()

    API_BASE_URL = args.api.rstrip("/")
    summary = asyncio.run(run_simulation(args.orders, args.ticks))
    sys.exit(0 if summary["failed"] == 0 else 1)
