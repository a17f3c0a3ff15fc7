"""Manual concurrency smoke test against a running server (python stress_test.py)."""

import requests
import threading
import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta

BASE_URL = "http://localhost:5000"
RESOURCE_ID = 9001

TOTAL_USERS = 200        # concurrent users
CONFIRM_PROBABILITY = 0.6   # 60% of users confirm, rest abandon
MAX_RETRIES = 3

DAY = date.today() + timedelta(days=1)
while DAY.weekday() >= 5:
    DAY += timedelta(days=1)

lock = threading.Lock()

results = {
    "hold_success": 0,
    "hold_conflict": 0,
    "hold_failed": 0,
    "confirm_success": 0,
    "confirm_failed": 0,
    "abandoned": 0,
}


def setup_resource():
    requests.post(f"{BASE_URL}/resources", json={"id": RESOURCE_ID, "name": "stress desk"}, timeout=5)
    requests.post(
        f"{BASE_URL}/resources/{RESOURCE_ID}/windows",
        json={"date": DAY.isoformat(), "start_time": "08:00", "end_time": "18:00"},
        timeout=5,
    )


def random_interval():
    start_minute = random.randrange(8 * 60, 17 * 60, 15)
    duration = random.choice([15, 30, 45, 60])
    start = datetime.combine(DAY, datetime.min.time()) + timedelta(minutes=start_minute)
    return start, start + timedelta(minutes=duration)


def user_flow(user_id):
    """
    Simulates a single user:
    1. Picks a random interval
    2. Tries to hold it, retrying only on 503
    3. Randomly confirms or abandons
    """
    start, end = random_interval()

    for attempt in range(MAX_RETRIES):
        try:
            hold_resp = requests.post(
                f"{BASE_URL}/reservations/hold",
                json={
                    "resource_id": RESOURCE_ID,
                    "requester_id": f"user-{user_id}",
                    "start": start.isoformat(),
                    "end": end.isoformat(),
                },
                timeout=5
            )

            if hold_resp.status_code == 503:
                time.sleep(0.2 * (attempt + 1))
                continue
            if hold_resp.status_code == 409:
                with lock:
                    results["hold_conflict"] += 1
                return
            if hold_resp.status_code != 201:
                with lock:
                    results["hold_failed"] += 1
                return

            reservation_id = hold_resp.json()["id"]
            with lock:
                results["hold_success"] += 1

            # Simulate user thinking / payment delay
            time.sleep(random.uniform(0.1, 1.5))

            if random.random() < CONFIRM_PROBABILITY:
                confirm_resp = requests.patch(
                    f"{BASE_URL}/reservations/{reservation_id}/confirm",
                    timeout=5
                )
                with lock:
                    if confirm_resp.status_code == 200:
                        results["confirm_success"] += 1
                    else:
                        results["confirm_failed"] += 1
            else:
                with lock:
                    results["abandoned"] += 1
            return

        except requests.RequestException:
            time.sleep(0.2)

    with lock:
        results["hold_failed"] += 1


def active_reservations():
    items, page = [], 1
    while True:
        r = requests.get(
            f"{BASE_URL}/reservations",
            params={"resource_id": RESOURCE_ID, "page": page, "limit": 100},
            timeout=15,
        )
        r.raise_for_status()
        body = r.json()
        items.extend(body["items"])
        if page * 100 >= body["total"]:
            break
        page += 1
    return [i for i in items if i["status"] in ("ONHOLD", "CONFIRMED", "COMPLETED")]


def run_stress_test():
    print(f"\n🚀 Starting stress test with {TOTAL_USERS} concurrent users on {DAY}\n")
    setup_resource()

    start_time = time.time()

    with ThreadPoolExecutor(max_workers=TOTAL_USERS) as executor:
        futures = [executor.submit(user_flow, i) for i in range(TOTAL_USERS)]
        for _ in as_completed(futures):
            pass

    duration = time.time() - start_time

    print("\n✅ Stress Test Completed")
    print(f"⏱  Duration: {duration:.2f}s\n")

    for k, v in results.items():
        print(f"{k:15}: {v}")

    # Critical invariant check
    active = sorted(active_reservations(), key=lambda r: r["start"])
    overlapping = [
        (a["id"], b["id"]) for a, b in zip(active, active[1:])
        if datetime.fromisoformat(b["start"]) < datetime.fromisoformat(a["end"])
    ]

    print(f"\n🧮 Active reservations: {len(active)}")
    if overlapping:
        print(f"❌ ERROR: Overlapping reservations detected: {overlapping}")
    else:
        print("✅ No overlapping reservations")


if __name__ == "__main__":
    run_stress_test()
