"""
Replay a captured webhook payload against a running indexer.

Each delivery posts one batch; a share of deliveries (DUP_RATE) repeats
a batch that was already sent, the way the provider redelivers on
timeouts. Afterwards the event count for the payload's authorities
should be unchanged by the duplicates.
"""
import os
import sys
import json
import time
import random
import httpx

TARGET_URL = os.environ.get("TARGET_URL", "http://localhost:3000/webhook/helius")
AUTH = os.environ.get("WEBHOOK_AUTH", "")

TOTAL = int(os.environ.get("TOTAL", "100"))
DUP_RATE = float(os.environ.get("DUP_RATE", "0.35"))
SLEEP_MS = int(os.environ.get("SLEEP_MS", "0"))


def load_batches(path: str) -> list:
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    if isinstance(payload, list):
        return [[record] for record in payload if isinstance(record, dict)]
    return [{key: record} for key, record in payload.items() if isinstance(record, dict)]


def main():
    if len(sys.argv) != 2:
        print("usage: publisher.py <captured-webhook.json>", file=sys.stderr)
        sys.exit(2)

    batches = load_batches(sys.argv[1])
    if not batches:
        print("no transaction records in payload", file=sys.stderr)
        sys.exit(1)

    headers = {"Authorization": AUTH} if AUTH else {}
    client = httpx.Client(timeout=30.0, headers=headers)
    sent_before = []
    dups = 0
    t0 = time.time()

    for i in range(TOTAL):
        if sent_before and random.random() < DUP_RATE:
            batch = random.choice(sent_before)
            dups += 1
        else:
            batch = batches[i % len(batches)]
            sent_before.append(batch)

        r = client.post(TARGET_URL, json=batch)
        r.raise_for_status()

        if SLEEP_MS > 0:
            time.sleep(SLEEP_MS / 1000.0)

    dt = time.time() - t0
    print(f"sent={TOTAL} duplicates={dups} time_sec={dt:.2f} rps={TOTAL/dt:.2f}")


if __name__ == "__main__":
    main()
