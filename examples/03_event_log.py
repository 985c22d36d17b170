#!/usr/bin/env python3
"""
Example 03: Event Log
=====================

Appending events to per-stream logs. Each append lands under its own
random shard, so concurrent writers never conflict.

Difficulty: Beginner
Mode: Embedded (InMemoryStore)
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kvqueue import EventRecord, EventStore, InMemoryStore, Subspace


def main():
    store = InMemoryStore()
    events = EventStore(Subspace(("example", "events")))

    events.append(store, "accounts", [
        EventRecord("account.opened", b'{"id": 1}', b'{"by": "signup"}'),
        EventRecord("account.credited", b'{"id": 1, "amount": 50}'),
    ])
    events.append(store, "orders", [EventRecord("order.placed", b'{"id": 9}')])

    print("All events:")
    for record in events.read_all(store):
        print(f"  {record.contract}: {record.data.decode()}")

    print("Stream 'accounts':")
    for record in events.read_stream(store, "accounts"):
        print(f"  {record.contract}")

    events.clear(store)
    print(f"✓ Cleared, {len(store)} keys left")
    store.close()


if __name__ == "__main__":
    main()
