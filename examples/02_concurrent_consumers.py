#!/usr/bin/env python3
"""
Example 02: Concurrent Consumers
================================

Many threads popping from one queue at once. In high-contention mode a
pop that loses a race registers as a waiter and is handed an item by
whoever sweeps next, instead of retrying against the same first item.

Difficulty: Intermediate
Mode: Embedded (InMemoryStore)
"""

import os
import sys
import threading
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kvqueue import InMemoryStore, Queue, QueueConfig, Subspace

CONSUMERS = 8
ITEMS = 200


def run(high_contention: bool) -> None:
    store = InMemoryStore()
    queue = Queue(
        Subspace(("example", "workers")),
        high_contention=high_contention,
        config=QueueConfig().with_pop_timeout(5.0),
    )
    with store.create_transaction() as tr:
        for i in range(ITEMS):
            queue.push(tr, i)

    popped = []
    lock = threading.Lock()

    def consume():
        while not queue.empty(store):
            item = queue.pop(store)
            if item is not None:
                with lock:
                    popped.append(item)

    start = time.monotonic()
    threads = [threading.Thread(target=consume) for _ in range(CONSUMERS)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    elapsed = time.monotonic() - start

    mode = "high-contention" if high_contention else "simple"
    print(f"  {mode:>15}: {len(popped)} items in {elapsed:.3f}s, "
          f"unique={len(set(popped)) == len(popped)}, stats={queue.stats(store)}")
    store.close()


def main():
    print("=" * 60)
    print(f"{CONSUMERS} consumers, {ITEMS} items")
    print("=" * 60)
    run(high_contention=False)
    run(high_contention=True)


if __name__ == "__main__":
    main()
