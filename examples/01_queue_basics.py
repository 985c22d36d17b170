#!/usr/bin/env python3
"""
Example 01: Queue Basics
========================

This example demonstrates the queue against the embedded store:
- Pushing and popping items
- Peeking and checking for emptiness
- Composing pushes into one transaction
- Simple vs high-contention pop modes

Difficulty: Beginner
Mode: Embedded (InMemoryStore)
"""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from kvqueue import InMemoryStore, Queue, Subspace


def example_push_pop(store):
    """FIFO push and pop."""
    print("\n" + "=" * 60)
    print("Example 1.1: Push and Pop")
    print("=" * 60)

    queue = Queue(Subspace(("example", "jobs")))
    for job in ("resize-image", "send-email", "build-report"):
        queue.push(store, job)
        print(f"  Pushed {job}")

    print(f"  Next up (peek): {queue.peek(store)}")

    while not queue.empty(store):
        print(f"  Popped {queue.pop(store)}")

    print(f"  Pop on empty queue: {queue.pop(store)}")
    print("✓ Queue drained")


def example_batch_push(store):
    """Several pushes committed together."""
    print("\n" + "=" * 60)
    print("Example 1.2: Batch Push in One Transaction")
    print("=" * 60)

    queue = Queue(Subspace(("example", "batch")))
    with store.create_transaction() as tr:
        for i in range(5):
            queue.push(tr, i)
        print(f"  Queue empty before commit: {queue.empty(store)}")
    print(f"  Queue empty after commit: {queue.empty(store)}")

    items = [queue.pop(store) for _ in range(5)]
    print(f"  Popped {items}")
    print("✓ Batch committed atomically")


def example_simple_mode(store):
    """Simple pops for a single consumer."""
    print("\n" + "=" * 60)
    print("Example 1.3: Simple Pop Mode")
    print("=" * 60)

    queue = Queue(Subspace(("example", "simple")), high_contention=False)
    queue.push(store, b"payload")
    print(f"  Popped {queue.pop(store)!r}")
    print("✓ Simple mode")


def main():
    store = InMemoryStore()
    try:
        example_push_pop(store)
        example_batch_push(store)
        example_simple_mode(store)
    finally:
        store.close()

    print("\n" + "=" * 60)
    print("All queue examples completed!")
    print("=" * 60)


if __name__ == "__main__":
    main()
