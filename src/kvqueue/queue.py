# Copyright 2025 Sushanth (https://github.com/sushanthpy)
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
kvqueue High-Contention Queue

A FIFO-ish queue stored entirely in an ordered transactional key-value
store. It has two pop modes:

- High contention (default): designed for many clients popping at once.
  A pop that cannot complete immediately registers itself as a waiter and
  is later fulfilled by a sweep that pairs the oldest waiters with the
  oldest items. Slower in isolation, but scales with the number of poppers.
- Simple: pops read and clear the first item directly. Fast with a single
  popper; concurrent poppers conflict on the same first item.

Usage:
    from kvqueue import InMemoryStore, Queue, Subspace

    store = InMemoryStore()
    queue = Queue(Subspace(("jobs",)))

    queue.push(store, b"payload")
    item = queue.pop(store)          # b"payload"
    queue.pop(store)                 # None, queue is empty

Key layout under the queue subspace S:
    S["item"]     (index, random_id)  -> packed payload
    S["pop"]      (index, random_id)  -> b""       waiting pops
    S["conflict"] (random_id,)        -> packed payload fulfilled for a waiter

Indices come from the last existing key of each family, read at snapshot
isolation, instead of a counter key. Pushes racing on the same index are
disambiguated by the random suffix and come out in arbitrary order.
"""

from __future__ import annotations

import logging
import secrets
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Optional, Union

from . import tuple as keytuple
from .config import QueueConfig
from .errors import (
    CodecError,
    ConfigError,
    PopTimeoutError,
    TransactionConflictError,
)
from .store import (
    KeySelector,
    KeyValue,
    KeyValueStore,
    SnapshotView,
    Transaction,
    transactional,
)
from .subspace import Subspace

logger = logging.getLogger(__name__)

RANDOM_ID_LENGTH = 20

# Marks a pop() call that did not pass a timeout
_CONFIG_TIMEOUT: Any = object()

Reader = Union[Transaction, SnapshotView]


@dataclass
class QueueStats:
    """Record counts per key family."""
    items: int = 0
    waiters: int = 0
    results: int = 0


# ============================================================================
# Pop Strategies
# ============================================================================

class PopStrategy(ABC):
    """How a queue pops. Chosen once when the queue is built."""

    def __init__(self, queue: "Queue"):
        self._queue = queue

    @abstractmethod
    def pop(self, db: KeyValueStore, timeout: Optional[float] = None) -> Optional[bytes]:
        """Pop and return the packed value of the next item, or None."""
        pass


class SimplePop(PopStrategy):
    """
    Pop without trying to avoid conflicts.

    If many clients pop simultaneously, only one commits per round; the
    others conflict and retry from scratch.
    """

    def pop(self, db: KeyValueStore, timeout: Optional[float] = None) -> Optional[bytes]:
        return db.transact(self._queue.pop_simple, max_retries=self._queue.max_retries)


class HighContentionPop(PopStrategy):
    """
    Pop that registers as a waiter when it cannot pop cleanly.

    1. If nobody is waiting, try a simple pop. Committing it ends the call.
    2. Otherwise (or if the simple pop lost a race) register a waiter record.
    3. Loop: sweep waiters against items, then check whether our waiter record
       is gone. Gone with a result: take it. Gone without one: the sweep ran
       out of items and dropped us, so return None. Still there: back off.
    """

    def pop(self, db: KeyValueStore, timeout: Optional[float] = None) -> Optional[bytes]:
        queue = self._queue
        tr = db.create_transaction()
        try:
            try:
                # Someone already waiting means we cannot pop before them
                wait_key = queue.add_conflicted_pop(tr, forced=False)
                if wait_key is None:
                    item = queue.pop_simple(tr)
                    tr.commit()
                    return item
                tr.commit()
            except TransactionConflictError as e:
                logger.debug("Simple pop lost a race, registering as waiter: %s", e)
                wait_key = db.transact(
                    queue.add_conflicted_pop, True, max_retries=queue.max_retries
                )
        finally:
            tr.close()

        logger.debug("Registered waiting pop %s", wait_key.hex())
        return self.wait_for_fulfillment(db, wait_key, timeout)

    def wait_for_fulfillment(
        self,
        db: KeyValueStore,
        wait_key: bytes,
        timeout: Optional[float] = None,
    ) -> Optional[bytes]:
        """
        Poll until the waiter registered at ``wait_key`` is resolved.

        Args:
            db: Store the waiter was registered in.
            wait_key: Key returned by ``Queue.add_conflicted_pop``.
            timeout: Seconds to wait before withdrawing the registration.
                None waits indefinitely.

        Returns:
            The packed value fulfilled for this waiter, or None if the sweep
            dropped the waiter without an item.

        Raises:
            PopTimeoutError: The deadline passed and the waiter was withdrawn.
        """
        queue = self._queue
        config = queue.config
        result_key = queue.conflicted_item_key(queue.waiter_id(wait_key))
        deadline = None if timeout is None else time.monotonic() + timeout
        backoff = config.initial_backoff

        tr = db.create_transaction()
        try:
            while True:
                try:
                    while not queue.fulfill_conflicted_pops(db):
                        pass
                except TransactionConflictError as e:
                    # Another participant probably fulfilled outstanding pops;
                    # go check whether ours was among them.
                    logger.debug("Fulfilment sweep conflicted: %s", e)

                tr.reset()
                try:
                    if tr.get(wait_key) is not None:
                        now = time.monotonic()
                        if deadline is not None and now >= deadline:
                            tr.clear(wait_key)
                            tr.commit()
                            logger.debug("Withdrew waiting pop %s after %ss", wait_key.hex(), timeout)
                            raise PopTimeoutError(timeout)
                        delay = backoff if deadline is None else min(backoff, deadline - now)
                        time.sleep(delay)
                        backoff = min(config.max_backoff, backoff * 2)
                        continue

                    result = tr.get(result_key)
                    if result is None:
                        logger.debug("Waiting pop %s dropped without an item", wait_key.hex())
                        return None

                    tr.clear(result_key)
                    tr.commit()
                    return result
                except TransactionConflictError as e:
                    logger.debug("Fulfilment check conflicted, retrying: %s", e)
        finally:
            tr.close()


# ============================================================================
# Queue
# ============================================================================

class Queue:
    """
    Queue stored under a subspace of an ordered transactional store.

    Methods decorated with ``@transactional`` take either a store (they run in
    their own retried transaction) or an open transaction (they compose into
    it and the caller commits). ``pop()`` always takes a store.
    """

    def __init__(
        self,
        subspace: Subspace,
        high_contention: bool = True,
        config: Optional[QueueConfig] = None,
        random_source: Optional[Callable[[int], bytes]] = None,
    ):
        """
        Args:
            subspace: Root subspace holding all of the queue's keys.
            high_contention: Use the waiter protocol for pops.
            config: Tuning knobs; defaults to ``QueueConfig()``.
            random_source: ``f(n) -> n random bytes`` for key suffixes and
                waiter ids. Defaults to ``secrets.token_bytes``.
        """
        self.subspace = subspace
        self.high_contention = high_contention
        self.config = config or QueueConfig()
        self._random_source = random_source or secrets.token_bytes

        self._conflicted_pop = subspace["pop"]
        self._conflicted_item = subspace["conflict"]
        self._queue_item = subspace["item"]

        if high_contention:
            self._pop_strategy: PopStrategy = HighContentionPop(self)
        else:
            self._pop_strategy = SimplePop(self)

    @property
    def max_retries(self) -> Optional[int]:
        return self.config.max_retries

    @property
    def pop_strategy(self) -> PopStrategy:
        return self._pop_strategy

    # =========================================================================
    # Public Operations
    # =========================================================================

    @transactional
    def clear(self, tr: Transaction) -> None:
        """Remove every item, waiter and result record of the queue."""
        begin, end = self.subspace.range()
        tr.clear_range(begin, end)

    @transactional
    def push(self, tr: Transaction, value: Any) -> None:
        """Push a single item onto the queue."""
        index = self.get_next_index(tr.snapshot, self._queue_item)
        self._push_at(tr, self._encode_value(value), index)

    def pop(self, db: KeyValueStore, timeout: Optional[float] = _CONFIG_TIMEOUT) -> Any:
        """
        Pop the next item from the queue.

        Cannot be composed with other operations in a single transaction.

        Args:
            db: The store.
            timeout: High-contention mode only: seconds to wait for a
                registered pop to be fulfilled. None waits indefinitely.
                Omitted, ``config.pop_timeout`` applies.

        Returns:
            The item's value, or None if nothing could be popped.
        """
        if not isinstance(db, KeyValueStore):
            raise TypeError(f"pop() needs a KeyValueStore, got {type(db).__name__}")
        if timeout is _CONFIG_TIMEOUT:
            timeout = self.config.pop_timeout

        result = self._pop_strategy.pop(db, timeout)
        if result is None:
            return None
        return self._decode_value(result)

    @transactional
    def empty(self, tr: Transaction) -> bool:
        """Test whether the queue is empty."""
        return self._get_first_item(tr) is None

    @transactional
    def peek(self, tr: Transaction) -> Any:
        """Value of the next item without popping it, or None."""
        first = self._get_first_item(tr)
        if first is None:
            return None
        return self._decode_value(first.value)

    @transactional
    def stats(self, tr: Transaction) -> QueueStats:
        """Count the queue's records (snapshot reads)."""
        return QueueStats(
            items=len(tr.snapshot.get_range(*self._queue_item.range())),
            waiters=len(tr.snapshot.get_range(*self._conflicted_pop.range())),
            results=len(tr.snapshot.get_range(*self._conflicted_item.range())),
        )

    # =========================================================================
    # Protocol Steps
    # =========================================================================

    def get_next_index(self, tr: Reader, subspace: Subspace) -> int:
        """
        Index one past the last key in ``subspace``, or 0 when it is empty.

        Pass a snapshot view so concurrent pushes do not conflict merely by
        reading the tail.
        """
        begin, end = subspace.range()
        last_key = tr.get_key(KeySelector.last_less_than(end))
        if last_key < begin:
            return 0

        index = subspace.unpack(last_key)[0]
        if isinstance(index, bool) or not isinstance(index, int):
            raise CodecError(
                "Expected an integer index as the first key element",
                context={"key": last_key.hex()},
            )
        return index + 1

    def pop_simple(self, tr: Transaction) -> Optional[bytes]:
        """Clear and return the packed value of the first item, or None."""
        first = self._get_first_item(tr)
        if first is None:
            return None
        tr.clear(first.key)
        return first.value

    def add_conflicted_pop(self, tr: Transaction, forced: bool = False) -> Optional[bytes]:
        """
        Register a waiting pop.

        Without ``forced``, nothing is written when no one else is waiting and
        None is returned so the caller can try a simple pop instead.

        Returns:
            The waiter key, or None.
        """
        index = self.get_next_index(tr.snapshot, self._conflicted_pop)
        if index == 0 and not forced:
            return None

        wait_key = self._conflicted_pop.pack((index, self._rand_id()))
        tr.add_read_conflict_key(wait_key)
        tr.set(wait_key, b"")
        return wait_key

    def fulfill_conflicted_pops(self, db: KeyValueStore) -> bool:
        """
        Pair waiting pops with items, oldest first, in one transaction.

        Each matched item's value is written to its waiter's result key and
        both the waiter and the item are cleared. Waiters left over once the
        items run out are cleared too; they will find no result and give up.

        A single attempt: a conflict propagates to the caller.

        Returns:
            True if fewer than ``batch_size`` waiters were found (backlog drained).
        """
        batch = self.config.batch_size
        tr = db.create_transaction()
        try:
            waiters = tr.snapshot.get_range(*self._conflicted_pop.range(), limit=batch)
            items = tr.snapshot.get_range(*self._queue_item.range(), limit=batch)

            matched = min(len(waiters), len(items))
            for waiter, item in zip(waiters, items):
                tr.set(self.conflicted_item_key(self.waiter_id(waiter.key)), item.value)
                tr.add_read_conflict_key(item.key)
                tr.add_read_conflict_key(waiter.key)
                tr.clear(waiter.key)
                tr.clear(item.key)

            for waiter in waiters[matched:]:
                tr.add_read_conflict_key(waiter.key)
                tr.clear(waiter.key)

            tr.commit()
        finally:
            tr.close()

        if waiters:
            logger.debug(
                "Fulfilment sweep matched %d of %d waiting pops", matched, len(waiters)
            )
        return len(waiters) < batch

    def waiter_id(self, wait_key: bytes) -> bytes:
        """Random id embedded in a waiter key."""
        parts = self._conflicted_pop.unpack(wait_key)
        if len(parts) != 2 or not isinstance(parts[1], bytes):
            raise CodecError(
                "Malformed waiting pop key",
                context={"key": bytes(wait_key).hex()},
            )
        return parts[1]

    def conflicted_item_key(self, waiter_id: bytes) -> bytes:
        """Result key where the item for ``waiter_id`` is delivered."""
        return self._conflicted_item.pack((waiter_id,))

    # =========================================================================
    # Internal Helpers
    # =========================================================================

    def _rand_id(self) -> bytes:
        rand_id = self._random_source(RANDOM_ID_LENGTH)
        if not isinstance(rand_id, bytes) or len(rand_id) != RANDOM_ID_LENGTH:
            raise ConfigError(f"random_source must return {RANDOM_ID_LENGTH} bytes")
        return rand_id

    def _encode_value(self, value: Any) -> bytes:
        return keytuple.pack((value,))

    def _decode_value(self, data: bytes) -> Any:
        parts = keytuple.unpack(data)
        if len(parts) != 1:
            raise CodecError("Queue value must pack exactly one element")
        return parts[0]

    # Items are pushed at an (index, random id) pair. Items pushed at the same
    # time get the same index, so their relative order is random.
    def _push_at(self, tr: Transaction, value: bytes, index: int) -> None:
        key = self._queue_item.pack((index, self._rand_id()))
        tr.set(key, value)

    def _get_first_item(self, tr: Reader) -> Optional[KeyValue]:
        for kv in tr.get_range(*self._queue_item.range(), limit=1):
            return kv
        return None
