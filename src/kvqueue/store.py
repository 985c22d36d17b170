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
Ordered Transactional Key-Value Store Contract

The queue layer only needs a handful of primitives from the store:

- Transactions with optimistic concurrency (conflicts detected at commit)
- Regular reads, which add read-conflict ranges
- Snapshot reads, which do not
- Key selectors ("last key strictly less than K")
- Ordered range reads with a limit

Two implementations ship with the package:

- ``InMemoryStore`` (this module): single-process store with real conflict
  detection, used for tests and embedded use.
- ``RemoteStore`` (``kvqueue.remote``): gRPC client for a shared store.

Example:
    store = InMemoryStore()

    def transfer(tr):
        balance = int(tr.get(b"balance") or b"0")
        tr.set(b"balance", str(balance + 10).encode())

    store.transact(transfer)
"""

from __future__ import annotations

import bisect
import functools
import logging
import random
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from .errors import (
    RetryLimitExceededError,
    StoreError,
    TransactionConflictError,
    TransactionError,
    TransactionTooOldError,
)

logger = logging.getLogger(__name__)

# Past-the-end key returned by selectors that run off the end of the keyspace
KEYSPACE_END = b"\xff"

Range = Tuple[bytes, bytes]


# ============================================================================
# Key/Value Types
# ============================================================================

@dataclass(frozen=True)
class KeyValue:
    """A key-value pair returned by range reads."""
    key: bytes
    value: bytes

    def __iter__(self) -> Iterator[bytes]:
        yield self.key
        yield self.value


@dataclass(frozen=True)
class KeySelector:
    """
    Positional key lookup.

    Resolves to the last key less than (or equal to, when ``or_equal``) the
    reference key, then moves ``offset`` keys forward.
    """
    key: bytes
    or_equal: bool
    offset: int

    @classmethod
    def last_less_than(cls, key: bytes) -> "KeySelector":
        return cls(bytes(key), False, 0)

    @classmethod
    def last_less_or_equal(cls, key: bytes) -> "KeySelector":
        return cls(bytes(key), True, 0)

    @classmethod
    def first_greater_than(cls, key: bytes) -> "KeySelector":
        return cls(bytes(key), True, 1)

    @classmethod
    def first_greater_or_equal(cls, key: bytes) -> "KeySelector":
        return cls(bytes(key), False, 1)

    def resolve(self, keys: List[bytes]) -> bytes:
        """Resolve against a sorted list of keys."""
        if self.or_equal:
            index = bisect.bisect_right(keys, self.key) - 1
        else:
            index = bisect.bisect_left(keys, self.key) - 1
        index += self.offset
        if index < 0:
            return b""
        if index >= len(keys):
            return KEYSPACE_END
        return keys[index]


def key_after(key: bytes) -> bytes:
    """Smallest key strictly greater than ``key``."""
    return bytes(key) + b"\x00"


def _ranges_intersect(a: Range, b: Range) -> bool:
    return a[0] < b[1] and b[0] < a[1]


# ============================================================================
# Transaction Contract
# ============================================================================

class Transaction(ABC):
    """
    Abstract transaction interface.

    Writes are buffered until ``commit()``. Regular reads register read-conflict
    ranges; if a concurrently committed transaction wrote into one of them,
    ``commit()`` raises ``TransactionConflictError``.
    """

    @abstractmethod
    def get(self, key: bytes, snapshot: bool = False) -> Optional[bytes]:
        pass

    @abstractmethod
    def get_key(self, selector: KeySelector, snapshot: bool = False) -> bytes:
        pass

    @abstractmethod
    def get_range(
        self,
        begin: bytes,
        end: bytes,
        limit: int = 0,
        reverse: bool = False,
        snapshot: bool = False,
    ) -> List[KeyValue]:
        pass

    @abstractmethod
    def set(self, key: bytes, value: bytes) -> None:
        pass

    @abstractmethod
    def clear(self, key: bytes) -> None:
        pass

    @abstractmethod
    def clear_range(self, begin: bytes, end: bytes) -> None:
        pass

    @abstractmethod
    def add_read_conflict_range(self, begin: bytes, end: bytes) -> None:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def reset(self) -> None:
        """Discard all reads and buffered writes and start over."""
        pass

    def add_read_conflict_key(self, key: bytes) -> None:
        self.add_read_conflict_range(key, key_after(key))

    def close(self) -> None:
        """Release the transaction. Uncommitted writes are discarded."""
        self.reset()

    @property
    def snapshot(self) -> "SnapshotView":
        """Read-only view whose reads do not add read conflicts."""
        return SnapshotView(self)

    def __enter__(self) -> "Transaction":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            self.commit()
        else:
            self.reset()
        return False


class SnapshotView:
    """Snapshot reads against a transaction."""

    def __init__(self, tr: Transaction):
        self._tr = tr

    def get(self, key: bytes) -> Optional[bytes]:
        return self._tr.get(key, snapshot=True)

    def get_key(self, selector: KeySelector) -> bytes:
        return self._tr.get_key(selector, snapshot=True)

    def get_range(self, begin: bytes, end: bytes, limit: int = 0, reverse: bool = False) -> List[KeyValue]:
        return self._tr.get_range(begin, end, limit=limit, reverse=reverse, snapshot=True)

    @property
    def snapshot(self) -> "SnapshotView":
        return self


class KeyValueStore(ABC):
    """
    Abstract store interface.

    ``transact()`` is the retry loop every multi-step operation runs through:
    conflict-class errors reset the transaction and rerun the function,
    anything else propagates immediately.
    """

    max_retries: Optional[int] = None
    retry_backoff: float = 0.002
    max_retry_backoff: float = 0.1

    @abstractmethod
    def create_transaction(self) -> Transaction:
        pass

    def transact(
        self,
        func: Callable[..., Any],
        *args: Any,
        max_retries: Optional[int] = None,
        **kwargs: Any,
    ) -> Any:
        """
        Run ``func(tr, *args, **kwargs)`` and commit, retrying on conflict.

        Args:
            func: Transaction body. May run more than once.
            max_retries: Override the store's retry limit (None = store default,
                which is unbounded unless configured).

        Returns:
            Whatever ``func`` returned on the attempt that committed.

        Raises:
            RetryLimitExceededError: Conflicts persisted past the limit.
        """
        limit = max_retries if max_retries is not None else self.max_retries
        backoff = self.retry_backoff
        attempts = 0
        tr = self.create_transaction()
        try:
            while True:
                attempts += 1
                try:
                    result = func(tr, *args, **kwargs)
                    tr.commit()
                    return result
                except TransactionConflictError as e:
                    if limit is not None and attempts > limit:
                        raise RetryLimitExceededError(attempts) from e
                    logger.debug("Transaction conflict on attempt %d, retrying: %s", attempts, e)
                    tr.reset()
                    time.sleep(backoff * random.random())
                    backoff = min(self.max_retry_backoff, backoff * 2)
        finally:
            tr.close()

    def close(self) -> None:
        pass

    def __enter__(self) -> "KeyValueStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def transactional(func: Callable[..., Any]) -> Callable[..., Any]:
    """
    Let a method accept either a store or an open transaction.

    Given a transaction (or snapshot view), the method runs inside it and the
    caller commits. Given a store, the method runs in its own retried
    transaction. The owning object may define ``max_retries``.
    """

    @functools.wraps(func)
    def wrapper(self, db_or_tr, *args, **kwargs):
        if isinstance(db_or_tr, (Transaction, SnapshotView)):
            return func(self, db_or_tr, *args, **kwargs)
        if isinstance(db_or_tr, KeyValueStore):
            return db_or_tr.transact(
                lambda tr: func(self, tr, *args, **kwargs),
                max_retries=getattr(self, "max_retries", None),
            )
        raise TypeError(
            f"Expected KeyValueStore or Transaction, got {type(db_or_tr).__name__}"
        )

    return wrapper


# ============================================================================
# InMemoryStore - Single-Process Optimistic Store
# ============================================================================

class InMemoryStore(KeyValueStore):
    """
    In-memory ordered store with optimistic conflict detection.

    Every commit that writes gets a new version and is remembered together
    with its write ranges. A committing transaction conflicts if any commit
    newer than its read version wrote into one of its read ranges. History is
    bounded by ``history_limit``; transactions older than the retained
    history fail with ``TransactionTooOldError``.

    Thread-safe.
    """

    def __init__(
        self,
        max_retries: Optional[int] = None,
        history_limit: int = 10_000,
    ):
        self.max_retries = max_retries
        self._history_limit = history_limit
        self._keys: List[bytes] = []
        self._data: Dict[bytes, bytes] = {}
        self._version = 0
        self._oldest_version = 0
        self._history: Deque[Tuple[int, List[Range]]] = deque()
        self._lock = threading.RLock()
        self._closed = False

    def create_transaction(self) -> "InMemoryTransaction":
        self._check_open()
        return InMemoryTransaction(self)

    def close(self) -> None:
        with self._lock:
            self._closed = True

    @property
    def version(self) -> int:
        with self._lock:
            return self._version

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def dump(self) -> List[KeyValue]:
        """All committed key-value pairs in key order."""
        with self._lock:
            return [KeyValue(k, self._data[k]) for k in self._keys]

    # Internal API used by InMemoryTransaction. All callers hold no lock.

    def _check_open(self) -> None:
        if self._closed:
            raise StoreError("Store is closed")

    def _read_version(self) -> int:
        with self._lock:
            self._check_open()
            return self._version

    def _get(self, key: bytes) -> Optional[bytes]:
        with self._lock:
            self._check_open()
            return self._data.get(key)

    def _range_items(self, begin: bytes, end: bytes) -> List[Tuple[bytes, bytes]]:
        with self._lock:
            self._check_open()
            lo = bisect.bisect_left(self._keys, begin)
            hi = bisect.bisect_left(self._keys, end)
            return [(k, self._data[k]) for k in self._keys[lo:hi]]

    def _resolve(self, selector: KeySelector) -> bytes:
        with self._lock:
            self._check_open()
            return selector.resolve(self._keys)

    def _all_keys(self) -> List[bytes]:
        with self._lock:
            self._check_open()
            return list(self._keys)

    def _commit(
        self,
        read_version: Optional[int],
        read_ranges: List[Range],
        write_ranges: List[Range],
        ops: List[Tuple[str, bytes, bytes]],
    ) -> int:
        with self._lock:
            self._check_open()
            if not ops:
                return self._version

            if read_version is not None and read_ranges:
                if read_version < self._oldest_version:
                    raise TransactionTooOldError()
                # Newest first; everything older was visible to the reader
                for version, written in reversed(self._history):
                    if version <= read_version:
                        break
                    for w in written:
                        if any(_ranges_intersect(r, w) for r in read_ranges):
                            raise TransactionConflictError()

            for op, a, b in ops:
                if op == "set":
                    if a not in self._data:
                        bisect.insort(self._keys, a)
                    self._data[a] = b
                elif op == "clear":
                    if a in self._data:
                        del self._data[a]
                        del self._keys[bisect.bisect_left(self._keys, a)]
                elif op == "clear_range":
                    lo = bisect.bisect_left(self._keys, a)
                    hi = bisect.bisect_left(self._keys, b)
                    for k in self._keys[lo:hi]:
                        del self._data[k]
                    del self._keys[lo:hi]

            self._version += 1
            self._history.append((self._version, write_ranges))
            while len(self._history) > self._history_limit:
                dropped_version, _ = self._history.popleft()
                self._oldest_version = dropped_version
            return self._version


class InMemoryTransaction(Transaction):
    """Transaction against an ``InMemoryStore`` with read-your-writes."""

    def __init__(self, store: InMemoryStore):
        self._store = store
        self._reset_state()

    def _reset_state(self) -> None:
        self._read_version: Optional[int] = None
        self._read_ranges: List[Range] = []
        self._write_ranges: List[Range] = []
        self._writes: Dict[bytes, Optional[bytes]] = {}
        self._cleared: List[Range] = []
        self._ops: List[Tuple[str, bytes, bytes]] = []
        self._committed = False
        self.committed_version: Optional[int] = None

    def _check_active(self) -> None:
        if self._committed:
            raise TransactionError("Transaction already committed; call reset() to reuse it")

    def _ensure_read_version(self) -> None:
        if self._read_version is None:
            self._read_version = self._store._read_version()

    def _is_cleared(self, key: bytes) -> bool:
        return any(b <= key < e for b, e in self._cleared)

    def _has_local_writes(self) -> bool:
        return bool(self._writes) or bool(self._cleared)

    def _merged_keys(self) -> List[bytes]:
        keys = set(k for k in self._store._all_keys() if not self._is_cleared(k))
        for k, v in self._writes.items():
            if v is None:
                keys.discard(k)
            else:
                keys.add(k)
        return sorted(keys)

    # Reads

    def get(self, key: bytes, snapshot: bool = False) -> Optional[bytes]:
        self._check_active()
        key = bytes(key)
        self._ensure_read_version()
        if not snapshot:
            self._read_ranges.append((key, key_after(key)))
        if key in self._writes:
            return self._writes[key]
        if self._is_cleared(key):
            return None
        return self._store._get(key)

    def get_key(self, selector: KeySelector, snapshot: bool = False) -> bytes:
        self._check_active()
        self._ensure_read_version()
        if self._has_local_writes():
            resolved = selector.resolve(self._merged_keys())
        else:
            resolved = self._store._resolve(selector)
        if not snapshot:
            lo = min(resolved, selector.key)
            hi = max(resolved, selector.key)
            self._read_ranges.append((lo, key_after(hi)))
        return resolved

    def get_range(
        self,
        begin: bytes,
        end: bytes,
        limit: int = 0,
        reverse: bool = False,
        snapshot: bool = False,
    ) -> List[KeyValue]:
        self._check_active()
        begin, end = bytes(begin), bytes(end)
        self._ensure_read_version()
        if begin >= end:
            return []

        merged = {
            k: v for k, v in self._store._range_items(begin, end)
            if not self._is_cleared(k)
        }
        for k, v in self._writes.items():
            if begin <= k < end:
                if v is None:
                    merged.pop(k, None)
                else:
                    merged[k] = v

        keys = sorted(merged, reverse=reverse)
        truncated = limit > 0 and len(keys) > limit
        if limit > 0:
            keys = keys[:limit]

        if not snapshot:
            if truncated and keys:
                # Only the scanned part of the range matters for conflicts
                if reverse:
                    self._read_ranges.append((keys[-1], end))
                else:
                    self._read_ranges.append((begin, key_after(keys[-1])))
            else:
                self._read_ranges.append((begin, end))

        return [KeyValue(k, merged[k]) for k in keys]

    # Writes

    def set(self, key: bytes, value: bytes) -> None:
        self._check_active()
        key, value = bytes(key), bytes(value)
        self._writes[key] = value
        self._ops.append(("set", key, value))
        self._write_ranges.append((key, key_after(key)))

    def clear(self, key: bytes) -> None:
        self._check_active()
        key = bytes(key)
        self._writes[key] = None
        self._ops.append(("clear", key, b""))
        self._write_ranges.append((key, key_after(key)))

    def clear_range(self, begin: bytes, end: bytes) -> None:
        self._check_active()
        begin, end = bytes(begin), bytes(end)
        if begin >= end:
            return
        for k in [k for k in self._writes if begin <= k < end]:
            del self._writes[k]
        self._cleared.append((begin, end))
        self._ops.append(("clear_range", begin, end))
        self._write_ranges.append((begin, end))

    def add_read_conflict_range(self, begin: bytes, end: bytes) -> None:
        self._check_active()
        self._ensure_read_version()
        self._read_ranges.append((bytes(begin), bytes(end)))

    # Lifecycle

    def commit(self) -> None:
        self._check_active()
        version = self._store._commit(
            self._read_version,
            self._read_ranges,
            self._write_ranges,
            self._ops,
        )
        self._committed = True
        self.committed_version = version

    def reset(self) -> None:
        self._reset_state()
