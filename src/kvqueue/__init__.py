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
kvqueue v0.1.0

High-contention queue layer for ordered transactional key-value stores.

Two store backends:

1. Embedded (InMemoryStore):
   - Single process, real optimistic conflict detection
   - Best for: tests, tools, single-process apps

2. Server (RemoteStore):
   - Thin gRPC client for a shared ``kvqueue serve`` process
   - Best for: many processes sharing one queue

Example:
    from kvqueue import InMemoryStore, Queue, Subspace

    store = InMemoryStore()
    queue = Queue(Subspace(("jobs",)))
    queue.push(store, b"job-1")
    print(queue.pop(store))
"""

__version__ = "0.1.0"

from .store import (
    KeySelector,
    KeyValue,
    KeyValueStore,
    Transaction,
    InMemoryStore,
    transactional,
)
from .remote import RemoteStore
from .subspace import Subspace
from .config import QueueConfig
from .queue import Queue, QueueStats, SimplePop, HighContentionPop
from .eventstore import EventStore, EventRecord

from .errors import (
    KvQueueError,
    ErrorCode,
    ConnectionError,
    ProtocolError,
    StoreError,
    TransactionError,
    TransactionConflictError,
    TransactionTooOldError,
    TransactionNotFoundError,
    RetryLimitExceededError,
    CodecError,
    ConfigError,
    PopTimeoutError,
    is_retryable,
)

__all__ = [
    # Version
    "__version__",

    # Store
    "KeySelector",
    "KeyValue",
    "KeyValueStore",
    "Transaction",
    "InMemoryStore",
    "RemoteStore",
    "transactional",
    "Subspace",

    # Queue
    "Queue",
    "QueueConfig",
    "QueueStats",
    "SimplePop",
    "HighContentionPop",

    # Event log
    "EventStore",
    "EventRecord",

    # Errors
    "KvQueueError",
    "ErrorCode",
    "ConnectionError",
    "ProtocolError",
    "StoreError",
    "TransactionError",
    "TransactionConflictError",
    "TransactionTooOldError",
    "TransactionNotFoundError",
    "RetryLimitExceededError",
    "CodecError",
    "ConfigError",
    "PopTimeoutError",
    "is_retryable",
]
