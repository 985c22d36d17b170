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
kvqueue gRPC Server

Exposes any ``KeyValueStore`` as the ``kvqueue.KeyValueStore`` service.
Transactions live on the server between calls and are addressed by id.

Usage:
    server, port = serve(InMemoryStore(), port=50051)
    server.wait_for_termination()
"""

import functools
import logging
import threading
import time
import uuid
from concurrent import futures
from typing import Any, Callable, Dict, Optional, Tuple

import grpc

from .errors import (
    CodecError,
    ConfigError,
    KvQueueError,
    ProtocolError,
    TransactionConflictError,
    TransactionNotFoundError,
)
from .remote import (
    METHODS,
    SERVICE_NAME,
    deserialize_message,
    from_hex,
    serialize_message,
    to_hex,
)
from .store import KeySelector, KeyValueStore, Transaction

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 50051
DEFAULT_MAX_WORKERS = 16
DEFAULT_IDLE_TIMEOUT = 300.0


def _status_for(error: KvQueueError) -> grpc.StatusCode:
    if isinstance(error, TransactionConflictError):
        return grpc.StatusCode.ABORTED
    if isinstance(error, TransactionNotFoundError):
        return grpc.StatusCode.NOT_FOUND
    if isinstance(error, (CodecError, ProtocolError, ConfigError)):
        return grpc.StatusCode.INVALID_ARGUMENT
    return grpc.StatusCode.FAILED_PRECONDITION


def _rpc(func: Callable[..., Dict[str, Any]]) -> Callable[..., Dict[str, Any]]:
    """Report kvqueue errors to the client as status code plus JSON details."""

    @functools.wraps(func)
    def wrapper(self, request, context):
        try:
            return func(self, request, context)
        except KvQueueError as e:
            details = serialize_message(e.to_dict()).decode("utf-8")
            context.abort(_status_for(e), details)

    return wrapper


# ============================================================================
# StoreServicer
# ============================================================================

class _Entry:
    __slots__ = ("tr", "last_used")

    def __init__(self, tr: Transaction, last_used: float):
        self.tr = tr
        self.last_used = last_used


class StoreServicer:
    """
    Serves a store's transactions to remote clients.

    Transactions untouched for ``idle_timeout`` seconds are closed and
    forgotten; later calls with their id fail with TransactionNotFoundError.
    Idle entries are reaped when new transactions begin, at most once per
    ``reap_interval`` seconds.
    """

    def __init__(
        self,
        store: KeyValueStore,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        reap_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.idle_timeout = idle_timeout
        self.reap_interval = idle_timeout / 4 if reap_interval is None else reap_interval
        self._clock = clock
        self._transactions: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._last_reap = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._transactions)

    def _txn(self, request: Dict[str, Any]) -> Transaction:
        txn_id = request.get("txn_id")
        with self._lock:
            entry = self._transactions.get(txn_id)
            if entry is not None:
                entry.last_used = self._clock()
        if entry is None:
            raise TransactionNotFoundError(str(txn_id))
        return entry.tr

    def reap_idle(self) -> int:
        """Close transactions idle longer than ``idle_timeout``. Returns how many."""
        now = self._clock()
        with self._lock:
            self._last_reap = now
            expired = [
                txn_id for txn_id, entry in self._transactions.items()
                if now - entry.last_used > self.idle_timeout
            ]
            entries = [self._transactions.pop(txn_id) for txn_id in expired]
        for entry in entries:
            entry.tr.close()
        if entries:
            logger.info("Reaped %d idle transactions", len(entries))
        return len(entries)

    @_rpc
    def Begin(self, request, context):
        if self._clock() - self._last_reap >= self.reap_interval:
            self.reap_idle()
        txn_id = uuid.uuid4().hex
        tr = self.store.create_transaction()
        with self._lock:
            self._transactions[txn_id] = _Entry(tr, self._clock())
        return {"txn_id": txn_id}

    @_rpc
    def Get(self, request, context):
        value = self._txn(request).get(from_hex(request["key"]), snapshot=bool(request.get("snapshot")))
        return {"value": to_hex(value)}

    @_rpc
    def GetKey(self, request, context):
        selector = KeySelector(
            from_hex(request["key"]),
            bool(request.get("or_equal")),
            int(request.get("offset", 0)),
        )
        key = self._txn(request).get_key(selector, snapshot=bool(request.get("snapshot")))
        return {"key": to_hex(key)}

    @_rpc
    def GetRange(self, request, context):
        items = self._txn(request).get_range(
            from_hex(request["begin"]),
            from_hex(request["end"]),
            limit=int(request.get("limit", 0)),
            reverse=bool(request.get("reverse")),
            snapshot=bool(request.get("snapshot")),
        )
        return {"items": [[to_hex(kv.key), to_hex(kv.value)] for kv in items]}

    @_rpc
    def Set(self, request, context):
        self._txn(request).set(from_hex(request["key"]), from_hex(request["value"]))
        return {}

    @_rpc
    def Clear(self, request, context):
        self._txn(request).clear(from_hex(request["key"]))
        return {}

    @_rpc
    def ClearRange(self, request, context):
        self._txn(request).clear_range(from_hex(request["begin"]), from_hex(request["end"]))
        return {}

    @_rpc
    def AddReadConflictRange(self, request, context):
        self._txn(request).add_read_conflict_range(from_hex(request["begin"]), from_hex(request["end"]))
        return {}

    @_rpc
    def Commit(self, request, context):
        self._txn(request).commit()
        return {}

    @_rpc
    def Reset(self, request, context):
        self._txn(request).reset()
        return {}

    @_rpc
    def Close(self, request, context):
        with self._lock:
            entry = self._transactions.pop(request.get("txn_id"), None)
        if entry is not None:
            entry.tr.close()
        return {}


def generic_handler(servicer: StoreServicer) -> grpc.GenericRpcHandler:
    handlers = {
        name: grpc.unary_unary_rpc_method_handler(
            getattr(servicer, name),
            request_deserializer=deserialize_message,
            response_serializer=serialize_message,
        )
        for name in METHODS
    }
    return grpc.method_handlers_generic_handler(SERVICE_NAME, handlers)


def serve(
    store: KeyValueStore,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    max_workers: int = DEFAULT_MAX_WORKERS,
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
) -> Tuple[grpc.Server, int]:
    """
    Start serving ``store`` in background threads.

    Args:
        store: Store to expose.
        host: Bind address.
        port: Listen port; 0 picks a free one.
        max_workers: Size of the request thread pool.
        idle_timeout: Seconds before an untouched transaction is reclaimed.

    Returns:
        (server, bound port). Stop it with ``server.stop(grace)``.
    """
    servicer = StoreServicer(store, idle_timeout=idle_timeout)
    server = grpc.server(futures.ThreadPoolExecutor(max_workers=max_workers))
    server.add_generic_rpc_handlers((generic_handler(servicer),))
    bound_port = server.add_insecure_port(f"{host}:{port}")
    if bound_port == 0:
        raise OSError(f"Could not bind {host}:{port}")
    server.start()
    logger.info("Store server listening on %s:%d", host, bound_port)
    return server, bound_port
