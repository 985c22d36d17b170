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
kvqueue gRPC Client - Thin Store Wrapper

Talks to a ``kvqueue serve`` process (or anything else exposing the
``kvqueue.KeyValueStore`` service). All conflict detection happens on the
server; the client only forwards calls.

Messages are JSON objects with byte strings hex-encoded, so no generated
protobuf modules are needed.

Usage:
    store = RemoteStore("localhost:50051")
    queue = Queue(Subspace(("jobs",)))
    queue.push(store, b"payload")
"""

import json
import logging
from typing import Any, Dict, List, Optional

import grpc

from .errors import (
    ConnectionError,
    ErrorCode,
    KvQueueError,
    ProtocolError,
    StoreError,
    TransactionConflictError,
    TransactionError,
    from_error_code,
)
from .store import KeySelector, KeyValue, KeyValueStore, Transaction

logger = logging.getLogger(__name__)

SERVICE_NAME = "kvqueue.KeyValueStore"
DEFAULT_ADDRESS = "localhost:50051"
DEFAULT_TIMEOUT = 30.0

METHODS = (
    "Begin",
    "Get",
    "GetKey",
    "GetRange",
    "Set",
    "Clear",
    "ClearRange",
    "AddReadConflictRange",
    "Commit",
    "Reset",
    "Close",
)


# ============================================================================
# Wire Format
# ============================================================================

def serialize_message(message: Dict[str, Any]) -> bytes:
    return json.dumps(message, separators=(",", ":")).encode("utf-8")


def deserialize_message(data: bytes) -> Dict[str, Any]:
    try:
        message = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise ProtocolError(f"Malformed message: {e}")
    if not isinstance(message, dict):
        raise ProtocolError("Message must be a JSON object")
    return message


def to_hex(data: Optional[bytes]) -> Optional[str]:
    return None if data is None else bytes(data).hex()


def from_hex(text: Optional[str]) -> Optional[bytes]:
    if text is None:
        return None
    try:
        return bytes.fromhex(text)
    except (TypeError, ValueError):
        raise ProtocolError(f"Invalid hex field: {text!r}")


def error_from_rpc(e: grpc.RpcError) -> KvQueueError:
    """Map a failed call to the matching kvqueue exception."""
    status = e.code()
    details = e.details() or ""

    if status == grpc.StatusCode.UNAVAILABLE:
        return ConnectionError(f"Store unavailable: {details}", code=ErrorCode.CONNECTION_FAILED)
    if status == grpc.StatusCode.DEADLINE_EXCEEDED:
        return ConnectionError(f"Store call timed out: {details}", code=ErrorCode.CONNECTION_TIMEOUT)

    try:
        payload = json.loads(details)
    except ValueError:
        payload = None

    if isinstance(payload, dict) and "code" in payload:
        error = from_error_code(payload["code"], payload.get("message", details), payload.get("context"))
        # Only ABORTED carries conflict-class errors
        if isinstance(error, TransactionConflictError) and status != grpc.StatusCode.ABORTED:
            return StoreError(error.message)
        return error

    if status == grpc.StatusCode.ABORTED:
        return TransactionConflictError(details or "Transaction not committed due to conflict")
    return StoreError(f"{status.name}: {details}")


# ============================================================================
# RemoteTransaction
# ============================================================================

class RemoteTransaction(Transaction):
    """Transaction held open on the server and addressed by id."""

    def __init__(self, store: "RemoteStore", txn_id: str):
        self._store = store
        self.txn_id = txn_id
        self._closed = False

    def _call(self, method: str, **fields: Any) -> Dict[str, Any]:
        if self._closed:
            raise TransactionError("Transaction is closed", context={"txn_id": self.txn_id})
        fields["txn_id"] = self.txn_id
        return self._store._call(method, fields)

    def get(self, key: bytes, snapshot: bool = False) -> Optional[bytes]:
        response = self._call("Get", key=to_hex(key), snapshot=snapshot)
        return from_hex(response.get("value"))

    def get_key(self, selector: KeySelector, snapshot: bool = False) -> bytes:
        response = self._call(
            "GetKey",
            key=to_hex(selector.key),
            or_equal=selector.or_equal,
            offset=selector.offset,
            snapshot=snapshot,
        )
        return from_hex(response["key"])

    def get_range(
        self,
        begin: bytes,
        end: bytes,
        limit: int = 0,
        reverse: bool = False,
        snapshot: bool = False,
    ) -> List[KeyValue]:
        response = self._call(
            "GetRange",
            begin=to_hex(begin),
            end=to_hex(end),
            limit=limit,
            reverse=reverse,
            snapshot=snapshot,
        )
        return [KeyValue(from_hex(k), from_hex(v)) for k, v in response.get("items", [])]

    def set(self, key: bytes, value: bytes) -> None:
        self._call("Set", key=to_hex(key), value=to_hex(value))

    def clear(self, key: bytes) -> None:
        self._call("Clear", key=to_hex(key))

    def clear_range(self, begin: bytes, end: bytes) -> None:
        self._call("ClearRange", begin=to_hex(begin), end=to_hex(end))

    def add_read_conflict_range(self, begin: bytes, end: bytes) -> None:
        self._call("AddReadConflictRange", begin=to_hex(begin), end=to_hex(end))

    def commit(self) -> None:
        self._call("Commit")

    def reset(self) -> None:
        self._call("Reset")

    def close(self) -> None:
        if self._closed:
            return
        try:
            self._call("Close")
        except ConnectionError as e:
            # The server drops the transaction on its own once the channel dies
            logger.debug("Could not close transaction %s: %s", self.txn_id, e)
        finally:
            self._closed = True

    def __exit__(self, exc_type, exc_val, exc_tb):
        # Commit or reset as usual, then release the server-side transaction
        try:
            return super().__exit__(exc_type, exc_val, exc_tb)
        finally:
            self.close()


# ============================================================================
# RemoteStore
# ============================================================================

class RemoteStore(KeyValueStore):
    """
    gRPC client for a shared store.

    Thread-safe: the channel is shared, each transaction is independent.
    """

    def __init__(
        self,
        address: str = DEFAULT_ADDRESS,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: Optional[int] = None,
        secure: bool = False,
    ):
        """
        Connect to a kvqueue store server.

        Args:
            address: Server address in host:port format
            timeout: Per-call deadline in seconds
            max_retries: Conflict retries for ``transact()`` (None = unbounded)
            secure: Use TLS if True
        """
        self.address = address
        self.timeout = timeout
        self.max_retries = max_retries

        if secure:
            self.channel = grpc.secure_channel(address, grpc.ssl_channel_credentials())
        else:
            self.channel = grpc.insecure_channel(address)

        self._methods = {
            name: self.channel.unary_unary(
                f"/{SERVICE_NAME}/{name}",
                request_serializer=serialize_message,
                response_deserializer=deserialize_message,
            )
            for name in METHODS
        }

    def _call(self, method: str, request: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return self._methods[method](request, timeout=self.timeout)
        except grpc.RpcError as e:
            raise error_from_rpc(e) from e

    def create_transaction(self) -> RemoteTransaction:
        response = self._call("Begin", {})
        return RemoteTransaction(self, response["txn_id"])

    def close(self) -> None:
        """Close the gRPC channel."""
        self.channel.close()
