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
kvqueue Error Types

Error taxonomy shared by the store adapters and the queue layer, with
machine-readable codes and remediation hints.

Error Code Ranges:
- 1xxx: Connection/Transport errors
- 2xxx: Transaction errors
- 5xxx: Queue operation errors
- 6xxx: Codec/Validation errors
- 9xxx: Store/Internal errors

Only conflict-class errors (``TransactionConflictError`` and its subclasses)
are retried by the layer. Everything else is fatal for the call that raised it.
"""

from enum import IntEnum
from typing import Optional, Dict, Any


class ErrorCode(IntEnum):
    """Machine-readable error codes."""

    # Connection errors (1xxx)
    CONNECTION_FAILED = 1001
    CONNECTION_TIMEOUT = 1002
    CONNECTION_CLOSED = 1003
    PROTOCOL_ERROR = 1004

    # Transaction errors (2xxx)
    TRANSACTION_ABORTED = 2001
    TRANSACTION_CONFLICT = 2002
    TRANSACTION_TOO_OLD = 2003
    TRANSACTION_NOT_FOUND = 2005
    RETRY_LIMIT_EXCEEDED = 2006

    # Queue errors (5xxx)
    POP_TIMEOUT = 5002

    # Codec/validation errors (6xxx)
    CODEC_ERROR = 6001
    INVALID_CONFIG = 6002

    # Store/internal errors (9xxx)
    INTERNAL_ERROR = 9001
    STORE_ERROR = 9003


class KvQueueError(Exception):
    """
    Base exception for kvqueue errors.

    Provides:
    - Machine-readable error codes
    - Human-readable messages
    - Optional remediation hints
    - Optional context data

    Example:
        try:
            queue.pop(db)
        except KvQueueError as e:
            print(f"Error {e.code}: {e.message}")
            print(f"Remediation: {e.remediation}")
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        remediation: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.remediation = remediation
        self.context = context or {}

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "remediation": self.remediation,
            "context": self.context,
        }


class ConnectionError(KvQueueError):
    """Failed to reach the store server."""
    code = ErrorCode.CONNECTION_FAILED


class ProtocolError(KvQueueError):
    """Wire protocol error."""
    code = ErrorCode.PROTOCOL_ERROR


class StoreError(KvQueueError):
    """Store-fatal error (unavailable, exhausted, misused). Never retried."""
    code = ErrorCode.STORE_ERROR


# ============================================================================
# Transaction Errors
# ============================================================================

class TransactionError(KvQueueError):
    """Transaction-related error."""
    code = ErrorCode.TRANSACTION_ABORTED


class TransactionConflictError(TransactionError):
    """Commit rejected because a concurrent transaction invalidated a read."""
    code = ErrorCode.TRANSACTION_CONFLICT

    def __init__(self, message: str = "Transaction not committed due to conflict"):
        super().__init__(
            message,
            remediation="Retry the transaction from the beginning.",
        )


class TransactionTooOldError(TransactionConflictError):
    """Read version fell behind the store's conflict history."""
    code = ErrorCode.TRANSACTION_TOO_OLD

    def __init__(self, message: str = "Transaction is too old to perform reads or be committed"):
        super().__init__(message)


class TransactionNotFoundError(TransactionError):
    """The server has no transaction with the given id."""
    code = ErrorCode.TRANSACTION_NOT_FOUND

    def __init__(self, txn_id: str):
        super().__init__(
            f"Transaction not found: {txn_id}",
            remediation="The transaction was committed, closed, or the server restarted. "
                        "Create a new transaction.",
            context={"txn_id": txn_id},
        )


class RetryLimitExceededError(TransactionError):
    """A retried transaction kept conflicting past the configured limit."""
    code = ErrorCode.RETRY_LIMIT_EXCEEDED

    def __init__(self, attempts: int):
        super().__init__(
            f"Transaction still conflicting after {attempts} attempts",
            remediation="Raise max_retries or reduce contention on the same keys.",
            context={"attempts": attempts},
        )


# ============================================================================
# Codec / Queue Errors
# ============================================================================

class CodecError(KvQueueError):
    """A key or value could not be encoded or decoded."""
    code = ErrorCode.CODEC_ERROR


class ConfigError(KvQueueError):
    """Invalid queue configuration."""
    code = ErrorCode.INVALID_CONFIG


class PopTimeoutError(KvQueueError):
    """A high-contention pop was not fulfilled before its deadline."""
    code = ErrorCode.POP_TIMEOUT

    def __init__(self, timeout_seconds: float):
        super().__init__(
            f"Pop not fulfilled within {timeout_seconds}s",
            remediation="The waiter registration was withdrawn; it is safe to pop again.",
            context={"timeout_seconds": timeout_seconds},
        )


def is_retryable(exc: BaseException) -> bool:
    """True for conflict-class errors that the caller should retry."""
    return isinstance(exc, TransactionConflictError)


# ============================================================================
# Error Mapping from Wire Codes
# ============================================================================

_ERROR_MAP: Dict[int, type] = {
    ErrorCode.CONNECTION_FAILED: ConnectionError,
    ErrorCode.CONNECTION_TIMEOUT: ConnectionError,
    ErrorCode.PROTOCOL_ERROR: ProtocolError,
    ErrorCode.TRANSACTION_ABORTED: TransactionError,
    ErrorCode.TRANSACTION_CONFLICT: TransactionConflictError,
    ErrorCode.TRANSACTION_TOO_OLD: TransactionTooOldError,
    ErrorCode.TRANSACTION_NOT_FOUND: TransactionNotFoundError,
    ErrorCode.CODEC_ERROR: CodecError,
    ErrorCode.STORE_ERROR: StoreError,
}


def from_error_code(code: int, message: str, context: Optional[Dict[str, Any]] = None) -> KvQueueError:
    """
    Convert a wire error code to the matching exception.

    Used by the gRPC client to turn server-reported failures back into
    typed exceptions.
    """
    error_class = _ERROR_MAP.get(code, StoreError)

    if error_class in (TransactionConflictError, TransactionTooOldError):
        return error_class(message)
    if error_class is TransactionNotFoundError:
        return TransactionNotFoundError((context or {}).get("txn_id", "unknown"))

    try:
        error_code = ErrorCode(code)
    except ValueError:
        error_code = ErrorCode.STORE_ERROR

    return error_class(message, code=error_code, context=context)
