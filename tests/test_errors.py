#!/usr/bin/env python3
"""
Tests for the kvqueue error taxonomy.
"""

from kvqueue.errors import (
    CodecError,
    ConnectionError,
    ErrorCode,
    KvQueueError,
    PopTimeoutError,
    RetryLimitExceededError,
    StoreError,
    TransactionConflictError,
    TransactionNotFoundError,
    TransactionTooOldError,
    from_error_code,
    is_retryable,
)


class TestErrorClassification:

    def test_conflict_class_is_retryable(self):
        assert is_retryable(TransactionConflictError())
        assert is_retryable(TransactionTooOldError())

    def test_fatal_errors_not_retryable(self):
        assert not is_retryable(StoreError("down"))
        assert not is_retryable(CodecError("bad"))
        assert not is_retryable(RetryLimitExceededError(3))
        assert not is_retryable(ValueError("other"))

    def test_all_derive_from_base(self):
        for error in (StoreError("x"), PopTimeoutError(1.0), TransactionNotFoundError("t")):
            assert isinstance(error, KvQueueError)


class TestErrorFormatting:

    def test_str_includes_code_name(self):
        assert str(StoreError("disk gone")) == "[STORE_ERROR] disk gone"

    def test_to_dict(self):
        data = PopTimeoutError(2.5).to_dict()
        assert data["code"] == ErrorCode.POP_TIMEOUT
        assert data["code_name"] == "POP_TIMEOUT"
        assert data["context"] == {"timeout_seconds": 2.5}
        assert data["remediation"]

    def test_code_override(self):
        error = ConnectionError("slow", code=ErrorCode.CONNECTION_TIMEOUT)
        assert error.code == ErrorCode.CONNECTION_TIMEOUT
        assert ConnectionError("down").code == ErrorCode.CONNECTION_FAILED


class TestFromErrorCode:

    def test_conflict(self):
        error = from_error_code(ErrorCode.TRANSACTION_CONFLICT, "raced")
        assert isinstance(error, TransactionConflictError)
        assert error.message == "raced"

    def test_too_old(self):
        assert isinstance(from_error_code(ErrorCode.TRANSACTION_TOO_OLD, "old"), TransactionTooOldError)

    def test_not_found_keeps_id(self):
        error = from_error_code(ErrorCode.TRANSACTION_NOT_FOUND, "gone", {"txn_id": "abc"})
        assert isinstance(error, TransactionNotFoundError)
        assert error.context["txn_id"] == "abc"

    def test_unknown_code_is_store_error(self):
        error = from_error_code(4242, "mystery")
        assert isinstance(error, StoreError)
        assert error.code == ErrorCode.STORE_ERROR
