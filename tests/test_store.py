#!/usr/bin/env python3
"""
Tests for the in-memory transactional store.

Covers read-your-writes, conflict detection, snapshot reads, key selectors
and the transact() retry loop.
"""

import pytest

from kvqueue import InMemoryStore, KeySelector, transactional
from kvqueue.errors import (
    RetryLimitExceededError,
    StoreError,
    TransactionConflictError,
    TransactionError,
    TransactionTooOldError,
)


def _put(store, key, value):
    tr = store.create_transaction()
    tr.set(key, value)
    tr.commit()


# ============================================================================
# Basic Operations
# ============================================================================

class TestBasicOperations:

    def test_set_get(self, store):
        _put(store, b"k", b"v")
        tr = store.create_transaction()
        assert tr.get(b"k") == b"v"
        assert tr.get(b"missing") is None

    def test_read_your_writes(self, store):
        tr = store.create_transaction()
        tr.set(b"a", b"1")
        assert tr.get(b"a") == b"1"
        tr.clear(b"a")
        assert tr.get(b"a") is None

    def test_uncommitted_writes_invisible(self, store):
        tr = store.create_transaction()
        tr.set(b"a", b"1")
        other = store.create_transaction()
        assert other.get(b"a") is None

    def test_clear_range(self, store):
        for k in (b"a", b"b", b"c", b"d"):
            _put(store, k, b"x")
        tr = store.create_transaction()
        tr.clear_range(b"b", b"d")
        assert [kv.key for kv in tr.get_range(b"a", b"z")] == [b"a", b"d"]
        tr.commit()
        assert [kv.key for kv in store.dump()] == [b"a", b"d"]

    def test_get_range_limit_and_reverse(self, store):
        for k in (b"a", b"b", b"c"):
            _put(store, k, k.upper())
        tr = store.create_transaction()
        assert [kv.value for kv in tr.get_range(b"a", b"z", limit=2)] == [b"A", b"B"]
        assert [kv.key for kv in tr.get_range(b"a", b"z", reverse=True)] == [b"c", b"b", b"a"]
        key, value = tr.get_range(b"b", b"c")[0]
        assert (key, value) == (b"b", b"B")

    def test_commit_twice_raises(self, store):
        tr = store.create_transaction()
        tr.set(b"a", b"1")
        tr.commit()
        with pytest.raises(TransactionError):
            tr.commit()
        tr.reset()
        tr.set(b"a", b"2")
        tr.commit()

    def test_read_only_commit(self, store):
        tr = store.create_transaction()
        tr.get(b"a")
        _put(store, b"a", b"1")
        tr.commit()

    def test_context_manager_commits(self, store):
        with store.create_transaction() as tr:
            tr.set(b"a", b"1")
        assert store.dump()[0].value == b"1"

    def test_closed_store(self, store):
        store.close()
        with pytest.raises(StoreError):
            store.create_transaction()


# ============================================================================
# Key Selectors
# ============================================================================

class TestKeySelectors:

    def test_last_less_than(self, store):
        for k in (b"b", b"d"):
            _put(store, k, b"")
        tr = store.create_transaction()
        assert tr.get_key(KeySelector.last_less_than(b"d")) == b"b"
        assert tr.get_key(KeySelector.last_less_than(b"e")) == b"d"
        assert tr.get_key(KeySelector.last_less_or_equal(b"d")) == b"d"

    def test_before_first_key(self, store):
        tr = store.create_transaction()
        assert tr.get_key(KeySelector.last_less_than(b"z")) == b""

    def test_past_the_end(self, store):
        _put(store, b"b", b"")
        tr = store.create_transaction()
        assert tr.get_key(KeySelector.first_greater_than(b"b")) == b"\xff"
        assert tr.get_key(KeySelector.first_greater_or_equal(b"a")) == b"b"

    def test_selector_sees_local_writes(self, store):
        _put(store, b"b", b"")
        tr = store.create_transaction()
        tr.set(b"c", b"")
        tr.clear(b"b")
        assert tr.get_key(KeySelector.last_less_than(b"z")) == b"c"


# ============================================================================
# Conflict Detection
# ============================================================================

class TestConflicts:

    def test_read_write_conflict(self, store):
        tr1 = store.create_transaction()
        tr1.get(b"k")
        _put(store, b"k", b"other")
        tr1.set(b"x", b"1")
        with pytest.raises(TransactionConflictError):
            tr1.commit()

    def test_snapshot_read_does_not_conflict(self, store):
        tr1 = store.create_transaction()
        tr1.snapshot.get(b"k")
        tr1.snapshot.get_key(KeySelector.last_less_than(b"z"))
        _put(store, b"k", b"other")
        tr1.set(b"x", b"1")
        tr1.commit()

    def test_explicit_read_conflict_key(self, store):
        tr1 = store.create_transaction()
        tr1.add_read_conflict_key(b"k")
        _put(store, b"k", b"other")
        tr1.set(b"x", b"1")
        with pytest.raises(TransactionConflictError):
            tr1.commit()

    def test_blind_writes_do_not_conflict(self, store):
        tr1 = store.create_transaction()
        tr2 = store.create_transaction()
        tr1.set(b"k", b"1")
        tr2.set(b"k", b"2")
        tr1.commit()
        tr2.commit()
        assert store.dump()[0].value == b"2"

    def test_limited_range_conflicts_only_on_scanned_part(self, store):
        for k in (b"a", b"b"):
            _put(store, k, b"")
        tr1 = store.create_transaction()
        assert len(tr1.get_range(b"a", b"z", limit=1)) == 1
        _put(store, b"b", b"changed")
        tr1.set(b"x", b"1")
        tr1.commit()

    def test_range_conflict(self, store):
        tr1 = store.create_transaction()
        tr1.get_range(b"a", b"m")
        _put(store, b"c", b"")
        tr1.set(b"x", b"1")
        with pytest.raises(TransactionConflictError):
            tr1.commit()

    def test_transaction_too_old(self):
        store = InMemoryStore(history_limit=1)
        tr1 = store.create_transaction()
        tr1.get(b"k")
        _put(store, b"a", b"1")
        _put(store, b"b", b"1")
        tr1.set(b"x", b"1")
        with pytest.raises(TransactionTooOldError) as exc:
            tr1.commit()
        assert isinstance(exc.value, TransactionConflictError)

    def test_writes_before_read_version_do_not_conflict(self, store):
        for i in range(50):
            _put(store, b"k", str(i).encode())
        tr = store.create_transaction()
        assert tr.get(b"k") == b"49"
        _put(store, b"other", b"1")
        tr.set(b"x", b"1")
        tr.commit()

    def test_conflict_found_behind_newer_unrelated_commits(self, store):
        _put(store, b"k", b"0")
        tr = store.create_transaction()
        tr.get(b"k")
        _put(store, b"k", b"1")
        for i in range(10):
            _put(store, b"other%d" % i, b"1")
        tr.set(b"x", b"1")
        with pytest.raises(TransactionConflictError):
            tr.commit()


# ============================================================================
# transact() and @transactional
# ============================================================================

class TestTransact:

    def test_retries_until_commit(self, store):
        attempts = []

        def body(tr):
            attempts.append(1)
            tr.get(b"counter")
            if len(attempts) < 3:
                _put(store, b"counter", b"bump")
            tr.set(b"done", b"1")
            return len(attempts)

        assert store.transact(body) == 3

    def test_retry_limit(self, store):
        attempts = []

        def body(tr):
            attempts.append(1)
            tr.get(b"k")
            _put(store, b"k", b"bump")
            tr.set(b"x", b"1")

        with pytest.raises(RetryLimitExceededError):
            store.transact(body, max_retries=2)
        assert len(attempts) == 3

    def test_non_conflict_errors_propagate(self, store):
        attempts = []

        def body(tr):
            attempts.append(1)
            raise ValueError("boom")

        with pytest.raises(ValueError):
            store.transact(body)
        assert len(attempts) == 1

    def test_transactional_accepts_store_or_transaction(self, store):
        class Counter:
            @transactional
            def bump(self, tr, key):
                value = int(tr.get(key) or b"0") + 1
                tr.set(key, str(value).encode())
                return value

        counter = Counter()
        assert counter.bump(store, b"c") == 1

        tr = store.create_transaction()
        assert counter.bump(tr, b"c") == 2
        assert counter.bump(tr, b"c") == 3
        tr.commit()
        assert counter.bump(store, b"c") == 4

        with pytest.raises(TypeError):
            counter.bump("not a store", b"c")
