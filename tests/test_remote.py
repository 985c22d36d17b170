#!/usr/bin/env python3
"""
Tests for the gRPC store client and server.

Runs an in-process server over a real channel on a free local port.
"""

import grpc
import pytest

from kvqueue import InMemoryStore, KeySelector, Queue, RemoteStore, Subspace
from kvqueue.errors import (
    ConnectionError,
    StoreError,
    TransactionConflictError,
    TransactionNotFoundError,
    TransactionTooOldError,
)
from kvqueue.remote import RemoteTransaction, error_from_rpc, serialize_message
from kvqueue.server import StoreServicer


class FakeRpcError(grpc.RpcError):
    def __init__(self, status, details=""):
        self._status = status
        self._details = details

    def code(self):
        return self._status

    def details(self):
        return self._details


# ============================================================================
# Error Mapping
# ============================================================================

class TestErrorMapping:

    def test_aborted_with_code(self):
        details = serialize_message(TransactionTooOldError().to_dict()).decode()
        error = error_from_rpc(FakeRpcError(grpc.StatusCode.ABORTED, details))
        assert isinstance(error, TransactionTooOldError)

    def test_aborted_without_details(self):
        error = error_from_rpc(FakeRpcError(grpc.StatusCode.ABORTED, "conflict"))
        assert isinstance(error, TransactionConflictError)

    def test_unavailable(self):
        error = error_from_rpc(FakeRpcError(grpc.StatusCode.UNAVAILABLE, "refused"))
        assert isinstance(error, ConnectionError)

    def test_deadline(self):
        error = error_from_rpc(FakeRpcError(grpc.StatusCode.DEADLINE_EXCEEDED))
        assert isinstance(error, ConnectionError)

    def test_other_status_is_store_error(self):
        error = error_from_rpc(FakeRpcError(grpc.StatusCode.INTERNAL, "boom"))
        assert isinstance(error, StoreError)

    def test_conflict_code_only_honoured_for_aborted(self):
        details = serialize_message(TransactionConflictError().to_dict()).decode()
        error = error_from_rpc(FakeRpcError(grpc.StatusCode.INTERNAL, details))
        assert not isinstance(error, TransactionConflictError)


# ============================================================================
# Transactions over gRPC
# ============================================================================

class TestRemoteTransactions:

    def test_set_get_roundtrip(self, remote_store, grpc_server):
        backing, _ = grpc_server

        def write(tr):
            tr.set(b"k\x00", b"\x00v")

        remote_store.transact(write)
        assert backing.dump()[0].value == b"\x00v"

        tr = remote_store.create_transaction()
        assert tr.get(b"k\x00") == b"\x00v"
        assert tr.get(b"missing") is None
        tr.close()

    def test_range_and_selector(self, remote_store):
        with remote_store.create_transaction() as tr:
            for k in (b"a", b"b", b"c"):
                tr.set(k, k.upper())

        tr = remote_store.create_transaction()
        items = tr.get_range(b"a", b"z", limit=2)
        assert [(kv.key, kv.value) for kv in items] == [(b"a", b"A"), (b"b", b"B")]
        assert tr.get_key(KeySelector.last_less_than(b"z")) == b"c"
        assert tr.snapshot.get_key(KeySelector.last_less_than(b"a")) == b""
        tr.clear_range(b"a", b"c")
        tr.commit()

        tr = remote_store.create_transaction()
        assert [kv.key for kv in tr.get_range(b"", b"\xff")] == [b"c"]
        tr.close()

    def test_conflict_is_reported(self, remote_store):
        tr1 = remote_store.create_transaction()
        tr2 = remote_store.create_transaction()
        tr1.get(b"k")
        tr2.set(b"k", b"2")
        tr2.commit()
        tr1.set(b"x", b"1")
        with pytest.raises(TransactionConflictError):
            tr1.commit()
        tr1.reset()
        tr1.set(b"x", b"1")
        tr1.commit()
        tr1.close()
        tr2.close()

    def test_read_conflict_range(self, remote_store):
        tr1 = remote_store.create_transaction()
        tr1.add_read_conflict_key(b"k")
        with remote_store.create_transaction() as tr2:
            tr2.set(b"k", b"v")
        tr1.set(b"x", b"1")
        with pytest.raises(TransactionConflictError):
            tr1.commit()

    def test_unknown_transaction(self, remote_store):
        tr = RemoteTransaction(remote_store, "no-such-txn")
        with pytest.raises(TransactionNotFoundError) as exc:
            tr.get(b"k")
        assert exc.value.context["txn_id"] == "no-such-txn"

    def test_close_releases_server_state(self, remote_store):
        tr = remote_store.create_transaction()
        tr.close()
        with pytest.raises(TransactionNotFoundError):
            RemoteTransaction(remote_store, tr.txn_id).get(b"k")

    def test_context_manager_releases_server_state(self, remote_store, grpc_server):
        with remote_store.create_transaction() as tr:
            tr.set(b"k", b"v")
        assert grpc_server[0].dump()[0].value == b"v"
        with pytest.raises(TransactionNotFoundError):
            RemoteTransaction(remote_store, tr.txn_id).get(b"k")

    def test_unreachable_server(self):
        store = RemoteStore("127.0.0.1:1", timeout=2.0)
        try:
            with pytest.raises(ConnectionError):
                store.create_transaction()
        finally:
            store.close()


# ============================================================================
# Queue over gRPC
# ============================================================================

class TestRemoteQueue:

    @pytest.mark.parametrize("high_contention", [True, False])
    def test_push_pop(self, remote_store, high_contention):
        queue = Queue(Subspace(("remote",)), high_contention=high_contention)
        queue.push(remote_store, "A")
        queue.push(remote_store, "B")
        assert queue.pop(remote_store) == "A"
        assert queue.pop(remote_store) == "B"
        assert queue.pop(remote_store) is None
        assert queue.empty(remote_store)

    def test_waiters_fulfilled_over_grpc(self, remote_store):
        queue = Queue(Subspace(("remote",)))
        w1 = remote_store.transact(queue.add_conflicted_pop, True)
        w2 = remote_store.transact(queue.add_conflicted_pop, True)
        queue.push(remote_store, b"X")
        assert queue.pop_strategy.wait_for_fulfillment(remote_store, w1) is not None
        assert queue.pop_strategy.wait_for_fulfillment(remote_store, w2) is None


# ============================================================================
# Idle Transaction Reaping
# ============================================================================

class TestIdleReaping:

    @pytest.fixture
    def clock(self):
        now = [1000.0]
        return now

    @pytest.fixture
    def servicer(self, clock):
        backing = InMemoryStore()
        yield StoreServicer(backing, idle_timeout=10.0, reap_interval=0.0, clock=lambda: clock[0])
        backing.close()

    def test_abandoned_transactions_reclaimed(self, servicer, clock):
        ids = [servicer.Begin({}, None)["txn_id"] for _ in range(5)]
        assert len(servicer) == 5

        clock[0] += 11.0
        assert servicer.reap_idle() == 5
        assert len(servicer) == 0
        with pytest.raises(TransactionNotFoundError):
            servicer._txn({"txn_id": ids[0]})

    def test_recently_used_transaction_survives(self, servicer, clock):
        idle = servicer.Begin({}, None)["txn_id"]
        busy = servicer.Begin({}, None)["txn_id"]

        clock[0] += 8.0
        servicer.Get({"txn_id": busy, "key": b"k".hex()}, None)
        clock[0] += 8.0
        assert servicer.reap_idle() == 1
        assert servicer._txn({"txn_id": busy}) is not None
        with pytest.raises(TransactionNotFoundError):
            servicer._txn({"txn_id": idle})

    def test_begin_reaps_idle_transactions(self, servicer, clock):
        for _ in range(3):
            servicer.Begin({}, None)
        clock[0] += 11.0
        servicer.Begin({}, None)
        assert len(servicer) == 1

    def test_reap_interval_limits_sweeps(self, clock):
        backing = InMemoryStore()
        servicer = StoreServicer(backing, idle_timeout=10.0, reap_interval=60.0, clock=lambda: clock[0])
        servicer.Begin({}, None)
        clock[0] += 11.0
        servicer.Begin({}, None)
        assert len(servicer) == 2
        clock[0] += 60.0
        servicer.Begin({}, None)
        assert len(servicer) == 1
        backing.close()
