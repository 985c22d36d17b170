#!/usr/bin/env python3
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
kvqueue CLI

Commands:
- serve: expose an in-memory store over gRPC
- bench: concurrent push/pop run that verifies nothing is popped twice
"""

import argparse
import logging
import os
import socket
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional

from .config import ENV_STORE_ADDRESS, QueueConfig
from .errors import KvQueueError
from .queue import Queue
from .server import DEFAULT_HOST, DEFAULT_IDLE_TIMEOUT, DEFAULT_PORT, serve
from .store import InMemoryStore, KeyValueStore
from .subspace import Subspace

logger = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

DEFAULT_CLIENTS = 4
DEFAULT_ITEMS = 100
SHUTDOWN_GRACE_SECONDS = 2.0

EXIT_SUCCESS = 0
EXIT_GENERAL_ERROR = 1
EXIT_PORT_IN_USE = 3
EXIT_VERIFY_FAILED = 6
EXIT_INTERRUPTED = 130


def is_port_available(host: str, port: int) -> bool:
    """Check if a TCP port is available for binding."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        return True
    except OSError:
        return False
    finally:
        sock.close()


# ============================================================================
# serve
# ============================================================================

def run_serve(args: argparse.Namespace) -> int:
    if args.port and not is_port_available(args.host, args.port):
        print(
            f"[kvqueue] Error: Port {args.port} is already in use\n"
            f"          Try a different port with --port <PORT>",
            file=sys.stderr,
        )
        return EXIT_PORT_IN_USE

    store = InMemoryStore()
    server, port = serve(store, args.host, args.port, idle_timeout=args.idle_timeout)
    print(f"[kvqueue] Ready! Store endpoint: {args.host}:{port}", file=sys.stderr)
    try:
        server.wait_for_termination()
    except KeyboardInterrupt:
        print("\n[kvqueue] Shutting down...", file=sys.stderr)
        server.stop(SHUTDOWN_GRACE_SECONDS).wait()
        store.close()
        return EXIT_INTERRUPTED
    return EXIT_SUCCESS


# ============================================================================
# bench
# ============================================================================

@dataclass
class BenchResult:
    mode: str
    pushed: int
    popped: List[bytes] = field(default_factory=list)
    elapsed: float = 0.0
    errors: List[str] = field(default_factory=list)

    @property
    def duplicates(self) -> int:
        return len(self.popped) - len(set(self.popped))

    @property
    def missing(self) -> int:
        return self.pushed - len(set(self.popped))

    @property
    def ok(self) -> bool:
        return not self.errors and self.duplicates == 0 and self.missing == 0


def run_bench_mode(
    store: KeyValueStore,
    high_contention: bool,
    clients: int,
    items: int,
    config: Optional[QueueConfig] = None,
) -> BenchResult:
    """
    Run ``clients`` pushers and ``clients`` poppers against one queue.

    Each pusher pushes ``items`` distinct values. Poppers stop once every
    pusher is done and the queue is empty.
    """
    mode = "high" if high_contention else "simple"
    queue = Queue(Subspace(("kvqueue-bench", mode)), high_contention=high_contention, config=config)
    queue.clear(store)

    result = BenchResult(mode=mode, pushed=clients * items)
    lock = threading.Lock()
    pushers_done = threading.Event()

    def pusher(client: int) -> None:
        for i in range(items):
            queue.push(store, f"{client}-{i}".encode())

    def popper() -> None:
        while True:
            try:
                value = queue.pop(store)
            except KvQueueError as e:
                with lock:
                    result.errors.append(str(e))
                return
            if value is not None:
                with lock:
                    result.popped.append(value)
            elif pushers_done.is_set() and queue.empty(store):
                return

    start = time.monotonic()
    push_threads = [threading.Thread(target=pusher, args=(c,)) for c in range(clients)]
    pop_threads = [threading.Thread(target=popper) for _ in range(clients)]
    for t in push_threads + pop_threads:
        t.start()
    for t in push_threads:
        t.join()
    pushers_done.set()
    for t in pop_threads:
        t.join()
    result.elapsed = time.monotonic() - start
    return result


def run_bench(args: argparse.Namespace) -> int:
    config = QueueConfig.from_env()
    if args.address:
        from .remote import RemoteStore
        store: KeyValueStore = RemoteStore(args.address, max_retries=config.max_retries)
    else:
        store = InMemoryStore()

    modes = {"simple": [False], "high": [True], "both": [False, True]}[args.mode]
    exit_code = EXIT_SUCCESS
    with store:
        for high_contention in modes:
            result = run_bench_mode(store, high_contention, args.clients, args.items, config)
            print(
                f"[kvqueue] {result.mode:>6}: {result.pushed} items, {args.clients} pushers, "
                f"{args.clients} poppers in {result.elapsed:.3f}s "
                f"(duplicates={result.duplicates}, missing={result.missing})"
            )
            for error in result.errors:
                print(f"[kvqueue] Error: {error}", file=sys.stderr)
            if not result.ok:
                exit_code = EXIT_VERIFY_FAILED
    return exit_code


# ============================================================================
# Main Entry Point
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kvqueue",
        description="kvqueue - high-contention queue on a transactional key-value store",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=f"""
Examples:
  # Serve an in-memory store
  kvqueue serve --port 50051

  # Benchmark both pop modes in-process
  kvqueue bench --mode both --clients 8 --items 200

  # Benchmark against a running server
  kvqueue bench --address localhost:50051

Environment Variables:
  {ENV_STORE_ADDRESS}   Default --address for bench
  KVQUEUE_BATCH_SIZE, KVQUEUE_INITIAL_BACKOFF, KVQUEUE_MAX_BACKOFF,
  KVQUEUE_POP_TIMEOUT, KVQUEUE_MAX_RETRIES   Queue tuning
        """,
    )
    parser.add_argument("--version", action="store_true", help="Show version and exit")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    serve_parser = subparsers.add_parser("serve", help="Serve an in-memory store over gRPC")
    serve_parser.add_argument("--host", default=DEFAULT_HOST, help=f"Bind address (default: {DEFAULT_HOST})")
    serve_parser.add_argument(
        "-p", "--port", type=int, default=DEFAULT_PORT, help=f"Listen port (default: {DEFAULT_PORT})"
    )
    serve_parser.add_argument(
        "--idle-timeout",
        type=float,
        default=DEFAULT_IDLE_TIMEOUT,
        help=f"Seconds before an abandoned transaction is reclaimed (default: {DEFAULT_IDLE_TIMEOUT:g})",
    )
    serve_parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")

    bench_parser = subparsers.add_parser("bench", help="Concurrent push/pop benchmark")
    bench_parser.add_argument(
        "--address",
        default=os.environ.get(ENV_STORE_ADDRESS),
        help="Store server address (default: in-process store)",
    )
    bench_parser.add_argument("--mode", choices=("simple", "high", "both"), default="both")
    bench_parser.add_argument("--clients", type=int, default=DEFAULT_CLIENTS, help="Pushers and poppers each")
    bench_parser.add_argument("--items", type=int, default=DEFAULT_ITEMS, help="Items per pusher")
    bench_parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the kvqueue CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.version:
        from . import __version__
        print(f"kvqueue {__version__}")
        return EXIT_SUCCESS

    if args.command is None:
        parser.print_help()
        return EXIT_GENERAL_ERROR

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        if args.command == "serve":
            return run_serve(args)
        return run_bench(args)
    except KvQueueError as e:
        print(f"[kvqueue] Error: {e}", file=sys.stderr)
        if e.remediation:
            print(f"[kvqueue] {e.remediation}", file=sys.stderr)
        return EXIT_GENERAL_ERROR
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
