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

import pytest
from faker import Faker

from kvqueue import InMemoryStore, RemoteStore, Subspace
from kvqueue.server import serve


@pytest.fixture
def store():
    s = InMemoryStore()
    yield s
    s.close()


@pytest.fixture
def subspace():
    return Subspace(("test-queue",))


@pytest.fixture
def fake():
    Faker.seed(4321)
    return Faker()


@pytest.fixture
def grpc_server():
    """In-process store server on a free port."""
    backing = InMemoryStore()
    server, port = serve(backing, "127.0.0.1", 0)
    yield backing, port
    server.stop(None)
    backing.close()


@pytest.fixture
def remote_store(grpc_server):
    _, port = grpc_server
    client = RemoteStore(f"127.0.0.1:{port}", timeout=10.0)
    yield client
    client.close()
