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
Key Subspaces

A Subspace is a raw byte prefix used to scope a family of keys. Child
subspaces append a packed tuple to the parent prefix, so a child's key
range is always a contiguous slice of its parent's range:

    root = Subspace(("jobs",))
    items = root["item"]
    key = items.pack((0, b"random-id"))
    assert root.contains(key)
"""

from typing import Any, Tuple

from . import tuple as keytuple
from .errors import CodecError


class Subspace:
    """Byte prefix plus tuple packing scoped under it."""

    def __init__(self, prefix_tuple: Tuple[Any, ...] = (), raw_prefix: bytes = b""):
        self._raw_prefix = bytes(raw_prefix) + keytuple.pack(prefix_tuple)

    def __getitem__(self, name: Any) -> "Subspace":
        return Subspace((name,), self._raw_prefix)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Subspace) and other._raw_prefix == self._raw_prefix

    def __hash__(self) -> int:
        return hash(self._raw_prefix)

    def __repr__(self) -> str:
        return f"Subspace(raw_prefix={self._raw_prefix!r})"

    @property
    def raw_prefix(self) -> bytes:
        return self._raw_prefix

    def key(self) -> bytes:
        """The subspace prefix itself."""
        return self._raw_prefix

    def subspace(self, items: Tuple[Any, ...]) -> "Subspace":
        """Child subspace for a whole tuple of elements."""
        return Subspace(items, self._raw_prefix)

    def with_prefix(self, prefix: bytes) -> "Subspace":
        """Copy of this subspace nested under an extra raw byte prefix."""
        return Subspace((), bytes(prefix) + self._raw_prefix)

    def pack(self, items: Tuple[Any, ...] = ()) -> bytes:
        return self._raw_prefix + keytuple.pack(items)

    def unpack(self, key: bytes) -> Tuple[Any, ...]:
        if not self.contains(key):
            raise CodecError(
                "Key is not within this subspace",
                context={"key": bytes(key).hex(), "prefix": self._raw_prefix.hex()},
            )
        return keytuple.unpack(key[len(self._raw_prefix):])

    def contains(self, key: bytes) -> bool:
        return bytes(key).startswith(self._raw_prefix)

    def range(self, items: Tuple[Any, ...] = ()) -> Tuple[bytes, bytes]:
        """(begin, end) of every key packed under ``items`` in this subspace."""
        begin, end = keytuple.range(items)
        return self._raw_prefix + begin, self._raw_prefix + end
