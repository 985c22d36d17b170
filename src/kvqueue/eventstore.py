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
Append-only event log on top of the same store.

Each ``append()`` call writes its batch under a fresh random shard so that
concurrent appenders never touch the same keys:

    S["glob"][shard]            (ts, contract, i, "data") -> data
                                (ts, contract, i, "meta") -> meta
    S["stream"][stream][shard]  same layout, per-stream index
"""

import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .errors import CodecError, ConfigError
from .store import Transaction, transactional
from .subspace import Subspace

logger = logging.getLogger(__name__)

SHARD_ID_LENGTH = 20

_FIELDS = ("data", "meta")


@dataclass
class EventRecord:
    """One event: contract name plus opaque data and metadata."""
    contract: str
    data: bytes = b""
    meta: bytes = b""


class EventStore:
    """Sharded append-only event log stored under a subspace."""

    def __init__(
        self,
        subspace: Subspace,
        random_source: Optional[Callable[[int], bytes]] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.subspace = subspace
        self._random_source = random_source or secrets.token_bytes
        self._clock = clock or time.time
        self._global = subspace["glob"]
        self._streams = subspace["stream"]

    @transactional
    def clear(self, tr: Transaction) -> None:
        tr.clear_range(*self.subspace.range())

    @transactional
    def append(self, tr: Transaction, stream: str, records: Sequence[EventRecord]) -> bytes:
        """
        Append ``records`` to the global log and to ``stream``.

        Returns:
            The shard id the batch was written under.
        """
        shard = self._random_source(SHARD_ID_LENGTH)
        if not isinstance(shard, bytes) or len(shard) != SHARD_ID_LENGTH:
            raise ConfigError(f"random_source must return {SHARD_ID_LENGTH} bytes")
        ts = int(self._clock())
        global_space = self._global[shard]
        stream_space = self._streams[stream][shard]

        for i, record in enumerate(records):
            for field in _FIELDS:
                value = getattr(record, field)
                tr.set(global_space.pack((ts, record.contract, i, field)), value)
                tr.set(stream_space.pack((ts, record.contract, i, field)), value)

        logger.debug("Appended %d events to stream %r", len(records), stream)
        return shard

    @transactional
    def read_all(self, tr: Transaction) -> List[EventRecord]:
        """Every event in key order (shard first, then timestamp)."""
        return self._read(tr, self._global)

    @transactional
    def read_stream(self, tr: Transaction, stream: str) -> List[EventRecord]:
        """Events appended to ``stream``, in key order."""
        return self._read(tr, self._streams[stream])

    def _read(self, tr: Transaction, space: Subspace) -> List[EventRecord]:
        records: List[EventRecord] = []
        index: Dict[Tuple, EventRecord] = {}
        for kv in tr.get_range(*space.range()):
            parts = space.unpack(kv.key)
            if len(parts) != 5 or parts[4] not in _FIELDS:
                raise CodecError("Malformed event key", context={"key": kv.key.hex()})
            ident = parts[:4]
            record = index.get(ident)
            if record is None:
                record = EventRecord(contract=parts[2])
                index[ident] = record
                records.append(record)
            setattr(record, parts[4], kv.value)
        return records
