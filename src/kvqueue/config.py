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

"""Queue configuration."""

import os
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, TypeVar

from .errors import ConfigError

DEFAULT_BATCH_SIZE = 100
DEFAULT_INITIAL_BACKOFF = 0.01
DEFAULT_MAX_BACKOFF = 1.0

ENV_BATCH_SIZE = "KVQUEUE_BATCH_SIZE"
ENV_INITIAL_BACKOFF = "KVQUEUE_INITIAL_BACKOFF"
ENV_MAX_BACKOFF = "KVQUEUE_MAX_BACKOFF"
ENV_POP_TIMEOUT = "KVQUEUE_POP_TIMEOUT"
ENV_MAX_RETRIES = "KVQUEUE_MAX_RETRIES"
ENV_STORE_ADDRESS = "KVQUEUE_STORE_ADDRESS"

T = TypeVar("T")


@dataclass
class QueueConfig:
    """
    Queue configuration.

    Attributes:
        batch_size: Waiters and items matched per fulfilment sweep.
        initial_backoff: First sleep (seconds) of a waiting pop.
        max_backoff: Cap on the waiting pop's sleep.
        pop_timeout: Seconds a high-contention pop may wait for fulfilment.
            None waits indefinitely.
        max_retries: Conflict retries per transaction. None is unbounded.
    """
    batch_size: int = DEFAULT_BATCH_SIZE
    initial_backoff: float = DEFAULT_INITIAL_BACKOFF
    max_backoff: float = DEFAULT_MAX_BACKOFF
    pop_timeout: Optional[float] = None
    max_retries: Optional[int] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be positive, got {self.batch_size}")
        if self.initial_backoff <= 0:
            raise ConfigError(f"initial_backoff must be positive, got {self.initial_backoff}")
        if self.max_backoff < self.initial_backoff:
            raise ConfigError(
                f"max_backoff ({self.max_backoff}) must be >= initial_backoff ({self.initial_backoff})"
            )
        if self.pop_timeout is not None and self.pop_timeout < 0:
            raise ConfigError(f"pop_timeout must be >= 0, got {self.pop_timeout}")
        if self.max_retries is not None and self.max_retries < 0:
            raise ConfigError(f"max_retries must be >= 0, got {self.max_retries}")

    def with_batch_size(self, batch_size: int) -> "QueueConfig":
        """Builder pattern for sweep batch size."""
        self.batch_size = batch_size
        self.validate()
        return self

    def with_backoff(self, initial: float, maximum: float) -> "QueueConfig":
        """Builder pattern for the waiting pop's backoff."""
        self.initial_backoff = initial
        self.max_backoff = maximum
        self.validate()
        return self

    def with_pop_timeout(self, timeout: Optional[float]) -> "QueueConfig":
        """Builder pattern for the pop deadline."""
        self.pop_timeout = timeout
        self.validate()
        return self

    def with_max_retries(self, max_retries: Optional[int]) -> "QueueConfig":
        """Builder pattern for the conflict retry limit."""
        self.max_retries = max_retries
        self.validate()
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "QueueConfig":
        """
        Build a config from ``KVQUEUE_*`` environment variables.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        return cls(
            batch_size=_env_value(env, ENV_BATCH_SIZE, int, DEFAULT_BATCH_SIZE),
            initial_backoff=_env_value(env, ENV_INITIAL_BACKOFF, float, DEFAULT_INITIAL_BACKOFF),
            max_backoff=_env_value(env, ENV_MAX_BACKOFF, float, DEFAULT_MAX_BACKOFF),
            pop_timeout=_env_value(env, ENV_POP_TIMEOUT, float, None),
            max_retries=_env_value(env, ENV_MAX_RETRIES, int, None),
        )


def _env_value(env: Mapping[str, str], name: str, parse: Callable[[str], T], default):
    raw = env.get(name, "").strip()
    if not raw:
        return default
    try:
        return parse(raw)
    except ValueError:
        raise ConfigError(
            f"{name} has invalid value {raw!r}",
            context={"variable": name, "value": raw},
        )
