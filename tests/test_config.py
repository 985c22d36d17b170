#!/usr/bin/env python3
"""
Tests for QueueConfig.
"""

import pytest

from kvqueue import QueueConfig
from kvqueue.config import ENV_BATCH_SIZE, ENV_MAX_RETRIES, ENV_POP_TIMEOUT
from kvqueue.errors import ConfigError


class TestQueueConfig:

    def test_defaults(self):
        config = QueueConfig()
        assert config.batch_size == 100
        assert config.initial_backoff == 0.01
        assert config.max_backoff == 1.0
        assert config.pop_timeout is None
        assert config.max_retries is None

    def test_builders_chain(self):
        config = (
            QueueConfig()
            .with_batch_size(10)
            .with_backoff(0.001, 0.5)
            .with_pop_timeout(2.0)
            .with_max_retries(5)
        )
        assert config.batch_size == 10
        assert (config.initial_backoff, config.max_backoff) == (0.001, 0.5)
        assert config.pop_timeout == 2.0
        assert config.max_retries == 5

    @pytest.mark.parametrize("kwargs", [
        {"batch_size": 0},
        {"initial_backoff": 0},
        {"initial_backoff": 0.5, "max_backoff": 0.1},
        {"pop_timeout": -1},
        {"max_retries": -1},
    ])
    def test_validation(self, kwargs):
        with pytest.raises(ConfigError):
            QueueConfig(**kwargs)

    def test_builder_validates(self):
        with pytest.raises(ConfigError):
            QueueConfig().with_batch_size(0)

    def test_from_env(self):
        config = QueueConfig.from_env({
            ENV_BATCH_SIZE: "25",
            ENV_POP_TIMEOUT: "1.5",
            ENV_MAX_RETRIES: " 3 ",
        })
        assert config.batch_size == 25
        assert config.pop_timeout == 1.5
        assert config.max_retries == 3
        assert config.max_backoff == 1.0

    def test_from_env_empty(self):
        assert QueueConfig.from_env({}) == QueueConfig()

    def test_from_env_invalid(self):
        with pytest.raises(ConfigError) as exc:
            QueueConfig.from_env({ENV_BATCH_SIZE: "lots"})
        assert exc.value.context["variable"] == ENV_BATCH_SIZE

    def test_from_process_env(self, monkeypatch):
        monkeypatch.setenv(ENV_BATCH_SIZE, "7")
        assert QueueConfig.from_env().batch_size == 7
