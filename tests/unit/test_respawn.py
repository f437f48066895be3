"""Tests for the crash-loop respawn policy."""

from __future__ import annotations

import pytest

from shepherd._internal.errors import ConfigError
from shepherd.engine.respawn import RespawnPolicy


class TestRespawnPolicy:
    """Tests for RespawnPolicy."""

    def test_quick_exit_counts_as_failure(self):
        policy = RespawnPolicy(min_uptime=1.0)
        assert policy.failures_after_exit(2, uptime=0.1) == 3

    def test_healthy_exit_resets(self):
        policy = RespawnPolicy(min_uptime=1.0)
        assert policy.failures_after_exit(5, uptime=2.0) == 0

    def test_delay_doubles_and_caps(self):
        policy = RespawnPolicy(backoff_base=0.5, backoff_max=3.0)
        assert policy.delay(0) == 0.0
        assert policy.delay(1) == 0.5
        assert policy.delay(2) == 1.0
        assert policy.delay(3) == 2.0
        assert policy.delay(4) == 3.0
        assert policy.delay(1000) == 3.0

    def test_exhausted(self):
        policy = RespawnPolicy(max_failures=3)
        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    def test_zero_max_failures_never_gives_up(self):
        assert not RespawnPolicy(max_failures=0).exhausted(10_000)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"min_uptime": -1},
            {"backoff_base": -0.1},
            {"backoff_base": 5.0, "backoff_max": 1.0},
            {"max_failures": -1},
        ],
    )
    def test_invalid_values(self, kwargs: dict[str, float]):
        with pytest.raises(ConfigError, match="must"):
            RespawnPolicy(**kwargs)
