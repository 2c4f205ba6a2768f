"""Tests for the reconnect backoff policy."""
import random

import pytest

from relaychat.client.backoff import BackoffPolicy


class TestBackoffPolicy:
    def test_doubles_from_base(self):
        policy = BackoffPolicy(base_ms=1000, cap_ms=30000)
        assert [policy.delay(n) for n in range(5)] == [1000, 2000, 4000, 8000, 16000]

    def test_capped(self):
        policy = BackoffPolicy(base_ms=1000, cap_ms=30000)
        assert policy.delay(5) == 30000
        assert policy.delay(50) == 30000
        assert policy.delay(10_000) == 30000

    def test_monotonically_non_decreasing(self):
        policy = BackoffPolicy(base_ms=250, cap_ms=10000)
        delays = [policy.delay(n) for n in range(40)]
        assert delays == sorted(delays)
        assert all(d == min(250 * 2 ** n, 10000) for n, d in enumerate(delays))

    def test_negative_attempt_rejected(self):
        with pytest.raises(ValueError):
            BackoffPolicy().delay(-1)

    def test_seconds(self):
        assert BackoffPolicy(base_ms=1000).delay_seconds(1) == 2.0

    def test_zero_base(self):
        assert BackoffPolicy(base_ms=0).delay(10) == 0

    def test_jitter_stays_within_bounds(self):
        policy = BackoffPolicy(base_ms=1000, cap_ms=30000, jitter=0.2, rng=random.Random(42))
        for _ in range(200):
            assert 800 <= policy.delay(0) <= 1200

    def test_jitter_out_of_range_rejected(self):
        with pytest.raises(ValueError):
            BackoffPolicy(jitter=0.5)

    def test_negative_delays_rejected(self):
        with pytest.raises(ValueError):
            BackoffPolicy(base_ms=-1)
