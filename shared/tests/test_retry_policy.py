"""
Unit tests for RetryPolicy.
"""

import pytest

from shared.config import BaseConfig
from shared.retry import RetryPolicy


class TestRetryPolicy:
    """Test cases for RetryPolicy."""

    def test_exponential_backoff_without_jitter(self):
        """Test delays double per failed attempt."""
        policy = RetryPolicy(base_delay=1.0, max_delay=60.0, jitter=False)

        assert policy.delay_for(1) == 1.0
        assert policy.delay_for(2) == 2.0
        assert policy.delay_for(3) == 4.0

    def test_delay_is_capped(self):
        """Test max_delay bounds the backoff."""
        policy = RetryPolicy(base_delay=10.0, max_delay=15.0, jitter=False)

        assert policy.delay_for(5) == 15.0

    def test_linear_and_fixed_strategies(self):
        """Test alternative backoff strategies."""
        linear = RetryPolicy(base_delay=2.0, jitter=False, backoff_strategy="linear")
        fixed = RetryPolicy(base_delay=2.0, jitter=False, backoff_strategy="fixed")

        assert linear.delay_for(3) == 6.0
        assert fixed.delay_for(3) == 2.0

    def test_jitter_stays_within_ten_percent(self):
        """Test jittered delays stay near the nominal delay."""
        policy = RetryPolicy(base_delay=10.0, max_delay=100.0, jitter=True)

        for _ in range(50):
            assert 9.0 <= policy.delay_for(1) <= 11.0

    def test_exhausted_counts_every_invocation(self):
        """Test the attempt budget includes the first invocation."""
        policy = RetryPolicy(max_attempts=3)

        assert not policy.exhausted(2)
        assert policy.exhausted(3)

    def test_invalid_policy_rejected(self):
        """Test invalid settings are rejected at construction."""
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)
        with pytest.raises(ValueError):
            RetryPolicy(backoff_strategy="random")

    def test_from_config(self, monkeypatch):
        """Test the policy is built from BACKBONE_ settings."""
        monkeypatch.setenv("BACKBONE_DELIVERY_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("BACKBONE_DELIVERY_BACKOFF_STRATEGY", "linear")
        monkeypatch.setenv("BACKBONE_DELIVERY_JITTER", "false")

        policy = RetryPolicy.from_config(BaseConfig())

        assert policy.max_attempts == 7
        assert policy.backoff_strategy == "linear"
        assert policy.jitter is False
