"""Tests for rate limiting and API-key checks."""

import pytest

from modelhook.core.errors import AuthenticationError, ConfigurationError
from modelhook.ingress.auth import verify_api_key
from modelhook.ingress.ratelimit import SlidingWindowRateLimiter, rate_limit_key


class FakeClock:
    def __init__(self, now=1_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestSlidingWindowRateLimiter:

    def test_allows_up_to_limit_then_blocks(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_attempts=3, window_seconds=60, clock=clock)

        decisions = [limiter.hit("k") for _ in range(3)]
        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]

        blocked = limiter.hit("k")
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.retry_after == 60
        assert blocked.headers() == {
            "X-RateLimit-Limit": "3",
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": "1060",
        }

    def test_window_slides(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_attempts=2, window_seconds=60, clock=clock)
        limiter.hit("k")
        clock.now += 30
        limiter.hit("k")
        assert limiter.hit("k").allowed is False

        clock.now += 31
        decision = limiter.hit("k")
        assert decision.allowed is True
        assert decision.remaining == 0

    def test_keys_are_independent(self):
        limiter = SlidingWindowRateLimiter(max_attempts=1, window_seconds=60, clock=FakeClock())

        assert limiter.hit("a").allowed is True
        assert limiter.hit("b").allowed is True
        assert limiter.hit("a").allowed is False

    def test_reset(self):
        limiter = SlidingWindowRateLimiter(max_attempts=1, window_seconds=60, clock=FakeClock())
        limiter.hit("a")

        limiter.reset("a")

        assert limiter.hit("a").allowed is True

    def test_idle_keys_are_swept_once_per_window(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(max_attempts=5, window_seconds=60, clock=clock)
        limiter.hit("a")
        clock.now += 10
        limiter.hit("b")
        assert set(limiter._hits) == {"a", "b"}

        clock.now += 55
        limiter.hit("c")

        assert set(limiter._hits) == {"b", "c"}


class TestRateLimitKey:

    def test_credential_is_hashed(self):
        key = rate_limit_key("10.0.0.1", "super-secret")

        assert key.startswith("10.0.0.1:")
        assert "super-secret" not in key

    def test_anonymous_and_unknown(self):
        assert rate_limit_key(None, None) == "unknown:anonymous"

    def test_different_credentials_get_different_buckets(self):
        assert rate_limit_key("10.0.0.1", "a") != rate_limit_key("10.0.0.1", "b")


class TestVerifyApiKey:

    def test_unconfigured_secret_is_server_error(self):
        with pytest.raises(ConfigurationError) as exc_info:
            verify_api_key("anything", None)
        assert exc_info.value.status_code == 500

    @pytest.mark.parametrize("provided", [None, "", "wrong"])
    def test_bad_key_is_unauthorised(self, provided):
        with pytest.raises(AuthenticationError) as exc_info:
            verify_api_key(provided, "expected")
        assert exc_info.value.status_code == 401

    def test_matching_key(self):
        verify_api_key("expected", "expected")
