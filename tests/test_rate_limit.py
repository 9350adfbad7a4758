"""Tests for fixed-window admission control and request classification."""

from unittest.mock import patch

import pytest

from asphaltworks.api.admission import classify
from asphaltworks.config import get_settings
from asphaltworks.service.errors import RateLimitedError
from asphaltworks.service.rate_limit import (
    AdmissionController,
    MemoryWindowStore,
    RatePolicy,
    build_policies,
)


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return MemoryWindowStore(clock=clock)


def _controller(store, **overrides):
    settings = get_settings().model_copy(update=overrides)
    return AdmissionController(settings, store)


class TestMemoryWindowStore:
    async def test_counts_within_window(self, store):
        assert (await store.hit("k", 60)).count == 1
        assert (await store.hit("k", 60)).count == 2

    async def test_window_resets(self, store, clock):
        await store.hit("k", 60)
        clock.advance(60)
        state = await store.hit("k", 60)
        assert state.count == 1
        assert state.reset_at == clock.now + 60

    async def test_refund_never_goes_negative(self, store):
        await store.hit("k", 60)
        await store.refund("k")
        await store.refund("k")
        assert (await store.peek("k")).count == 0

    async def test_sweep_drops_expired_windows(self, clock):
        store = MemoryWindowStore(clock=clock, sweep_every=2)
        await store.hit("old", 10)
        clock.advance(11)
        await store.hit("new", 10)
        assert len(store) == 1


class TestRatePolicy:
    def test_invalid_window_logs_warning(self):
        with patch("asphaltworks.service.rate_limit.logger") as mock_logger:
            policy = RatePolicy.build("general", 10, 0)
        assert policy.window_seconds == 60
        mock_logger.warning.assert_called_once()
        assert mock_logger.warning.call_args[0][0] == "rate_limit_invalid_window"
        assert mock_logger.warning.call_args[1]["window_seconds"] == 0

    def test_negative_window_defaults(self):
        assert RatePolicy.build("general", 10, -5).window_seconds == 60

    def test_default_ceilings(self):
        policies = build_policies(get_settings())
        assert policies["general"].limit == 100
        assert policies["auth"].limit == 5 and policies["auth"].failed_only
        assert policies["password"].limit == 3
        assert policies["password"].window_seconds == 3600
        assert policies["read"].limit == 200
        assert policies["strict"].limit == 10
        assert policies["upload"].limit == 50
        assert policies["heavy"].limit == 20
        assert policies["general"].window_seconds == 900


class TestAdmissionController:
    async def test_limit_and_limit_plus_one(self, store, clock):
        controller = _controller(store, rate_limit_strict_max=3)
        for expected in range(1, 4):
            decision = await controller.hit("strict", "1.2.3.4")
            assert decision.allowed
            assert decision.remaining == 3 - expected

        rejected = await controller.hit("strict", "1.2.3.4")
        assert not rejected.allowed
        assert 1 <= rejected.retry_after <= rejected.policy.window_seconds
        headers = rejected.headers()
        assert headers["RateLimit-Limit"] == "3"
        assert headers["RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == str(rejected.retry_after)

        clock.advance(rejected.policy.window_seconds)
        assert (await controller.hit("strict", "1.2.3.4")).allowed

    async def test_subjects_are_independent(self, store):
        controller = _controller(store, rate_limit_strict_max=1)
        assert (await controller.hit("strict", "1.1.1.1")).allowed
        assert (await controller.hit("strict", "2.2.2.2")).allowed
        assert not (await controller.hit("strict", "1.1.1.1")).allowed

    async def test_zero_limit_disables_policy(self, store):
        controller = _controller(store, rate_limit_heavy_max=0)
        for _ in range(5):
            assert (await controller.hit("heavy", "1.1.1.1")).allowed
        assert len(store) == 0

    async def test_rejection_error(self, store):
        controller = _controller(store, rate_limit_auth_max=1)
        await controller.hit("auth", "1.1.1.1")
        error = (await controller.hit("auth", "1.1.1.1")).to_error()
        assert isinstance(error, RateLimitedError)
        assert error.status_code == 429
        assert error.detail == {"policy": "auth", "limit": 1}
        assert error.retry_after >= 1

    async def test_refund(self, store):
        controller = _controller(store, rate_limit_auth_max=1)
        decision = await controller.hit("auth", "1.1.1.1")
        await controller.refund(decision)
        assert (await controller.hit("auth", "1.1.1.1")).allowed

    def test_unknown_class(self, store):
        with pytest.raises(ValueError):
            _controller(store).policy("nope")

    def test_trusted_ips(self, store):
        controller = _controller(store, trusted_ips=["10.0.0.1"])
        assert controller.is_trusted("10.0.0.1")
        assert not controller.is_trusted("10.0.0.2")
        assert not controller.is_trusted(None)


class TestProgressiveDelay:
    async def test_delay_grows_then_caps(self, store):
        controller = _controller(
            store,
            speed_limit_delay_after=2,
            speed_limit_delay_ms=500,
            speed_limit_max_delay_ms=1200,
        )
        delays = [await controller.delay_for("9.9.9.9") for _ in range(6)]
        assert delays == [0.0, 0.0, 0.5, 1.0, 1.2, 1.2]

    async def test_delay_resets_with_window(self, store, clock):
        controller = _controller(store, speed_limit_delay_after=1)
        await controller.delay_for("9.9.9.9")
        assert await controller.delay_for("9.9.9.9") > 0
        clock.advance(controller.speed_window)
        assert await controller.delay_for("9.9.9.9") == 0.0


class TestClassify:
    @pytest.mark.parametrize(
        "method,path,expected",
        [
            ("POST", "/api/auth/login", ["general", "auth"]),
            ("POST", "/api/auth/forgot-password", ["general", "auth", "password"]),
            ("POST", "/api/auth/reset-password/abc", ["general", "auth", "password"]),
            ("GET", "/api/services", ["general", "read"]),
            ("GET", "/api/blog/some-post", ["general", "read"]),
            ("POST", "/api/projects", ["general", "strict"]),
            ("GET", "/api/contacts", ["general", "strict"]),
            ("POST", "/api/upload", ["general", "upload"]),
            ("GET", "/api/users/stats", ["general", "heavy"]),
            ("GET", "/api/users/search", ["general", "heavy"]),
            ("GET", "/api/users", ["general"]),
            ("GET", "/metrics", ["heavy"]),
            ("GET", "/media/uploads/x.png", []),
            ("GET", "/api/servicesextra", ["general"]),
        ],
    )
    def test_classes(self, method, path, expected):
        assert classify(method, path) == expected
