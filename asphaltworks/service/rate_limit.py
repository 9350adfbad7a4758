from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

from asphaltworks.config import Settings
from asphaltworks.logging import get_logger
from asphaltworks.service.errors import RateLimitedError
from asphaltworks.storage.redis_cache import RedisCache

logger = get_logger(__name__)

DEFAULT_WINDOW_SECONDS = 60

Clock = Callable[[], float]


def _checked_window(name: str, window_seconds: int) -> int:
    if window_seconds <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            policy=name,
            window_seconds=window_seconds,
            message="Invalid rate limit window_seconds; defaulting to 60 seconds",
        )
        return DEFAULT_WINDOW_SECONDS
    return window_seconds


@dataclass(frozen=True)
class RatePolicy:
    """One route class: at most ``limit`` requests per ``window_seconds``.

    ``failed_only`` policies give the hit back once the response succeeds,
    so only failed attempts count toward the ceiling. A ``limit`` of zero
    or less disables the policy.
    """

    name: str
    limit: int
    window_seconds: int
    failed_only: bool = False

    @classmethod
    def build(
        cls, name: str, limit: int, window_seconds: int, *, failed_only: bool = False
    ) -> "RatePolicy":
        return cls(name, limit, _checked_window(name, window_seconds), failed_only)


@dataclass
class WindowState:
    count: int
    reset_at: float


@dataclass
class AdmissionDecision:
    policy: RatePolicy
    key: str
    count: int
    reset_at: float
    now: float

    @property
    def allowed(self) -> bool:
        return self.policy.limit <= 0 or self.count <= self.policy.limit

    @property
    def remaining(self) -> int:
        return max(0, self.policy.limit - self.count)

    @property
    def reset_seconds(self) -> int:
        return max(0, math.ceil(self.reset_at - self.now))

    @property
    def retry_after(self) -> int:
        return max(1, min(self.reset_seconds, self.policy.window_seconds))

    def headers(self) -> Dict[str, str]:
        """RateLimit-* headers per draft-ietf-httpapi-ratelimit-headers."""
        headers = {
            "RateLimit-Limit": str(self.policy.limit),
            "RateLimit-Remaining": str(self.remaining),
            "RateLimit-Reset": str(self.reset_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers

    def apply_headers(self, response) -> None:
        for name, value in self.headers().items():
            response.headers[name] = value

    def to_error(self) -> RateLimitedError:
        return RateLimitedError(
            _REJECTION_MESSAGES.get(self.policy.name, "too many requests, try again later"),
            retry_after=self.retry_after,
            detail={"policy": self.policy.name, "limit": self.policy.limit},
        )


_REJECTION_MESSAGES = {
    "general": "too many requests from this IP, try again later",
    "auth": "too many authentication attempts, try again in 15 minutes",
    "password": "too many password requests, try again later",
    "read": "too many read requests, try again later",
    "strict": "too many requests for this operation, try again later",
    "upload": "too many uploads, try again in 15 minutes",
    "heavy": "too many expensive requests, try again later",
}


class WindowStore(Protocol):
    """Fixed-window counters keyed by an opaque string."""

    async def hit(self, key: str, window_seconds: int) -> WindowState: ...

    async def refund(self, key: str) -> None: ...

    async def peek(self, key: str) -> Optional[WindowState]: ...

    async def reset(self, key: str) -> None: ...


class MemoryWindowStore:
    """Process-local windows for single-instance deployments.

    Expired windows are swept lazily every ``sweep_every`` hits.
    """

    def __init__(self, *, clock: Clock = time.time, sweep_every: int = 1000) -> None:
        self.clock = clock
        self._windows: Dict[str, WindowState] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._hits_since_sweep = 0

    def _sweep(self, now: float) -> None:
        expired = [key for key, state in self._windows.items() if state.reset_at <= now]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("rate_limit_windows_swept", removed=len(expired))

    async def hit(self, key: str, window_seconds: int) -> WindowState:
        now = self.clock()
        with self._lock:
            self._hits_since_sweep += 1
            if self._hits_since_sweep >= self._sweep_every:
                self._hits_since_sweep = 0
                self._sweep(now)
            state = self._windows.get(key)
            if state is None or state.reset_at <= now:
                state = WindowState(count=0, reset_at=now + window_seconds)
                self._windows[key] = state
            state.count += 1
            return WindowState(state.count, state.reset_at)

    async def refund(self, key: str) -> None:
        now = self.clock()
        with self._lock:
            state = self._windows.get(key)
            if state is not None and state.reset_at > now and state.count > 0:
                state.count -= 1

    async def peek(self, key: str) -> Optional[WindowState]:
        now = self.clock()
        with self._lock:
            state = self._windows.get(key)
            if state is None or state.reset_at <= now:
                return None
            return WindowState(state.count, state.reset_at)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    def __len__(self) -> int:
        return len(self._windows)


class RedisWindowStore:
    """Shared windows for multi-instance deployments."""

    def __init__(self, cache: RedisCache) -> None:
        self.cache = cache
        self.clock: Clock = time.time

    async def hit(self, key: str, window_seconds: int) -> WindowState:
        count, reset_at = await self.cache.hit_window(key, window_seconds)
        return WindowState(count, reset_at)

    async def refund(self, key: str) -> None:
        await self.cache.refund_window(key)

    async def peek(self, key: str) -> Optional[WindowState]:
        found = await self.cache.peek_window(key)
        if found is None:
            return None
        return WindowState(*found)

    async def reset(self, key: str) -> None:
        await self.cache.reset_window(key)


def build_policies(settings: Settings) -> Dict[str, RatePolicy]:
    window = settings.rate_limit_window_seconds
    return {
        policy.name: policy
        for policy in (
            RatePolicy.build("general", settings.rate_limit_general_max, window),
            RatePolicy.build("auth", settings.rate_limit_auth_max, window, failed_only=True),
            RatePolicy.build(
                "password",
                settings.rate_limit_password_max,
                settings.rate_limit_password_window_seconds,
            ),
            RatePolicy.build("read", settings.rate_limit_read_max, window),
            RatePolicy.build("strict", settings.rate_limit_strict_max, window),
            RatePolicy.build("upload", settings.rate_limit_upload_max, window),
            RatePolicy.build("heavy", settings.rate_limit_heavy_max, window),
        )
    }


class AdmissionController:
    """Fixed-window admission per route class, with progressive delay.

    Keys are ``"<class>:<subject>"`` where the subject is a client IP or
    ``user:<id>``. Trusted IPs never reach the store.
    """

    def __init__(self, settings: Settings, store: WindowStore) -> None:
        self.settings = settings
        self.store = store
        self.policies = build_policies(settings)
        self.trusted_ips = frozenset(settings.trusted_ips)
        self.speed_window = _checked_window("speed", settings.rate_limit_window_seconds)

    def _now(self) -> float:
        clock = getattr(self.store, "clock", None)
        return clock() if clock else time.time()

    def is_trusted(self, ip: Optional[str]) -> bool:
        return bool(ip) and ip in self.trusted_ips

    def policy(self, name: str) -> RatePolicy:
        try:
            return self.policies[name]
        except KeyError:
            raise ValueError(f"unknown rate-limit class: {name}") from None

    async def hit(self, policy: RatePolicy | str, subject: str) -> AdmissionDecision:
        """Count one request against ``policy`` and report where it stands."""
        if isinstance(policy, str):
            policy = self.policy(policy)
        key = f"{policy.name}:{subject}"
        now = self._now()
        if policy.limit <= 0:
            return AdmissionDecision(policy, key, 0, now + policy.window_seconds, now)
        state = await self.store.hit(key, policy.window_seconds)
        decision = AdmissionDecision(policy, key, state.count, state.reset_at, self._now())
        if not decision.allowed:
            logger.warning(
                "rate_limit_rejected",
                policy=policy.name,
                subject=subject,
                count=state.count,
                limit=policy.limit,
                retry_after=decision.retry_after,
            )
        return decision

    async def refund(self, decision: AdmissionDecision) -> None:
        if decision.policy.limit > 0:
            await self.store.refund(decision.key)

    async def peek(self, policy: RatePolicy | str, subject: str) -> AdmissionDecision:
        if isinstance(policy, str):
            policy = self.policy(policy)
        key = f"{policy.name}:{subject}"
        now = self._now()
        state = await self.store.peek(key)
        if state is None:
            return AdmissionDecision(policy, key, 0, now + policy.window_seconds, now)
        return AdmissionDecision(policy, key, state.count, state.reset_at, now)

    async def delay_for(self, ip: str) -> float:
        """Seconds to hold this request before handling it.

        Past ``speed_limit_delay_after`` requests in the window each extra
        request waits ``speed_limit_delay_ms`` longer, capped at
        ``speed_limit_max_delay_ms``.
        """
        state = await self.store.hit(f"speed:{ip}", self.speed_window)
        over = state.count - self.settings.speed_limit_delay_after
        if over <= 0:
            return 0.0
        delay_ms = min(
            over * self.settings.speed_limit_delay_ms,
            self.settings.speed_limit_max_delay_ms,
        )
        if delay_ms > 0:
            logger.info("rate_limit_delayed", ip=ip, count=state.count, delay_ms=delay_ms)
        return delay_ms / 1000.0
