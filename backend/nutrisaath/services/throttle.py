"""
NutriSaath Backend: Request Throttle
======================================

What:  Per-key fixed-window admission control with optional blocking.
How:   Each (prefix, key) pair owns a ThrottleState. Every admission check
       runs one atomic check-and-decrement against that state.
Who:   Called by the gate dependencies (middleware/gate.py) before chat and
       barcode lookup handlers run.
When:  Once per throttled request.

Algorithm (per call, `now` from the store's clock):
    1. Block active (now < blocked_until)   → reject, retry after the block.
                                               Points untouched, block not extended.
    2. No state, or window elapsed           → points_remaining = policy.points,
                                               window_reset_at = now + window.
    3. points_remaining > 0                  → decrement, admit.
    4. Otherwise                             → reject; if block_seconds > 0 start
                                               a block of block_seconds.

Backends:
    MemoryThrottleStore  In-process dict under a lock. Correct for ONE process.
                         Two instances behind a load balancer each keep their
                         own counters, so a caller gets N x points.
    RedisThrottleStore   Shared counters for multi-instance deployments. The
                         whole algorithm is one Lua script, so it is atomic
                         across processes. Enable with THROTTLE_BACKEND=redis.

Key scoping:
    State is addressed by (policy.prefix, key). Prefixes may not contain ':'
    so the Redis key "throttle:<prefix>:<key>" is unambiguous; the same caller
    is throttled independently under "chat" and "barcode-lookup".
"""

import logging
import math
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

import redis.asyncio as redis

from nutrisaath.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThrottlePolicy:
    """
    Limits for one route group.

    Attributes:
        prefix:         Route-scoped key namespace, e.g. "chat"
        points:         Admissions allowed per window
        window_seconds: Window length
        block_seconds:  Lockout after the first rejection (0 = no lockout)
    """

    prefix: str
    points: int
    window_seconds: int
    block_seconds: int = 0

    def __post_init__(self) -> None:
        if not self.prefix or ":" in self.prefix:
            raise ValueError(f"Invalid throttle prefix {self.prefix!r}: must be non-empty without ':'")
        if self.points < 1:
            raise ValueError("Throttle points must be >= 1")
        if self.window_seconds < 1:
            raise ValueError("Throttle window_seconds must be >= 1")
        if self.block_seconds < 0:
            raise ValueError("Throttle block_seconds must be >= 0")


@dataclass
class ThrottleState:
    points_remaining: int
    window_reset_at: float
    blocked_until: Optional[float] = None


@dataclass(frozen=True)
class ThrottleDecision:
    admitted: bool
    remaining: int
    retry_after: float = 0.0

    @property
    def retry_after_seconds(self) -> int:
        """Whole seconds for the Retry-After header (at least 1 on rejection)."""
        if self.admitted:
            return 0
        return max(1, math.ceil(self.retry_after))


class ThrottleStore(ABC):
    """
    Storage and atomicity for throttle counters.

    Contract:
        admit() performs the full check-and-decrement atomically per
        (policy.prefix, key). Two concurrent calls on a key with one point
        left never both get admitted.
    """

    @abstractmethod
    async def admit(self, key: str, policy: ThrottlePolicy) -> ThrottleDecision:
        ...

    @abstractmethod
    async def reset(self) -> None:
        """Drop all counters (tests, admin tooling)."""
        ...

    async def close(self) -> None:
        return None


# ══════════════════════════════════════════════════════════════════════════
# In-Process Backend
# ══════════════════════════════════════════════════════════════════════════

class MemoryThrottleStore(ThrottleStore):
    """
    In-memory throttle for single-process deployments.

    The critical section never awaits, and it also holds a threading.Lock so
    the store stays correct if handlers run in a threadpool.

    Garbage collection:
        Every SWEEP_EVERY admissions, states whose window has elapsed and that
        have no pending block are dropped.
    """

    SWEEP_EVERY = 1000

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._states: Dict[Tuple[str, str], ThrottleState] = {}
        self._lock = threading.Lock()
        self._calls = 0

    async def admit(self, key: str, policy: ThrottlePolicy) -> ThrottleDecision:
        with self._lock:
            now = self._clock()
            decision = self._admit_locked((policy.prefix, key), policy, now)
            self._calls += 1
            if self._calls % self.SWEEP_EVERY == 0:
                self._purge_locked(now)
            return decision

    def _admit_locked(
        self, state_key: Tuple[str, str], policy: ThrottlePolicy, now: float
    ) -> ThrottleDecision:
        state = self._states.get(state_key)

        if state is not None and state.blocked_until is not None:
            if now < state.blocked_until:
                return ThrottleDecision(False, 0, state.blocked_until - now)
            state.blocked_until = None

        if state is None or now >= state.window_reset_at:
            state = ThrottleState(
                points_remaining=policy.points,
                window_reset_at=now + policy.window_seconds,
            )
            self._states[state_key] = state

        if state.points_remaining > 0:
            state.points_remaining -= 1
            return ThrottleDecision(True, state.points_remaining)

        if policy.block_seconds > 0:
            state.blocked_until = now + policy.block_seconds
            return ThrottleDecision(False, 0, float(policy.block_seconds))

        return ThrottleDecision(False, 0, state.window_reset_at - now)

    def purge_expired(self) -> int:
        """Drop idle states now. Returns how many were removed."""
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        idle = [
            k for k, s in self._states.items()
            if now >= s.window_reset_at and (s.blocked_until is None or now >= s.blocked_until)
        ]
        for k in idle:
            del self._states[k]
        if idle:
            logger.debug("Purged %d idle throttle states", len(idle))
        return len(idle)

    def __len__(self) -> int:
        return len(self._states)

    async def reset(self) -> None:
        with self._lock:
            self._states.clear()
            self._calls = 0


# ══════════════════════════════════════════════════════════════════════════
# Shared (Redis) Backend
# ══════════════════════════════════════════════════════════════════════════

# KEYS[1]: state hash; ARGV: points, window_ms, block_ms[, now_ms]
# Returns {admitted (0|1), remaining, retry_after_ms}
# Without now_ms, time comes from the Redis server so every instance shares one clock.
ADMIT_SCRIPT = """
local now
if ARGV[4] then
  now = tonumber(ARGV[4])
else
  local t = redis.call('TIME')
  now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
end
local points = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local block = tonumber(ARGV[3])

local state = redis.call('HMGET', KEYS[1], 'remaining', 'reset_at', 'blocked_until')
local remaining = tonumber(state[1])
local reset_at = tonumber(state[2])
local blocked_until = tonumber(state[3])

if blocked_until and now < blocked_until then
  return {0, 0, blocked_until - now}
end

if (not remaining) or (not reset_at) or now >= reset_at then
  remaining = points
  reset_at = now + window
end

if remaining > 0 then
  remaining = remaining - 1
  redis.call('HSET', KEYS[1], 'remaining', remaining, 'reset_at', reset_at)
  redis.call('HDEL', KEYS[1], 'blocked_until')
  redis.call('PEXPIREAT', KEYS[1], reset_at)
  return {1, remaining, 0}
end

if block > 0 then
  blocked_until = now + block
  redis.call('HSET', KEYS[1], 'remaining', remaining, 'reset_at', reset_at, 'blocked_until', blocked_until)
  redis.call('PEXPIREAT', KEYS[1], math.max(reset_at, blocked_until))
  return {0, 0, block}
end

redis.call('HSET', KEYS[1], 'remaining', remaining, 'reset_at', reset_at)
redis.call('PEXPIREAT', KEYS[1], reset_at)
return {0, 0, reset_at - now}
"""


class RedisThrottleStore(ThrottleStore):
    """
    Redis-backed throttle shared by every instance of the service.

    State per key is a hash {remaining, reset_at, blocked_until} (ms since
    epoch) that expires on its own once the window and any block have passed.

    Args:
        client: redis.asyncio client
        clock:  Optional wall clock in epoch seconds. When omitted the Redis
                server clock is used.
    """

    KEY_NAMESPACE = "throttle"

    def __init__(self, client: "redis.Redis", clock: Optional[Callable[[], float]] = None):
        self._client = client
        self._clock = clock
        self._script = client.register_script(ADMIT_SCRIPT)

    @classmethod
    def from_url(cls, url: str) -> "RedisThrottleStore":
        return cls(redis.from_url(url))

    def make_key(self, key: str, policy: ThrottlePolicy) -> str:
        return f"{self.KEY_NAMESPACE}:{policy.prefix}:{key}"

    async def admit(self, key: str, policy: ThrottlePolicy) -> ThrottleDecision:
        args = [policy.points, policy.window_seconds * 1000, policy.block_seconds * 1000]
        if self._clock is not None:
            args.append(int(self._clock() * 1000))
        admitted, remaining, retry_ms = await self._script(
            keys=[self.make_key(key, policy)],
            args=args,
        )
        return ThrottleDecision(
            admitted=bool(int(admitted)),
            remaining=int(remaining),
            retry_after=int(retry_ms) / 1000.0,
        )

    async def reset(self) -> None:
        async for redis_key in self._client.scan_iter(match=f"{self.KEY_NAMESPACE}:*"):
            await self._client.delete(redis_key)

    async def close(self) -> None:
        await self._client.aclose()


def build_throttle_store() -> ThrottleStore:
    """Select the backend from THROTTLE_BACKEND."""
    if settings.throttle_backend == "redis":
        logger.info("Request throttle using Redis backend")
        return RedisThrottleStore.from_url(settings.redis_url)
    return MemoryThrottleStore()


# ══════════════════════════════════════════════════════════════════════════
# Route-Group Limiter
# ══════════════════════════════════════════════════════════════════════════

throttle_store: ThrottleStore = build_throttle_store()


class RequestThrottle:
    """
    One limiter per protected route group: a policy bound to a store.

    Usage:
        chat_throttle = RequestThrottle(ThrottlePolicy("chat", 10, 60))
        decision = await chat_throttle.admit(identity.subject_id)
    """

    def __init__(self, policy: ThrottlePolicy, store: Optional[ThrottleStore] = None):
        self.policy = policy
        self._store = store

    @property
    def store(self) -> ThrottleStore:
        return self._store if self._store is not None else throttle_store

    async def admit(self, key: str) -> ThrottleDecision:
        return await self.store.admit(key, self.policy)
