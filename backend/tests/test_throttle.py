"""
NutriSaath Backend: Request Throttle Unit Tests
=================================================

The admission rules run against both stores: the in-process store and the
Redis store (its Lua script executed by fakeredis).

What we test:
    ✅ Fixed window: N admissions, N+1 rejected, admitted again after the window
    ✅ Block: rejections persist for block_seconds even across a window reset
    ✅ Atomicity: concurrent admissions never exceed the remaining points
    ✅ Prefix and key isolation
    ✅ Memory store: idle-state purging and periodic sweep
    ✅ Redis store: key layout, argument shape, state expiry
"""

import asyncio
import time
from unittest.mock import AsyncMock, MagicMock

import pytest
from fakeredis import FakeAsyncRedis, FakeServer

from nutrisaath.services.throttle import (
    MemoryThrottleStore,
    RedisThrottleStore,
    RequestThrottle,
    ThrottleDecision,
    ThrottlePolicy,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestThrottlePolicy:

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"prefix": "", "points": 1, "window_seconds": 1},
            {"prefix": "a:b", "points": 1, "window_seconds": 1},
            {"prefix": "chat", "points": 0, "window_seconds": 1},
            {"prefix": "chat", "points": 1, "window_seconds": 0},
            {"prefix": "chat", "points": 1, "window_seconds": 1, "block_seconds": -1},
        ],
    )
    def test_invalid_policies_are_rejected(self, kwargs):
        with pytest.raises(ValueError):
            ThrottlePolicy(**kwargs)

    def test_retry_after_seconds_rounds_up(self):
        assert ThrottleDecision(False, 0, 12.2).retry_after_seconds == 13
        assert ThrottleDecision(False, 0, 0.0).retry_after_seconds == 1
        assert ThrottleDecision(True, 4).retry_after_seconds == 0


class ThrottleStoreBehaviour:
    """Admission rules every store must honour. Subclasses set self.store and self.clock."""

    @pytest.mark.asyncio
    async def test_window_admits_points_then_rejects(self):
        policy = ThrottlePolicy("chat", points=3, window_seconds=60)

        results = [await self.store.admit("u1", policy) for _ in range(3)]
        assert all(d.admitted for d in results)
        assert [d.remaining for d in results] == [2, 1, 0]

        fourth = await self.store.admit("u1", policy)
        assert not fourth.admitted
        assert fourth.retry_after == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_admits_again_after_window_elapses(self):
        policy = ThrottlePolicy("chat", points=3, window_seconds=60)
        for _ in range(4):
            await self.store.admit("u1", policy)

        self.clock.advance(61)
        decision = await self.store.admit("u1", policy)
        assert decision.admitted
        assert decision.remaining == 2

    @pytest.mark.asyncio
    async def test_rejection_retry_after_counts_down_to_window_reset(self):
        policy = ThrottlePolicy("chat", points=1, window_seconds=60)
        await self.store.admit("u1", policy)
        self.clock.advance(20)
        decision = await self.store.admit("u1", policy)
        assert not decision.admitted
        assert decision.retry_after == pytest.approx(40.0)

    @pytest.mark.asyncio
    async def test_block_outlasts_window_reset(self):
        policy = ThrottlePolicy("barcode-lookup", points=1, window_seconds=10, block_seconds=30)

        assert (await self.store.admit("1.2.3.4", policy)).admitted
        self.clock.advance(1)
        first_rejection = await self.store.admit("1.2.3.4", policy)
        assert not first_rejection.admitted
        assert first_rejection.retry_after == pytest.approx(30.0)

        # Window would have reset at t+10; block runs until t+31
        self.clock.advance(14)
        still_blocked = await self.store.admit("1.2.3.4", policy)
        assert not still_blocked.admitted
        assert still_blocked.retry_after == pytest.approx(16.0)

        self.clock.advance(16.5)
        assert (await self.store.admit("1.2.3.4", policy)).admitted

    @pytest.mark.asyncio
    async def test_blocked_calls_do_not_extend_block(self):
        policy = ThrottlePolicy("chat", points=1, window_seconds=60, block_seconds=30)
        await self.store.admit("u1", policy)
        await self.store.admit("u1", policy)
        for _ in range(5):
            self.clock.advance(5)
            await self.store.admit("u1", policy)
        # 25s spent inside the block; 5s remain
        decision = await self.store.admit("u1", policy)
        assert decision.retry_after == pytest.approx(5.0)

    @pytest.mark.asyncio
    async def test_rejections_do_not_spend_points(self):
        policy = ThrottlePolicy("chat", points=2, window_seconds=60)
        await self.store.admit("u1", policy)
        await self.store.admit("u1", policy)
        for _ in range(3):
            assert not (await self.store.admit("u1", policy)).admitted

        self.clock.advance(60)
        assert (await self.store.admit("u1", policy)).remaining == 1

    @pytest.mark.asyncio
    async def test_concurrent_admissions_on_last_point(self):
        policy = ThrottlePolicy("chat", points=2, window_seconds=60)
        await self.store.admit("u1", policy)

        decisions = await asyncio.gather(
            self.store.admit("u1", policy),
            self.store.admit("u1", policy),
        )
        assert sorted(d.admitted for d in decisions) == [False, True]

    @pytest.mark.asyncio
    async def test_many_concurrent_admissions_never_over_admit(self):
        policy = ThrottlePolicy("chat", points=10, window_seconds=60)
        decisions = await asyncio.gather(*(self.store.admit("u1", policy) for _ in range(50)))
        assert sum(d.admitted for d in decisions) == 10

    @pytest.mark.asyncio
    async def test_prefixes_are_isolated(self):
        chat = ThrottlePolicy("chat", points=1, window_seconds=60)
        lookup = ThrottlePolicy("barcode-lookup", points=1, window_seconds=60)

        assert (await self.store.admit("same-key", chat)).admitted
        assert not (await self.store.admit("same-key", chat)).admitted
        assert (await self.store.admit("same-key", lookup)).admitted

    @pytest.mark.asyncio
    async def test_keys_are_isolated(self):
        policy = ThrottlePolicy("chat", points=1, window_seconds=60)
        assert (await self.store.admit("u1", policy)).admitted
        assert (await self.store.admit("u2", policy)).admitted


class TestMemoryThrottleStore(ThrottleStoreBehaviour):

    def setup_method(self):
        self.clock = FakeClock()
        self.store = MemoryThrottleStore(clock=self.clock)

    @pytest.mark.asyncio
    async def test_purge_drops_only_idle_states(self):
        short = ThrottlePolicy("short", points=1, window_seconds=10)
        blocked = ThrottlePolicy("blocked", points=1, window_seconds=10, block_seconds=100)

        await self.store.admit("a", short)
        await self.store.admit("b", blocked)
        await self.store.admit("b", blocked)
        assert len(self.store) == 2

        self.clock.advance(11)
        assert self.store.purge_expired() == 1
        assert len(self.store) == 1

    @pytest.mark.asyncio
    async def test_periodic_sweep(self):
        policy = ThrottlePolicy("chat", points=1, window_seconds=1)
        self.store.SWEEP_EVERY = 5
        for i in range(4):
            await self.store.admit(f"k{i}", policy)
        self.clock.advance(2)
        await self.store.admit("fresh", policy)
        assert len(self.store) == 1

    @pytest.mark.asyncio
    async def test_reset_clears_state(self):
        policy = ThrottlePolicy("chat", points=1, window_seconds=60)
        await self.store.admit("u1", policy)
        await self.store.reset()
        assert len(self.store) == 0
        assert (await self.store.admit("u1", policy)).admitted


class TestRedisThrottleStore(ThrottleStoreBehaviour):

    def setup_method(self):
        # Whole seconds near real time: millisecond arithmetic stays exact and
        # PEXPIREAT lands in the future for the fake server.
        self.clock = FakeClock(now=float(int(time.time())))
        self.client = FakeAsyncRedis(server=FakeServer())
        self.store = RedisThrottleStore(self.client, clock=self.clock)

    def test_key_layout(self):
        policy = ThrottlePolicy("chat", points=1, window_seconds=60)
        assert self.store.make_key("user-1", policy) == "throttle:chat:user-1"

    @pytest.mark.asyncio
    async def test_state_hash_expires_with_window(self):
        policy = ThrottlePolicy("chat", points=5, window_seconds=60)
        await self.store.admit("user-1", policy)

        key = self.store.make_key("user-1", policy)
        assert await self.client.hget(key, "remaining") == b"4"
        assert 0 < await self.client.pttl(key) <= 60_000

    @pytest.mark.asyncio
    async def test_block_keeps_state_alive_past_window(self):
        policy = ThrottlePolicy("barcode-lookup", points=1, window_seconds=10, block_seconds=300)
        await self.store.admit("1.2.3.4", policy)
        await self.store.admit("1.2.3.4", policy)

        key = self.store.make_key("1.2.3.4", policy)
        assert await self.client.pttl(key) > 10_000

    @pytest.mark.asyncio
    async def test_reset_deletes_only_throttle_keys(self):
        policy = ThrottlePolicy("chat", points=1, window_seconds=60)
        await self.store.admit("u1", policy)
        await self.client.set("unrelated", "1")

        await self.store.reset()

        assert await self.client.keys("throttle:*") == []
        assert await self.client.get("unrelated") == b"1"
        assert (await self.store.admit("u1", policy)).admitted


class TestRedisThrottleStoreClient:

    def setup_method(self):
        self.script = AsyncMock()
        self.client = MagicMock()
        self.client.register_script.return_value = self.script
        self.client.aclose = AsyncMock()
        self.store = RedisThrottleStore(self.client)

    @pytest.mark.asyncio
    async def test_server_clock_is_used_by_default(self):
        self.script.return_value = [1, 9, 0]
        policy = ThrottlePolicy("chat", points=10, window_seconds=60, block_seconds=30)

        decision = await self.store.admit("user-1", policy)

        self.script.assert_awaited_once_with(
            keys=["throttle:chat:user-1"], args=[10, 60000, 30000]
        )
        assert decision == ThrottleDecision(admitted=True, remaining=9, retry_after=0.0)

    @pytest.mark.asyncio
    async def test_rejection_converts_milliseconds(self):
        self.script.return_value = [0, 0, 12500]
        policy = ThrottlePolicy("chat", points=1, window_seconds=60)

        decision = await self.store.admit("user-1", policy)

        assert not decision.admitted
        assert decision.retry_after == pytest.approx(12.5)
        assert decision.retry_after_seconds == 13

    @pytest.mark.asyncio
    async def test_close_closes_client(self):
        await self.store.close()
        self.client.aclose.assert_awaited_once()


class TestRequestThrottle:

    @pytest.mark.asyncio
    async def test_uses_bound_store(self):
        store = MemoryThrottleStore(clock=FakeClock())
        throttle = RequestThrottle(ThrottlePolicy("chat", points=1, window_seconds=60), store=store)
        assert (await throttle.admit("u1")).admitted
        assert not (await throttle.admit("u1")).admitted

    @pytest.mark.asyncio
    async def test_defaults_to_module_store(self, fresh_throttle_store):
        throttle = RequestThrottle(ThrottlePolicy("chat", points=1, window_seconds=60))
        await throttle.admit("u1")
        assert len(fresh_throttle_store) == 1
