"""Tests for per-sender session management."""

import asyncio

import pytest

from ccchat.session import manager as manager_module
from ccchat.session.manager import SessionManager


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def monotonic(self) -> float:
        return self.now


@pytest.fixture
def clock(monkeypatch):
    fake = FakeClock()
    monkeypatch.setattr(manager_module, "_time", fake)
    return fake


# ── get_or_create ─────────────────────────────────────────


class TestGetOrCreate:
    def test_first_call_creates(self):
        mgr = SessionManager("opus")
        handle = mgr.get_or_create("+1")

        assert handle.is_new
        assert handle.model == "opus"
        assert len(handle.session_id) == 36
        assert "+1" in mgr

    def test_second_call_returns_same_session(self):
        mgr = SessionManager("opus")
        first = mgr.get_or_create("+1")
        second = mgr.get_or_create("+1")

        assert not second.is_new
        assert second.session_id == first.session_id

    def test_senders_get_distinct_sessions(self):
        mgr = SessionManager("opus")
        a = mgr.get_or_create("+1")
        b = mgr.get_or_create("+2")
        assert a.session_id != b.session_id
        assert len(mgr) == 2

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_create_one_session(self):
        mgr = SessionManager("opus")

        async def grab():
            await asyncio.sleep(0)
            return mgr.get_or_create("+1")

        handles = await asyncio.gather(*(grab() for _ in range(20)))
        assert len({h.session_id for h in handles}) == 1
        assert sum(h.is_new for h in handles) == 1
        assert len(mgr) == 1

    def test_touch_updates_last_activity(self, clock):
        mgr = SessionManager("opus")
        mgr.get_or_create("+1")
        clock.now += 50
        mgr.get_or_create("+1")
        assert mgr.get("+1").idle_seconds() == 0


# ── reset / switch_model ──────────────────────────────────


class TestResetAndModel:
    def test_reset_then_new_session(self):
        mgr = SessionManager("opus")
        old = mgr.get_or_create("+1").session_id

        assert mgr.reset("+1")
        assert "+1" not in mgr
        assert not mgr.reset("+1")

        new = mgr.get_or_create("+1")
        assert new.is_new
        assert new.session_id != old

    def test_switch_model_keeps_session_id(self):
        mgr = SessionManager("opus")
        sid = mgr.get_or_create("+1").session_id

        mgr.switch_model("+1", "haiku")
        handle = mgr.get_or_create("+1")
        assert handle.model == "haiku"
        assert handle.session_id == sid

    def test_switch_model_creates_missing_session(self):
        mgr = SessionManager("opus")
        session = mgr.switch_model("+1", "haiku")
        assert session.model == "haiku"
        assert mgr.get_or_create("+1").model == "haiku"

    def test_reset_restores_default_model(self):
        mgr = SessionManager("opus")
        mgr.switch_model("+1", "haiku")
        mgr.reset("+1")
        assert mgr.get_or_create("+1").model == "opus"

    def test_started_and_truncated_flags(self):
        mgr = SessionManager("opus")
        sid = mgr.get_or_create("+1").session_id

        mgr.mark_started("+1", "some-other-id")
        assert not mgr.get("+1").started
        mgr.mark_started("+1", sid)
        assert mgr.get("+1").started

        mgr.mark_truncated("+1", True)
        assert mgr.get("+1").truncated
        mgr.mark_truncated("+2", True)  # unknown sender is a no-op


# ── Idle expiry ───────────────────────────────────────────


class TestExpiry:
    def test_no_ttl_never_expires(self, clock):
        mgr = SessionManager("opus", ttl_seconds=None)
        mgr.get_or_create("+1")
        clock.now += 10 ** 6
        assert mgr.expire_idle() == 0
        assert not mgr.get_or_create("+1").is_new

    def test_idle_session_replaced_on_access(self, clock):
        mgr = SessionManager("opus", ttl_seconds=60)
        old = mgr.get_or_create("+1").session_id
        clock.now += 61

        handle = mgr.get_or_create("+1")
        assert handle.is_new
        assert handle.session_id != old

    def test_sweep_removes_only_idle(self, clock):
        mgr = SessionManager("opus", ttl_seconds=60)
        mgr.get_or_create("+old")
        clock.now += 45
        mgr.get_or_create("+fresh")
        clock.now += 30

        assert mgr.expire_idle() == 1
        assert "+old" not in mgr
        assert "+fresh" in mgr

    @pytest.mark.asyncio
    async def test_sweep_skips_busy_session(self, clock):
        mgr = SessionManager("opus", ttl_seconds=60)
        mgr.get_or_create("+1")

        async with mgr.hold("+1"):
            clock.now += 120
            assert mgr.expire_idle() == 0
            assert "+1" in mgr

        assert mgr.expire_idle() == 1



# ── Per-sender serialization ──────────────────────────────


class TestHold:
    @pytest.mark.asyncio
    async def test_waiters_served_in_arrival_order(self):
        mgr = SessionManager("opus")
        order = []

        async def call(name):
            async with mgr.hold("+1"):
                order.append(f"{name}-start")
                await asyncio.sleep(0.01)
                order.append(f"{name}-end")

        await asyncio.gather(call("a"), call("b"), call("c"))
        assert order == ["a-start", "a-end", "b-start", "b-end", "c-start", "c-end"]

    @pytest.mark.asyncio
    async def test_reset_between_release_and_wakeup_keeps_calls_serialized(self):
        mgr = SessionManager("opus", ttl_seconds=60)
        order = []
        release = asyncio.Event()

        async def first():
            async with mgr.hold("+1"):
                mgr.get_or_create("+1")
                await release.wait()
            # Lock released, queued waiter not yet resumed
            mgr.reset("+1")
            mgr.expire_idle()

        async def later(name, work):
            async with mgr.hold("+1"):
                mgr.get_or_create("+1")
                order.append(f"{name}-start")
                await asyncio.sleep(work)
                order.append(f"{name}-end")

        t1 = asyncio.create_task(first())
        await asyncio.sleep(0)
        t2 = asyncio.create_task(later("b", 0.05))
        await asyncio.sleep(0)

        release.set()
        await t1
        t3 = asyncio.create_task(later("c", 0))
        await asyncio.gather(t2, t3)

        assert order == ["b-start", "b-end", "c-start", "c-end"]

    @pytest.mark.asyncio
    async def test_lock_dropped_once_idle(self):
        mgr = SessionManager("opus")
        assert not mgr.is_busy("+1")

        async with mgr.hold("+1"):
            assert mgr.is_busy("+1")
        assert not mgr.is_busy("+1")

    @pytest.mark.asyncio
    async def test_error_inside_hold_releases(self):
        mgr = SessionManager("opus")

        with pytest.raises(RuntimeError):
            async with mgr.hold("+1"):
                raise RuntimeError("backend exploded")

        assert not mgr.is_busy("+1")
        async with mgr.hold("+1"):
            pass
