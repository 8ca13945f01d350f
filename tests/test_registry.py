import threading
from concurrent.futures import Future

import pytest

from rpc.errors import TimeExpired
from rpc.registry import PendingCallRegistry, sweep_interval


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def _register(registry, correlation_id, ttl=None):
    future = Future()
    registry.register(correlation_id, ttl, future.set_result, future.set_exception)
    return future


def test_take_removes_entry_once(clock):
    registry = PendingCallRegistry(clock=clock, start_sweeper=False)
    _register(registry, "id-1")

    call = registry.take("id-1")
    assert call is not None
    assert call.correlation_id == "id-1"
    assert registry.take("id-1") is None
    assert len(registry) == 0


def test_take_unknown_id_returns_none(clock):
    registry = PendingCallRegistry(clock=clock, start_sweeper=False)
    assert registry.take("missing") is None


def test_duplicate_correlation_id_is_rejected(clock):
    registry = PendingCallRegistry(clock=clock, start_sweeper=False)
    _register(registry, "id-1")
    with pytest.raises(ValueError):
        _register(registry, "id-1")


def test_negative_ttl_is_rejected(clock):
    registry = PendingCallRegistry(clock=clock, start_sweeper=False)
    with pytest.raises(ValueError):
        _register(registry, "id-1", ttl=-1)
    assert "id-1" not in registry


def test_sweep_expires_calls_with_time_expired(clock):
    registry = PendingCallRegistry(default_ttl=10, clock=clock, start_sweeper=False)
    future = _register(registry, "id-1")

    clock.advance(5)
    assert registry.sweep() == 0
    assert not future.done()

    clock.advance(6)
    assert registry.sweep() == 1
    error = future.exception(timeout=0)
    assert isinstance(error, TimeExpired)
    assert str(error) == "Time expired"
    assert error.correlation_id == "id-1"
    assert "id-1" not in registry


def test_per_call_ttl_overrides_default(clock):
    registry = PendingCallRegistry(default_ttl=60, clock=clock, start_sweeper=False)
    short = _register(registry, "short", ttl=2)
    default = _register(registry, "default")
    forever = _register(registry, "forever", ttl=0)

    clock.advance(3)
    registry.sweep()
    assert isinstance(short.exception(timeout=0), TimeExpired)
    assert not default.done()

    clock.advance(100)
    registry.sweep()
    assert isinstance(default.exception(timeout=0), TimeExpired)
    assert not forever.done()
    assert "forever" in registry


def test_zero_default_ttl_never_expires(clock):
    registry = PendingCallRegistry(clock=clock, start_sweeper=False)
    future = _register(registry, "id-1")

    clock.advance(10 ** 6)
    assert registry.sweep() == 0
    assert not future.done()


def test_sweep_skips_calls_taken_by_a_reply(clock):
    registry = PendingCallRegistry(default_ttl=1, clock=clock, start_sweeper=False)
    future = _register(registry, "id-1")
    clock.advance(2)

    call = registry.take("id-1")
    call.resolve({"ok": True})

    assert registry.sweep() == 0
    assert future.result(timeout=0) == {"ok": True}


def test_sweep_interval_has_one_second_floor():
    assert sweep_interval(1) == 1
    assert sweep_interval(4) == 1
    assert sweep_interval(60) == 12


def test_sweeper_starts_lazily_and_expires_calls():
    registry = PendingCallRegistry(default_ttl=0.2)
    try:
        assert registry._sweeper is None
        future = _register(registry, "id-1", ttl=0)
        assert registry._sweeper is None

        future = _register(registry, "id-2")
        assert registry._sweeper is not None
        assert registry._sweeper.interval == 1
        assert isinstance(future.exception(timeout=5), TimeExpired)
    finally:
        registry.close()


def test_concurrent_take_settles_exactly_once(clock):
    registry = PendingCallRegistry(clock=clock, start_sweeper=False)
    settled = []
    registry.register("id-1", 0, settled.append, settled.append)

    barrier = threading.Barrier(8)

    def _race():
        barrier.wait()
        call = registry.take("id-1")
        if call is not None:
            call.resolve("winner")

    threads = [threading.Thread(target=_race) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=2)

    assert settled == ["winner"]


def test_shorter_ttl_wakes_running_sweeper():
    registry = PendingCallRegistry()
    try:
        long_call = _register(registry, "long", ttl=50)
        assert registry._sweeper.interval == 10

        short_call = _register(registry, "short", ttl=1)
        assert registry._sweeper.interval == 1

        assert isinstance(short_call.exception(timeout=3), TimeExpired)
        assert not long_call.done()
    finally:
        registry.close()
