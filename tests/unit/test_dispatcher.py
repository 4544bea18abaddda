"""Tests for the round-robin Dispatcher."""

from __future__ import annotations

import asyncio
from collections import Counter

import pytest

from poolforge._internal.errors import NoCapacity, RequestFailed, WorkerCrash
from poolforge.engine.dispatcher import Dispatcher


def _make(launcher, clock, **kwargs) -> Dispatcher:
    kwargs.setdefault("backlog_limit", 2)
    kwargs.setdefault("max_inflight_per_worker", 100)
    return Dispatcher(launcher.send, clock=clock, **kwargs)


def _targets(launcher) -> list[int]:
    return [worker_id for worker_id, _ in launcher.sent]


class TestRoundRobin:
    async def test_events_spread_evenly(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.set_ready([1, 2, 3])

        for i in range(30):
            dispatcher.submit(f"req-{i}".encode())

        counts = Counter(_targets(launcher))
        assert counts == {1: 10, 2: 10, 3: 10}
        assert _targets(launcher)[:6] == [1, 2, 3, 1, 2, 3]

    async def test_payload_reaches_worker_unchanged(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.set_ready([7])
        dispatcher.submit(b"\x00raw bytes\xff")
        assert launcher.sent[0][1].payload == b"\x00raw bytes\xff"

    async def test_new_worker_joins_at_tail(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.set_ready([1, 2])
        dispatcher.submit(b"a")
        dispatcher.set_ready([1, 2, 3])
        assert dispatcher.rotation == (2, 1, 3)

    async def test_removed_worker_keeps_order_of_rest(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.set_ready([1, 2, 3, 4])
        dispatcher.submit(b"a")
        dispatcher.set_ready([1, 3, 4])
        assert dispatcher.rotation == (3, 4, 1)

    async def test_saturated_worker_is_skipped(self, launcher, clock):
        dispatcher = _make(launcher, clock, max_inflight_per_worker=1)
        dispatcher.set_ready([1, 2])
        dispatcher.submit(b"a")
        dispatcher.submit(b"b")
        request_id = launcher.sent[0][1].request_id
        dispatcher.complete(1, request_id, b"ok")
        dispatcher.submit(b"c")
        assert _targets(launcher) == [1, 2, 1]


class TestBackpressure:
    async def test_no_ready_worker_queues_then_rejects(self, launcher, clock):
        dispatcher = _make(launcher, clock, backlog_limit=2)
        dispatcher.submit(b"a")
        dispatcher.submit(b"b")
        assert dispatcher.backlog_size == 2

        with pytest.raises(NoCapacity):
            dispatcher.submit(b"c")
        assert dispatcher.stats.rejected == 1

    async def test_zero_backlog_rejects_immediately(self, launcher, clock):
        dispatcher = _make(launcher, clock, backlog_limit=0)
        with pytest.raises(NoCapacity, match="no worker available"):
            dispatcher.submit(b"a")

    async def test_backlog_drains_when_worker_becomes_ready(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.submit(b"a")
        dispatcher.submit(b"b")
        dispatcher.set_ready([5])
        assert dispatcher.backlog_size == 0
        assert [r.payload for _, r in launcher.sent] == [b"a", b"b"]

    async def test_reject_backlog_fails_queued_requests(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        future = dispatcher.submit(b"a")
        dispatcher.reject_backlog("pool stopped")
        with pytest.raises(NoCapacity, match="pool stopped"):
            await future


    async def test_timed_out_requests_give_back_backlog_places(self, launcher, clock):
        dispatcher = _make(launcher, clock, backlog_limit=2)
        for payload in (b"a", b"b"):
            with pytest.raises(asyncio.TimeoutError):
                await dispatcher.dispatch(payload, timeout=0.01)
        assert dispatcher.backlog_size == 0
        assert dispatcher.stats.timed_out == 2

        queued = dispatcher.submit(b"c")
        dispatcher.set_ready([1])
        assert [r.payload for _, r in launcher.sent] == [b"c"]
        dispatcher.complete(1, launcher.sent[0][1].request_id, b"ok")
        assert await queued == b"ok"

    async def test_cancelled_caller_leaves_backlog(self, launcher, clock):
        dispatcher = _make(launcher, clock, backlog_limit=1)
        task = asyncio.create_task(dispatcher.dispatch(b"a"))
        await asyncio.sleep(0)
        assert dispatcher.backlog_size == 1

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert dispatcher.backlog_size == 0
        assert dispatcher.stats.timed_out == 0

    async def test_cancelled_futures_do_not_hold_backlog(self, launcher, clock):
        dispatcher = _make(launcher, clock, backlog_limit=1)
        dispatcher.submit(b"a").cancel()
        dispatcher.submit(b"b")
        assert dispatcher.backlog_size == 1
        assert dispatcher.stats.rejected == 0

class TestCompletion:
    async def test_complete_resolves_future_and_records_latency(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.set_ready([1])
        future = dispatcher.submit(b"ping")
        request_id = launcher.sent[0][1].request_id

        clock.advance(0.25)
        dispatcher.complete(1, request_id, b"pong")

        assert await future == b"pong"
        assert dispatcher.stats.completed == 1
        assert 249.0 <= dispatcher.stats.latency.percentile(50.0) <= 251.0
        assert dispatcher.inflight_count == 0

    async def test_handler_failure_raises_request_failed(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.set_ready([1])
        future = dispatcher.submit(b"x")
        dispatcher.fail(1, launcher.sent[0][1].request_id, "ValueError: bad")

        with pytest.raises(RequestFailed, match="bad"):
            await future
        assert dispatcher.stats.failed == 1

    async def test_lost_worker_fails_inflight_requests(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.set_ready([1, 2])
        first = dispatcher.submit(b"a")
        second = dispatcher.submit(b"b")

        dispatcher.worker_lost(1, WorkerCrash("worker 1 exited with code 1", 1))

        with pytest.raises(WorkerCrash) as excinfo:
            await first
        assert excinfo.value.worker_id == 1
        assert not second.done()
        assert dispatcher.rotation == (2,)
        assert dict(dispatcher.stats.per_worker) == {2: 1}
        assert dispatcher.stats.dispatched == 2

    async def test_unknown_reply_is_ignored(self, launcher, clock):
        dispatcher = _make(launcher, clock)
        dispatcher.complete(9, 12345, b"late")
        assert dispatcher.stats.completed == 0

    async def test_send_failure_becomes_worker_crash(self, clock):
        def _send(worker_id, request):
            raise KeyError(worker_id)

        dispatcher = Dispatcher(_send, clock=clock)
        dispatcher.set_ready([1])
        with pytest.raises(WorkerCrash, match="could not deliver"):
            await dispatcher.submit(b"a")

    async def test_dispatch_times_out_and_keeps_slot_busy(self, launcher):
        dispatcher = Dispatcher(launcher.send, max_inflight_per_worker=1, backlog_limit=0)
        dispatcher.set_ready([1])

        with pytest.raises(asyncio.TimeoutError):
            await dispatcher.dispatch(b"slow", timeout=0.05)

        assert dispatcher.stats.timed_out == 1
        assert dispatcher.inflight_count == 1
        with pytest.raises(NoCapacity):
            dispatcher.submit(b"next")

        dispatcher.complete(1, launcher.sent[0][1].request_id, b"late")
        assert dispatcher.inflight_count == 0
