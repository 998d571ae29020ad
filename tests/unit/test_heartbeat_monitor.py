from __future__ import annotations

import asyncio

from feed_recorder.errors import LivenessFailure, TransportFailure
from feed_recorder.heartbeat import HeartbeatMonitor, HeartbeatVerdict
from feed_recorder.recorder_types import ConnectionState


class _Recorder:
    def __init__(self, fail_send: bool = False) -> None:
        self.sent: list[dict] = []
        self.degraded: list[Exception] = []
        self.fail_send = fail_send

    async def send(self, payload: dict) -> None:
        if self.fail_send:
            raise TransportFailure("socket gone")
        self.sent.append(payload)

    def on_degraded(self, exc: Exception) -> None:
        self.degraded.append(exc)


def _monitor(state: ConnectionState, rec: _Recorder, interval_s: float = 20.0) -> HeartbeatMonitor:
    return HeartbeatMonitor(state, send_ping=rec.send, on_degraded=rec.on_degraded, interval_s=interval_s)


def test_two_unanswered_cycles_degrade_before_third_ping():
    state = ConnectionState()
    rec = _Recorder()
    monitor = _monitor(state, rec)

    async def main():
        return [await monitor.tick() for _ in range(3)]

    verdicts = asyncio.run(main())

    assert verdicts == [HeartbeatVerdict.PING_SENT, HeartbeatVerdict.PING_SENT, HeartbeatVerdict.DEGRADED]
    assert rec.sent == [{"req_id": "100001", "op": "ping"}] * 2
    assert len(rec.degraded) == 1
    assert isinstance(rec.degraded[0], LivenessFailure)
    assert state.pong_credit == -2


def test_pong_before_each_deadline_never_degrades():
    state = ConnectionState()
    rec = _Recorder()
    monitor = _monitor(state, rec)

    async def main():
        verdicts = []
        for _ in range(10):
            verdicts.append(await monitor.tick())
            monitor.on_pong(True)
        return verdicts

    verdicts = asyncio.run(main())

    assert set(verdicts) == {HeartbeatVerdict.PING_SENT}
    assert rec.degraded == []
    assert state.pong_credit == 1


def test_single_missed_pong_is_tolerated():
    state = ConnectionState()
    rec = _Recorder()
    monitor = _monitor(state, rec)

    async def main():
        first = await monitor.tick()
        second = await monitor.tick()  # first ping unanswered
        monitor.on_pong(True)
        third = await monitor.tick()
        return first, second, third

    assert asyncio.run(main()) == (HeartbeatVerdict.PING_SENT,) * 3
    assert rec.degraded == []


def test_negative_pong_spends_credit():
    state = ConnectionState()
    rec = _Recorder()
    monitor = _monitor(state, rec)

    async def main():
        first = await monitor.tick()
        monitor.on_pong(False)
        return first, await monitor.tick()

    first, second = asyncio.run(main())

    assert first is HeartbeatVerdict.PING_SENT
    assert second is HeartbeatVerdict.DEGRADED
    assert len(rec.sent) == 1


def test_send_failure_is_degraded():
    state = ConnectionState()
    rec = _Recorder(fail_send=True)
    monitor = _monitor(state, rec)

    verdict = asyncio.run(monitor.tick())

    assert verdict is HeartbeatVerdict.DEGRADED
    assert isinstance(rec.degraded[0], TransportFailure)


def test_periodic_task_stops_after_degraded_verdict():
    state = ConnectionState()
    rec = _Recorder()
    monitor = _monitor(state, rec, interval_s=0.0)

    async def main():
        monitor.start()
        task = monitor._task
        await asyncio.wait_for(task, timeout=1.0)
        return task

    task = asyncio.run(main())

    assert task.done() and not task.cancelled()
    assert len(rec.sent) == 2
    assert len(rec.degraded) == 1
    assert not monitor.running


def test_cancel_stops_pinging():
    state = ConnectionState()
    rec = _Recorder()
    monitor = _monitor(state, rec, interval_s=0.01)

    async def main():
        monitor.start()
        assert monitor.running
        monitor.cancel()
        await asyncio.sleep(0.05)

    asyncio.run(main())

    assert not monitor.running
    assert rec.sent == []
    assert rec.degraded == []
