from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from feed_recorder.classifier import PING_MESSAGE
from feed_recorder.errors import LivenessFailure, RecorderError, TransportFailure
from feed_recorder.recorder_types import ConnectionState

PING_INTERVAL_S = 20.0
# Two unanswered ping cycles.
DEGRADED_CREDIT = -2


class HeartbeatVerdict(str, Enum):
    PING_SENT = "ping_sent"
    DEGRADED = "degraded"


class HeartbeatMonitor:
    """Application-level ping/pong liveness check for one connection session.

    Each cycle either sends a ping and spends one unit of ``pong_credit``, or,
    once the credit has dropped to -2, reports the connection as degraded
    instead of pinging again. A successful pong restores the credit to 1.
    """

    def __init__(
        self,
        state: ConnectionState,
        send_ping: Callable[[dict], Awaitable[None]],
        on_degraded: Callable[[RecorderError], None],
        interval_s: float = PING_INTERVAL_S,
        ping_message: Optional[dict] = None,
    ) -> None:
        self.state = state
        self.send_ping = send_ping
        self.on_degraded = on_degraded
        self.interval_s = max(0.0, float(interval_s))
        self.ping_message = dict(ping_message or PING_MESSAGE)
        self._task: Optional[asyncio.Task] = None
        self._log = logging.getLogger("feed_recorder.heartbeat")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def tick(self) -> HeartbeatVerdict:
        credit = self.state.pong_credit
        if credit <= DEGRADED_CREDIT:
            self._log.warning("No pong for %d ping cycles (credit=%d); connection degraded", -credit, credit)
            self.on_degraded(LivenessFailure(f"pong credit exhausted ({credit})"))
            return HeartbeatVerdict.DEGRADED

        # Spend the credit before awaiting the send so a pong that lands
        # during the send is not overwritten.
        self.state.pong_credit = credit - 1
        try:
            await self.send_ping(self.ping_message)
        except TransportFailure as exc:
            self._log.warning("Ping send failed: %s", exc)
            self.on_degraded(exc)
            return HeartbeatVerdict.DEGRADED
        self._log.debug("Ping sent (credit=%d)", self.state.pong_credit)
        return HeartbeatVerdict.PING_SENT

    def on_pong(self, success: bool) -> None:
        if success:
            self.state.pong_credit = 1
        else:
            self.state.pong_credit -= 1
            self._log.warning("Negative pong response (credit=%d)", self.state.pong_credit)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            verdict = await self.tick()
            if verdict is HeartbeatVerdict.DEGRADED:
                return
