from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
import ssl
from typing import Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect  # type: ignore
from websockets.exceptions import ConnectionClosed  # type: ignore

from feed_recorder.classifier import (
    ControlResponse,
    FrameClassifier,
    LiquidationEvent,
    TradeBatch,
)
from feed_recorder.errors import (
    DecodeError,
    LivenessFailure,
    RecorderError,
    RestartBoundExceeded,
    TransportFailure,
)
from feed_recorder.heartbeat import PING_INTERVAL_S, HeartbeatMonitor
from feed_recorder.recorder_types import ConnectionPhase, ConnectionState


class ConnectionSupervisor:
    """Owns the websocket lifecycle: connect, subscribe, heartbeat, reconnect.

    Only one connection is open at a time. Every connection-level failure
    (heartbeat exhausted, close, send error, failed open, no confirmation
    after subscribing) takes the same path: the session is torn down and a
    new one is opened, until ``max_restarts`` consecutive restarts fail to
    reach the live phase.
    """

    def __init__(
        self,
        ws_url: str,
        classifier: FrameClassifier,
        on_trade_batch: Callable[[TradeBatch], Awaitable[None]],
        on_liquidation: Callable[[LiquidationEvent], Awaitable[None]],
        on_status: Optional[Callable[[str, dict], None]] = None,
        ping_interval_s: float = PING_INTERVAL_S,
        max_restarts: int = 3,
        subscribe_timeout_s: float = 2 * PING_INTERVAL_S,
        open_timeout_s: float = 10.0,
        reconnect_backoff_s: float = 1.0,
        reconnect_backoff_max_s: float = 30.0,
        insecure_tls: bool = False,
        max_queue: int = 256,
        log_raw_frames: bool = False,
        state: Optional[ConnectionState] = None,
    ):
        self.ws_url = ws_url
        self.classifier = classifier
        self.on_trade_batch = on_trade_batch
        self.on_liquidation = on_liquidation
        self.on_status_cb = on_status

        self.ping_interval_s = max(0.0, float(ping_interval_s))
        self.max_restarts = max(0, int(max_restarts))
        self.subscribe_timeout_s = max(0.0, float(subscribe_timeout_s))
        self.open_timeout_s = max(0.1, float(open_timeout_s))
        self.reconnect_backoff_s = max(0.0, float(reconnect_backoff_s))
        self.reconnect_backoff_max_s = max(self.reconnect_backoff_s, float(reconnect_backoff_max_s))
        self.insecure_tls = insecure_tls
        self.max_queue = max(1, int(max_queue))
        self.log_raw_frames = log_raw_frames

        self.state = state if state is not None else ConnectionState()

        self._ws = None
        self._session_id = 0
        self._session_done: Optional[asyncio.Event] = None
        self._failure: Optional[RecorderError] = None
        self._heartbeat: Optional[HeartbeatMonitor] = None
        self._subscribe_timer: Optional[asyncio.TimerHandle] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._stopping = False
        self._frame_in_flight = False
        self._log = logging.getLogger("feed_recorder.supervisor")

    @property
    def phase(self) -> ConnectionPhase:
        return self.state.phase

    @property
    def heartbeat(self) -> Optional[HeartbeatMonitor]:
        return self._heartbeat

    def _emit_status(self, typ: str, details: dict) -> None:
        try:
            if self.on_status_cb:
                self.on_status_cb(typ, details)
        except Exception:
            self._log.exception("Status callback error (type=%s)", typ)

    def _set_phase(self, new_phase: ConnectionPhase, reason: str | None = None) -> bool:
        prev = self.state.phase
        if prev is ConnectionPhase.TERMINATED or prev is new_phase:
            return False
        self.state.phase = new_phase
        self._log.debug("Phase %s -> %s (%s)", prev.value, new_phase.value, reason or "-")
        return True

    def _ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.insecure_tls:
            return None
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        return ctx

    def _connect_kwargs(self) -> dict:
        # Protocol-level pings are disabled; liveness is checked with
        # application pings by the heartbeat monitor.
        kwargs = {
            "ping_interval": None,
            "ping_timeout": None,
            "open_timeout": self.open_timeout_s,
            "close_timeout": 5,
            "max_queue": self.max_queue,
        }
        ssl_ctx = self._ssl_context()
        if ssl_ctx is not None:
            kwargs["ssl"] = ssl_ctx
        return kwargs

    async def run(self) -> None:
        """Connect and keep the subscription alive until stop() is called.

        Raises RestartBoundExceeded when the reconnect bound is hit.
        """
        self._stop_event = asyncio.Event()
        if self._stopping:
            self._stop_event.set()

        while not self._stopping:
            self._set_phase(ConnectionPhase.CONNECTING, "connect")
            self._emit_status("ws_connecting", {"url": self.ws_url, "restart_count": self.state.restart_count})
            self._log.info("Connecting to %s (restart_count=%d)", self.ws_url, self.state.restart_count)
            try:
                await self._run_session()
            except Exception as exc:
                self._degrade(TransportFailure(f"{type(exc).__name__}: {exc}"))
            finally:
                self._teardown()
                self._log_stats()

            if self._stopping:
                break
            if self._failure is None:
                self._degrade(TransportFailure("session ended without an error"))

            self._restart()
            await self._backoff_wait()

        self._set_phase(ConnectionPhase.TERMINATED, "stop")
        self._emit_status("ws_terminated", {"reason": "stop"})
        self._log.info("Supervisor stopped.")

    async def _run_session(self) -> None:
        self._session_id += 1
        session = self._session_id
        self._failure = None
        self._session_done = asyncio.Event()

        async with contextlib.AsyncExitStack() as stack:
            ws = await self._open(stack)
            if ws is None or self._stopping:
                return
            self._ws = ws
            self.state.open_count += 1
            self.state.pong_credit = 0
            self._set_phase(ConnectionPhase.SUBSCRIBING, "ws_open")
            self._emit_status("ws_open", {"open_count": self.state.open_count})
            self._heartbeat = HeartbeatMonitor(
                self.state,
                send_ping=self._send,
                on_degraded=lambda exc: self._fail(exc, session),
                interval_s=self.ping_interval_s,
            )
            self._arm_subscribe_timer(session)

            subscribe = self.classifier.subscribe_message()
            try:
                await self._send(subscribe)
            except TransportFailure as exc:
                self._fail(exc, session)
                return
            self._emit_status("ws_subscribe", {"topics": subscribe["args"]})
            self._log.info("Subscribe sent for %s", ", ".join(subscribe["args"]))

            reader = asyncio.create_task(self._read_loop(ws, session, self._session_done))
            done = asyncio.create_task(self._session_done.wait())
            try:
                await asyncio.wait({reader, done}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                self._teardown()
                done.cancel()
                # A frame that is being recorded runs to completion; the read
                # loop then exits at the next frame boundary. A pending recv
                # holds no data yet and is cancelled.
                if not self._frame_in_flight:
                    reader.cancel()
                await asyncio.gather(reader, done, return_exceptions=True)

    async def _open(self, stack: contextlib.AsyncExitStack):
        """Open the websocket, giving up early if stop() is called meanwhile."""
        opening = asyncio.create_task(stack.enter_async_context(ws_connect(self.ws_url, **self._connect_kwargs())))
        stopped = asyncio.create_task(self._stop_event.wait())
        try:
            await asyncio.wait({opening, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not opening.done():
                opening.cancel()
                await asyncio.gather(opening, return_exceptions=True)
        if opening.cancelled():
            self._log.info("Stop requested while connecting; handshake abandoned")
            return None
        return opening.result()

    async def _read_loop(self, ws, session: int, session_done: asyncio.Event) -> None:
        while session == self._session_id and not session_done.is_set():
            try:
                raw = await ws.recv()
            except ConnectionClosed as exc:
                self._fail(TransportFailure(f"connection closed: {exc}"), session)
                return
            except Exception as exc:
                self._fail(TransportFailure(f"receive failed: {exc}"), session)
                return
            self._frame_in_flight = True
            try:
                await self._handle_frame(raw)
            finally:
                self._frame_in_flight = False

    async def _handle_frame(self, raw) -> None:
        self.state.frames_received += 1
        if self.log_raw_frames:
            self._log.debug("Frame: %s", raw)
        try:
            msg = self.classifier.classify(raw)
        except DecodeError as exc:
            self.state.decode_errors += 1
            self._log.warning("Dropping frame (%s): %.200s", exc, raw)
            return

        if isinstance(msg, ControlResponse):
            self._handle_control(msg)
            return

        self._mark_live(f"first {msg.topic} frame")
        try:
            if isinstance(msg, TradeBatch):
                await self.on_trade_batch(msg)
            elif isinstance(msg, LiquidationEvent):
                await self.on_liquidation(msg)
        except Exception:
            self._log.exception("Callback error (topic=%s)", msg.topic)

    def _handle_control(self, msg: ControlResponse) -> None:
        if msg.is_pong:
            if self._heartbeat is not None and self.state.phase is ConnectionPhase.LIVE:
                self._heartbeat.on_pong(msg.success)
            else:
                self._log.debug("Ignoring pong in phase %s", self.state.phase.value)
            return
        if msg.success:
            self._log.info("Control ack op=%s req_id=%s", msg.op, msg.request_id)
            self._mark_live(f"{msg.op or 'control'} ack")
        else:
            self._log.warning(
                "Control request rejected op=%s req_id=%s ret_msg=%s", msg.op, msg.request_id, msg.ret_msg
            )

    def _mark_live(self, reason: str) -> None:
        if self.state.phase is not ConnectionPhase.SUBSCRIBING:
            return
        self._cancel_subscribe_timer()
        self.state.restart_count = 0
        self.state.pong_credit = 0
        self._set_phase(ConnectionPhase.LIVE, reason)
        self._log.info("Connection live (%s)", reason)
        self._emit_status("ws_live", {"reason": reason, "open_count": self.state.open_count})
        if self._heartbeat is not None:
            self._heartbeat.start()

    def _arm_subscribe_timer(self, session: int) -> None:
        if self.subscribe_timeout_s <= 0:
            return
        loop = asyncio.get_running_loop()
        self._subscribe_timer = loop.call_later(self.subscribe_timeout_s, self._on_subscribe_timeout, session)

    def _cancel_subscribe_timer(self) -> None:
        timer = self._subscribe_timer
        self._subscribe_timer = None
        if timer is not None:
            timer.cancel()

    def _on_subscribe_timeout(self, session: int) -> None:
        if session != self._session_id or self.state.phase is not ConnectionPhase.SUBSCRIBING:
            return
        self._subscribe_timer = None
        self._fail(
            LivenessFailure(f"no confirmed message within {self.subscribe_timeout_s:.1f}s of subscribing"),
            session,
        )

    async def _send(self, payload: dict) -> None:
        ws = self._ws
        if ws is None or self.state.phase is ConnectionPhase.TERMINATED:
            raise TransportFailure("no open connection")
        try:
            await ws.send(json.dumps(payload))
        except Exception as exc:
            raise TransportFailure(f"send failed: {exc}") from exc

    def _fail(self, exc: RecorderError, session: int) -> None:
        if session != self._session_id:
            self._log.debug("Ignoring failure from stale session %d: %s", session, exc)
            return
        self._degrade(exc)

    def _degrade(self, exc: RecorderError) -> None:
        if self._failure is not None:
            return
        self._failure = exc
        if self._set_phase(ConnectionPhase.DEGRADED, str(exc)):
            self._log.warning("Connection degraded (%s): %s", type(exc).__name__, exc)
            self._emit_status("ws_degraded", {"kind": type(exc).__name__, "error": str(exc)})
        if self._session_done is not None:
            self._session_done.set()

    def _teardown(self) -> None:
        heartbeat = self._heartbeat
        self._heartbeat = None
        if heartbeat is not None:
            heartbeat.cancel()
        self._cancel_subscribe_timer()
        self._ws = None

    def _restart(self) -> None:
        count = self.state.restart_count
        if count >= self.max_restarts:
            self._set_phase(ConnectionPhase.TERMINATED, "restart_bound")
            self._emit_status("ws_terminated", {"reason": "restart_bound", "restart_count": count})
            self._log.error("Giving up after %d consecutive restarts without a live connection", count)
            raise RestartBoundExceeded(count)
        self.state.restart_count = count + 1
        self._log.warning(
            "Reconnecting (attempt %d/%d) after: %s",
            self.state.restart_count,
            self.max_restarts,
            self._failure,
        )

    async def _backoff_wait(self) -> None:
        attempt = self.state.restart_count
        base = self.reconnect_backoff_s
        cap = self.reconnect_backoff_max_s
        if base <= 0.0 or cap <= 0.0:
            backoff = 0.0
        else:
            backoff = min(cap, base * (2 ** max(0, attempt - 1)))
            backoff = backoff * (0.7 + 0.6 * random.random())
        self._emit_status("ws_reconnect_wait", {"sleep_s": float(backoff), "attempt": attempt})
        if backoff <= 0.0 or self._stop_event is None:
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=backoff)

    def _log_stats(self) -> None:
        s = self.state
        self._log.info(
            "Session stats opens=%d frames=%d decode_errors=%d trade_rows=%d liquidation_rows=%d write_errors=%d",
            s.open_count,
            s.frames_received,
            s.decode_errors,
            s.trade_rows_written,
            s.liquidation_rows_written,
            s.write_errors,
        )

    def stop(self) -> None:
        """Request a graceful shutdown. The state becomes terminated immediately."""
        if self._stopping:
            return
        self._stopping = True
        self._log.info("Stop requested")
        self._teardown()
        self._set_phase(ConnectionPhase.TERMINATED, "stop")
        if self._stop_event is not None:
            self._stop_event.set()
        if self._session_done is not None:
            self._session_done.set()
