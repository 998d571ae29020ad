"""Bybit public trade/liquidation recorder.

Keeps one websocket subscription alive and appends every trade and
liquidation to ``trade.csv`` / ``liquidation.csv`` under the output
directory. Exits 0 on SIGINT/SIGTERM, or with the restart count when the
reconnect bound is exceeded so a process manager can back off.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from feed_recorder.classifier import FrameClassifier
from feed_recorder.errors import LogWriteError, RestartBoundExceeded
from feed_recorder.log_writer import RecordWriter
from feed_recorder.logging_config import setup_logging
from feed_recorder.recorder_callbacks import RecordHandlers
from feed_recorder.recorder_settings import RecorderSettings, load_settings
from feed_recorder.recorder_types import LIQUIDATION_LOG, TRADE_LOG, ConnectionState
from feed_recorder.supervisor import ConnectionSupervisor

log = logging.getLogger("feed_recorder.recorder")


def build_supervisor(settings: RecorderSettings, writer: RecordWriter) -> ConnectionSupervisor:
    state = ConnectionState()
    handlers = RecordHandlers(writer, state)
    classifier = FrameClassifier(settings.resolved_trade_topic, settings.resolved_liquidation_topic)

    def on_status(typ: str, details: dict) -> None:
        log.debug("WS status: %s %s", typ, details)

    return ConnectionSupervisor(
        ws_url=settings.ws_url,
        classifier=classifier,
        on_trade_batch=handlers.handle_trade_batch,
        on_liquidation=handlers.handle_liquidation,
        on_status=on_status,
        ping_interval_s=settings.ping_interval_s,
        max_restarts=settings.max_restarts,
        subscribe_timeout_s=settings.resolved_subscribe_timeout_s,
        open_timeout_s=settings.open_timeout_s,
        reconnect_backoff_s=settings.reconnect_backoff_s,
        reconnect_backoff_max_s=settings.reconnect_backoff_max_s,
        insecure_tls=settings.insecure_tls,
        log_raw_frames=settings.log_raw_frames,
        state=state,
    )


async def _run_until_stopped(supervisor: ConnectionSupervisor) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        # Not available on every platform/loop.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, supervisor.stop)
    await supervisor.run()


def run_recorder(settings: RecorderSettings | None = None) -> int:
    settings = settings or load_settings()
    log_path = setup_logging(settings.log_level, component="recorder", subdir=settings.symbol, base_dir=settings.log_dir)
    log.info("Recorder logging to %s", log_path)
    log.info(
        "Recorder config url=%s topics=%s out_dir=%s ping_interval_s=%.1f max_restarts=%d subscribe_timeout_s=%.1f",
        settings.ws_url,
        ",".join(settings.topics),
        settings.out_dir,
        settings.ping_interval_s,
        settings.max_restarts,
        settings.resolved_subscribe_timeout_s,
    )

    writer = RecordWriter(settings.out_dir)
    for target in (TRADE_LOG, LIQUIDATION_LOG):
        try:
            writer.ensure_log(target)
        except LogWriteError:
            log.exception("Failed to prepare %s; its records will be dropped", target.name)
    log.info("Trades out:       %s", writer.path_for(TRADE_LOG))
    log.info("Liquidations out: %s", writer.path_for(LIQUIDATION_LOG))

    supervisor = build_supervisor(settings, writer)
    try:
        asyncio.run(_run_until_stopped(supervisor))
    except RestartBoundExceeded as exc:
        log.error("Recorder terminated: %s (exit code %d)", exc, exc.exit_code)
        return exc.exit_code
    finally:
        writer.close()
    log.info("Recorder stopped.")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Record Bybit public trades and liquidations to CSV")
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--symbol", default=None, help="Instrument, e.g. BTCUSDT")
    parser.add_argument("--ws-url", dest="ws_url", default=None, help="Websocket endpoint")
    parser.add_argument("--out-dir", dest="out_dir", default=None, help="Directory for trade.csv/liquidation.csv")
    parser.add_argument("--ping-interval", dest="ping_interval_s", type=float, default=None)
    parser.add_argument("--max-restarts", dest="max_restarts", type=int, default=None)
    parser.add_argument("--log-level", dest="log_level", default=None)
    parser.add_argument("--log-dir", dest="log_dir", default=None)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    overrides = {k: v for k, v in vars(args).items() if k != "config"}
    settings = load_settings(args.config, **overrides)
    # Always surface crashes in the log file as well as stderr.
    try:
        return run_recorder(settings)
    except Exception:
        log.exception("Recorder crashed")
        raise


if __name__ == "__main__":
    sys.exit(main())
