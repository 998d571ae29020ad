from __future__ import annotations

import asyncio
from pathlib import Path

import feed_recorder.recorder as recorder_mod
import feed_recorder.supervisor as sup_mod
from feed_recorder.recorder_settings import RecorderSettings

TRADE_FRAME = '{"topic":"publicTrade.BTCUSDT","data":[{"T":1000,"S":"Buy","v":"0.5","p":"65000","BT":false}]}'
LIQ_FRAME = '{"topic":"liquidation.BTCUSDT","data":{"updatedTime":2000,"side":"Sell","size":"1.2","price":"64000"}}'


class _FakeWS:
    def __init__(self, frames, on_drained):
        self.frames = list(frames)
        self.on_drained = on_drained
        self.sent = []

    async def recv(self):
        if self.frames:
            return self.frames.pop(0)
        if self.on_drained is not None:
            cb, self.on_drained = self.on_drained, None
            cb()
        await asyncio.Event().wait()

    async def send(self, msg):
        self.sent.append(msg)

    async def close(self):
        return None


class _FakeConnect:
    def __init__(self, ws):
        self._ws = ws

    async def __aenter__(self):
        return self._ws

    async def __aexit__(self, exc_type, exc, tb):
        return False


def _settings(tmp_path: Path, **kwargs) -> RecorderSettings:
    base = dict(
        out_dir=str(tmp_path / "data"),
        log_dir=str(tmp_path / "logs"),
        symbol="BTCUSDT",
        reconnect_backoff_s=0.0,
        reconnect_backoff_max_s=0.0,
        subscribe_timeout_s=5.0,
    )
    base.update(kwargs)
    return RecorderSettings(**base)


def _install_fakes(monkeypatch, tmp_path: Path, frames):
    monkeypatch.setattr(recorder_mod, "setup_logging", lambda *args, **kwargs: tmp_path / "log.txt")
    created = {}
    orig_build = recorder_mod.build_supervisor

    def capture(settings, writer):
        created["sup"] = orig_build(settings, writer)
        return created["sup"]

    monkeypatch.setattr(recorder_mod, "build_supervisor", capture)

    def fake_connect(url, **kwargs):
        return _FakeConnect(_FakeWS(frames, on_drained=lambda: created["sup"].stop()))

    monkeypatch.setattr(sup_mod, "ws_connect", fake_connect)
    return created


def test_scenario_frames_end_up_in_logs(monkeypatch, tmp_path):
    _install_fakes(monkeypatch, tmp_path, [TRADE_FRAME, LIQ_FRAME, '{"topic":"foo","data":{}}'])

    code = recorder_mod.run_recorder(_settings(tmp_path))

    assert code == 0
    out = tmp_path / "data"
    assert (out / "trade.csv").read_text(encoding="utf-8").splitlines() == [
        "timestamp,direction,size,price,blocktrade",
        "1000,Buy,0.5,65000,false",
    ]
    assert (out / "liquidation.csv").read_text(encoding="utf-8").splitlines() == [
        "timestamp,direction,size,price",
        "2000,Sell,1.2,64000",
    ]


def test_headers_written_once_across_restarts(monkeypatch, tmp_path):
    _install_fakes(monkeypatch, tmp_path, [TRADE_FRAME])

    assert recorder_mod.run_recorder(_settings(tmp_path)) == 0
    assert recorder_mod.run_recorder(_settings(tmp_path)) == 0

    lines = (tmp_path / "data" / "trade.csv").read_text(encoding="utf-8").splitlines()
    assert lines.count("timestamp,direction,size,price,blocktrade") == 1
    assert lines[1:] == ["1000,Buy,0.5,65000,false", "1000,Buy,0.5,65000,false"]
    liq_lines = (tmp_path / "data" / "liquidation.csv").read_text(encoding="utf-8").splitlines()
    assert liq_lines == ["timestamp,direction,size,price"]


def test_restart_bound_returns_restart_count_as_exit_code(monkeypatch, tmp_path):
    monkeypatch.setattr(recorder_mod, "setup_logging", lambda *args, **kwargs: tmp_path / "log.txt")
    attempts = []

    def refused(url, **kwargs):
        attempts.append(url)
        raise OSError("connection refused")

    monkeypatch.setattr(sup_mod, "ws_connect", refused)

    code = recorder_mod.run_recorder(_settings(tmp_path, max_restarts=3))

    assert code == 3
    assert len(attempts) == 4
    # Logs exist even though nothing was recorded.
    assert (tmp_path / "data" / "trade.csv").exists()


def test_main_parses_cli_overrides(monkeypatch, tmp_path):
    seen = {}

    def fake_run(settings):
        seen["settings"] = settings
        return 2

    monkeypatch.setattr(recorder_mod, "run_recorder", fake_run)

    code = recorder_mod.main(["--symbol", "ethusdt", "--out-dir", str(tmp_path), "--max-restarts", "5"])

    assert code == 2
    settings = seen["settings"]
    assert settings.symbol == "ETHUSDT"
    assert settings.out_dir == str(tmp_path)
    assert settings.max_restarts == 5
    assert settings.topics == ["publicTrade.ETHUSDT", "liquidation.ETHUSDT"]
