from __future__ import annotations

import importlib

import pytest


def test_invalid_env_does_not_crash(monkeypatch):
    monkeypatch.setenv("PING_INTERVAL_S", "not-a-number")
    monkeypatch.setenv("MAX_RESTARTS", "nope")
    monkeypatch.setenv("WS_RECONNECT_BACKOFF_S", "bad")

    import feed_recorder.recorder_settings as settings_mod

    importlib.reload(settings_mod)
    try:
        assert settings_mod.PING_INTERVAL_S == 20.0
        assert settings_mod.MAX_RESTARTS == 3
        assert settings_mod.WS_RECONNECT_BACKOFF_S == 1.0
    finally:
        monkeypatch.undo()
        importlib.reload(settings_mod)


def test_env_values_become_defaults(monkeypatch):
    monkeypatch.setenv("SYMBOL", "solusdt")
    monkeypatch.setenv("MAX_RESTARTS", "7")
    monkeypatch.setenv("INSECURE_TLS", "yes")

    import feed_recorder.recorder_settings as settings_mod

    importlib.reload(settings_mod)
    try:
        settings = settings_mod.load_settings()
        assert settings.symbol == "SOLUSDT"
        assert settings.max_restarts == 7
        assert settings.insecure_tls is True
        assert settings.topics == ["publicTrade.SOLUSDT", "liquidation.SOLUSDT"]
    finally:
        monkeypatch.undo()
        importlib.reload(settings_mod)


def test_yaml_file_then_overrides(tmp_path):
    from feed_recorder.recorder_settings import load_settings

    cfg = tmp_path / "recorder.yaml"
    cfg.write_text(
        "symbol: ethusdt\n"
        "out_dir: /srv/feed\n"
        "ping_interval_s: 5\n"
        "liquidation_topic: allLiquidation.ETHUSDT\n",
        encoding="utf-8",
    )

    settings = load_settings(cfg, out_dir="/tmp/override", max_restarts=None)

    assert settings.symbol == "ETHUSDT"
    assert settings.out_dir == "/tmp/override"
    assert settings.ping_interval_s == 5
    assert settings.topics == ["publicTrade.ETHUSDT", "allLiquidation.ETHUSDT"]
    # Subscription must be confirmed within two heartbeat periods by default.
    assert settings.resolved_subscribe_timeout_s == 10.0


def test_unknown_yaml_keys_are_rejected(tmp_path):
    from feed_recorder.recorder_settings import load_settings

    cfg = tmp_path / "recorder.yaml"
    cfg.write_text("symbol: BTCUSDT\nping_intervall: 5\n", encoding="utf-8")

    with pytest.raises(ValueError, match="ping_intervall"):
        load_settings(cfg)


def test_non_mapping_yaml_is_rejected(tmp_path):
    from feed_recorder.recorder_settings import load_config

    cfg = tmp_path / "recorder.yaml"
    cfg.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_config(cfg)
