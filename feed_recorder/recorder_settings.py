from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

import yaml


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y")


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


WS_URL = _env_str("WS_URL", "wss://stream.bybit.com/v5/public/linear")
SYMBOL = _env_str("SYMBOL", "BTCUSDT").upper()
TRADE_TOPIC = os.getenv("TRADE_TOPIC") or None
LIQUIDATION_TOPIC = os.getenv("LIQUIDATION_TOPIC") or None
OUT_DIR = _env_str("OUT_DIR", "data")

# Application-level heartbeat and reconnect bound
PING_INTERVAL_S = _env_float("PING_INTERVAL_S", 20.0)
MAX_RESTARTS = _env_int("MAX_RESTARTS", 3)
SUBSCRIBE_TIMEOUT_S = _env_float("SUBSCRIBE_TIMEOUT_S", 0.0)

# WS connect/reconnect
WS_OPEN_TIMEOUT_S = _env_float("WS_OPEN_TIMEOUT_S", 10.0)
WS_RECONNECT_BACKOFF_S = _env_float("WS_RECONNECT_BACKOFF_S", 1.0)
WS_RECONNECT_BACKOFF_MAX_S = _env_float("WS_RECONNECT_BACKOFF_MAX_S", 30.0)

# TLS verification should remain enabled by default.
INSECURE_TLS = _env_bool("INSECURE_TLS", False)

LOG_LEVEL = _env_str("LOG_LEVEL", "INFO")
LOG_DIR = _env_str("LOG_DIR", "logs")
LOG_RAW_FRAMES = _env_bool("LOG_RAW_FRAMES", False)


@dataclass(frozen=True)
class RecorderSettings:
    ws_url: str = WS_URL
    symbol: str = SYMBOL
    trade_topic: str | None = TRADE_TOPIC
    liquidation_topic: str | None = LIQUIDATION_TOPIC
    out_dir: str = OUT_DIR
    ping_interval_s: float = PING_INTERVAL_S
    max_restarts: int = MAX_RESTARTS
    subscribe_timeout_s: float = SUBSCRIBE_TIMEOUT_S
    open_timeout_s: float = WS_OPEN_TIMEOUT_S
    reconnect_backoff_s: float = WS_RECONNECT_BACKOFF_S
    reconnect_backoff_max_s: float = WS_RECONNECT_BACKOFF_MAX_S
    insecure_tls: bool = INSECURE_TLS
    log_level: str = LOG_LEVEL
    log_dir: str = LOG_DIR
    log_raw_frames: bool = LOG_RAW_FRAMES

    @property
    def resolved_trade_topic(self) -> str:
        return self.trade_topic or f"publicTrade.{self.symbol}"

    @property
    def resolved_liquidation_topic(self) -> str:
        return self.liquidation_topic or f"liquidation.{self.symbol}"

    @property
    def topics(self) -> list[str]:
        return [self.resolved_trade_topic, self.resolved_liquidation_topic]

    @property
    def resolved_subscribe_timeout_s(self) -> float:
        """Time allowed between subscribing and the first confirmed message.

        Defaults to two heartbeat periods, the same bound the heartbeat uses
        once the connection is live.
        """
        if self.subscribe_timeout_s > 0:
            return float(self.subscribe_timeout_s)
        return 2.0 * float(self.ping_interval_s)


def load_config(path: str | Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping (got {type(raw).__name__}).")
    return raw


def load_settings(config_path: str | Path | None = None, **overrides: Any) -> RecorderSettings:
    """Build settings: CLI overrides > YAML file > environment > defaults."""
    settings = RecorderSettings()
    known = {f.name for f in fields(RecorderSettings)}

    values: dict[str, Any] = {}
    if config_path:
        values.update(load_config(config_path))
    values.update({k: v for k, v in overrides.items() if v is not None})

    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown recorder settings: {', '.join(unknown)}")

    if "symbol" in values:
        values["symbol"] = str(values["symbol"]).strip().upper()
    return replace(settings, **values)
