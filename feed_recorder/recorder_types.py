from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Side(str, Enum):
    BUY = "Buy"
    SELL = "Sell"


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBING = "subscribing"
    LIVE = "live"
    DEGRADED = "degraded"
    TERMINATED = "terminated"


@dataclass
class ConnectionState:
    phase: ConnectionPhase = ConnectionPhase.DISCONNECTED
    restart_count: int = 0
    pong_credit: int = 0
    open_count: int = 0
    frames_received: int = 0
    decode_errors: int = 0
    trade_rows_written: int = 0
    liquidation_rows_written: int = 0
    write_errors: int = 0


def _flag(value: bool) -> str:
    return "true" if value else "false"


@dataclass(frozen=True)
class TradeRecord:
    timestamp_ms: int
    side: Side
    size: str
    price: str
    is_block_trade: bool

    def to_row(self) -> list[str]:
        return [str(self.timestamp_ms), self.side.value, self.size, self.price, _flag(self.is_block_trade)]

    def to_line(self) -> str:
        return ",".join(self.to_row())


@dataclass(frozen=True)
class LiquidationRecord:
    timestamp_ms: int
    side: Side
    size: str
    price: str

    def to_row(self) -> list[str]:
        return [str(self.timestamp_ms), self.side.value, self.size, self.price]

    def to_line(self) -> str:
        return ",".join(self.to_row())


@dataclass(frozen=True)
class LogTarget:
    name: str
    header: str

    @property
    def columns(self) -> list[str]:
        return self.header.split(",")


TRADE_LOG = LogTarget("trade.csv", "timestamp,direction,size,price,blocktrade")
LIQUIDATION_LOG = LogTarget("liquidation.csv", "timestamp,direction,size,price")
