from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Tuple, Union

from feed_recorder.errors import DecodeError
from feed_recorder.recorder_types import LiquidationRecord, Side, TradeRecord

SUBSCRIBE_REQUEST_ID = "subs"
PING_REQUEST_ID = "100001"

PING_MESSAGE: Dict[str, str] = {"req_id": PING_REQUEST_ID, "op": "ping"}

_CONTROL_FIELDS = ("ret_msg", "success", "op")


def subscribe_message(topics: list[str]) -> dict:
    return {"req_id": SUBSCRIBE_REQUEST_ID, "op": "subscribe", "args": list(topics)}


@dataclass(frozen=True)
class TradeBatch:
    topic: str
    entries: Tuple[Any, ...] = ()
    ts: int | None = None


@dataclass(frozen=True)
class LiquidationEvent:
    topic: str
    data: Dict[str, Any] = field(default_factory=dict)
    ts: int | None = None


@dataclass(frozen=True)
class ControlResponse:
    success: bool
    request_id: str = ""
    op: str = ""
    ret_msg: str = ""
    conn_id: str = ""

    @property
    def is_pong(self) -> bool:
        return self.op in ("ping", "pong") or self.request_id == PING_REQUEST_ID


ClassifiedMessage = Union[TradeBatch, LiquidationEvent, ControlResponse]


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class FrameClassifier:
    """Turns raw websocket frames into trade batches, liquidations or control responses."""

    def __init__(self, trade_topic: str, liquidation_topic: str) -> None:
        self.trade_topic = trade_topic
        self.liquidation_topic = liquidation_topic

    @property
    def topics(self) -> list[str]:
        return [self.trade_topic, self.liquidation_topic]

    def subscribe_message(self) -> dict:
        return subscribe_message(self.topics)

    def classify(self, raw: str | bytes) -> ClassifiedMessage:
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise DecodeError("invalid_json", str(exc)) from exc

        if not isinstance(payload, dict):
            raise DecodeError("unrecognized", f"frame is a {type(payload).__name__}")

        topic = payload.get("topic")
        if topic == self.trade_topic:
            data = payload.get("data")
            if not isinstance(data, list):
                raise DecodeError("malformed", f"trade frame data is not a list (topic={topic})")
            return TradeBatch(topic=topic, entries=tuple(data), ts=_int_or_none(payload.get("ts")))

        if topic == self.liquidation_topic:
            data = payload.get("data")
            if not isinstance(data, dict):
                raise DecodeError("malformed", f"liquidation frame data is not an object (topic={topic})")
            return LiquidationEvent(topic=topic, data=data, ts=_int_or_none(payload.get("ts")))

        if any(key in payload for key in _CONTROL_FIELDS):
            return ControlResponse(
                success=payload.get("success") is True,
                request_id=str(payload.get("req_id") or ""),
                op=str(payload.get("op") or ""),
                ret_msg=str(payload.get("ret_msg") or ""),
                conn_id=str(payload.get("conn_id") or ""),
            )

        raise DecodeError("unrecognized", f"topic={topic!r}")


def _timestamp(value: Any, name: str) -> int:
    if isinstance(value, bool):
        raise DecodeError("malformed", f"{name} is not an integer timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise DecodeError("malformed", f"{name} is not an integer timestamp: {value!r}")


def _side(value: Any, name: str) -> Side:
    try:
        return Side(value)
    except ValueError as exc:
        raise DecodeError("malformed", f"{name} must be Buy or Sell (got {value!r})") from exc


def _decimal_text(value: Any, name: str) -> str:
    # Sizes and prices are copied as received; no float round-trip.
    if value is None or isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise DecodeError("malformed", f"{name} is missing or not a decimal: {value!r}")
    text = str(value)
    if not text:
        raise DecodeError("malformed", f"{name} is empty")
    return text


def decode_trade(entry: Any) -> TradeRecord:
    if not isinstance(entry, dict):
        raise DecodeError("malformed", f"trade entry is a {type(entry).__name__}")
    block = entry.get("BT", False)
    if not isinstance(block, bool):
        raise DecodeError("malformed", f"BT must be a boolean (got {block!r})")
    return TradeRecord(
        timestamp_ms=_timestamp(entry.get("T"), "T"),
        side=_side(entry.get("S"), "S"),
        size=_decimal_text(entry.get("v"), "v"),
        price=_decimal_text(entry.get("p"), "p"),
        is_block_trade=block,
    )


def decode_liquidation(data: Dict[str, Any]) -> LiquidationRecord:
    return LiquidationRecord(
        timestamp_ms=_timestamp(data.get("updatedTime"), "updatedTime"),
        side=_side(data.get("side"), "side"),
        size=_decimal_text(data.get("size"), "size"),
        price=_decimal_text(data.get("price"), "price"),
    )
