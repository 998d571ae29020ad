from __future__ import annotations

import logging

from feed_recorder.classifier import LiquidationEvent, TradeBatch, decode_liquidation, decode_trade
from feed_recorder.errors import DecodeError, LogWriteError
from feed_recorder.log_writer import RecordWriter
from feed_recorder.recorder_types import LIQUIDATION_LOG, TRADE_LOG, ConnectionState, LogTarget


class RecordHandlers:
    """Decode data frames into records and append them, one record at a time.

    A bad entry or a failed write drops only that record; the rest of the
    batch and the stream carry on.
    """

    def __init__(
        self,
        writer: RecordWriter,
        state: ConnectionState,
        trade_target: LogTarget = TRADE_LOG,
        liquidation_target: LogTarget = LIQUIDATION_LOG,
    ) -> None:
        self.writer = writer
        self.state = state
        self.trade_target = trade_target
        self.liquidation_target = liquidation_target
        self.log = logging.getLogger("feed_recorder.recorder")

    async def handle_trade_batch(self, batch: TradeBatch) -> None:
        for idx, entry in enumerate(batch.entries):
            try:
                record = decode_trade(entry)
            except DecodeError as exc:
                self.state.decode_errors += 1
                self.log.warning("Dropping trade entry %d of %d (%s): %r", idx, len(batch.entries), exc, entry)
                continue
            try:
                await self.writer.append(self.trade_target, record.to_line())
            except LogWriteError as exc:
                self.state.write_errors += 1
                self.log.error("Dropping trade record ts=%s: %s", record.timestamp_ms, exc)
                continue
            self.state.trade_rows_written += 1

    async def handle_liquidation(self, event: LiquidationEvent) -> None:
        try:
            record = decode_liquidation(event.data)
        except DecodeError as exc:
            self.state.decode_errors += 1
            self.log.warning("Dropping liquidation (%s): %r", exc, event.data)
            return
        try:
            await self.writer.append(self.liquidation_target, record.to_line())
        except LogWriteError as exc:
            self.state.write_errors += 1
            self.log.error("Dropping liquidation record ts=%s: %s", record.timestamp_ms, exc)
            return
        self.state.liquidation_rows_written += 1
