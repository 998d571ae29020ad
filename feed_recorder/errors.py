from __future__ import annotations


class RecorderError(Exception):
    """Base class for recorder failures."""


class DecodeError(RecorderError):
    """Frame or record could not be decoded. The frame is dropped."""

    def __init__(self, reason: str, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        super().__init__(f"{reason}: {detail}" if detail else reason)


class LogWriteError(RecorderError):
    """Creating or appending to a record log failed. The record is dropped."""


class LivenessFailure(RecorderError):
    """The connection stopped answering heartbeats or never confirmed its subscription."""


class TransportFailure(RecorderError):
    """The websocket failed to open, closed, or rejected a send."""


class RestartBoundExceeded(RecorderError):
    """Too many consecutive reconnects without reaching the live phase."""

    def __init__(self, restart_count: int) -> None:
        self.restart_count = int(restart_count)
        super().__init__(f"restart bound exceeded after {self.restart_count} consecutive restarts")

    @property
    def exit_code(self) -> int:
        # 0 is reserved for graceful shutdown.
        return max(1, self.restart_count)
