from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import Dict, Optional, TextIO

from feed_recorder.errors import LogWriteError
from feed_recorder.recorder_types import LogTarget


def _is_empty_text_file(path: Path) -> bool:
    try:
        return path.stat().st_size == 0
    except FileNotFoundError:
        return True


class RecordWriter:
    """Append-only CSV logs, one file per target, header written once.

    Appends to one target are serialized and keep arrival order. Appends to
    different targets may run concurrently.
    """

    def __init__(self, out_dir: str | Path) -> None:
        self.out_dir = Path(out_dir)
        self._files: Dict[str, TextIO] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._open_lock = threading.Lock()
        self._log = logging.getLogger("feed_recorder.writer")

    def path_for(self, target: LogTarget) -> Path:
        return self.out_dir / target.name

    def ensure_log(self, target: LogTarget) -> bool:
        """Create the log with its header if it does not exist yet.

        Returns True when the header was written by this call.
        """
        path = self.path_for(target)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if not _is_empty_text_file(path):
                return False
            with open(path, "a", encoding="utf-8", newline="") as fh:
                fh.write(target.header + "\n")
        except OSError as exc:
            raise LogWriteError(f"cannot create {path}: {exc}") from exc
        self._log.info("Created %s", path)
        return True

    def _handle(self, target: LogTarget) -> TextIO:
        with self._open_lock:
            fh = self._files.get(target.name)
            if fh is None or fh.closed:
                path = self.path_for(target)
                path.parent.mkdir(parents=True, exist_ok=True)
                needs_header = _is_empty_text_file(path)
                fh = open(path, "a", encoding="utf-8", newline="", buffering=1)
                if needs_header:
                    # ensure_log did not run or failed earlier.
                    fh.write(target.header + "\n")
                    self._log.warning("Created %s on first append", path)
                self._files[target.name] = fh
            return fh

    def _write(self, target: LogTarget, line: str) -> None:
        fh = self._handle(target)
        fh.write(line + "\n")
        fh.flush()

    def _lock_for(self, target: LogTarget) -> asyncio.Lock:
        lock = self._locks.get(target.name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[target.name] = lock
        return lock

    async def append(self, target: LogTarget, line: str) -> None:
        """Append one line. Failures raise LogWriteError and are not retried."""
        async with self._lock_for(target):
            try:
                await asyncio.to_thread(self._write, target, line)
            except OSError as exc:
                self._discard(target)
                raise LogWriteError(f"append to {self.path_for(target)} failed: {exc}") from exc

    def _discard(self, target: LogTarget) -> None:
        with self._open_lock:
            fh: Optional[TextIO] = self._files.pop(target.name, None)
        if fh is None:
            return
        try:
            fh.close()
        except OSError:
            self._log.exception("Failed to close %s", self.path_for(target))

    def close(self) -> None:
        with self._open_lock:
            handles = list(self._files.items())
            self._files.clear()
        for name, fh in handles:
            try:
                fh.close()
            except OSError:
                self._log.exception("Failed to close %s", self.out_dir / name)
