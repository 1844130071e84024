#!/usr/bin/env python3
# SPDX-License-Identifier: MIT
"""
Tail readers for growing diagnostic sources.

TailReader follows a log file: it remembers a byte offset, reacts to
filesystem change notifications from watchdog, and forwards only whole
newly-appended lines. StreamReader forwards lines pushed by a transport.
"""

import asyncio
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from circuitwatch.debug_logger import DebugLogger, get_logger
from circuitwatch.models import LogEntry, SourceUnavailableError


LineCallback = Callable[[str], None]
ErrorCallback = Callable[[SourceUnavailableError], None]


class _ChangeHandler(FileSystemEventHandler):
    """Forwards events for one file from watchdog's thread to the loop."""

    def __init__(self, reader: "TailReader", loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._reader = reader
        self._loop = loop

    def _handle(self, event) -> None:
        if event.is_directory:
            return
        paths = {str(getattr(event, "src_path", "")), str(getattr(event, "dest_path", ""))}
        if str(self._reader.path) not in paths:
            return
        self._loop.call_soon_threadsafe(self._reader.notify)

    def on_modified(self, event):
        self._handle(event)

    def on_created(self, event):
        self._handle(event)

    def on_moved(self, event):
        self._handle(event)

    def on_deleted(self, event):
        self._handle(event)


class TailReader:
    """
    Incremental reader for an append-only log file.

    Each byte is read at most once: a read covers [offset, size) and then
    moves the offset to size, so coalesced or repeated notifications for
    one write deliver nothing twice. A trailing partial line is held back
    and prefixed onto the next read.

    Attributes:
        path: Log file being followed
        mode: Mode label used in errors
    """

    def __init__(
        self,
        path: Path,
        on_line: LineCallback,
        on_error: Optional[ErrorCallback] = None,
        mode: str = "",
        encoding: str = "utf-8",
        logger: Optional[DebugLogger] = None,
    ) -> None:
        self.path = Path(path).resolve()
        self.mode = mode
        self.encoding = encoding
        self._on_line = on_line
        self._on_error = on_error
        self._logger = logger or get_logger()
        self._offset = 0
        self._inode: Optional[int] = None
        self._partial = b""
        self._observer: Optional[Observer] = None
        self._generation = 0
        self._reading = False
        self._pending = False
        self._running = False

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def running(self) -> bool:
        return self._running

    # -------------------------------------------------------------------------
    # Synchronous core
    # -------------------------------------------------------------------------

    def seek(self, from_start: bool = False) -> None:
        """
        Position the reader at the start or current end of the file.

        Raises:
            SourceUnavailableError: If the file cannot be stat'ed
        """
        try:
            stat = self.path.stat()
        except OSError as e:
            raise SourceUnavailableError(self.mode, f"{self.path}: {e}") from e
        self._inode = stat.st_ino
        self._offset = 0 if from_start else stat.st_size
        self._partial = b""

    def _read_chunk(
        self, offset: int, partial: bytes, inode: Optional[int]
    ) -> Tuple[List[str], int, bytes, int]:
        """
        Read [offset, size) without touching reader state.

        Restarts from offset 0 if the file was replaced (inode change)
        or truncated (size below offset).

        Returns:
            (lines, new_offset, new_partial, inode)
        """
        try:
            stat = self.path.stat()
            if (inode is not None and stat.st_ino != inode) or stat.st_size < offset:
                offset, partial = 0, b""
            if stat.st_size <= offset:
                return [], offset, partial, stat.st_ino
            with open(self.path, "rb") as f:
                f.seek(offset)
                data = f.read(stat.st_size - offset)
        except OSError as e:
            raise SourceUnavailableError(self.mode, f"{self.path}: {e}") from e

        chunks = (partial + data).split(b"\n")
        new_partial = chunks.pop()
        lines = [c.rstrip(b"\r").decode(self.encoding, errors="replace") for c in chunks]
        self._logger.trace_read(str(self.path), offset, len(data), len(lines))
        return lines, offset + len(data), new_partial, stat.st_ino

    def read_new(self) -> List[str]:
        """
        Read whatever was appended since the last read.

        Returns:
            Complete lines (without newline), oldest first

        Raises:
            SourceUnavailableError: If the file disappears or cannot be read
        """
        lines, self._offset, self._partial, self._inode = self._read_chunk(
            self._offset, self._partial, self._inode
        )
        return lines

    def flush(self) -> List[str]:
        """
        Return the held-back partial line, if any, as a final line.

        For one-shot reads of a file whose last line has no newline;
        a follower keeps the partial until the next append completes it.
        """
        partial, self._partial = self._partial, b""
        if not partial:
            return []
        return [partial.rstrip(b"\r").decode(self.encoding, errors="replace")]

    def poll(self) -> int:
        """
        Read and forward new lines synchronously.

        Returns:
            Number of lines forwarded
        """
        lines = self.read_new()
        for line in lines:
            self._on_line(line)
        return len(lines)

    # -------------------------------------------------------------------------
    # Event-driven operation
    # -------------------------------------------------------------------------

    def start(self, from_start: bool = False) -> None:
        """
        Begin following the file from its current end (or its start).

        Must be called with a running asyncio loop; change notifications
        are delivered onto that loop.
        """
        loop = asyncio.get_running_loop()
        self.seek(from_start=from_start)
        self._generation += 1
        self._running = True

        observer = Observer()
        observer.schedule(_ChangeHandler(self, loop), str(self.path.parent), recursive=False)
        observer.daemon = True
        observer.start()
        self._observer = observer

        if from_start:
            self.notify()

    def stop(self) -> None:
        """Stop following; any read already in flight is discarded."""
        self._running = False
        self._generation += 1
        self._pending = False
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None

    def notify(self) -> None:
        """Handle a change notification (called on the loop thread)."""
        if not self._running:
            return
        self._pending = True
        if not self._reading:
            asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        """Read until no notification is pending; one drain runs at a time."""
        self._reading = True
        generation = self._generation
        try:
            while self._pending and generation == self._generation:
                self._pending = False
                try:
                    result = await asyncio.to_thread(
                        self._read_chunk, self._offset, self._partial, self._inode
                    )
                except SourceUnavailableError as e:
                    if generation == self._generation and self._on_error is not None:
                        self._on_error(e)
                    return
                if generation != self._generation:
                    return
                lines, self._offset, self._partial, self._inode = result
                for line in lines:
                    if generation != self._generation:
                        return
                    self._on_line(line)
        finally:
            self._reading = False
            if self._pending and self._running:
                asyncio.get_running_loop().create_task(self._drain())


class StreamReader:
    """
    Forwards whole log entries pushed by a transport, in arrival order.

    The transport delivers complete units, so no offset bookkeeping or
    partial-line handling is needed.
    """

    def __init__(self, on_entry: Callable[[LogEntry], None], mode: str = "") -> None:
        self.mode = mode
        self._on_entry = on_entry
        self._open = False

    @property
    def running(self) -> bool:
        return self._open

    def open(self) -> None:
        self._open = True

    def close(self) -> None:
        self._open = False

    def feed(self, entry: LogEntry) -> bool:
        """Forward one entry if the reader is open and the mode matches."""
        if not self._open:
            return False
        if self.mode and entry.mode != self.mode:
            return False
        self._on_entry(entry)
        return True
