"""
Throughput reporting for archive writes and uploads.
"""

import logging
import os
import threading
import time
from typing import BinaryIO, Callable, Optional


DEFAULT_REPORT_INTERVAL = 5.0  # seconds

MEGABYTE = 1024 * 1024


def format_megabytes(num_bytes: int) -> str:
    """Format a byte count as megabytes with two decimals."""
    return f"{num_bytes / MEGABYTE:.2f} MB"


class ProgressReader:
    """
    File-like wrapper that logs transfer progress while data is read.

    Every read is forwarded to the wrapped file object unchanged. A progress
    line is logged at most once per interval, and once more when the
    expected total has been read.
    """

    def __init__(
        self,
        fileobj: BinaryIO,
        total: int,
        label: str = 'Upload',
        interval: float = DEFAULT_REPORT_INTERVAL,
        logger: Optional[logging.Logger] = None,
        clock: Callable[[], float] = time.monotonic,
        on_report: Optional[Callable[[int, int], None]] = None
    ):
        """
        Initialize progress reader.

        Args:
            fileobj: Source file object
            total: Expected number of bytes; 0 disables reporting
            label: Prefix for log lines ('Upload', 'Archive', ...)
            interval: Minimum seconds between progress lines
            logger: Logger receiving progress lines
            clock: Monotonic time source
            on_report: Called with (transferred, total) for each report
        """
        self.fileobj = fileobj
        self.total = total
        self.label = label
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.on_report = on_report

        self.transferred = 0
        self.start_time = clock()
        self._last_report = self.start_time
        self._completed = False

    def read(self, size: int = -1) -> bytes:
        data = self.fileobj.read(size)
        self.transferred += len(data)
        self._maybe_report()
        return data

    def readable(self) -> bool:
        return True

    def _maybe_report(self):
        if self.total <= 0 or self._completed:
            return

        now = self.clock()
        finished = self.transferred >= self.total
        if not finished and now - self._last_report < self.interval:
            return

        self._last_report = now
        elapsed = now - self.start_time
        transferred_mb = self.transferred / MEGABYTE
        total_mb = self.total / MEGABYTE
        speed = transferred_mb / elapsed if elapsed > 0 else 0.0

        if finished:
            self._completed = True
            self.logger.info(f"{self.label} completed: {total_mb:.2f} MB ({speed:.2f} MB/s)")
        else:
            percentage = self.transferred / self.total * 100
            self.logger.info(
                f"{self.label} progress: {percentage:.1f}% "
                f"({transferred_mb:.2f}/{total_mb:.2f} MB, {speed:.2f} MB/s)"
            )

        if self.on_report:
            self.on_report(self.transferred, self.total)


class ArchiveSizeMonitor:
    """
    Background thread logging the size of a growing archive file.

    Measures the output file on disk, so the archive write path never
    touches a shared counter.
    """

    def __init__(
        self,
        path: str,
        interval: float = DEFAULT_REPORT_INTERVAL,
        logger: Optional[logging.Logger] = None
    ):
        self.path = path
        self.interval = interval
        self.logger = logger or logging.getLogger(__name__)
        self.start_time = time.monotonic()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name='archive-size-monitor', daemon=True)

    def start(self):
        self.start_time = time.monotonic()
        self._thread.start()

    def stop(self):
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()

    def report(self, final: bool = False):
        """Log the current archive size and average throughput."""
        try:
            size = os.path.getsize(self.path)
        except OSError:
            return

        elapsed = time.monotonic() - self.start_time
        size_mb = size / MEGABYTE
        speed = size_mb / elapsed if elapsed > 0 else 0.0

        if final:
            self.logger.info(f"Final archive size: {size_mb:.2f} MB (average speed: {speed:.2f} MB/s)")
        else:
            self.logger.info(f"Archive size: {size_mb:.2f} MB ({speed:.2f} MB/s)")

    def _run(self):
        while not self._stop.wait(self.interval):
            self.report()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
