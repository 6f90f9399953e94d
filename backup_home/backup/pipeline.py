"""
Producer/consumer pipeline that fills an archive from a source tree.

One producer (the calling thread) walks the tree and writes directory and
symlink entries as they are discovered. Regular files go onto a bounded
queue consumed by a pool of worker threads. Workers read file content
outside the lock and hold the writer lock only while one entry's header and
content are written, so reads overlap while writes stay sequential.

Regular file entries may therefore appear in any order relative to each
other; the archive's byte layout is not reproducible between runs.
"""

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass, field, replace
from typing import BinaryIO, Iterable, List, Optional

from .compression import ArchiveWriter, CompressionError, get_archive_writer_class
from .patterns import ExclusionMatcher
from .progress import DEFAULT_REPORT_INTERVAL, ArchiveSizeMonitor
from .sources import SourceEntry, SourceError, walk_tree


BUFFER_SIZE = 1024 * 1024  # 1MB


class EntryReadError(Exception):
    """Raised when a source file cannot be opened or read."""
    pass


@dataclass
class PipelineStats:
    """Counters for one archive run."""

    directories: int = 0
    files: int = 0
    symlinks: int = 0
    bytes_read: int = 0
    skipped: List[str] = field(default_factory=list)
    truncated: List[str] = field(default_factory=list)
    archive_size: int = 0
    duration: float = 0.0

    @property
    def entries(self) -> int:
        return self.directories + self.files + self.symlinks


class BufferPool:
    """
    Pool of reusable fixed-size byte buffers.

    get() never blocks: it hands out a pooled buffer or allocates a new one.
    """

    def __init__(self, buffer_size: int = BUFFER_SIZE):
        self.buffer_size = buffer_size
        self._buffers = queue.LifoQueue()

    def get(self) -> bytearray:
        try:
            return self._buffers.get_nowait()
        except queue.Empty:
            return bytearray(self.buffer_size)

    def put(self, buffer: bytearray):
        self._buffers.put(buffer)


class _PaddedReader:
    """
    Reader that always yields exactly `size` bytes.

    A read error or premature end of file is recorded and the rest of the
    entry is filled with zero bytes, keeping the archive structurally valid.
    """

    def __init__(self, fileobj: BinaryIO, size: int, buffer: bytearray):
        self.fileobj = fileobj
        self.remaining = size
        self.buffer = memoryview(buffer)
        self.error: Optional[Exception] = None

    def read(self, size: int = -1) -> bytes:
        if self.remaining <= 0:
            return b''
        if size < 0 or size > self.remaining:
            size = self.remaining
        size = min(size, len(self.buffer))

        # Callers such as tarfile treat a short read as a truncated stream
        n = 0
        while n < size and self.error is None:
            try:
                count = self.fileobj.readinto(self.buffer[n:size])
            except OSError as e:
                self.error = e
                break
            if not count:
                self.error = EOFError(f"file shrank, {self.remaining - n} bytes missing")
                break
            n += count

        if self.error is not None:
            self.buffer[n:size] = bytes(size - n)
            n = size

        self.remaining -= n
        return bytes(self.buffer[:n])


class ArchivePipeline:
    """
    Archive a source tree into an ArchiveWriter using a worker pool.
    """

    def __init__(
        self,
        source: str,
        writer: ArchiveWriter,
        matcher: ExclusionMatcher,
        workers: Optional[int] = None,
        skip_on_error: bool = True,
        skip_paths: Iterable[str] = (),
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize archive pipeline.

        Args:
            source: Backup root directory
            writer: Open archive writer shared by all workers
            matcher: Exclusion matcher for the traversal
            workers: Worker threads (default: all available processors)
            skip_on_error: Log and skip unreadable files instead of aborting
            skip_paths: Absolute paths never archived (the output archive)
            logger: Logger for progress and skipped entries
        """
        self.source = os.path.abspath(source)
        self.writer = writer
        self.matcher = matcher
        self.workers = workers or os.cpu_count() or 1
        self.skip_on_error = skip_on_error
        self.skip_paths = list(skip_paths)
        self.logger = logger or logging.getLogger(__name__)

        self.stats = PipelineStats()
        self.buffer_pool = BufferPool()

        self._queue = queue.Queue(maxsize=self.workers * 2)
        self._write_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._abort = threading.Event()
        self._errors: List[BaseException] = []

    def run(self) -> PipelineStats:
        """
        Walk the source tree and archive every non-excluded entry.

        Returns:
            PipelineStats for the run

        Raises:
            CompressionError: On an archive write failure, or on the first
                unreadable file when skip_on_error is disabled
        """
        start = time.monotonic()
        threads = [
            threading.Thread(target=self._worker, name=f'archive-worker-{i}', daemon=True)
            for i in range(self.workers)
        ]
        for thread in threads:
            thread.start()

        try:
            self._produce()
        except BaseException as e:
            self._fail(e)
        finally:
            for _ in threads:
                self._queue.put(None)
            for thread in threads:
                thread.join()

        self.stats.duration = time.monotonic() - start

        if self._errors:
            error = self._errors[0]
            if isinstance(error, CompressionError):
                raise error
            if isinstance(error, (EntryReadError, SourceError)):
                raise CompressionError(str(error)) from error
            raise CompressionError(f"Error during archiving: {error}") from error

        return self.stats

    def _produce(self):
        for entry in walk_tree(self.source, self.matcher, self.skip_paths, self.logger):
            if self._abort.is_set():
                break

            self.logger.debug(f"Including: {entry.relative_path}")

            if entry.is_file:
                self._queue.put(entry)
                continue

            # Structural entries are written at discovery time
            with self._write_lock:
                self.writer.add_entry(entry)
            with self._stats_lock:
                if entry.is_directory:
                    self.stats.directories += 1
                else:
                    self.stats.symlinks += 1

    def _worker(self):
        while True:
            entry = self._queue.get()
            if entry is None:
                return
            if self._abort.is_set():
                continue

            try:
                self._archive_file(entry)
            except EntryReadError as e:
                if self.skip_on_error:
                    self.logger.warning(f"Skipping file {entry.path}: {e.__cause__ or e}")
                    with self._stats_lock:
                        self.stats.skipped.append(entry.relative_path)
                else:
                    self.logger.error(f"Failed to read file {entry.path}: {e.__cause__ or e}")
                    self._fail(e)
            except BaseException as e:
                self.logger.error(f"Failed to write file {entry.path} to archive: {e}")
                self._fail(e)

    def _archive_file(self, entry: SourceEntry):
        """
        Read one file and write it to the archive.

        Files that fit in a single buffer are read completely before the
        lock is taken and archived with their actual length. Larger files
        are streamed under the lock.
        """
        buffer = self.buffer_pool.get()
        try:
            try:
                fileobj = self._open_entry(entry)
            except OSError as e:
                raise EntryReadError(f"Failed to open file {entry.path}") from e

            with fileobj:
                if entry.size <= len(buffer):
                    self._archive_buffered(entry, fileobj, buffer)
                else:
                    self._archive_streamed(entry, fileobj, buffer)
        finally:
            self.buffer_pool.put(buffer)

    def _archive_buffered(self, entry: SourceEntry, fileobj: BinaryIO, buffer: bytearray):
        view = memoryview(buffer)
        length = 0
        try:
            while length < len(view):
                n = fileobj.readinto(view[length:])
                if not n:
                    break
                length += n
        except OSError as e:
            raise EntryReadError(f"Failed to read file {entry.path}") from e

        if length > entry.size:
            # Grew since it was listed; archive the size seen at discovery
            length = entry.size
        if length != entry.size:
            self.logger.debug(f"File {entry.path} changed size during backup ({entry.size} -> {length})")
            entry = replace(entry, size=length)

        data = _MemoryReader(view[:length])
        with self._write_lock:
            self.writer.add_file(entry, data)
        self._count_file(length)

    def _archive_streamed(self, entry: SourceEntry, fileobj: BinaryIO, buffer: bytearray):
        reader = _PaddedReader(fileobj, entry.size, buffer)
        with self._write_lock:
            self.writer.add_file(entry, reader)

        if reader.error is not None:
            if not self.skip_on_error:
                raise EntryReadError(f"Failed to read file {entry.path}") from reader.error
            self.logger.error(
                f"File {entry.path} could not be read completely ({reader.error}); "
                f"archived entry is zero-padded"
            )
            with self._stats_lock:
                self.stats.truncated.append(entry.relative_path)
        self._count_file(entry.size)

    def _open_entry(self, entry: SourceEntry) -> BinaryIO:
        return open(entry.path, 'rb')

    def _count_file(self, size: int):
        with self._stats_lock:
            self.stats.files += 1
            self.stats.bytes_read += size

    def _fail(self, error: BaseException):
        with self._stats_lock:
            self._errors.append(error)
        self._abort.set()


class _MemoryReader:
    """Minimal read() interface over a memoryview."""

    def __init__(self, view: memoryview):
        self.view = view
        self.position = 0

    def read(self, size: int = -1) -> bytes:
        end = len(self.view) if size < 0 else min(len(self.view), self.position + size)
        data = bytes(self.view[self.position:end])
        self.position = end
        return data


def create_archive(
    source: str,
    archive_path: str,
    matcher: ExclusionMatcher,
    compression_level: int = 6,
    platform: Optional[str] = None,
    skip_on_error: bool = True,
    workers: Optional[int] = None,
    progress_interval: float = DEFAULT_REPORT_INTERVAL,
    logger: Optional[logging.Logger] = None
) -> PipelineStats:
    """
    Create a compressed archive of a source directory.

    Args:
        source: Backup root directory
        archive_path: Output archive path
        matcher: Exclusion matcher
        compression_level: Compression level 0-9
        platform: Target platform selecting the archive format
        skip_on_error: Log and skip unreadable files instead of aborting
        workers: Worker and compression threads (default: all processors)
        progress_interval: Seconds between archive size reports
        logger: Logger for progress output

    Returns:
        PipelineStats for the run

    Raises:
        CompressionError: If the archive cannot be created or finalized
    """
    logger = logger or logging.getLogger(__name__)

    if not os.path.isdir(source):
        raise CompressionError(f"Source directory does not exist: {source}")

    writer_class = get_archive_writer_class(platform)
    writer = writer_class(archive_path, compression_level, threads=workers)

    logger.info(f"Using exclude patterns: [{', '.join(matcher.patterns)}]")

    writer.open()
    monitor = ArchiveSizeMonitor(archive_path, progress_interval, logger)
    try:
        with monitor:
            pipeline = ArchivePipeline(
                source,
                writer,
                matcher,
                workers=workers,
                skip_on_error=skip_on_error,
                skip_paths=[archive_path],
                logger=logger
            )
            stats = pipeline.run()
    except BaseException:
        # The pipeline failure is the one reported
        try:
            writer.close()
        except CompressionError as close_error:
            logger.error(f"Failed to finalize archive after error: {close_error}")
        raise
    writer.close()

    stats.archive_size = os.path.getsize(archive_path)
    monitor.report(final=True)

    if stats.skipped:
        logger.warning(f"Skipped {len(stats.skipped)} unreadable file(s)")
    logger.info(
        f"Archived {stats.files} files, {stats.directories} directories, "
        f"{stats.symlinks} symlinks"
    )
    return stats
