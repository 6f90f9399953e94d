"""
Multi-core gzip compression.

ParallelGzipWriter splits the byte stream into fixed-size blocks and
compresses each block as an independent gzip member on a thread pool. zlib
releases the GIL while deflating, so blocks are compressed on all cores.
Members are written in order; their concatenation is a valid gzip file that
gzip, tar and Python's gzip/tarfile modules read transparently.
"""

import os
import zlib
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import BinaryIO, Deque, Optional


DEFAULT_BLOCK_SIZE = 1024 * 1024  # 1MB

# zlib wbits value producing a gzip header and trailer
GZIP_WBITS = 16 + zlib.MAX_WBITS


def compress_block(data: bytes, compresslevel: int) -> bytes:
    """
    Compress one block into a complete gzip member.

    Args:
        data: Uncompressed block
        compresslevel: zlib compression level 0-9

    Returns:
        gzip member bytes (header, deflate stream, CRC32 and size trailer)
    """
    compressor = zlib.compressobj(compresslevel, zlib.DEFLATED, GZIP_WBITS)
    return compressor.compress(data) + compressor.flush()


class ParallelGzipWriter:
    """
    Write-only file object producing gzip output using several threads.

    The underlying file object is not closed by close(); callers own it.
    """

    def __init__(
        self,
        fileobj: BinaryIO,
        compresslevel: int = 6,
        threads: Optional[int] = None,
        block_size: int = DEFAULT_BLOCK_SIZE
    ):
        """
        Initialize parallel gzip writer.

        Args:
            fileobj: Binary file object receiving compressed output
            compresslevel: zlib compression level 0-9
            threads: Compression threads (default: all available processors)
            block_size: Uncompressed bytes per gzip member
        """
        if not 0 <= compresslevel <= 9:
            raise ValueError(f"Invalid compression level: {compresslevel}")
        if block_size <= 0:
            raise ValueError(f"Invalid block size: {block_size}")

        self.fileobj = fileobj
        self.compresslevel = compresslevel
        self.threads = threads or os.cpu_count() or 1
        self.block_size = block_size

        self._buffer = bytearray()
        self._pending: Deque[Future] = deque()
        self._max_pending = self.threads * 2
        self._executor = ThreadPoolExecutor(
            max_workers=self.threads,
            thread_name_prefix='gzip'
        )
        self._members_written = 0
        self.bytes_in = 0
        self.closed = False

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:
        """
        Buffer data, submitting every full block for compression.

        Returns:
            Number of bytes accepted
        """
        if self.closed:
            raise ValueError("write to closed ParallelGzipWriter")

        view = memoryview(data).cast('B')
        length = len(view)
        self._buffer += view
        self.bytes_in += length

        while len(self._buffer) >= self.block_size:
            block = bytes(self._buffer[:self.block_size])
            del self._buffer[:self.block_size]
            self._submit(block)

        return length

    def tell(self) -> int:
        """Number of uncompressed bytes written so far."""
        return self.bytes_in

    def flush(self):
        """Compress buffered data and write every pending member."""
        if self.closed:
            return
        if self._buffer:
            block = bytes(self._buffer)
            self._buffer.clear()
            self._submit(block)
        self._drain(0)
        self.fileobj.flush()

    def close(self):
        """
        Finish the gzip stream.

        An empty stream still produces one (empty) gzip member so the output
        is always a valid gzip file.
        """
        if self.closed:
            return
        try:
            self.flush()
            if self._members_written == 0:
                self.fileobj.write(compress_block(b'', self.compresslevel))
                self._members_written += 1
                self.fileobj.flush()
        finally:
            self.closed = True
            self._executor.shutdown(wait=True)

    def _submit(self, block: bytes):
        self._pending.append(self._executor.submit(compress_block, block, self.compresslevel))
        self._drain(self._max_pending)

    def _drain(self, keep: int):
        # Write finished members in submission order until at most `keep` remain
        while len(self._pending) > keep:
            member = self._pending.popleft().result()
            self.fileobj.write(member)
            self._members_written += 1

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
