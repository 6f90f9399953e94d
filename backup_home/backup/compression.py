"""
Archive writers for backup archives.

Supports two container formats, chosen by target platform:
- tar.gz: PAX tar streamed through multi-core gzip (Linux, macOS)
- zip: Zip64 with each entry deflated individually (Windows)

Writers are sequential: each entry's header and content are written
together before the next entry begins. Callers sharing a writer between
threads must hold a lock for the duration of one add_*() call.
"""

import os
import stat
import tarfile
import tempfile
import time
import zipfile
from typing import BinaryIO, Dict, Optional, Type

from backup_home.platform import LINUX, MACOS, WINDOWS, current_platform
from .parallel_gzip import ParallelGzipWriter
from .sources import SourceEntry


DEFAULT_COMPRESSION_LEVEL = 6

COPY_BUFFER_SIZE = 1024 * 1024  # 1MB


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


def normalize_compression_level(level: Optional[int]) -> int:
    """
    Clamp a compression level to the supported range.

    Args:
        level: Requested level

    Returns:
        level if it lies in 0-9, otherwise DEFAULT_COMPRESSION_LEVEL
    """
    if level is None or not isinstance(level, int) or not 0 <= level <= 9:
        return DEFAULT_COMPRESSION_LEVEL
    return level


class ArchiveWriter:
    """
    Base class for archive writers.

    Subclasses implement _open(), _close() and the per-entry methods.
    """

    extension = None

    def __init__(self, path: str, compression_level: int = DEFAULT_COMPRESSION_LEVEL,
                 threads: Optional[int] = None):
        """
        Initialize archive writer.

        Args:
            path: Output archive path
            compression_level: Compression level 0-9 (out-of-range values use the default)
            threads: Compression threads where the format supports them
        """
        self.path = path
        self.compression_level = normalize_compression_level(compression_level)
        self.threads = threads or os.cpu_count() or 1
        self.entries_written = 0
        self._is_open = False

    def open(self):
        """
        Create the output file.

        Raises:
            CompressionError: If the output file cannot be created
        """
        try:
            self._open()
        except OSError as e:
            raise CompressionError(f"Failed to create output file {self.path}: {e}") from e
        self._is_open = True
        return self

    def close(self):
        """
        Finalize the archive and close the output file.

        Raises:
            CompressionError: If the compression stream cannot be finalized
        """
        if not self._is_open:
            return
        self._is_open = False
        try:
            self._close()
        except (OSError, tarfile.TarError, zipfile.BadZipFile) as e:
            raise CompressionError(f"Failed to finalize archive {self.path}: {e}") from e

    def add_directory(self, entry: SourceEntry):
        raise NotImplementedError

    def add_symlink(self, entry: SourceEntry):
        raise NotImplementedError

    def add_file(self, entry: SourceEntry, fileobj: BinaryIO):
        """
        Add a regular file, copying exactly entry.size bytes from fileobj.
        """
        raise NotImplementedError

    def add_entry(self, entry: SourceEntry, fileobj: Optional[BinaryIO] = None):
        """Dispatch an entry to the matching add_*() method."""
        if entry.is_directory:
            self.add_directory(entry)
        elif entry.is_symlink:
            self.add_symlink(entry)
        else:
            self.add_file(entry, fileobj)

    def _open(self):
        raise NotImplementedError

    def _close(self):
        raise NotImplementedError

    def __enter__(self):
        if not self._is_open:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class TarGzArchiveWriter(ArchiveWriter):
    """PAX tar archive compressed with ParallelGzipWriter."""

    extension = 'tar.gz'

    def _open(self):
        self._file = open(self.path, 'wb')
        try:
            self._gzip = ParallelGzipWriter(
                self._file,
                compresslevel=self.compression_level,
                threads=self.threads
            )
            self._tar = tarfile.open(
                fileobj=self._gzip,
                mode='w|',
                format=tarfile.PAX_FORMAT
            )
        except Exception:
            self._file.close()
            raise

    def _close(self):
        try:
            self._tar.close()
            self._gzip.close()
        finally:
            self._file.close()

    def _tarinfo(self, entry: SourceEntry) -> tarfile.TarInfo:
        info = tarfile.TarInfo(entry.relative_path)
        info.mode = entry.mode
        info.mtime = entry.mtime
        info.uid = entry.uid
        info.gid = entry.gid
        return info

    def add_directory(self, entry: SourceEntry):
        info = self._tarinfo(entry)
        info.type = tarfile.DIRTYPE
        self._tar.addfile(info)
        self.entries_written += 1

    def add_symlink(self, entry: SourceEntry):
        info = self._tarinfo(entry)
        info.type = tarfile.SYMTYPE
        info.linkname = entry.link_target or ''
        self._tar.addfile(info)
        self.entries_written += 1

    def add_file(self, entry: SourceEntry, fileobj: BinaryIO):
        info = self._tarinfo(entry)
        info.type = tarfile.REGTYPE
        info.size = entry.size
        self._tar.addfile(info, fileobj)
        self.entries_written += 1


# Earliest timestamp representable in a zip header
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)


class ZipArchiveWriter(ArchiveWriter):
    """Zip archive with every entry deflated individually."""

    extension = 'zip'

    def _open(self):
        self._zip = zipfile.ZipFile(
            self.path,
            'w',
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=self.compression_level,
            allowZip64=True
        )

    def _close(self):
        self._zip.close()

    def _zipinfo(self, entry: SourceEntry, name: str, file_type: int) -> zipfile.ZipInfo:
        date_time = time.localtime(entry.mtime)[:6]
        if date_time < ZIP_EPOCH:
            date_time = ZIP_EPOCH

        info = zipfile.ZipInfo(name, date_time=date_time)
        info.external_attr = (file_type | entry.mode) << 16
        info.create_system = 3  # Unix, so external_attr mode bits are honoured
        info.compress_type = zipfile.ZIP_DEFLATED
        info._compresslevel = self.compression_level
        return info

    def add_directory(self, entry: SourceEntry):
        info = self._zipinfo(entry, entry.relative_path.rstrip('/') + '/', stat.S_IFDIR)
        info.external_attr |= 0x10  # MS-DOS directory flag
        info.compress_type = zipfile.ZIP_STORED
        self._zip.writestr(info, b'')
        self.entries_written += 1

    def add_symlink(self, entry: SourceEntry):
        # Info-ZIP convention: the link target is stored as the entry content
        info = self._zipinfo(entry, entry.relative_path, stat.S_IFLNK)
        self._zip.writestr(info, (entry.link_target or '').encode('utf-8'))
        self.entries_written += 1

    def add_file(self, entry: SourceEntry, fileobj: BinaryIO):
        info = self._zipinfo(entry, entry.relative_path, stat.S_IFREG)
        info.file_size = entry.size
        with self._zip.open(info, 'w') as dest:
            _copy_exact(fileobj, dest, entry.size)
        self.entries_written += 1


def _copy_exact(source: BinaryIO, dest: BinaryIO, length: int):
    """Copy exactly length bytes, failing if the source runs short."""
    remaining = length
    while remaining > 0:
        chunk = source.read(min(COPY_BUFFER_SIZE, remaining))
        if not chunk:
            raise OSError(f"unexpected end of data ({remaining} bytes missing)")
        dest.write(chunk)
        remaining -= len(chunk)


_WRITERS: Dict[str, Type[ArchiveWriter]] = {
    LINUX: TarGzArchiveWriter,
    MACOS: TarGzArchiveWriter,
    WINDOWS: ZipArchiveWriter,
}


def get_archive_writer_class(platform: Optional[str] = None) -> Type[ArchiveWriter]:
    """
    Select the archive format for a target platform.

    Args:
        platform: Target platform (defaults to the current one)

    Returns:
        ArchiveWriter subclass

    Raises:
        ValueError: If platform is not supported
    """
    platform = platform or current_platform()
    if platform not in _WRITERS:
        raise ValueError(
            f"Unsupported platform: {platform}. "
            f"Valid options: {list(_WRITERS.keys())}"
        )
    return _WRITERS[platform]


def get_archive_extension(platform: Optional[str] = None) -> str:
    """Archive file extension for a target platform ('tar.gz' or 'zip')."""
    return get_archive_writer_class(platform).extension


def default_backup_path(username: str, platform: Optional[str] = None,
                        temp_dir: Optional[str] = None) -> str:
    """
    Default archive location: {temp_dir}/{username}.{ext}

    Args:
        username: Current username
        platform: Target platform (defaults to the current one)
        temp_dir: Directory for the archive (defaults to the system temp dir)

    Returns:
        Full archive path
    """
    directory = temp_dir or tempfile.gettempdir()
    return os.path.join(directory, f"{username}.{get_archive_extension(platform)}")


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Args:
        archive_path: Path to the archive file

    Returns:
        File size in bytes

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError as e:
        raise CompressionError(f"Archive not found: {archive_path}") from e
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}") from e

