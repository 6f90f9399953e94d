"""
Unit tests for archive writers (backup_home/backup/compression.py).

Tests tar.gz and zip output, entry types and archive path helpers.
"""

import io
import os
import stat
import tarfile
import zipfile
from unittest.mock import patch

import pytest

from backup_home.backup.compression import (
    CompressionError,
    TarGzArchiveWriter,
    ZipArchiveWriter,
    default_backup_path,
    get_archive_extension,
    get_archive_size,
    get_archive_writer_class,
    normalize_compression_level
)
from backup_home.backup.sources import DIRECTORY, FILE, SYMLINK, SourceEntry


MTIME = 1700000000.5


def _file_entry(relative_path, content):
    return SourceEntry(path='/src/' + relative_path, relative_path=relative_path, kind=FILE,
                       size=len(content), mode=0o640, mtime=MTIME)


def _dir_entry(relative_path):
    return SourceEntry(path='/src/' + relative_path, relative_path=relative_path, kind=DIRECTORY,
                       mode=0o755, mtime=MTIME)


def _link_entry(relative_path, target):
    return SourceEntry(path='/src/' + relative_path, relative_path=relative_path, kind=SYMLINK,
                       mode=0o777, mtime=MTIME, link_target=target)


def _write_sample(writer):
    content = b'file content\n' * 10
    with writer:
        writer.add_entry(_dir_entry('docs'))
        writer.add_entry(_file_entry('docs/a.txt', content), io.BytesIO(content))
        writer.add_entry(_link_entry('docs/link', 'a.txt'))
    return content


class TestNormalizeCompressionLevel:
    """Test compression level clamping."""

    @pytest.mark.parametrize("level,expected", [
        (0, 0),
        (9, 9),
        (4, 4),
        (-1, 6),
        (10, 6),
        (None, 6),
    ])
    def test_normalize(self, level, expected):
        assert normalize_compression_level(level) == expected


class TestTarGzArchiveWriter:
    """Test tar.gz archive output."""

    def test_entries_round_trip(self, tmp_path):
        path = str(tmp_path / 'out.tar.gz')
        writer = TarGzArchiveWriter(path, compression_level=6, threads=2)
        content = _write_sample(writer)

        assert writer.entries_written == 3
        with tarfile.open(path, 'r:gz') as tar:
            members = {m.name: m for m in tar.getmembers()}

            assert members['docs'].isdir()
            assert members['docs/a.txt'].isfile()
            assert members['docs/a.txt'].mode == 0o640
            assert members['docs/link'].issym()
            assert members['docs/link'].linkname == 'a.txt'
            assert tar.extractfile('docs/a.txt').read() == content

    def test_mtime_preserved(self, tmp_path):
        path = str(tmp_path / 'out.tar.gz')
        _write_sample(TarGzArchiveWriter(path))

        with tarfile.open(path, 'r:gz') as tar:
            assert tar.getmember('docs/a.txt').mtime == pytest.approx(MTIME, abs=1)

    def test_long_names(self, tmp_path):
        path = str(tmp_path / 'out.tar.gz')
        name = '/'.join(['deeply-nested-directory'] * 10) + '/file.txt'

        with TarGzArchiveWriter(path) as writer:
            writer.add_file(_file_entry(name, b'x'), io.BytesIO(b'x'))

        with tarfile.open(path, 'r:gz') as tar:
            assert tar.getnames() == [name]

    def test_empty_archive_is_valid(self, tmp_path):
        path = str(tmp_path / 'out.tar.gz')
        with TarGzArchiveWriter(path):
            pass

        with tarfile.open(path, 'r:gz') as tar:
            assert tar.getmembers() == []

    def test_unwritable_output(self, tmp_path):
        writer = TarGzArchiveWriter(str(tmp_path / 'missing' / 'out.tar.gz'))

        with pytest.raises(CompressionError) as exc_info:
            writer.open()
        assert 'Failed to create output file' in str(exc_info.value)

    def test_finalize_failure(self, tmp_path):
        path = str(tmp_path / 'out.tar.gz')
        writer = TarGzArchiveWriter(path).open()

        with patch.object(writer._gzip, 'close', side_effect=OSError('disk full')):
            with pytest.raises(CompressionError) as exc_info:
                writer.close()
        assert 'Failed to finalize archive' in str(exc_info.value)
        writer._gzip._executor.shutdown()


class TestZipArchiveWriter:
    """Test zip archive output."""

    def test_entries_round_trip(self, tmp_path):
        path = str(tmp_path / 'out.zip')
        writer = ZipArchiveWriter(path, compression_level=9)
        content = _write_sample(writer)

        with zipfile.ZipFile(path) as zf:
            assert zf.testzip() is None
            infos = {info.filename: info for info in zf.infolist()}

            assert infos['docs/'].is_dir()
            assert zf.read('docs/a.txt') == content
            assert infos['docs/a.txt'].compress_type == zipfile.ZIP_DEFLATED
            assert stat.S_ISLNK(infos['docs/link'].external_attr >> 16)
            assert zf.read('docs/link') == b'a.txt'

    def test_old_mtime_is_clamped(self, tmp_path):
        path = str(tmp_path / 'out.zip')
        entry = SourceEntry(path='/src/old.txt', relative_path='old.txt', kind=FILE, size=3, mtime=0.0)

        with ZipArchiveWriter(path) as writer:
            writer.add_file(entry, io.BytesIO(b'old'))

        with zipfile.ZipFile(path) as zf:
            assert zf.getinfo('old.txt').date_time == (1980, 1, 1, 0, 0, 0)

    def test_short_source_fails(self, tmp_path):
        path = str(tmp_path / 'out.zip')

        with ZipArchiveWriter(path) as writer:
            with pytest.raises(OSError):
                writer.add_file(_file_entry('a.txt', b'0123456789'), io.BytesIO(b'0123'))


class TestArchiveHelpers:
    """Test format selection and path helpers."""

    def test_writer_per_platform(self):
        assert get_archive_writer_class('linux') is TarGzArchiveWriter
        assert get_archive_writer_class('darwin') is TarGzArchiveWriter
        assert get_archive_writer_class('windows') is ZipArchiveWriter

    def test_unsupported_platform(self):
        with pytest.raises(ValueError):
            get_archive_writer_class('beos')

    def test_extensions(self):
        assert get_archive_extension('linux') == 'tar.gz'
        assert get_archive_extension('windows') == 'zip'

    def test_default_backup_path(self, tmp_path):
        assert default_backup_path('alice', 'linux', str(tmp_path)) == os.path.join(str(tmp_path), 'alice.tar.gz')
        assert default_backup_path('bob', 'windows', str(tmp_path)) == os.path.join(str(tmp_path), 'bob.zip')

    def test_default_backup_path_uses_temp_dir(self):
        with patch('backup_home.backup.compression.tempfile.gettempdir', return_value='/var/tmp'):
            assert default_backup_path('alice', 'linux') == os.path.join('/var/tmp', 'alice.tar.gz')

    def test_get_archive_size(self, archive_file):
        assert get_archive_size(str(archive_file)) == archive_file.stat().st_size

    def test_get_archive_size_missing(self, tmp_path):
        with pytest.raises(CompressionError) as exc_info:
            get_archive_size(str(tmp_path / 'nope.tar.gz'))
        assert 'Archive not found' in str(exc_info.value)
