"""
Unit tests for backup executor (backup_home/backup/executor.py).

Tests BackupExecutor for orchestrating complete backup workflows.
"""

import logging
import os
import tarfile
import tempfile
from unittest.mock import MagicMock, patch

import pytest

from backup_home.backup.executor import (
    BackupError,
    BackupExecutor,
    BackupOptions,
    execute_backup
)
from backup_home.backup.compression import CompressionError
from backup_home.backup.storage import StorageError


@pytest.fixture
def backup_path(tmp_path):
    out = tmp_path / 'out'
    out.mkdir()
    return str(out / 'alice.tar.gz')


def _options(source, backup_path, **overrides):
    values = {
        'source': str(source),
        'backup_path': backup_path,
        'platform': 'linux',
        'workers': 2,
    }
    values.update(overrides)
    return BackupOptions(**values)


def _names(path):
    with tarfile.open(path, 'r:gz') as tar:
        return set(tar.getnames())


class TestBackupOptions:
    """Test option validation."""

    def test_destination_required_for_sync_upload(self):
        with pytest.raises(ValueError) as exc_info:
            BackupOptions(source='/home/alice').validate()
        assert 'destination' in str(exc_info.value)

    def test_ssh_host_required(self):
        with pytest.raises(ValueError) as exc_info:
            BackupOptions(source='/home/alice', use_ssh=True, ssh_config={'host': ''}).validate()
        assert 'SSH host is required' in str(exc_info.value)

    @pytest.mark.parametrize("overrides", [
        {'backup_only': True},
        {'skip_upload': True},
        {'destination': 'drive:'},
        {'use_ssh': True, 'ssh_config': {'host': 'nas'}},
    ])
    def test_valid_options(self, overrides):
        BackupOptions(source='/home/alice', **overrides).validate()


class TestBackupExecutor:
    """Test BackupExecutor workflows."""

    def test_executor_initialization(self, home_tree, backup_path):
        executor = BackupExecutor(_options(home_tree, backup_path, compression_level=42))

        assert executor.platform == 'linux'
        assert executor.compression_level == 6
        assert executor.archive_path == backup_path

    def test_default_archive_path(self, home_tree):
        options = BackupOptions(source=str(home_tree), platform='windows')

        with patch('backup_home.backup.executor.get_username', return_value='bob'):
            executor = BackupExecutor(options)

        assert executor.archive_path == os.path.join(tempfile.gettempdir(), 'bob.zip')

    def test_backup_only(self, home_tree, backup_path):
        result = BackupExecutor(_options(home_tree, backup_path, backup_only=True)).execute()

        assert result.archive_path == backup_path
        assert os.path.exists(backup_path)
        assert not result.uploaded
        assert not result.archive_removed
        assert result.archive_size == os.path.getsize(backup_path)
        assert result.stats.files > 0
        assert 'notes.txt' in _names(backup_path)

    def test_skip_upload(self, home_tree, backup_path):
        with patch('backup_home.backup.executor.create_remote_storage') as mock_factory:
            result = BackupExecutor(_options(home_tree, backup_path, skip_upload=True,
                                             destination='drive:')).execute()

        mock_factory.assert_not_called()
        assert os.path.exists(backup_path)
        assert not result.uploaded

    def test_default_exclusions_applied(self, home_tree, backup_path):
        BackupExecutor(_options(home_tree, backup_path, backup_only=True)).execute()

        names = _names(backup_path)
        assert 'project/src/main.py' in names
        assert not any('node_modules' in name for name in names)
        assert '.cache' not in names

    def test_ignore_excludes(self, home_tree, backup_path):
        BackupExecutor(_options(home_tree, backup_path, backup_only=True, ignore_excludes=True)).execute()

        names = _names(backup_path)
        assert 'project/node_modules/pkg/index.js' in names
        assert '.cache/thumbs/a.bin' in names

    def test_upload_and_cleanup(self, home_tree, backup_path, mock_rclone):
        result = BackupExecutor(_options(home_tree, backup_path, destination='drive:')).execute()

        assert result.uploaded
        assert result.remote_location == 'drive:alice.tar.gz'
        assert result.archive_removed
        assert not os.path.exists(backup_path)
        assert len(mock_rclone.return_value.received) == result.archive_size

    def test_keep_backup(self, home_tree, backup_path, mock_rclone):
        result = BackupExecutor(_options(home_tree, backup_path, destination='drive:',
                                         keep_backup=True)).execute()

        assert result.uploaded
        assert not result.archive_removed
        assert os.path.exists(backup_path)

    def test_ssh_upload(self, home_tree, backup_path):
        ssh_config = {'host': 'nas', 'username': 'alice', 'remote_path': '/backups/'}

        with patch('backup_home.backup.executor.SSHStorage') as mock_ssh_storage:
            mock_ssh_storage.return_value.upload.return_value = '/backups/laptop/Users/2024-01-01/alice.tar.gz'
            result = BackupExecutor(_options(home_tree, backup_path, use_ssh=True,
                                             ssh_config=ssh_config)).execute()

        assert mock_ssh_storage.call_args.args[0] == ssh_config
        mock_ssh_storage.return_value.upload.assert_called_once_with(backup_path)
        assert result.remote_location == '/backups/laptop/Users/2024-01-01/alice.tar.gz'
        assert not os.path.exists(backup_path)

    def test_upload_failure_keeps_archive(self, home_tree, backup_path):
        storage = MagicMock()
        storage.upload.side_effect = StorageError('rclone copy failed with status 1: quota exceeded')

        with patch('backup_home.backup.executor.create_remote_storage', return_value=storage):
            with pytest.raises(BackupError) as exc_info:
                BackupExecutor(_options(home_tree, backup_path, destination='drive:')).execute()

        error = exc_info.value
        assert str(error).startswith('Failed to upload backup:')
        assert 'quota exceeded' in str(error)
        assert error.phase == 'upload'
        assert error.archive_path == backup_path
        assert os.path.exists(backup_path)

    def test_archive_failure_skips_upload(self, home_tree, backup_path):
        error = CompressionError('Failed to create output file: disk full')
        with patch('backup_home.backup.executor.create_archive', side_effect=error), \
                patch('backup_home.backup.executor.create_remote_storage') as mock_factory:
            with pytest.raises(BackupError) as exc_info:
                BackupExecutor(_options(home_tree, backup_path, destination='drive:')).execute()

        assert str(exc_info.value).startswith('Failed to create backup:')
        assert exc_info.value.phase == 'archive'
        mock_factory.assert_not_called()

    def test_archive_failure_removes_partial_archive(self, home_tree, backup_path, caplog):
        def partial_archive(source, archive_path, *args, **kwargs):
            with open(archive_path, 'wb') as f:
                f.write(b'\x1f\x8b truncated')
            raise CompressionError('Archive aborted: disk full')

        with patch('backup_home.backup.executor.create_archive', side_effect=partial_archive), \
                caplog.at_level(logging.INFO):
            with pytest.raises(BackupError):
                BackupExecutor(_options(home_tree, backup_path, backup_only=True)).execute()

        assert not os.path.exists(backup_path)
        assert 'Removed partial backup file' in caplog.text

    def test_real_archive_failure_leaves_nothing_to_reuse(self, home_tree, backup_path):
        with patch('backup_home.backup.pipeline.ArchivePipeline._open_entry',
                   side_effect=PermissionError(13, 'Permission denied')):
            with pytest.raises(BackupError):
                BackupExecutor(_options(home_tree, backup_path, backup_only=True,
                                        skip_on_error=False)).execute()

        assert not os.path.exists(backup_path)

    def test_missing_source(self, tmp_path, backup_path):
        with pytest.raises(BackupError) as exc_info:
            BackupExecutor(_options(tmp_path / 'missing', backup_path, backup_only=True)).execute()

        assert 'Failed to create backup' in str(exc_info.value)
        assert 'does not exist' in str(exc_info.value)

    def test_invalid_options(self, home_tree, backup_path):
        with pytest.raises(BackupError) as exc_info:
            BackupExecutor(_options(home_tree, backup_path)).execute()
        assert exc_info.value.phase == 'config'

    def test_existing_archive_is_reused(self, home_tree, backup_path, caplog):
        with open(backup_path, 'wb') as f:
            f.write(b'previous run')

        with patch('backup_home.backup.executor.create_archive') as mock_create, caplog.at_level(logging.INFO):
            result = BackupExecutor(_options(home_tree, backup_path, backup_only=True)).execute()

        mock_create.assert_not_called()
        assert result.reused_archive
        assert result.archive_size == len(b'previous run')
        with open(backup_path, 'rb') as f:
            assert f.read() == b'previous run'
        assert 'Backup file already exists' in caplog.text
        assert any(record.levelno == logging.WARNING and 'using existing file' in record.getMessage()
                   for record in caplog.records)

    def test_execute_backup(self, home_tree, backup_path):
        result = execute_backup(_options(home_tree, backup_path, backup_only=True))
        assert os.path.exists(result.archive_path)


class TestPreview:
    """Test preview_lines summaries."""

    def test_preview_sync_upload(self, home_tree, backup_path):
        lines = BackupExecutor(_options(home_tree, backup_path, destination='drive:')).preview_lines()

        assert f'Source: {home_tree}' in lines
        assert 'Destination: drive:' in lines
        assert '2. Upload to: drive:' in lines
        assert '3. Clean up temporary files' in lines

    def test_preview_ssh(self, home_tree, backup_path):
        ssh_config = {'host': 'nas', 'username': 'alice', 'remote_path': '/backups/'}
        lines = BackupExecutor(_options(home_tree, backup_path, use_ssh=True, ssh_config=ssh_config,
                                        keep_backup=True, ignore_excludes=True)).preview_lines()

        assert 'SSH Destination: alice@nas:/backups/[hostname]/Users/[date]/' in lines
        assert '2. Upload via SSH to: alice@nas' in lines
        assert '3. Keep backup file after upload' in lines
        assert 'Ignore excludes: Yes (backing up everything)' in lines

    def test_preview_backup_only(self, home_tree, backup_path):
        lines = BackupExecutor(_options(home_tree, backup_path, backup_only=True)).preview_lines()

        assert '2. Keep backup file locally (backup-only mode)' in lines
        assert not any(line.startswith('Destination') for line in lines)

    def test_preview_does_not_touch_filesystem(self, home_tree, backup_path):
        BackupExecutor(_options(home_tree, backup_path, backup_only=True)).preview_lines()
        assert not os.path.exists(backup_path)
