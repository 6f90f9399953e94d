"""
Shared pytest fixtures for backup-home tests.

This module provides fixtures for:
- Sample home directory trees
- Exclusion matchers
- A captured test logger
- Mock fixtures for external services (S3, SSH, rclone)
"""

import logging
import os
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from backup_home.backup.patterns import ExclusionMatcher


@pytest.fixture
def logger():
    """Logger for components under test; records are visible through caplog."""
    test_logger = logging.getLogger('backup_home.tests')
    test_logger.setLevel(logging.DEBUG)
    return test_logger


@pytest.fixture
def empty_matcher():
    """Matcher without any patterns."""
    return ExclusionMatcher([])


@pytest.fixture
def home_tree(tmp_path):
    """
    Create a small home directory.

    Creates:
    - notes.txt
    - docs/report.md
    - docs/empty/ (empty directory)
    - project/src/main.py
    - project/node_modules/pkg/index.js (excluded by default rules)
    - .cache/thumbs/a.bin (excluded by default rules)
    - run/agent.sock (excluded by default rules)
    - run/agent.sock.bak
    - link-to-notes -> notes.txt
    """
    home = tmp_path / 'home'
    home.mkdir()

    (home / 'notes.txt').write_text('remember the milk')

    docs = home / 'docs'
    docs.mkdir()
    (docs / 'report.md').write_text('# Report\n' * 50)
    (docs / 'empty').mkdir()

    src = home / 'project' / 'src'
    src.mkdir(parents=True)
    (src / 'main.py').write_text('print("hello")\n')

    pkg = home / 'project' / 'node_modules' / 'pkg'
    pkg.mkdir(parents=True)
    (pkg / 'index.js').write_text('module.exports = 1;\n')

    thumbs = home / '.cache' / 'thumbs'
    thumbs.mkdir(parents=True)
    (thumbs / 'a.bin').write_bytes(os.urandom(256))

    run = home / 'run'
    run.mkdir()
    (run / 'agent.sock').write_bytes(b'not really a socket')
    (run / 'agent.sock.bak').write_bytes(b'backup copy')

    os.symlink('notes.txt', home / 'link-to-notes')

    return home


@pytest.fixture
def linux_matcher():
    """Matcher with a subset of the Linux default patterns."""
    return ExclusionMatcher([
        './**/*.sock',
        './**/node_modules',
        './.cache',
    ])


@pytest.fixture
def archive_file(tmp_path):
    """A small file standing in for a finished archive."""
    path = tmp_path / 'alice.tar.gz'
    path.write_bytes(b'archive data' * 1000)
    return path


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns the patched SSHClient class; its instance's open_sftp() returns
    a MagicMock SFTP client that records written bytes in `written`.
    """
    with patch('backup_home.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_sftp.written = bytearray()

        remote_file = MagicMock()
        remote_file.__enter__.return_value = remote_file
        remote_file.__exit__.return_value = False
        remote_file.write.side_effect = lambda data: mock_sftp.written.extend(data)
        mock_sftp.open.return_value = remote_file

        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture
def mock_rclone():
    """
    Mock subprocess.Popen for rclone.

    The fake process collects stdin bytes in `received` and exits with 0.
    """
    with patch('backup_home.backup.storage.subprocess.Popen') as mock_popen:
        process = MagicMock()
        process.received = bytearray()
        process.stdin.write.side_effect = lambda data: process.received.extend(data)
        process.stderr.read.return_value = b''
        process.wait.return_value = 0
        mock_popen.return_value = process
        yield mock_popen


@pytest.fixture(autouse=True)
def reset_package_logger():
    """Undo configure_logging() so caplog sees package records in every test."""
    yield
    package_logger = logging.getLogger('backup_home')
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    package_logger.setLevel(logging.NOTSET)
    package_logger.propagate = True
