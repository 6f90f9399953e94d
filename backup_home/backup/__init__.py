"""
Backup module for backup-home.

This module handles the core backup functionality including:
- Exclusion pattern matching
- Source tree traversal
- Compression (tar.gz with multi-core gzip, zip)
- Remote transfer (SSH, rclone, S3)
- Execution orchestration
"""

from .executor import BackupExecutor, BackupOptions, BackupResult, BackupError
from .patterns import ExclusionMatcher, build_matcher
from .sources import walk_tree
from .pipeline import create_archive
from .storage import SSHStorage, RcloneStorage, S3Storage, create_remote_storage

__all__ = [
    'BackupExecutor',
    'BackupOptions',
    'BackupResult',
    'BackupError',
    'ExclusionMatcher',
    'build_matcher',
    'walk_tree',
    'create_archive',
    'SSHStorage',
    'RcloneStorage',
    'S3Storage',
    'create_remote_storage'
]
