"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate the source directory and options
2. Create the compressed archive (reused if it already exists)
3. Upload via SSH or the sync capability (unless skipped)
4. Remove the local archive after a confirmed upload (unless kept)

Each phase reports failure as a single BackupError; an archive that was
built but failed to upload is always left on disk.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from backup_home.platform import current_platform, get_username
from .compression import (
    CompressionError,
    default_backup_path,
    get_archive_size,
    normalize_compression_level,
)
from .patterns import build_matcher
from .pipeline import PipelineStats, create_archive
from .progress import DEFAULT_REPORT_INTERVAL, format_megabytes
from .storage import SSHStorage, StorageError, create_remote_storage


class BackupError(Exception):
    """Raised when a backup phase (archive creation or upload) fails."""

    def __init__(self, message: str, phase: str, archive_path: Optional[str] = None):
        super().__init__(message)
        self.phase = phase
        self.archive_path = archive_path


@dataclass
class BackupOptions:
    """Options for one backup run."""

    source: str
    destination: str = ''
    backup_path: Optional[str] = None
    compression_level: int = 6
    verbose: bool = False
    skip_on_error: bool = True
    skip_upload: bool = False
    keep_backup: bool = False
    ignore_excludes: bool = False
    backup_only: bool = False
    use_ssh: bool = False
    ssh_config: Dict[str, Any] = field(default_factory=dict)
    workers: Optional[int] = None
    platform: Optional[str] = None
    rclone_binary: str = 'rclone'
    progress_interval: float = DEFAULT_REPORT_INTERVAL

    @property
    def upload_enabled(self) -> bool:
        return not (self.skip_upload or self.backup_only)

    def validate(self):
        """
        Check that the selected upload mode has what it needs.

        Raises:
            ValueError: If a required setting is missing
        """
        if not self.upload_enabled:
            return
        if self.use_ssh:
            if not self.ssh_config.get('host'):
                raise ValueError("SSH host is required when using SSH upload")
        elif not self.destination:
            raise ValueError(
                'required option "destination" not set '
                '(use --ssh for SSH upload or --backup-only for local backup)'
            )


@dataclass
class BackupResult:
    """Outcome of a backup run."""

    archive_path: str
    archive_size: int = 0
    reused_archive: bool = False
    uploaded: bool = False
    remote_location: Optional[str] = None
    archive_removed: bool = False
    stats: Optional[PipelineStats] = None


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one invocation.
    """

    def __init__(self, options: BackupOptions, logger: Optional[logging.Logger] = None):
        """
        Initialize backup executor.

        Args:
            options: BackupOptions for this run
            logger: Logger injected into every component
        """
        self.options = options
        self.logger = logger or logging.getLogger(__name__)
        self.platform = options.platform or current_platform()
        self.compression_level = normalize_compression_level(options.compression_level)
        self.archive_path = options.backup_path or default_backup_path(get_username(), self.platform)

    def execute(self) -> BackupResult:
        """
        Execute the backup.

        Returns:
            BackupResult describing what was produced and where it went

        Raises:
            BackupError: If archive creation or upload fails
        """
        options = self.options
        try:
            options.validate()
        except ValueError as e:
            raise BackupError(str(e), phase='config') from e

        result = self._create_backup()

        if options.backup_only:
            self.logger.info(f"Backup-only mode. Backup file is available at: {result.archive_path}")
            return result

        if options.skip_upload:
            self.logger.info(f"Upload skipped. Backup file is available at: {result.archive_path}")
            return result

        try:
            result.remote_location = self._upload(result.archive_path)
        except StorageError as e:
            self.logger.error(f"Upload failed; backup file kept at: {result.archive_path}")
            raise BackupError(
                f"Failed to upload backup: {e}",
                phase='upload',
                archive_path=result.archive_path
            ) from e
        result.uploaded = True

        if options.keep_backup:
            self.logger.info(f"Keeping backup file at: {result.archive_path}")
        else:
            result.archive_removed = self._remove_archive(result.archive_path)

        return result

    def _create_backup(self) -> BackupResult:
        options = self.options
        source = os.path.abspath(os.path.expanduser(options.source))

        if not os.path.isdir(source):
            raise BackupError(f"Failed to create backup: source directory does not exist: {source}",
                              phase='archive')

        result = BackupResult(archive_path=self.archive_path)

        if os.path.exists(self.archive_path):
            self.logger.warning(
                f"Backup file already exists: {self.archive_path}; skipping backup creation "
                f"and using existing file (delete it to create a fresh archive)"
            )
            result.reused_archive = True
            result.archive_size = os.path.getsize(self.archive_path)
            return result

        self.logger.info(f"Creating backup of: {source}")
        self.logger.info(f"Backup file: {self.archive_path}")
        self.logger.info(f"Using compression level: {self.compression_level}")
        if options.ignore_excludes:
            self.logger.info("Ignoring exclude patterns - backing up everything")

        matcher = build_matcher(
            self.platform,
            ignore_excludes=options.ignore_excludes,
            logger=self.logger
        )

        try:
            result.stats = create_archive(
                source,
                self.archive_path,
                matcher,
                compression_level=self.compression_level,
                platform=self.platform,
                skip_on_error=options.skip_on_error,
                workers=options.workers,
                progress_interval=options.progress_interval,
                logger=self.logger
            )
            result.archive_size = get_archive_size(self.archive_path)
        except CompressionError as e:
            self._remove_partial_archive()
            raise BackupError(
                f"Failed to create backup: {e}",
                phase='archive',
                archive_path=self.archive_path
            ) from e

        self.logger.info(f"Archive created: {os.path.basename(self.archive_path)} "
                         f"({format_megabytes(result.archive_size)})")
        return result

    def _upload(self, archive_path: str) -> str:
        if self.options.use_ssh:
            storage = SSHStorage(self.options.ssh_config, logger=self.logger)
        else:
            storage = create_remote_storage(
                self.options.destination,
                rclone_binary=self.options.rclone_binary,
                logger=self.logger
            )
        return storage.upload(archive_path)

    def _remove_archive(self, archive_path: str) -> bool:
        try:
            os.remove(archive_path)
        except OSError as e:
            self.logger.warning(f"Failed to cleanup backup file: {e}")
            return False
        self.logger.debug(f"Removed backup file: {archive_path}")
        return True

    def _remove_partial_archive(self):
        # A half-written archive would be reused by the next run
        if not os.path.exists(self.archive_path):
            return
        try:
            os.remove(self.archive_path)
        except OSError as e:
            self.logger.warning(f"Failed to remove partial backup file {self.archive_path}: {e}")
            return
        self.logger.info(f"Removed partial backup file: {self.archive_path}")

    def preview_lines(self) -> List[str]:
        """
        Describe what execute() would do without doing it.

        Returns:
            Human-readable summary lines
        """
        options = self.options
        ssh = options.ssh_config
        lines = [
            'Preview summary:',
            '---------------',
            f"Source: {options.source}",
        ]
        if options.upload_enabled:
            if options.use_ssh:
                lines.append(
                    f"SSH Destination: {ssh.get('username')}@{ssh.get('host')}:"
                    f"{ssh.get('remote_path', '')}[hostname]/Users/[date]/"
                )
            else:
                lines.append(f"Destination: {options.destination}")
        lines.append(f"Backup file: {self.archive_path}")
        lines.append(f"Compression level: {self.compression_level}")
        if options.ignore_excludes:
            lines.append('Ignore excludes: Yes (backing up everything)')

        lines.append('')
        lines.append('This would:')
        lines.append(f"1. Create backup archive of: {options.source}")
        if options.backup_only:
            lines.append('2. Keep backup file locally (backup-only mode)')
        elif options.skip_upload:
            lines.append('2. Skip upload (backup file will be preserved)')
        else:
            if options.use_ssh:
                lines.append(f"2. Upload via SSH to: {ssh.get('username')}@{ssh.get('host')}")
            else:
                lines.append(f"2. Upload to: {options.destination}")
            if options.keep_backup:
                lines.append('3. Keep backup file after upload')
            else:
                lines.append('3. Clean up temporary files')
        return lines


def execute_backup(options: BackupOptions, logger: Optional[logging.Logger] = None) -> BackupResult:
    """
    Run a backup with the given options.

    Args:
        options: BackupOptions for this run
        logger: Logger injected into every component

    Returns:
        BackupResult

    Raises:
        BackupError: If a phase fails
    """
    executor = BackupExecutor(options, logger=logger)
    return executor.execute()
