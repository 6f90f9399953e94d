"""Command line entry point for backup-home."""

from pathlib import Path

import click

from backup_home import __version__, configure_logging
from backup_home.backup.executor import BackupError, BackupExecutor, BackupOptions
from backup_home.config import Config


def _home_directory():
    return str(Path.home())


@click.command(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--source', '-s', default=_home_directory,
              help='Source directory to backup (defaults to home directory)')
@click.option('--destination', '-d', default=Config.DESTINATION,
              help='Destination for rclone (e.g. "drive:", "gdrive:backup/home") or s3://bucket/prefix')
@click.option('--backup-path', default=Config.BACKUP_PATH,
              help='Custom path for temporary backup file (defaults to system temp directory)')
@click.option('--compression', '-c', type=int, default=Config.COMPRESSION_LEVEL,
              help='Compression level (0-9, default: 6)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.option('--preview', is_flag=True, help='Preview what would be done without actually doing it')
@click.option('--skip-errors/--no-skip-errors', default=True,
              help="Skip files that can't be accessed instead of failing")
@click.option('--skip-upload', is_flag=True, help='Skip uploading the backup archive')
@click.option('--keep-backup', is_flag=True, help='Keep the backup file after uploading')
@click.option('--ignore-excludes', is_flag=True, help='Ignore exclude patterns and backup everything')
@click.option('--backup-only', is_flag=True, help='Create backup archive only, skip all uploads')
@click.option('--workers', type=click.IntRange(min=1), default=Config.WORKERS,
              help='Worker threads for reading and compression (defaults to processor count)')
@click.option('--ssh', 'use_ssh', is_flag=True, help='Use SSH/SFTP upload instead of rclone')
@click.option('--ssh-host', default=Config.SSH_HOST, help='SSH host to upload to')
@click.option('--ssh-port', type=int, default=Config.SSH_PORT, help='SSH port')
@click.option('--ssh-user', default=Config.SSH_USER, help='SSH username')
@click.option('--ssh-password', default=None,
              help='SSH password (not recommended, use key file instead)')
@click.option('--ssh-key', default=Config.SSH_KEY_FILE,
              help='SSH private key file path (defaults to keys in ~/.ssh)')
@click.option('--ssh-remote-path', default=Config.SSH_REMOTE_PATH, help='Remote base path for backups')
@click.option('--strict-host-key', is_flag=True, default=Config.SSH_STRICT_HOST_KEY,
              help='Verify the SSH host key against known_hosts')
@click.option('--log-file', default=Config.LOG_FILE, help='Also write logs to this file (rotated)')
@click.version_option(version=__version__, prog_name='backup-home')
def main(source, destination, backup_path, compression, verbose, preview, skip_errors,
         skip_upload, keep_backup, ignore_excludes, backup_only, workers, use_ssh,
         ssh_host, ssh_port, ssh_user, ssh_password, ssh_key, ssh_remote_path,
         strict_host_key, log_file):
    """Backup home directory to cloud storage."""
    options = BackupOptions(
        source=source,
        destination=destination or '',
        backup_path=backup_path,
        compression_level=compression,
        verbose=verbose,
        skip_on_error=skip_errors,
        skip_upload=skip_upload,
        keep_backup=keep_backup,
        ignore_excludes=ignore_excludes,
        backup_only=backup_only,
        use_ssh=use_ssh,
        ssh_config={
            'host': ssh_host,
            'port': ssh_port,
            'username': ssh_user,
            'password': ssh_password,
            'private_key': ssh_key,
            'remote_path': ssh_remote_path,
            'strict_host_key': strict_host_key,
        },
        workers=workers,
        rclone_binary=Config.RCLONE_BINARY,
        progress_interval=Config.PROGRESS_INTERVAL
    )

    try:
        options.validate()
    except ValueError as e:
        raise click.UsageError(str(e))

    logger = configure_logging(verbose, log_file)
    executor = BackupExecutor(options, logger=logger)

    if preview:
        click.echo()
        for line in executor.preview_lines():
            click.echo(line)
        return

    try:
        executor.execute()
    except BackupError as e:
        raise click.ClickException(str(e)) from e


if __name__ == '__main__':
    main()
