import os

from backup_home.backup.compression import DEFAULT_COMPRESSION_LEVEL


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    """Defaults for the backup-home command, overridable from the environment"""

    # Archive
    COMPRESSION_LEVEL = _env_int('BACKUP_HOME_COMPRESSION', DEFAULT_COMPRESSION_LEVEL)
    BACKUP_PATH = os.environ.get('BACKUP_HOME_BACKUP_PATH') or None
    WORKERS = _env_int('BACKUP_HOME_WORKERS', 0) or None
    PROGRESS_INTERVAL = 5.0

    # SSH upload
    SSH_HOST = os.environ.get('BACKUP_HOME_SSH_HOST', '')
    SSH_PORT = _env_int('BACKUP_HOME_SSH_PORT', 22)
    SSH_USER = os.environ.get('BACKUP_HOME_SSH_USER') or os.environ.get('USER') or os.environ.get('USERNAME', '')
    SSH_KEY_FILE = os.environ.get('BACKUP_HOME_SSH_KEY') or None
    SSH_REMOTE_PATH = os.environ.get('BACKUP_HOME_SSH_REMOTE_PATH', '/backups/Machines/')
    SSH_STRICT_HOST_KEY = os.environ.get('BACKUP_HOME_SSH_STRICT_HOST_KEY', 'false').lower() == 'true'

    # Sync upload
    DESTINATION = os.environ.get('BACKUP_HOME_DESTINATION', '')
    RCLONE_BINARY = os.environ.get('RCLONE_BINARY', 'rclone')

    # Logging
    LOG_FILE = os.environ.get('BACKUP_HOME_LOG_FILE') or None
    LOG_MAX_BYTES = 10485760  # 10MB
    LOG_BACKUP_COUNT = 10
