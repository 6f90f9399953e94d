"""
Remote transfer handlers for backup archives.

Supports:
- SSHStorage: Upload over SFTP into a dated directory on a remote host
- RcloneStorage: Stream into any rclone remote via `rclone rcat`
- S3Storage: Upload to AWS S3 (s3://bucket/prefix destinations)

Every handler pushes the archive bytes through a ProgressReader. None of
them retries, and a failed upload may leave a partial file behind.
"""

import logging
import os
import posixpath
import socket
import subprocess
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, RejectPolicy, SSHClient

from .progress import ProgressReader


DEFAULT_SSH_PORT = 22
DEFAULT_SSH_TIMEOUT = 30  # seconds, connect and handshake only

# Largest payload paramiko sends in one SFTP write request
SFTP_PACKET_SIZE = 32 * 1024

DEFAULT_KEY_NAMES = ('id_ed25519', 'id_rsa', 'id_ecdsa')

RCLONE_CHUNK_SIZE = 1024 * 1024  # 1MB

S3_MULTIPART_THRESHOLD = 100 * 1024 * 1024  # 100MB
S3_CHUNK_SIZE = 10 * 1024 * 1024  # 10MB


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class AuthenticationError(StorageError):
    """Raised when no usable SSH credential is available or accepted."""
    pass


def dated_remote_directory(base_path: str, hostname: Optional[str] = None,
                           now: Optional[datetime] = None) -> str:
    """
    Build the remote directory for today's backup.

    Format: {base_path}/{hostname}/Users/{YYYY-MM-DD}

    Args:
        base_path: Remote base path
        hostname: Local hostname (defaults to socket.gethostname())
        now: Timestamp used for the date component

    Returns:
        POSIX remote directory path
    """
    hostname = hostname or socket.gethostname()
    now = now or datetime.now()
    return posixpath.join(base_path, hostname, 'Users', now.strftime('%Y-%m-%d'))


def find_default_keys(home: Optional[str] = None) -> List[str]:
    """
    List private keys present in the default ~/.ssh locations.

    Args:
        home: Home directory (defaults to the current user's)

    Returns:
        Existing key paths in preference order
    """
    ssh_dir = Path(home or Path.home()) / '.ssh'
    return [str(ssh_dir / name) for name in DEFAULT_KEY_NAMES if (ssh_dir / name).is_file()]


class SSHStorage:
    """
    Handler for uploading backups over SSH/SFTP.

    Authentication is tried in this order: explicit key file, password,
    default key files. Host keys are accepted without verification unless
    strict_host_key is enabled.
    """

    def __init__(self, config: Dict[str, Any], logger: Optional[logging.Logger] = None):
        """
        Initialize SSH storage handler.

        Args:
            config: SSH configuration dict with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional)
                - private_key: Path to private key file (optional)
                - remote_path: Remote base path for backups
                - strict_host_key: Verify host key against known_hosts (default False)
                - timeout: Connect timeout in seconds (default 30)
            logger: Logger for progress output
        """
        self.host = config.get('host') or config.get('hostname')
        self.port = int(config.get('port') or DEFAULT_SSH_PORT)
        self.username = config.get('username') or config.get('user')
        self.password = config.get('password')
        self.private_key_path = config.get('private_key') or config.get('key_file')
        self.remote_path = config.get('remote_path') or '.'
        self.strict_host_key = bool(config.get('strict_host_key', False))
        self.timeout = config.get('timeout', DEFAULT_SSH_TIMEOUT)
        self.logger = logger or logging.getLogger(__name__)

        self.ssh_client = None
        self.sftp_client = None

    def _auth_kwargs(self) -> Dict[str, Any]:
        """
        Select credentials for the connection.

        Raises:
            AuthenticationError: If no credential is available
        """
        if self.private_key_path:
            key_path = Path(self.private_key_path).expanduser()
            if not key_path.exists():
                raise AuthenticationError(f"Private key not found: {self.private_key_path}")
            self.logger.debug(f"Using SSH key from: {key_path}")
            return {'key_filename': str(key_path), 'look_for_keys': False, 'allow_agent': False}

        if self.password:
            self.logger.debug("Using password authentication")
            return {'password': self.password, 'look_for_keys': False, 'allow_agent': False}

        self.logger.debug("Checking for SSH keys in default locations")
        keys = find_default_keys()
        if not keys:
            raise AuthenticationError("No SSH keys found in default locations")
        self.logger.debug(f"Using SSH keys: {', '.join(keys)}")
        return {'key_filename': keys, 'look_for_keys': False, 'allow_agent': False}

    def _connect(self):
        """
        Establish SSH and SFTP sessions.

        Raises:
            AuthenticationError: If authentication fails
            StorageError: If connection fails
        """
        if not self.host:
            raise StorageError("SSH host is required")

        connect_kwargs = {
            'hostname': self.host,
            'port': self.port,
            'username': self.username,
            'timeout': self.timeout,
            'banner_timeout': self.timeout,
            'auth_timeout': self.timeout,
        }
        connect_kwargs.update(self._auth_kwargs())

        try:
            self.ssh_client = SSHClient()
            if self.strict_host_key:
                self.ssh_client.load_system_host_keys()
                self.ssh_client.set_missing_host_key_policy(RejectPolicy())
            else:
                self.logger.warning(
                    f"Host key verification disabled for {self.host}; "
                    f"use strict host key checking to verify the server identity"
                )
                self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            self.ssh_client.connect(**connect_kwargs)
            self.sftp_client = self.ssh_client.open_sftp()

        except paramiko.AuthenticationException as e:
            raise AuthenticationError(f"SSH authentication failed: {e}") from e
        except paramiko.SSHException as e:
            raise StorageError(f"SSH connection failed: {e}") from e
        except OSError as e:
            raise StorageError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

    def _makedirs(self, remote_dir: str):
        """Create a remote directory and its parents (mkdir -p)."""
        current = '/' if remote_dir.startswith('/') else ''
        for part in [p for p in remote_dir.split('/') if p]:
            current = posixpath.join(current, part) if current else part
            try:
                self.sftp_client.stat(current)
            except IOError:
                self.sftp_client.mkdir(current)

    def upload(self, local_path: str, remote_dir: Optional[str] = None) -> str:
        """
        Upload archive into the dated remote directory.

        Args:
            local_path: Path to local archive file
            remote_dir: Override for the remote directory

        Returns:
            Full remote file path

        Raises:
            AuthenticationError: If no credential works
            StorageError: If any step of the upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        self.logger.info(f"Starting SSH upload to {self.username}@{self.host}:{self.port}")
        try:
            self._connect()

            remote_dir = remote_dir or dated_remote_directory(self.remote_path)
            self.logger.debug(f"Creating remote directory: {remote_dir}")
            try:
                self._makedirs(remote_dir)
            except IOError as e:
                raise StorageError(f"Failed to create remote directory {remote_dir}: {e}") from e

            remote_file = posixpath.join(remote_dir, os.path.basename(local_path))
            self.logger.info(f"Uploading to: {remote_file}")
            self._send(local_path, remote_file)

            self.logger.info(f"Remote file: {self.host}:{remote_file}")
            return remote_file
        finally:
            self.cleanup()

    def _send(self, local_path: str, remote_file: str):
        file_size = os.path.getsize(local_path)

        try:
            handle = self.sftp_client.open(remote_file, 'wb')
        except IOError as e:
            raise StorageError(f"Failed to create remote file {remote_file}: {e}") from e

        try:
            with open(local_path, 'rb') as local_file, handle:
                # Pipelined writes keep many requests in flight per file
                handle.set_pipelined(True)
                reader = ProgressReader(local_file, file_size, logger=self.logger)
                while True:
                    chunk = reader.read(SFTP_PACKET_SIZE)
                    if not chunk:
                        break
                    handle.write(chunk)
        except (IOError, paramiko.SSHException) as e:
            raise StorageError(f"Failed to copy file to {remote_file}: {e}") from e

    def cleanup(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (IOError, paramiko.SSHException) as e:
                self.logger.debug(f"Error closing SFTP session: {e}")
            self.sftp_client = None

        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None


class RcloneStorage:
    """
    Handler for uploading through rclone.

    The archive is piped into `rclone rcat` so progress is measured on the
    bytes actually handed to rclone.
    """

    def __init__(self, destination: str, binary: str = 'rclone', extra_args: Optional[List[str]] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize rclone storage handler.

        Args:
            destination: rclone destination (e.g. 'drive:', 'gdrive:backup/home')
            binary: rclone executable
            extra_args: Additional rclone arguments
            logger: Logger for progress output
        """
        if not destination:
            raise StorageError("Destination is required for rclone upload")
        self.destination = destination
        self.binary = binary
        self.extra_args = list(extra_args or [])
        self.logger = logger or logging.getLogger(__name__)

    def remote_target(self, filename: str) -> str:
        """Destination path for a file name ('drive:' -> 'drive:name')."""
        if self.destination.endswith((':', '/')):
            return f"{self.destination}{filename}"
        return f"{self.destination}/{filename}"

    def upload(self, local_path: str) -> str:
        """
        Upload archive with rclone.

        Args:
            local_path: Path to local archive file

        Returns:
            rclone remote path of the uploaded file

        Raises:
            StorageError: If rclone cannot be started or reports failure
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        target = self.remote_target(os.path.basename(local_path))
        file_size = os.path.getsize(local_path)
        cmd = [self.binary, 'rcat', '--size', str(file_size)] + self.extra_args + [target]

        self.logger.info(f"Uploading backup to: {target}")
        self.logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            raise StorageError(f"Failed to start rclone: {e}") from e

        # rclone may fill the stderr pipe while still reading stdin
        stderr_chunks = []
        stderr_reader = threading.Thread(
            target=lambda: stderr_chunks.append(process.stderr.read()),
            name='rclone-stderr',
            daemon=True
        )
        stderr_reader.start()

        complete = False
        try:
            with open(local_path, 'rb') as local_file:
                reader = ProgressReader(local_file, file_size, logger=self.logger)
                while True:
                    chunk = reader.read(RCLONE_CHUNK_SIZE)
                    if not chunk:
                        break
                    process.stdin.write(chunk)
            process.stdin.close()
            complete = True
        except BrokenPipeError:
            # rclone exited early; its exit status and stderr explain why
            self.logger.debug("rclone closed its input before the upload finished")
        except OSError as e:
            process.kill()
            process.wait()
            stderr_reader.join()
            raise StorageError(f"Failed to stream archive to rclone: {e}") from e

        returncode = process.wait()
        stderr_reader.join()
        stderr = b''.join(stderr_chunks).decode('utf-8', errors='replace').strip()
        if returncode != 0:
            raise StorageError(f"rclone copy failed with status {returncode}: {stderr}")
        if not complete:
            raise StorageError(f"rclone stopped reading before the upload finished: {stderr}")

        return target


class S3Storage:
    """
    Handler for uploading backups to AWS S3.

    Keys are {prefix}/{filename}; credentials come from the standard boto3
    chain (environment, shared config, instance role) unless given.
    """

    def __init__(self, bucket_name: str, prefix: str = '', region: Optional[str] = None,
                 access_key: Optional[str] = None, secret_key: Optional[str] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix inside the bucket
            region: AWS region
            access_key: AWS access key ID (optional)
            secret_key: AWS secret access key (optional)
            logger: Logger for progress output
        """
        self.bucket_name = bucket_name
        self.prefix = prefix.strip('/')
        self.region = region
        self.logger = logger or logging.getLogger(__name__)

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}") from e

    @classmethod
    def from_url(cls, url: str, logger: Optional[logging.Logger] = None) -> 'S3Storage':
        """Create a handler from an s3://bucket/prefix destination."""
        location = url[len('s3://'):]
        bucket, _, prefix = location.partition('/')
        if not bucket:
            raise StorageError(f"Invalid S3 destination: {url}")
        return cls(bucket, prefix, region=os.environ.get('AWS_DEFAULT_REGION'), logger=logger)

    def upload(self, local_path: str) -> str:
        """
        Upload archive to S3.

        Args:
            local_path: Path to local archive file

        Returns:
            s3:// URL of the uploaded object

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        filename = os.path.basename(local_path)
        s3_key = f"{self.prefix}/{filename}" if self.prefix else filename
        file_size = os.path.getsize(local_path)

        self.logger.info(f"Uploading backup to: s3://{self.bucket_name}/{s3_key}")
        try:
            with open(local_path, 'rb') as f:
                reader = ProgressReader(f, file_size, logger=self.logger)
                if file_size > S3_MULTIPART_THRESHOLD:
                    self._multipart_upload(reader, s3_key)
                else:
                    self.s3_client.put_object(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        Body=reader.read()
                    )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}") from e

        return f"s3://{self.bucket_name}/{s3_key}"

    def _multipart_upload(self, reader: ProgressReader, s3_key: str):
        """
        Upload a large file in S3_CHUNK_SIZE parts.

        The multipart upload is aborted if any part fails.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']
        parts = []

        try:
            part_number = 1
            while True:
                data = reader.read(S3_CHUNK_SIZE)
                if not data:
                    break

                response = self.s3_client.upload_part(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data
                )
                parts.append({
                    'PartNumber': part_number,
                    'ETag': response['ETag']
                })
                part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )
        except (ClientError, BotoCoreError, OSError):
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                self.logger.warning(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise


def create_remote_storage(destination: str, rclone_binary: str = 'rclone',
                          logger: Optional[logging.Logger] = None):
    """
    Factory function selecting the sync handler for a destination string.

    Args:
        destination: 's3://bucket/prefix' or any rclone destination
        rclone_binary: rclone executable for non-S3 destinations
        logger: Logger passed to the handler

    Returns:
        S3Storage or RcloneStorage instance

    Raises:
        StorageError: If destination is empty or invalid
    """
    if not destination:
        raise StorageError("Destination is required")
    if destination.startswith('s3://'):
        return S3Storage.from_url(destination, logger=logger)
    return RcloneStorage(destination, binary=rclone_binary, logger=logger)
