"""
Platform detection and default exclusion rules.

Each supported target has its own set of default exclude patterns. The rules
are selected once at startup with get_exclusion_rules() and never change
during a run.
"""

import os
import sys
from pathlib import Path
from typing import List, Optional


LINUX = 'linux'
MACOS = 'darwin'
WINDOWS = 'windows'

SUPPORTED_PLATFORMS = (LINUX, MACOS, WINDOWS)


def current_platform() -> str:
    """
    Detect the platform this process runs on.

    Returns:
        One of 'linux', 'darwin', 'windows'. Other POSIX systems are
        treated as 'linux'.
    """
    if sys.platform.startswith('win'):
        return WINDOWS
    if sys.platform == 'darwin':
        return MACOS
    return LINUX


def get_username() -> str:
    """
    Resolve the current username from the environment.

    Falls back to the name of the home directory when neither USER nor
    USERNAME is set.
    """
    username = os.environ.get('USER') or os.environ.get('USERNAME')
    if not username:
        username = Path.home().name
    return username


class ExclusionRules:
    """Default exclude patterns for one target platform."""

    platform = None
    case_sensitive = True
    archive_extension = 'tar.gz'

    # Patterns may reference {username}
    default_patterns: List[str] = []

    def patterns(self, username: str) -> List[str]:
        """
        Build the platform's pattern list.

        Args:
            username: Current username

        Returns:
            List of exclude patterns
        """
        patterns = [pattern.format(username=username) for pattern in self.default_patterns]
        # Never archive a previous run's default output file
        patterns.append(f"./**/{username}.{self.archive_extension}")
        return patterns


class LinuxExclusionRules(ExclusionRules):
    platform = LINUX
    default_patterns = [
        './**/*.sock',
        './**/.build',
        './**/.venv',
        './**/__worktrees',
        './**/node_modules',
        './**/target',
        './.Trash',
        './.cache',
        './.cargo',
        './.local/share/Trash',
        './.npm',
        './.rustup',
        './.vscode/extensions',
        './Downloads',
        './snap',
        './go',
    ]


class MacOSExclusionRules(ExclusionRules):
    platform = MACOS
    default_patterns = [
        './**/*.sock',
        './**/.build',
        './**/.venv',
        './**/__worktrees',
        './**/node_modules',
        './**/target',
        './**/.DS_Store',
        './.Trash',
        './.cache',
        './.cargo',
        './.npm',
        './.rustup',
        './.vscode/extensions',
        './Downloads',
        './Library/Caches',
        './Library/Containers/com.docker.docker',
        './Library/Developer/CoreSimulator',
        './Library/Developer/Xcode/DerivedData',
        './Library/Logs',
        './go',
    ]


class WindowsExclusionRules(ExclusionRules):
    platform = WINDOWS
    case_sensitive = False
    archive_extension = 'zip'
    default_patterns = [
        './**/*.tmp',
        './**/node_modules',
        './**/.venv',
        './**/target',
        './AppData/Local/Temp',
        './AppData/Local/Packages',
        './AppData/Local/Microsoft/Windows/INetCache',
        './AppData/Local/CrashDumps',
        './.cargo',
        './.rustup',
        './.vscode/extensions',
        './Downloads',
        './OneDrive - {username}',
        './ntuser.dat*',
    ]


_RULES = {
    LINUX: LinuxExclusionRules,
    MACOS: MacOSExclusionRules,
    WINDOWS: WindowsExclusionRules,
}


def get_exclusion_rules(platform: Optional[str] = None) -> ExclusionRules:
    """
    Select the exclusion rules for a platform.

    Args:
        platform: Target platform (defaults to the current one)

    Returns:
        ExclusionRules instance

    Raises:
        ValueError: If platform is not supported
    """
    platform = platform or current_platform()
    if platform not in _RULES:
        raise ValueError(
            f"Unsupported platform: {platform}. "
            f"Valid options: {list(_RULES.keys())}"
        )
    return _RULES[platform]()

