"""
Exclusion pattern matching for backup traversal.

Patterns are evaluated against paths relative to the backup root, using
forward slashes regardless of platform. Three kinds are supported:

- Prefix:    ./.cache            excludes .cache and everything below it
- Anywhere:  ./**/node_modules   excludes any node_modules directory
- Extension: ./**/*.sock         excludes files whose name ends in .sock
"""

import fnmatch
import logging
from typing import Iterable, List, Optional, Tuple

from backup_home.platform import get_exclusion_rules, get_username


class ExclusionMatcher:
    """
    Decides whether a path relative to the backup root is excluded.

    The matcher is immutable after construction; is_excluded() is a pure
    function of the pattern set and its arguments.
    """

    def __init__(
        self,
        patterns: Iterable[str],
        case_sensitive: bool = True,
        enabled: bool = True,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize exclusion matcher.

        Args:
            patterns: Exclusion patterns (e.g. './**/node_modules', '*.sock')
            case_sensitive: False for case-insensitive matching (Windows)
            enabled: False to bypass all patterns ("ignore excludes" mode)
            logger: Logger for malformed pattern warnings
        """
        self.logger = logger or logging.getLogger(__name__)
        self.case_sensitive = case_sensitive
        self.enabled = enabled
        self._compiled: List[Tuple[str, Tuple[str, ...]]] = []

        for pattern in patterns:
            segments = self._compile(pattern)
            if segments is None:
                self.logger.warning(f"Ignoring malformed exclude pattern: {pattern!r}")
                continue
            self._compiled.append((pattern, segments))

    @property
    def patterns(self) -> List[str]:
        """Valid patterns in the order they were given."""
        return [pattern for pattern, _ in self._compiled]

    def is_excluded(self, relative_path: str, is_directory: bool = False) -> bool:
        """
        Check if a path should be omitted from the archive.

        Args:
            relative_path: Path relative to the backup root
            is_directory: Whether the path is a directory. Directories and
                files are matched alike; callers use this to prune subtrees.

        Returns:
            True if any pattern matches
        """
        return self.match(relative_path) is not None

    def match(self, relative_path: str) -> Optional[str]:
        """
        Find the first pattern matching a relative path.

        Args:
            relative_path: Path relative to the backup root

        Returns:
            The matching pattern string, or None
        """
        if not self.enabled:
            return None

        segments = normalize_path(relative_path)
        if not segments:
            # The root itself is never excluded
            return None

        if not self.case_sensitive:
            segments = [segment.lower() for segment in segments]

        for pattern, pattern_segments in self._compiled:
            if self._match_segments(pattern_segments, segments):
                return pattern
        return None

    def _compile(self, pattern: str) -> Optional[Tuple[str, ...]]:
        if not isinstance(pattern, str):
            return None

        segments = normalize_path(pattern)
        if not segments:
            return None
        if pattern.startswith('/') or pattern.replace('\\', '/').startswith('//'):
            return None
        if len(pattern) >= 2 and pattern[1] == ':':
            # Drive-letter path
            return None

        for segment in segments:
            if segment == '..':
                return None
            if segment.count('[') != segment.count(']'):
                return None

        if not self.case_sensitive:
            segments = [segment.lower() for segment in segments]
        return tuple(segments)

    def _match_segments(self, pattern: Tuple[str, ...], path: List[str]) -> bool:
        """
        Match pattern segments against a prefix of the path segments.

        Iterative wildcard matching: on a mismatch we resume from the most
        recent '**', letting it absorb one more path segment.
        """
        pi = 0
        si = 0
        resume = None

        while True:
            if pi == len(pattern):
                return True

            segment = pattern[pi]

            if segment == '**':
                pi += 1
                resume = (pi, si)
                continue

            if _is_extension_segment(segment):
                # Extension patterns are terminal and look only at the name
                return si < len(path) and path[-1].endswith(segment[1:])

            if si < len(path) and fnmatch.fnmatchcase(path[si], segment):
                pi += 1
                si += 1
                continue

            if resume is None:
                return False

            resume_pi, resume_si = resume
            if resume_si >= len(path):
                return False
            resume = (resume_pi, resume_si + 1)
            pi, si = resume


def normalize_path(path: str) -> List[str]:
    """
    Split a relative path into forward-slash segments.

    Empty and '.' segments are dropped, so './a//b' and 'a/b' are equivalent
    and the root ('.' or '') yields an empty list.

    Args:
        path: Relative path, with either separator

    Returns:
        List of path segments
    """
    return [
        segment
        for segment in path.replace('\\', '/').split('/')
        if segment and segment != '.'
    ]


def _is_extension_segment(segment: str) -> bool:
    if not segment.startswith('*') or '.' not in segment:
        return False
    rest = segment[1:]
    return not any(c in rest for c in '*?[')


def build_matcher(
    platform: Optional[str] = None,
    username: Optional[str] = None,
    ignore_excludes: bool = False,
    logger: Optional[logging.Logger] = None
) -> ExclusionMatcher:
    """
    Create the exclusion matcher for a run.

    Args:
        platform: Target platform (defaults to the current one)
        username: Username embedded in patterns (defaults to get_username())
        ignore_excludes: Bypass every pattern
        logger: Logger passed to the matcher

    Returns:
        ExclusionMatcher for the platform's default patterns
    """
    rules = get_exclusion_rules(platform)
    return ExclusionMatcher(
        rules.patterns(username or get_username()),
        case_sensitive=rules.case_sensitive,
        enabled=not ignore_excludes,
        logger=logger
    )
