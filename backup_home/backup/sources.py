"""
Source tree traversal for backup operations.

walk_tree() enumerates every entry below a backup root exactly once,
depth-first, consulting an ExclusionMatcher before descending. Unreadable
entries are logged and skipped; a single bad path never aborts a backup.
"""

import logging
import os
import stat
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional, Tuple

from .patterns import ExclusionMatcher


FILE = 'file'
DIRECTORY = 'directory'
SYMLINK = 'symlink'


class SourceError(Exception):
    """Raised when the backup source cannot be traversed at all."""
    pass


@dataclass(frozen=True)
class SourceEntry:
    """One filesystem node discovered during traversal."""

    path: str
    relative_path: str
    kind: str
    size: int = 0
    mode: int = 0o644
    mtime: float = 0.0
    link_target: Optional[str] = None
    uid: int = 0
    gid: int = 0

    @property
    def is_file(self) -> bool:
        return self.kind == FILE

    @property
    def is_directory(self) -> bool:
        return self.kind == DIRECTORY

    @property
    def is_symlink(self) -> bool:
        return self.kind == SYMLINK

    @classmethod
    def from_stat(cls, path: str, relative_path: str, st: os.stat_result,
                  link_target: Optional[str] = None) -> Optional['SourceEntry']:
        """
        Build an entry from lstat() results.

        Returns:
            SourceEntry, or None for sockets, FIFOs and device nodes
        """
        if stat.S_ISLNK(st.st_mode):
            kind = SYMLINK
        elif stat.S_ISDIR(st.st_mode):
            kind = DIRECTORY
        elif stat.S_ISREG(st.st_mode):
            kind = FILE
        else:
            return None

        return cls(
            path=path,
            relative_path=relative_path,
            kind=kind,
            size=st.st_size if kind == FILE else 0,
            mode=stat.S_IMODE(st.st_mode),
            mtime=st.st_mtime,
            link_target=link_target,
            uid=getattr(st, 'st_uid', 0),
            gid=getattr(st, 'st_gid', 0),
        )


def walk_tree(
    root: str,
    matcher: ExclusionMatcher,
    skip_paths: Iterable[str] = (),
    logger: Optional[logging.Logger] = None
) -> Iterator[SourceEntry]:
    """
    Walk a directory tree depth-first, yielding non-excluded entries.

    Excluded directories are pruned before they are listed. Symbolic links
    are reported as links and never followed. The root itself is not yielded.

    Args:
        root: Backup root directory
        matcher: Exclusion matcher consulted for every entry
        skip_paths: Absolute paths to omit silently (e.g. the archive being written)
        logger: Logger for skipped entries

    Yields:
        SourceEntry for each directory, regular file and symlink

    Raises:
        SourceError: If root does not exist or is not a directory
    """
    logger = logger or logging.getLogger(__name__)
    root = os.path.abspath(root)

    if not os.path.exists(root):
        raise SourceError(f"Source directory does not exist: {root}")
    if not os.path.isdir(root):
        raise SourceError(f"Source is not a directory: {root}")

    skip = {os.path.normcase(os.path.abspath(p)) for p in skip_paths}

    # Stack of pending (absolute path, relative path) lists, one per open directory
    stack: List[List[Tuple[str, str]]] = [_list_directory(root, '', logger)]

    while stack:
        pending = stack[-1]
        if not pending:
            stack.pop()
            continue

        path, relative_path = pending.pop()

        if os.path.normcase(path) in skip:
            logger.debug(f"Skipping output file: {relative_path}")
            continue

        try:
            st = os.lstat(path)
        except OSError as e:
            logger.debug(f"Error accessing path {path}: {e}")
            continue

        is_directory = stat.S_ISDIR(st.st_mode)
        pattern = matcher.match(relative_path)
        if pattern is not None:
            if is_directory:
                logger.debug(f"Excluding directory: {relative_path} (matched pattern {pattern})")
            else:
                logger.debug(f"Excluding: {relative_path} (matched pattern {pattern})")
            continue

        link_target = None
        if stat.S_ISLNK(st.st_mode):
            try:
                link_target = os.readlink(path)
            except OSError as e:
                logger.debug(f"Failed to read symlink {path}: {e}")
                continue

        entry = SourceEntry.from_stat(path, relative_path, st, link_target)
        if entry is None:
            logger.debug(f"Skipping special file: {relative_path}")
            continue

        yield entry

        if entry.is_directory:
            stack.append(_list_directory(path, relative_path, logger))


def _list_directory(path: str, relative_path: str, logger: logging.Logger) -> List[Tuple[str, str]]:
    """
    List a directory's children, reversed so that pop() follows scan order.

    Returns an empty list when the directory cannot be read.
    """
    children = []
    try:
        with os.scandir(path) as it:
            for dir_entry in it:
                child_relative = f"{relative_path}/{dir_entry.name}" if relative_path else dir_entry.name
                children.append((dir_entry.path, child_relative))
    except OSError as e:
        logger.warning(f"Cannot read directory {path}: {e}")
        return []

    children.reverse()
    return children
