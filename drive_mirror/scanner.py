"""Local tree enumeration and path filtering."""

from __future__ import annotations

import fnmatch
import logging
import os
from typing import Iterable, List, Optional, Sequence

from .config import Config
from .errors import LocalRootError
from .state import FileRecord

log = logging.getLogger(__name__)


class PathFilter:
    def __init__(self, include: Sequence[str] = (), exclude: Sequence[str] = (), ignore: Sequence[str] = (),
                 excluded_folders: Iterable[str] = ()):
        self.include = tuple(include)
        self.exclude = tuple(exclude)
        self.ignore = tuple(ignore)
        self.excluded_folders = tuple(sorted({f.strip("/") for f in excluded_folders if f.strip("/")}))

    @classmethod
    def from_config(cls, config: Config, extra_folders: Iterable[str] = ()) -> "PathFilter":
        return cls(config.include_patterns, config.exclude_patterns, config.ignore_patterns,
                   tuple(config.excluded_folders) + tuple(extra_folders))

    def in_excluded_folder(self, rel: str) -> bool:
        return any(rel == f or rel.startswith(f + "/") for f in self.excluded_folders)

    def is_excluded(self, rel: str) -> bool:
        """True if an explicit exclusion rule (not merely a missing include) covers rel."""
        if any(fnmatch.fnmatch(rel, p) for p in self.ignore):
            return True
        if self.in_excluded_folder(rel):
            return True
        return any(fnmatch.fnmatch(rel, p) for p in self.exclude)

    def accepts(self, rel: str) -> bool:
        # Ignore patterns take absolute precedence
        if any(fnmatch.fnmatch(rel, p) for p in self.ignore):
            return False
        if self.in_excluded_folder(rel):
            return False
        if self.include and not any(fnmatch.fnmatch(rel, p) for p in self.include):
            return False
        if self.exclude and any(fnmatch.fnmatch(rel, p) for p in self.exclude):
            return False
        return True


class LocalTree:
    """Produces the filtered FileRecord list for one run, in deterministic order."""

    def __init__(self, root: str, path_filter: PathFilter, skip_files: Iterable[str] = ()):
        self.root = os.path.abspath(os.path.expanduser(root))
        self.filter = path_filter
        self._skip = {os.path.abspath(os.path.expanduser(p)) for p in skip_files if p}

    def scan(self) -> List[FileRecord]:
        # a missing root fails the run instead of looking like an empty tree
        if not os.path.isdir(self.root):
            raise LocalRootError(f"Local directory {self.root} is missing or not a directory")
        records: List[FileRecord] = []
        for dirpath, dirs, files in os.walk(self.root):
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            for filename in sorted(files):
                if filename.startswith("."):
                    continue
                full = os.path.join(dirpath, filename)
                if full in self._skip:
                    continue
                rel = os.path.relpath(full, self.root).replace(os.sep, "/")
                if not self.filter.accepts(rel):
                    continue
                record = self._record(full, rel)
                if record is not None:
                    records.append(record)
        return records

    def _record(self, full: str, rel: str) -> Optional[FileRecord]:
        try:
            st = os.stat(full)
        except FileNotFoundError:
            log.debug(f"Vanished during scan: {rel}")
            return None
        return FileRecord(path=rel, size=st.st_size, mtime=st.st_mtime, abs_path=full)
