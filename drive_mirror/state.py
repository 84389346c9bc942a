"""Local cache, remote manifest and file records."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ManifestCorruptError

log = logging.getLogger(__name__)

MANIFEST_VERSION = 1
STATE_VERSION = 2


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class FileRecord:
    """A local file as reported by the tree source for one run."""

    path: str  # relative, '/' separated
    size: int
    mtime: float
    abs_path: str = ""

    @property
    def parent(self) -> str:
        return self.path.rpartition("/")[0]


@dataclass
class LocalIndexEntry:
    path: str
    drive_id: str
    hash: str
    last_modified: float

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "driveId": self.drive_id, "hash": self.hash, "lastModified": self.last_modified}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LocalIndexEntry":
        return cls(
            path=data["path"],
            drive_id=data["driveId"],
            hash=data["hash"],
            last_modified=data.get("lastModified", 0),
        )


@dataclass
class ManifestEntry:
    path: str
    drive_id: str
    hash: str
    modified_time: int  # epoch ms, remote clock

    def to_dict(self) -> Dict[str, Any]:
        return {"path": self.path, "driveId": self.drive_id, "hash": self.hash, "modifiedTime": self.modified_time}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestEntry":
        return cls(
            path=data["path"],
            drive_id=data["driveId"],
            hash=data["hash"],
            modified_time=int(data.get("modifiedTime") or 0),
        )


@dataclass
class RemoteManifest:
    """Snapshot of what the remote root held after the last reconciliation."""

    version: int = MANIFEST_VERSION
    last_sync: int = field(default_factory=now_ms)
    files: Dict[str, ManifestEntry] = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "RemoteManifest":
        return cls()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "lastSync": self.last_sync,
            "files": {p: e.to_dict() for p, e in self.files.items()},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> "RemoteManifest":
        try:
            data = json.loads(raw)
            files = {p: ManifestEntry.from_dict(e) for p, e in data["files"].items()}
            return cls(version=int(data.get("version", MANIFEST_VERSION)),
                       last_sync=int(data.get("lastSync") or 0), files=files)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise ManifestCorruptError(f"Unreadable manifest: {e}") from e

    def copy(self) -> "RemoteManifest":
        return RemoteManifest(version=self.version, last_sync=self.last_sync, files=dict(self.files))


def _split_rules(value: str) -> List[str]:
    parts = value.replace("\n", ",").split(",")
    return [p.strip().strip("/") for p in parts if p.strip().strip("/")]


class LocalState:
    """The persisted local cache: sync index plus the settings stored next to it.

    Only the orchestrator mutates an instance during a run; everything else
    should work on ``snapshot()``.
    """

    def __init__(self, path: str, sync_index: Optional[Dict[str, LocalIndexEntry]] = None,
                 excluded_folders: Optional[List[str]] = None, remote_folder_id: Optional[str] = None):
        self.path = path
        self.sync_index: Dict[str, LocalIndexEntry] = sync_index or {}
        self.excluded_folders: List[str] = excluded_folders or []
        self.remote_folder_id = remote_folder_id

    @classmethod
    def load(cls, path: str) -> "LocalState":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return cls(path)
        except (OSError, ValueError) as e:
            log.warning(f"State load failed ({e}); starting new")
            return cls(path)
        if not isinstance(data, dict):
            log.warning("State file has unexpected shape; starting new")
            return cls(path)
        return cls._migrate(path, data)

    @classmethod
    def _migrate(cls, path: str, data: Dict[str, Any]) -> "LocalState":
        # older releases used camelCase keys straight from the settings blob
        raw_index = data.get("sync_index", data.get("syncIndex", {})) or {}
        raw_excluded = data.get("excluded_folders", data.get("excludedFolders", []))
        if isinstance(raw_excluded, str):
            excluded = _split_rules(raw_excluded)
            log.info(f"Migrated {len(excluded)} excluded folder rule(s) from delimited string")
        else:
            excluded = [str(x).strip("/") for x in raw_excluded or [] if str(x).strip("/")]
        index: Dict[str, LocalIndexEntry] = {}
        for rel, entry in raw_index.items():
            try:
                index[rel] = LocalIndexEntry.from_dict({"path": rel, **entry})
            except (KeyError, TypeError) as e:
                log.debug(f"Dropping malformed index entry {rel}: {e}")
        return cls(path, sync_index=index, excluded_folders=excluded,
                   remote_folder_id=data.get("remote_folder_id"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "excluded_folders": list(self.excluded_folders),
            "remote_folder_id": self.remote_folder_id,
            "sync_index": {p: e.to_dict() for p, e in self.sync_index.items()},
        }

    def snapshot(self) -> Dict[str, Any]:
        return self.to_dict()

    def save(self) -> None:
        self.write(self.to_dict())

    def write(self, data: Dict[str, Any]) -> None:
        """Atomically replace the state file with ``data``."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def clear(self) -> None:
        self.sync_index = {}
        self.remote_folder_id = None
