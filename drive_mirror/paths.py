"""Remote folder resolution and per-run listing memo."""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, List, Optional, Set

from .content import FOLDER_MIME
from .drive_client import DriveFile

log = logging.getLogger(__name__)

DRIVE_ROOT = "root"


def split_path(path: str) -> List[str]:
    return [p for p in path.replace("\\", "/").split("/") if p]


class PathResolver:
    """Maps local directory paths to remote folder ids, creating folders on demand.

    One instance lives for one run. Resolution is serialized so two workers
    asking for the same missing folder never create it twice.
    """

    def __init__(self, client, root_id: str):
        self.client = client
        self.root_id = root_id
        self._memo: Dict[str, str] = {"": root_id}
        self._lock = threading.Lock()

    def resolve(self, dir_path: str) -> str:
        parts = split_path(dir_path)
        key = "/".join(parts)
        with self._lock:
            cached = self._memo.get(key)
            if cached:
                return cached
            parent_id = self.root_id
            current = ""
            for part in parts:
                current = f"{current}/{part}" if current else part
                folder_id = self._memo.get(current)
                if folder_id is None:
                    folder_id = self.client.find_by_name(part, parent_id, FOLDER_MIME)
                    if not folder_id:
                        folder_id = self.client.create_folder(part, parent_id)
                        log.debug(f"Created remote folder {current}")
                    self._memo[current] = folder_id
                parent_id = folder_id
            return parent_id

    @property
    def known_folders(self) -> int:
        return len(self._memo) - 1


def find_root(client, root_path: str) -> Optional[str]:
    """Look up the remote root folder without creating anything."""
    parent_id = DRIVE_ROOT
    for part in split_path(root_path):
        found = client.find_by_name(part, parent_id, FOLDER_MIME)
        if not found:
            return None
        parent_id = found
    return parent_id


def resolve_root(client, root_path: str) -> str:
    """Find or create the remote root folder (nested under the drive root)."""
    parent_id = DRIVE_ROOT
    for part in split_path(root_path):
        found = client.find_by_name(part, parent_id, FOLDER_MIME)
        parent_id = found or client.create_folder(part, parent_id)
    return parent_id


class ListingCache:
    """Memoizes list_children per folder for the duration of one run.

    Candidates for reuse are matched on name and MIME type, never on a
    folder, and each remote object is handed out at most once so two local
    paths can never end up bound to the same remote id.
    """

    def __init__(self, client, claimed: Iterable[str] = ()):
        self.client = client
        self._listings: Dict[str, List[DriveFile]] = {}
        self._claimed: Set[str] = set(claimed)
        self._lock = threading.Lock()

    def _children(self, parent_id: str) -> List[DriveFile]:
        listing = self._listings.get(parent_id)
        if listing is None:
            listing = self.client.list_children(parent_id)
            self._listings[parent_id] = listing
        return listing

    def claim(self, parent_id: str, name: str, mime: str) -> Optional[DriveFile]:
        """Return an unclaimed child of parent_id named ``name`` with type ``mime``, marking it taken."""
        if mime == FOLDER_MIME:
            return None
        with self._lock:
            for child in self._children(parent_id):
                if child.name == name and child.mime_type == mime and child.id not in self._claimed:
                    self._claimed.add(child.id)
                    return child
        return None
