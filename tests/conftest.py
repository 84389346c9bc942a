import hashlib
import itertools
import os
import threading

import pytest

from drive_mirror.config import Config
from drive_mirror.content import DOCUMENT_MIME, FOLDER_MIME
from drive_mirror.drive_client import DriveFile
from drive_mirror.errors import NotFoundError, SessionExpiredError


class FakeDrive:
    """In-memory stand-in for DriveClient that records every call."""

    def __init__(self):
        self.objects = {"root": {"name": "My Drive", "parents": [], "mime": FOLDER_MIME,
                                 "data": b"", "modified": 0, "trashed": False}}
        self.calls = []
        self.before = {}  # op name -> callable(*args), may raise
        self.expire_puts = 0  # number of upcoming resumable PUTs answered with "session expired"
        self._ids = itertools.count(1)
        self._clock = itertools.count(1_700_000_000_000, 1000)
        self._sessions = {}
        self.lock = threading.RLock()

    # --- helpers ---
    def _call(self, op, *args):
        hook = self.before.get(op)
        if hook is not None:
            hook(*args)
        with self.lock:
            self.calls.append((op,) + args)

    def count(self, op):
        return sum(1 for c in self.calls if c[0] == op)

    def _live(self, file_id):
        obj = self.objects.get(file_id)
        if obj is None or obj["trashed"]:
            raise NotFoundError(file_id)
        return obj

    def _file(self, file_id):
        obj = self.objects[file_id]
        checksum = None
        if obj["mime"] not in (FOLDER_MIME, DOCUMENT_MIME):
            checksum = hashlib.md5(obj["data"]).hexdigest()
        return DriveFile(file_id, obj["name"], obj["mime"], obj["modified"], checksum)

    def _store(self, name, data, mime, parent_id, file_id=None):
        with self.lock:
            file_id = file_id or f"id{next(self._ids)}"
            self.objects[file_id] = {"name": name, "parents": [parent_id] if parent_id else [],
                                     "mime": mime, "data": data, "modified": next(self._clock),
                                     "trashed": False}
            return self._file(file_id)

    def _overwrite(self, file_id, data):
        with self.lock:
            obj = self._live(file_id)
            obj["data"] = data
            obj["modified"] = next(self._clock)
            return self._file(file_id)

    def add_object(self, name, data, parent_id, mime="application/octet-stream", modified=None):
        f = self._store(name, data, mime, parent_id)
        if modified is not None:
            self.objects[f.id]["modified"] = modified
        return f.id

    def path_of(self, file_id, root_id):
        parts = []
        while file_id != root_id:
            obj = self.objects[file_id]
            parts.append(obj["name"])
            file_id = obj["parents"][0]
        return "/".join(reversed(parts))

    def live_paths(self, root_id):
        """Relative paths of every non-folder, non-trashed object under root_id."""
        out = set()
        for file_id, obj in self.objects.items():
            if obj["mime"] == FOLDER_MIME or self._trashed_chain(file_id):
                continue
            try:
                out.add(self.path_of(file_id, root_id))
            except (KeyError, IndexError):
                continue
        return out

    def _trashed_chain(self, file_id):
        seen = 0
        while file_id in self.objects and seen < 50:
            obj = self.objects[file_id]
            if obj["trashed"]:
                return True
            if not obj["parents"]:
                return False
            file_id = obj["parents"][0]
            seen += 1
        return False

    # --- capability surface ---
    def create_folder(self, name, parent_id=None):
        self._call("create_folder", name, parent_id)
        return self._store(name, b"", FOLDER_MIME, parent_id).id

    def create_object(self, name, content, mime, parent_id):
        self._call("create_object", name, parent_id)
        return self._store(name, content.to_wire(), mime, parent_id)

    def update_object(self, file_id, content, mime):
        self._call("update_object", file_id)
        return self._overwrite(file_id, content.to_wire())

    def initiate_resumable_session(self, name, content_type, size, mime, parent_id=None, file_id=None):
        self._call("initiate_resumable_session", name, size, file_id)
        with self.lock:
            uri = f"https://upload.test/session/{next(self._ids)}"
            self._sessions[uri] = (name, mime, parent_id, file_id)
            return uri

    def put_resumable_content(self, session_uri, data, content_type):
        self._call("put_resumable_content", session_uri, len(data))
        with self.lock:
            if self.expire_puts > 0:
                self.expire_puts -= 1
                raise SessionExpiredError(session_uri)
            name, mime, parent_id, file_id = self._sessions.pop(session_uri)
        if file_id:
            return self._overwrite(file_id, data)
        return self._store(name, data, mime, parent_id)

    def find_by_name(self, name, parent_id, mime=None):
        self._call("find_by_name", name, parent_id, mime)
        with self.lock:
            for file_id, obj in self.objects.items():
                if (obj["name"] == name and parent_id in obj["parents"] and not obj["trashed"]
                        and (mime is None or obj["mime"] == mime)):
                    return file_id
        return None

    def list_children(self, parent_id):
        self._call("list_children", parent_id)
        with self.lock:
            return [self._file(fid) for fid, obj in self.objects.items()
                    if parent_id in obj["parents"] and not obj["trashed"]]

    def read_content(self, file_id):
        self._call("read_content", file_id)
        with self.lock:
            return self._live(file_id)["data"]

    def soft_delete(self, file_id):
        self._call("soft_delete", file_id)
        with self.lock:
            self._live(file_id)["trashed"] = True

    def get_parents(self, file_id):
        self._call("get_parents", file_id)
        with self.lock:
            if file_id not in self.objects:
                raise NotFoundError(file_id)
            return list(self.objects[file_id]["parents"])


@pytest.fixture
def drive():
    return FakeDrive()


@pytest.fixture
def vault(tmp_path):
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def config(tmp_path, vault):
    return Config(
        local_directory=str(vault),
        remote_folder_path="Backups/Vault",
        state_file=str(tmp_path / "state" / "state.json"),
        log_file=str(tmp_path / "drive-mirror.log"),
        convert_documents=False,
        max_concurrency=2,
        resumable_threshold=1024,
        retry_base_delay=0.0,
        checkpoint_every=2,
        yield_every=2,
    )


def write(root, rel, data):
    path = os.path.join(str(root), *rel.split("/"))
    os.makedirs(os.path.dirname(path), exist_ok=True)
    mode = "wb" if isinstance(data, bytes) else "w"
    with open(path, mode) as f:
        f.write(data)
    return path
