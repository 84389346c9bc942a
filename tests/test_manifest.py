import json

import pytest

from drive_mirror.content import JSON_MIME
from drive_mirror.errors import AuthExpiredError
from drive_mirror.manifest import MANIFEST_NAME, ManifestStore
from drive_mirror.paths import resolve_root
from drive_mirror.state import ManifestEntry, RemoteManifest
from drive_mirror.transfer import TransferEngine


@pytest.fixture
def store(drive):
    return ManifestStore(drive, TransferEngine(drive, resumable_threshold=64))


def test_missing_manifest_loads_as_none(drive, store):
    root_id = resolve_root(drive, "Vault")
    assert store.load(root_id) is None


def test_save_creates_then_updates_in_place(drive, store):
    root_id = resolve_root(drive, "Vault")
    m = RemoteManifest(files={"a.md": ManifestEntry("a.md", "id1", "h", 1)})
    store.save(root_id, m)
    manifest_id = drive.find_by_name(MANIFEST_NAME, root_id, JSON_MIME)
    m.files["b.md"] = ManifestEntry("b.md", "id2", "h2", 2)
    store.save(root_id, m)
    assert drive.find_by_name(MANIFEST_NAME, root_id, JSON_MIME) == manifest_id
    assert set(json.loads(drive.objects[manifest_id]["data"])["files"]) == {"a.md", "b.md"}
    fresh = ManifestStore(drive, TransferEngine(drive))
    assert set(fresh.load(root_id).files) == {"a.md", "b.md"}


def test_save_recovers_from_stale_id(drive, store):
    root_id = resolve_root(drive, "Vault")
    store.save(root_id, RemoteManifest())
    drive.objects[store.manifest_id]["trashed"] = True
    store.save(root_id, RemoteManifest())
    live = drive.find_by_name(MANIFEST_NAME, root_id, JSON_MIME)
    assert live is not None
    assert store.manifest_id == live


def test_corrupt_manifest_loads_as_none(drive, store):
    root_id = resolve_root(drive, "Vault")
    drive.add_object(MANIFEST_NAME, b"\xff\xfe", root_id, mime=JSON_MIME)
    assert store.load(root_id) is None


def test_auth_failure_propagates(drive, store):
    root_id = resolve_root(drive, "Vault")

    def expired(*args):
        raise AuthExpiredError("revoked")
    drive.before["find_by_name"] = expired
    with pytest.raises(AuthExpiredError):
        store.load(root_id)
