"""Persistence of the remote manifest document inside the remote root."""

from __future__ import annotations

import logging
from typing import Optional

from .content import JSON_MIME, StructuredContent
from .errors import AuthExpiredError, DriveMirrorError, ManifestCorruptError
from .state import RemoteManifest

log = logging.getLogger(__name__)

MANIFEST_NAME = ".drive-mirror-manifest.json"


class ManifestStore:
    """Loads and upserts the manifest; one instance per run caches its remote id."""

    def __init__(self, client, transfer):
        self.client = client
        self.transfer = transfer
        self.manifest_id: Optional[str] = None

    def load(self, root_id: str) -> Optional[RemoteManifest]:
        """Return the stored manifest, or None when missing or unreadable."""
        try:
            manifest_id = self.client.find_by_name(MANIFEST_NAME, root_id, JSON_MIME)
            if not manifest_id:
                log.info("Remote manifest not found; assuming first sync or fresh start")
                return None
            self.manifest_id = manifest_id
            raw = self.client.read_content(manifest_id)
            return RemoteManifest.from_json(raw.decode("utf-8") if isinstance(raw, bytes) else raw)
        except AuthExpiredError:
            raise
        except (ManifestCorruptError, UnicodeDecodeError) as e:
            log.warning(f"Remote manifest unreadable ({e}); starting from an empty manifest")
            return None
        except DriveMirrorError as e:
            log.warning(f"Failed to load remote manifest ({e}); starting from an empty manifest")
            return None

    def save(self, root_id: str, manifest: RemoteManifest) -> None:
        content = StructuredContent(manifest.to_dict())
        if self.manifest_id:
            try:
                self.transfer.update(self.manifest_id, content, JSON_MIME)
                return
            except AuthExpiredError:
                raise
            except DriveMirrorError as e:
                log.warning(f"Manifest update by id failed ({e}); falling back to lookup")
                self.manifest_id = None
        existing = self.client.find_by_name(MANIFEST_NAME, root_id, JSON_MIME)
        if existing:
            self.manifest_id = existing
            self.transfer.update(existing, content, JSON_MIME)
        else:
            self.manifest_id = self.transfer.create(MANIFEST_NAME, content, JSON_MIME, root_id).id
