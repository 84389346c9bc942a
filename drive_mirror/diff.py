"""Change detection: decide which local files need a transfer."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional

from .content import FOLDER_MIME, Content, content_hash, read_content
from .drive_client import DriveFile
from .state import FileRecord, LocalIndexEntry, ManifestEntry

log = logging.getLogger(__name__)


class Verdict(enum.Enum):
    SKIP = "skip"
    UPLOAD_NEW = "upload_new"
    UPLOAD_MODIFIED = "upload_modified"


class RecoveryAction(enum.Enum):
    CREATE = "create"
    REUSE = "reuse"
    OVERWRITE = "overwrite"


@dataclass
class Decision:
    record: FileRecord
    verdict: Verdict
    hash: str
    content: Optional[Content] = None  # None when the cached hash was trusted

    def load_content(self) -> Content:
        if self.content is None:
            self.content = read_content(self.record.abs_path)
            # the file may have changed between diffing and transfer
            self.hash = content_hash(self.content)
        return self.content

    def release(self) -> None:
        self.content = None


@dataclass(frozen=True)
class Recovery:
    action: RecoveryAction
    remote: Optional[DriveFile] = None


class DiffEngine:
    def classify(self, record: FileRecord, index_entry: Optional[LocalIndexEntry],
                 manifest_entry: Optional[ManifestEntry]) -> Decision:
        content: Optional[Content] = None
        if index_entry is not None and index_entry.last_modified == record.mtime:
            digest = index_entry.hash
        else:
            content = read_content(record.abs_path)
            digest = content_hash(content)
        if manifest_entry is None:
            verdict = Verdict.UPLOAD_NEW
        elif manifest_entry.hash == digest:
            verdict = Verdict.SKIP
            content = None
        else:
            verdict = Verdict.UPLOAD_MODIFIED
        return Decision(record, verdict, digest, content)

    def smart_recover(self, decision: Decision, remote: Optional[DriveFile]) -> Recovery:
        """Decide what to do with an unmanifested file whose name already exists remotely.

        Stored binaries carry a checksum comparable with our hash. Converted
        documents do not, so the remote modification time is compared with
        the local mtime instead: a remote copy at least as new is reused.
        """
        if remote is None or remote.mime_type == FOLDER_MIME:
            return Recovery(RecoveryAction.CREATE)
        if remote.checksum:
            if remote.checksum == decision.hash:
                return Recovery(RecoveryAction.REUSE, remote)
            return Recovery(RecoveryAction.OVERWRITE, remote)
        if remote.modified_time >= int(decision.record.mtime * 1000):
            return Recovery(RecoveryAction.REUSE, remote)
        return Recovery(RecoveryAction.OVERWRITE, remote)
