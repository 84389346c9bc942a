"""Create / update / delete against the remote store.

Payloads at or below ``resumable_threshold`` bytes go up in a single
multipart request. Larger payloads use the resumable protocol: initiate a
session, PUT the whole span in one request, done. When the store reports
the session handle as expired the whole operation starts over with a fresh
session, at most ``session_restarts`` times.

Deletion is always a soft delete (trash) and, given a scope root, only
proceeds after the target is proven to be the root or one of its
descendants by walking parents upward for at most ``max_parent_depth``
levels.
"""

from __future__ import annotations

import logging
from typing import Optional

from .content import Content
from .drive_client import DriveFile
from .errors import SecurityScopeViolation, SessionExpiredError

log = logging.getLogger(__name__)


class TransferEngine:
    def __init__(self, client, resumable_threshold: int = 5 * 1024 * 1024, session_restarts: int = 3,
                 max_parent_depth: int = 20):
        self.client = client
        self.resumable_threshold = resumable_threshold
        self.session_restarts = max(1, session_restarts)
        self.max_parent_depth = max(1, max_parent_depth)

    def uses_resumable(self, size: int) -> bool:
        return size > self.resumable_threshold

    def create(self, name: str, content: Content, mime: str, parent_id: Optional[str]) -> DriveFile:
        data = content.to_wire()
        if not self.uses_resumable(len(data)):
            return self.client.create_object(name, content, mime, parent_id)
        return self._resumable(name, data, content.mime_type, mime, parent_id=parent_id)

    def update(self, remote_id: str, content: Content, mime: str) -> DriveFile:
        data = content.to_wire()
        if not self.uses_resumable(len(data)):
            return self.client.update_object(remote_id, content, mime)
        return self._resumable("", data, content.mime_type, mime, file_id=remote_id)

    def _resumable(self, name: str, data: bytes, content_type: str, mime: str,
                   parent_id: Optional[str] = None, file_id: Optional[str] = None) -> DriveFile:
        target = file_id or name
        for attempt in range(1, self.session_restarts + 1):
            session_uri = self.client.initiate_resumable_session(
                name, content_type, len(data), mime, parent_id=parent_id, file_id=file_id)
            try:
                return self.client.put_resumable_content(session_uri, data, content_type)
            except SessionExpiredError as e:
                if attempt == self.session_restarts:
                    log.warning(f"Resumable upload {target} gave up after {attempt} sessions: {e}")
                    raise
                log.info(f"Resumable session expired for {target}; restarting ({attempt}/{self.session_restarts})")
        raise SessionExpiredError(f"Resumable upload {target} never started")

    def delete(self, remote_id: str, scope_root_id: Optional[str] = None) -> None:
        if scope_root_id is not None:
            self.verify_in_scope(remote_id, scope_root_id)
        self.client.soft_delete(remote_id)

    def verify_in_scope(self, remote_id: str, scope_root_id: str) -> None:
        """Raise SecurityScopeViolation unless remote_id is scope_root_id or lies below it."""
        if remote_id == scope_root_id:
            return
        current = remote_id
        for _ in range(self.max_parent_depth):
            parents = self.client.get_parents(current)
            if not parents:
                raise SecurityScopeViolation(f"{remote_id} has no parent chain; refusing to delete")
            if scope_root_id in parents:
                return
            current = parents[0]
        raise SecurityScopeViolation(
            f"{remote_id} not within {scope_root_id} after {self.max_parent_depth} levels; refusing to delete")
