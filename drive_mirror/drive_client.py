"""Thin Google Drive v3 client exposing the capabilities the engine needs."""

from __future__ import annotations

import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .auth import TokenProvider
from .content import FOLDER_MIME, Content
from .errors import AuthExpiredError, NotFoundError, SessionExpiredError, TransportError

log = logging.getLogger(__name__)

API_URL = "https://www.googleapis.com/drive/v3"
UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
FILE_FIELDS = "id,name,mimeType,modifiedTime,md5Checksum"


def parse_rfc3339(value: Optional[str]) -> int:
    """Drive timestamps ('2024-05-01T10:00:00.123Z') to epoch milliseconds."""
    if not value:
        return 0
    try:
        return int(datetime.fromisoformat(value.replace("Z", "+00:00")).timestamp() * 1000)
    except ValueError:
        log.debug(f"Unparseable remote timestamp {value!r}")
        return 0


def escape_query(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


@dataclass(frozen=True)
class DriveFile:
    id: str
    name: str = ""
    mime_type: str = ""
    modified_time: int = 0  # epoch ms
    checksum: Optional[str] = None  # md5, absent for converted documents and folders

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "DriveFile":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            mime_type=data.get("mimeType", ""),
            modified_time=parse_rfc3339(data.get("modifiedTime")),
            checksum=data.get("md5Checksum"),
        )


def build_multipart(metadata: Dict[str, Any], data: bytes, content_type: str) -> Tuple[bytes, str]:
    """Encode a multipart/related body for a simple upload."""
    boundary = f"drive-mirror-{uuid.uuid4().hex}"
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        f"Content-Type: {content_type}\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--".encode("utf-8")
    return head + data + tail, f"multipart/related; boundary={boundary}"


class DriveClient:
    """Every call authorizes with a fresh token and retries transient failures."""

    def __init__(self, token_provider: TokenProvider, session: Optional[requests.Session] = None, max_retries: int = 3,
                 base_delay: float = 1.0, timeout: float = 60.0, sleep: Callable[[float], None] = time.sleep):
        self.token_provider = token_provider
        self.session = session or requests.Session()
        self.max_retries = max(1, max_retries)
        self.base_delay = base_delay
        self.timeout = timeout
        self.sleep = sleep

    def close(self) -> None:
        self.session.close()

    def __enter__(self) -> "DriveClient":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # --- transport ---
    def _error_for(self, resp: requests.Response, what: str, session_uri: bool) -> Exception:
        status = resp.status_code
        detail = resp.text[:200] if resp.text else resp.reason
        if session_uri and status in (404, 410):
            return SessionExpiredError(f"{what}: upload session expired ({status})")
        if status == 404:
            return NotFoundError(f"{what}: not found")
        if status == 401:
            return AuthExpiredError(f"{what}: credentials rejected")
        return TransportError(f"{what}: HTTP {status} {detail}", status=status)

    def _request(self, method: str, url: str, *, session_uri: bool = False, **kwargs: Any) -> requests.Response:
        what = f"{method} {url.split('?')[0]}"
        extra_headers = kwargs.pop("headers", {})
        attempt = 0
        while True:
            attempt += 1
            headers = {"Authorization": f"Bearer {self.token_provider.get_token()}", **extra_headers}
            try:
                resp = self.session.request(method, url, headers=headers, timeout=self.timeout,
                                            allow_redirects=False, **kwargs)
            except (requests.ConnectionError, requests.Timeout) as e:
                err: Exception = TransportError(f"{what}: {e}")
            else:
                if resp.status_code < 300:
                    return resp
                err = self._error_for(resp, what, session_uri)
                if not (isinstance(err, TransportError) and err.retryable):
                    raise err
            if attempt >= self.max_retries:
                log.warning(f"{what} failed after {self.max_retries} attempts: {err}")
                raise err
            delay = self.base_delay * (2 ** (attempt - 1))
            log.debug(f"Retry {attempt}/{self.max_retries} {what}: {err}; sleep {delay:.2f}s")
            self.sleep(delay)

    # --- capabilities ---
    def create_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        metadata: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME}
        if parent_id:
            metadata["parents"] = [parent_id]
        resp = self._request("POST", f"{API_URL}/files", params={"fields": "id"}, json=metadata)
        return resp.json()["id"]

    def create_object(self, name: str, content: Content, mime: str, parent_id: Optional[str]) -> DriveFile:
        metadata: Dict[str, Any] = {"name": name, "mimeType": mime}
        if parent_id:
            metadata["parents"] = [parent_id]
        body, content_type = build_multipart(metadata, content.to_wire(), content.mime_type)
        resp = self._request("POST", f"{UPLOAD_URL}/files",
                             params={"uploadType": "multipart", "fields": FILE_FIELDS},
                             headers={"Content-Type": content_type}, data=body)
        return DriveFile.from_api(resp.json())

    def update_object(self, file_id: str, content: Content, mime: str) -> DriveFile:
        # the stored type of an existing object is fixed; mime only describes the source bytes
        resp = self._request("PATCH", f"{UPLOAD_URL}/files/{file_id}",
                             params={"uploadType": "media", "fields": FILE_FIELDS},
                             headers={"Content-Type": content.mime_type}, data=content.to_wire())
        return DriveFile.from_api(resp.json())

    def initiate_resumable_session(self, name: str, content_type: str, size: int, mime: str,
                                   parent_id: Optional[str] = None, file_id: Optional[str] = None) -> str:
        headers = {"X-Upload-Content-Type": content_type, "X-Upload-Content-Length": str(size)}
        params = {"uploadType": "resumable", "fields": FILE_FIELDS}
        if file_id:
            resp = self._request("PATCH", f"{UPLOAD_URL}/files/{file_id}", params=params,
                                 headers=headers, json={})
        else:
            metadata: Dict[str, Any] = {"name": name, "mimeType": mime}
            if parent_id:
                metadata["parents"] = [parent_id]
            resp = self._request("POST", f"{UPLOAD_URL}/files", params=params, headers=headers, json=metadata)
        location = resp.headers.get("Location")
        if not location:
            raise TransportError("Resumable upload initiation returned no session location", status=resp.status_code)
        return location

    def put_resumable_content(self, session_uri: str, data: bytes, content_type: str) -> DriveFile:
        size = len(data)
        content_range = f"bytes 0-{size - 1}/{size}" if size else "bytes */0"
        resp = self._request("PUT", session_uri, session_uri=True, data=data,
                             headers={"Content-Type": content_type, "Content-Range": content_range})
        return DriveFile.from_api(resp.json())

    def find_by_name(self, name: str, parent_id: str, mime: Optional[str] = None) -> Optional[str]:
        query = f"name = '{escape_query(name)}' and '{escape_query(parent_id)}' in parents and trashed = false"
        if mime:
            query += f" and mimeType = '{escape_query(mime)}'"
        resp = self._request("GET", f"{API_URL}/files",
                             params={"q": query, "fields": "files(id)", "spaces": "drive", "pageSize": 10})
        files = resp.json().get("files", [])
        return files[0]["id"] if files else None

    def list_children(self, parent_id: str) -> List[DriveFile]:
        """Every live child of parent_id; names are not unique on Drive."""
        children: List[DriveFile] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                "q": f"'{escape_query(parent_id)}' in parents and trashed = false",
                "fields": f"nextPageToken,files({FILE_FIELDS})",
                "spaces": "drive",
                "pageSize": 1000,
            }
            if page_token:
                params["pageToken"] = page_token
            data = self._request("GET", f"{API_URL}/files", params=params).json()
            children.extend(DriveFile.from_api(item) for item in data.get("files", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return children

    def read_content(self, file_id: str) -> bytes:
        return self._request("GET", f"{API_URL}/files/{file_id}", params={"alt": "media"}).content

    def soft_delete(self, file_id: str) -> None:
        self._request("PATCH", f"{API_URL}/files/{file_id}", params={"fields": "id"}, json={"trashed": True})

    def get_parents(self, file_id: str) -> List[str]:
        resp = self._request("GET", f"{API_URL}/files/{file_id}", params={"fields": "parents"})
        return list(resp.json().get("parents") or [])
