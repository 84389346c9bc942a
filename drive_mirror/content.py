"""Content payloads, fingerprints and MIME hints."""

from __future__ import annotations

import hashlib
import json
import mimetypes
import os
from dataclasses import dataclass
from typing import Any, Union

FOLDER_MIME = "application/vnd.google-apps.folder"
DOCUMENT_MIME = "application/vnd.google-apps.document"
JSON_MIME = "application/json"
OCTET_STREAM = "application/octet-stream"

TEXT_EXTENSIONS = {".md", ".markdown", ".txt", ".canvas"}
DOCUMENT_EXTENSIONS = {".md", ".markdown"}


def normalize_text(text: str) -> str:
    """Fold CRLF and lone CR line endings into LF."""
    return text.replace("\r\n", "\n").replace("\r", "\n")


@dataclass(frozen=True)
class TextContent:
    text: str
    mime_type: str = "text/plain"

    def to_wire(self) -> bytes:
        return normalize_text(self.text).encode("utf-8")


@dataclass(frozen=True)
class BinaryContent:
    data: bytes
    mime_type: str = OCTET_STREAM

    def to_wire(self) -> bytes:
        return self.data


@dataclass(frozen=True)
class StructuredContent:
    value: Any
    mime_type: str = JSON_MIME

    def to_wire(self) -> bytes:
        # minified: the manifest is re-uploaded at every checkpoint
        return json.dumps(self.value, separators=(",", ":"), sort_keys=True).encode("utf-8")


Content = Union[TextContent, BinaryContent, StructuredContent]


def content_hash(content: Content) -> str:
    return hashlib.md5(content.to_wire()).hexdigest()


def upload_mime(path: str) -> str:
    """MIME type of the bytes sent on the wire for a local file."""
    ext = os.path.splitext(path)[1].lower()
    if ext in DOCUMENT_EXTENSIONS:
        return "text/markdown"
    if ext == ".canvas":
        return JSON_MIME
    guessed, _ = mimetypes.guess_type(path)
    return guessed or OCTET_STREAM


def mime_hint(path: str, convert_documents: bool = True) -> str:
    """Target MIME type on the remote side; Markdown becomes a converted document."""
    ext = os.path.splitext(path)[1].lower()
    if convert_documents and ext in DOCUMENT_EXTENSIONS:
        return DOCUMENT_MIME
    return upload_mime(path)


def remote_name(path: str, mime: str) -> str:
    """Name of the remote object for a local path (converted documents drop the extension)."""
    name = os.path.basename(path)
    if mime == DOCUMENT_MIME:
        return os.path.splitext(name)[0]
    return name


def read_content(path: str) -> Content:
    """Read a local file as text for document types, binary otherwise."""
    mime = upload_mime(path)
    with open(path, "rb") as f:
        data = f.read()
    if os.path.splitext(path)[1].lower() in TEXT_EXTENSIONS:
        try:
            return TextContent(data.decode("utf-8"), mime_type=mime)
        except UnicodeDecodeError:
            pass  # hashed and uploaded verbatim instead
    return BinaryContent(data, mime_type=mime)
