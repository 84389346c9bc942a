from unittest.mock import MagicMock

import pytest
import requests

from drive_mirror.auth import StaticTokenProvider
from drive_mirror.content import BinaryContent, TextContent
from drive_mirror.drive_client import DriveClient, DriveFile, build_multipart, parse_rfc3339
from drive_mirror.errors import AuthExpiredError, NotFoundError, SessionExpiredError, TransportError


class FakeResponse:
    def __init__(self, status=200, body=None, headers=None, content=b""):
        self.status_code = status
        self._body = body or {}
        self.headers = headers or {}
        self.content = content
        self.text = ""
        self.reason = "reason"

    def json(self):
        return self._body


def make_client(*responses, max_retries=3):
    session = MagicMock()
    session.request.side_effect = list(responses)
    sleeps = []
    client = DriveClient(StaticTokenProvider("tok"), session=session, max_retries=max_retries,
                         base_delay=0.5, sleep=sleeps.append)
    return client, session, sleeps


def test_retries_transient_status_with_backoff():
    client, session, sleeps = make_client(FakeResponse(503), FakeResponse(429), FakeResponse(200, {"id": "f1"}))
    assert client.create_folder("x", "root") == "f1"
    assert session.request.call_count == 3
    assert sleeps == [0.5, 1.0]
    headers = session.request.call_args.kwargs["headers"]
    assert headers["Authorization"] == "Bearer tok"


def test_gives_up_after_max_retries():
    client, session, sleeps = make_client(FakeResponse(500), FakeResponse(500), FakeResponse(500))
    with pytest.raises(TransportError) as excinfo:
        client.get_parents("x")
    assert excinfo.value.status == 500
    assert session.request.call_count == 3
    assert len(sleeps) == 2


def test_connection_errors_are_retried():
    client, session, _ = make_client(requests.ConnectionError("reset"), FakeResponse(200, {"parents": ["p"]}))
    assert client.get_parents("x") == ["p"]


def test_permanent_errors_are_not_retried():
    client, session, _ = make_client(FakeResponse(404))
    with pytest.raises(NotFoundError):
        client.read_content("gone")
    client, session, _ = make_client(FakeResponse(401))
    with pytest.raises(AuthExpiredError):
        client.read_content("x")
    client, session, _ = make_client(FakeResponse(403))
    with pytest.raises(TransportError):
        client.read_content("x")
    assert session.request.call_count == 1


def test_expired_upload_session():
    client, _, _ = make_client(FakeResponse(410))
    with pytest.raises(SessionExpiredError):
        client.put_resumable_content("https://upload/s1", b"abc", "text/plain")


def test_put_sends_full_content_range():
    body = {"id": "f9", "name": "big", "md5Checksum": "abc", "modifiedTime": "2024-01-01T00:00:00Z"}
    client, session, _ = make_client(FakeResponse(200, body))
    f = client.put_resumable_content("https://upload/s1", b"x" * 10, "application/octet-stream")
    assert f == DriveFile("f9", "big", "", 1704067200000, "abc")
    assert session.request.call_args.kwargs["headers"]["Content-Range"] == "bytes 0-9/10"


def test_initiate_returns_location():
    client, session, _ = make_client(FakeResponse(200, headers={"Location": "https://upload/s2"}))
    uri = client.initiate_resumable_session("a.bin", "application/octet-stream", 99, "application/octet-stream",
                                            parent_id="p1")
    assert uri == "https://upload/s2"
    kwargs = session.request.call_args.kwargs
    assert kwargs["headers"]["X-Upload-Content-Length"] == "99"
    assert kwargs["json"]["parents"] == ["p1"]


def test_initiate_for_existing_file_uses_patch():
    client, session, _ = make_client(FakeResponse(200, headers={"Location": "https://upload/s3"}))
    client.initiate_resumable_session("", "text/plain", 5, "text/plain", file_id="f1")
    assert session.request.call_args.args[0] == "PATCH"
    assert session.request.call_args.args[1].endswith("/files/f1")


def test_find_by_name_escapes_query():
    client, session, _ = make_client(FakeResponse(200, {"files": [{"id": "a"}, {"id": "b"}]}))
    assert client.find_by_name("it's", "p1", "text/plain") == "a"
    q = session.request.call_args.kwargs["params"]["q"]
    assert "name = 'it\\'s'" in q
    assert "mimeType = 'text/plain'" in q
    assert "trashed = false" in q


def test_list_children_follows_pages():
    client, session, _ = make_client(
        FakeResponse(200, {"files": [{"id": "1", "name": "a"}], "nextPageToken": "t"}),
        FakeResponse(200, {"files": [{"id": "2", "name": "b"}]}),
    )
    children = client.list_children("p")
    assert [c.id for c in children] == ["1", "2"]
    assert session.request.call_args.kwargs["params"]["pageToken"] == "t"


def test_create_object_sends_multipart():
    client, session, _ = make_client(FakeResponse(200, {"id": "n1", "name": "a.md"}))
    f = client.create_object("a.md", TextContent("hi\r\n", "text/markdown"), "text/markdown", "p")
    assert f.id == "n1"
    kwargs = session.request.call_args.kwargs
    assert kwargs["params"]["uploadType"] == "multipart"
    assert kwargs["headers"]["Content-Type"].startswith("multipart/related; boundary=")
    assert b"hi\n" in kwargs["data"]


def test_soft_delete_trashes():
    client, session, _ = make_client(FakeResponse(200, {"id": "x"}))
    client.soft_delete("x")
    assert session.request.call_args.kwargs["json"] == {"trashed": True}


def test_update_object_uses_media_upload():
    client, session, _ = make_client(FakeResponse(200, {"id": "x"}))
    client.update_object("x", BinaryContent(b"\x00", "image/png"), "image/png")
    kwargs = session.request.call_args.kwargs
    assert kwargs["params"]["uploadType"] == "media"
    assert kwargs["headers"]["Content-Type"] == "image/png"


def test_helpers():
    assert parse_rfc3339(None) == 0
    assert parse_rfc3339("garbage") == 0
    assert parse_rfc3339("1970-01-01T00:00:01.500Z") == 1500
    body, ctype = build_multipart({"name": "a"}, b"DATA", "text/plain")
    boundary = ctype.split("boundary=")[1]
    assert body.startswith(f"--{boundary}\r\n".encode())
    assert body.endswith(f"--{boundary}--".encode())
