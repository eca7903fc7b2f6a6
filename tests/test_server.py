import asyncio
import json
from urllib.parse import urlparse

from fastapi import FastAPI
from fastapi.testclient import TestClient

import config
from app.middleware import RequestTimeoutMiddleware
from app.services import file_server
from conftest import OTHER_KEY, TEST_KEY, stored_files
from main import create_app
from upload_helpers import build_multipart, generate_random_content


def upload(client, filename, content, content_type="application/octet-stream", key=TEST_KEY, params=None):
    data = {"key": key} if key is not None else {}
    return client.post("/upload", params=params, data=data, files={"file": (filename, content, content_type)})


def local_path(url):
    """Path plus query of an absolute URL returned by the server."""
    parsed = urlparse(url)
    return parsed.path + (f"?{parsed.query}" if parsed.query else "")


def test_upload_and_fetch_image(client, settings):
    """A PNG uploaded with the key in the form is served inline with long caching."""
    content = generate_random_content(2048)

    response = upload(client, "screenshot.png", content, "image/png")
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "File uploaded successfully"
    assert body["timestamp"].endswith("Z")
    assert response.headers["x-content-type-options"] == "nosniff"

    file_info = body["data"]["file"]
    assert file_info["url"].startswith("http://testserver/f/")
    assert file_info["url"].endswith(".png")
    assert file_info["size"] == len(content)
    assert file_info["filename"] == file_info["url"].rsplit("/", 1)[1]

    response = client.get(local_path(file_info["url"]))
    assert response.status_code == 200
    assert response.content == content
    assert response.headers["content-type"] == "image/png"
    assert response.headers["content-disposition"] == "inline"
    assert response.headers["cache-control"] == "public, max-age=31536000"
    assert response.headers["x-frame-options"] == "DENY"

    assert stored_files(settings) == [file_info["filename"]]


def test_upload_with_key_in_query(client):
    response = client.post(
        "/upload", params={"key": TEST_KEY}, files={"file": ("photo.jpg", b"jpeg data", "image/jpeg")}
    )
    assert response.status_code == 200
    assert response.json()["data"]["file"]["url"].endswith(".jpg")


def test_upload_with_key_in_header(client):
    response = client.post(
        "/upload",
        headers={"X-API-Key": OTHER_KEY},
        files={"file": ("photo.gif", b"GIF89a", "image/gif")},
    )
    assert response.status_code == 200


def test_streaming_upload_round_trip(client, settings):
    """largeFile=true streams the body to disk; the key is only in the body."""
    content = generate_random_content(300 * 1024)

    response = upload(client, "recording.mp4", content, "video/mp4", params={"largeFile": "true"})
    assert response.status_code == 200
    file_info = response.json()["data"]["file"]
    assert file_info["size"] == len(content)

    response = client.get(local_path(file_info["url"]))
    assert response.status_code == 200
    assert response.content == content
    assert response.headers["content-type"] == "video/mp4"
    assert response.headers["accept-ranges"] == "bytes"

    assert list(settings.staging_path.iterdir()) == []


def test_oversized_regular_upload_takes_streaming_path(settings):
    """A declared length above the regular limit switches to streaming, with its own ceiling."""
    small = settings.model_copy(update={"file_size_limit": 1024, "large_file_size_limit": 8192})
    with TestClient(create_app(small)) as client:
        response = upload(client, "clip.mp4", generate_random_content(4096), "video/mp4")
        assert response.status_code == 200

        response = upload(client, "clip.mp4", generate_random_content(16384), "video/mp4")
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "FILE_TOO_LARGE"

    assert len(stored_files(small)) == 1


def test_upload_missing_key(client, settings):
    response = upload(client, "screenshot.png", b"png", "image/png", key=None)
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["error"]["code"] == "EMPTY_KEY"
    assert body["error"]["message"]
    assert body["error"]["fix"]
    assert stored_files(settings) == []


def test_upload_invalid_key(client, settings):
    response = upload(client, "screenshot.png", b"png", "image/png", key="not-a-real-key-at-all")
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_KEY"
    assert stored_files(settings) == []


def test_streaming_upload_invalid_key_commits_nothing(client, settings):
    """With the key only in the body, a bad key is found after parsing and the file is discarded."""
    response = upload(
        client, "recording.mp4", generate_random_content(4096), "video/mp4",
        key="not-a-real-key-at-all", params={"largeFile": "true"},
    )
    assert response.status_code == 401
    assert stored_files(settings) == []


def test_upload_invalid_extension(client, settings):
    response = upload(client, "malware.exe", b"MZ", key=TEST_KEY)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_EXTENSION"

    response = upload(client, "malware.exe", b"MZ", key=TEST_KEY, params={"largeFile": "true"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_EXTENSION"

    assert stored_files(settings) == []


def test_upload_without_file(client):
    response = client.post("/upload", data={"key": TEST_KEY}, files={"other": ("x.png", b"x", "image/png")})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NO_FILE"

    response = client.post("/upload", params={"key": TEST_KEY}, content=b"raw bytes")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "NO_FILE"


def test_malformed_streaming_upload(client, settings):
    body, content_type = build_multipart({"key": TEST_KEY}, ("clip.mp4", b"x" * 100, "video/mp4"), close=False)
    response = client.post(
        "/upload", params={"largeFile": "true"}, content=body, headers={"Content-Type": content_type}
    )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "MALFORMED_UPLOAD"
    assert stored_files(settings) == []


def test_video_range_requests(client, settings):
    content = generate_random_content(1000)
    (settings.upload_directory / "clip.mp4").write_bytes(content)

    response = client.get("/f/clip.mp4", headers={"Range": "bytes=0-99"})
    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 0-99/1000"
    assert response.headers["content-length"] == "100"
    assert response.content == content[:100]

    response = client.get("/f/clip.mp4", headers={"Range": "bytes=900-"})
    assert response.status_code == 206
    assert response.content == content[900:]

    response = client.get("/f/clip.mp4", headers={"Range": "bytes=-10"})
    assert response.status_code == 206
    assert response.headers["content-range"] == "bytes 990-999/1000"

    response = client.get("/f/clip.mp4", headers={"Range": "bytes=1000-1010"})
    assert response.status_code == 416
    assert response.headers["content-range"] == "bytes */1000"

    response = client.get("/f/clip.mp4", headers={"Range": "lines=1-2"})
    assert response.status_code == 416


def test_unknown_type_is_downloaded(client, settings):
    (settings.upload_directory / "notes.txt").write_text("hello")

    response = client.get("/f/notes.txt")
    assert response.status_code == 200
    assert response.text == "hello"
    assert response.headers["content-disposition"].startswith("attachment")
    assert response.headers["content-type"].startswith("text/plain")


def test_serve_missing_and_invalid_names(client):
    response = client.get("/f/2024_Jan_01-00_00_00_missing0.png")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "FILE_NOT_FOUND"

    response = client.get("/f/.incoming")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_FILENAME"

    response = client.get("/f/a..b.png")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_FILENAME"


def test_delete_url_removes_file(client, settings):
    response = upload(client, "screenshot.png", b"png data", "image/png")
    file_info = response.json()["data"]["file"]
    filename = file_info["filename"]

    response = client.get(local_path(file_info["delete_url"]))
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["filename"] == filename
    assert filename in body["message"]

    response = client.get(local_path(file_info["url"]))
    assert response.status_code == 404
    assert stored_files(settings) == []


def test_any_key_may_delete(client):
    response = upload(client, "screenshot.png", b"png data", "image/png", key=TEST_KEY)
    filename = response.json()["data"]["file"]["filename"]

    response = client.get("/delete", params={"filename": filename}, headers={"Authorization": f"Bearer {OTHER_KEY}"})
    assert response.status_code == 200


def test_delete_missing_file_twice(client):
    for _ in range(2):
        response = client.get("/delete", params={"filename": "2024_Jan_01-00_00_00_missing0.png", "key": TEST_KEY})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "FILE_NOT_FOUND"


def test_delete_validation(client):
    response = client.get("/delete", params={"key": TEST_KEY})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "EMPTY_FILENAME"

    response = client.get("/delete", params={"filename": "../config.json", "key": TEST_KEY})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_FILENAME"

    response = client.get("/delete", params={"filename": "x.png"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "EMPTY_KEY"

    response = client.get("/delete", params={"filename": "x.png", "key": "wrong-key-0000000"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "INVALID_KEY"


def test_delete_rate_limit(settings):
    """With a limit of 3 the fourth delete is rejected before auth or lookup."""
    limited = settings.model_copy(update={"delete_rate_limit": config.RateLimitSettings(max_requests=3)})
    with TestClient(create_app(limited)) as client:
        params = {"filename": "2024_Jan_01-00_00_00_missing0.png", "key": TEST_KEY}

        response = client.get("/delete", params=params)
        assert response.status_code == 404
        assert response.headers["ratelimit-limit"] == "3"
        assert response.headers["ratelimit-remaining"] == "2"

        assert client.get("/delete", params=params).status_code == 404
        assert client.get("/delete", params=params).status_code == 404

        response = client.get("/delete", params=params)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMITED"
        assert response.headers["ratelimit-remaining"] == "0"
        assert int(response.headers["retry-after"]) > 0

        # Another user has their own window
        response = client.get("/delete", params={**params, "key": OTHER_KEY})
        assert response.status_code == 404


def test_upload_rate_limit(settings):
    limited = settings.model_copy(update={"upload_rate_limit": config.RateLimitSettings(max_requests=2)})
    with TestClient(create_app(limited)) as client:
        assert upload(client, "a.png", b"a", "image/png").status_code == 200
        assert upload(client, "b.png", b"b", "image/png").status_code == 200

        response = upload(client, "c.png", b"c", "image/png")
        assert response.status_code == 429

    assert len(stored_files(limited)) == 2


def test_client_config(client):
    response = client.get("/config", params={"key": TEST_KEY})
    assert response.status_code == 200
    assert response.headers["content-disposition"] == 'attachment; filename="ShareX-Uploader.sxcu"'

    sharex = json.loads(response.content)
    assert sharex["RequestURL"] == "http://testserver/upload"
    assert sharex["Body"] == "MultipartFormData"
    assert sharex["FileFormName"] == "file"
    assert sharex["Arguments"] == {"key": TEST_KEY}
    assert sharex["URL"] == "{json:data.file.url}"
    assert sharex["DeletionURL"] == "{json:data.file.delete_url}"


def test_client_config_requires_key(client):
    response = client.get("/config")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "EMPTY_KEY"

    response = client.get("/config", headers={"X-API-Key": "unknown-key-000000"})
    assert response.status_code == 401


def test_static_file_server_url(settings):
    static = settings.model_copy(update={"static_file_server_url": "https://cdn.example.com"})
    with TestClient(create_app(static)) as client:
        response = upload(client, "screenshot.png", b"png", "image/png")
        assert response.json()["data"]["file"]["url"].startswith("https://cdn.example.com/")


def test_request_timeout():
    app = FastAPI()

    @app.get("/slow")
    async def slow():
        await asyncio.sleep(2)
        return {}

    app.add_middleware(RequestTimeoutMiddleware, timeout_seconds=0.05)

    with TestClient(app) as client:
        response = client.get("/slow")
    assert response.status_code == 408
    assert response.json()["error"]["code"] == "REQUEST_TIMEOUT"


def test_chunked_upload_keeps_regular_limit(settings):
    """A body without Content-Length is streamed and held to the regular limit."""
    small = settings.model_copy(update={"file_size_limit": 64 * 1024})
    with TestClient(create_app(small)) as client:
        body, content_type = build_multipart({"key": TEST_KEY}, ("big.png", generate_random_content(256 * 1024), "image/png"))
        response = client.post("/upload", content=iter([body]), headers={"Content-Type": content_type})
        assert response.status_code == 413
        assert response.json()["error"]["code"] == "FILE_TOO_LARGE"

        body, content_type = build_multipart({"key": TEST_KEY}, ("small.png", b"png data", "image/png"))
        response = client.post("/upload", content=iter([body]), headers={"Content-Type": content_type})
        assert response.status_code == 200
        assert response.json()["data"]["file"]["size"] == len(b"png data")

    assert len(stored_files(small)) == 1


def test_upload_rate_limit_counts_user_from_form_key(settings):
    """Once a key in the body resolves, the request counts against that user, not the address."""
    limited = settings.model_copy(update={"upload_rate_limit": config.RateLimitSettings(max_requests=2)})
    with TestClient(create_app(limited)) as client:
        assert upload(client, "a.png", b"a", "image/png", key=TEST_KEY).status_code == 200
        assert upload(client, "b.png", b"b", "image/png", key=TEST_KEY).status_code == 200

        response = upload(client, "c.png", b"c", "image/png", key=TEST_KEY)
        assert response.status_code == 429
        assert response.headers["ratelimit-remaining"] == "0"

        # Same address, different user
        assert upload(client, "d.png", b"d", "image/png", key=OTHER_KEY).status_code == 200

        response = upload(client, "e.mp4", b"e", "video/mp4", key=TEST_KEY, params={"largeFile": "true"})
        assert response.status_code == 429

    assert len(stored_files(limited)) == 3


def test_serve_open_failure_returns_error(client, settings, monkeypatch):
    """A file that cannot be opened yields an error envelope, not a broken stream."""
    (settings.upload_directory / "clip.mp4").write_bytes(b"video")

    def failing_open(*args, **kwargs):
        raise PermissionError("denied")

    monkeypatch.setattr(file_server.aiofiles, "open", failing_open)

    response = client.get("/f/clip.mp4")
    assert response.status_code == 500
    assert response.json()["error"]["code"] == "READ_FAILED"


def test_request_timeout_after_headers_sends_nothing_more():
    """Once the response has started a timeout only drops the connection."""

    async def slow_stream(scope, receive, send):
        await send({"type": "http.response.start", "status": 200, "headers": []})
        await send({"type": "http.response.body", "body": b"first", "more_body": True})
        await asyncio.sleep(2)
        await send({"type": "http.response.body", "body": b"never", "more_body": False})

    middleware = RequestTimeoutMiddleware(slow_stream, timeout_seconds=0.05)
    sent = []

    async def receive():
        return {"type": "http.request", "body": b"", "more_body": False}

    async def send(message):
        sent.append(message)

    asyncio.run(middleware({"type": "http", "path": "/f/clip.mp4"}, receive, send))

    assert [message["type"] for message in sent] == ["http.response.start", "http.response.body"]
    assert sent[1]["body"] == b"first"
