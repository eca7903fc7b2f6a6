import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import config
from app.routes.progress_routes import ProtocolViolation, parse_track_message
from app.services.progress import COMPLETED, FAILED, UPLOADING, ProgressTracker
from conftest import TEST_KEY
from main import create_app
from upload_helpers import generate_random_content


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_tracker_update_and_get():
    tracker = ProgressTracker(record_ttl_seconds=60)
    assert await tracker.get("upload-1") is None

    await tracker.update("upload-1", 100, 1000)
    await tracker.update("upload-1", 400)

    snapshot = await tracker.get("upload-1")
    assert snapshot["type"] == "progress"
    assert snapshot["uploadId"] == "upload-1"
    assert snapshot["bytesReceived"] == 400
    assert snapshot["totalBytes"] == 1000
    assert snapshot["status"] == UPLOADING


@pytest.mark.asyncio
async def test_subscriber_gets_current_snapshot():
    tracker = ProgressTracker(record_ttl_seconds=60)
    await tracker.update("upload-1", 10, 100)

    queue = await tracker.subscribe("upload-1")
    assert queue.get_nowait()["bytesReceived"] == 10

    empty = await tracker.subscribe("unknown")
    assert empty.empty()


@pytest.mark.asyncio
async def test_slow_subscriber_only_sees_latest():
    tracker = ProgressTracker(record_ttl_seconds=60)
    queue = await tracker.subscribe("upload-1")

    await tracker.update("upload-1", 10, 100)
    await tracker.update("upload-1", 50, 100)
    await tracker.update("upload-1", 100, 100, COMPLETED)

    assert queue.qsize() == 1
    latest = queue.get_nowait()
    assert latest["bytesReceived"] == 100
    assert latest["status"] == COMPLETED


@pytest.mark.asyncio
async def test_unsubscribed_queue_gets_nothing():
    tracker = ProgressTracker(record_ttl_seconds=60)
    queue = await tracker.subscribe("upload-1")
    await tracker.unsubscribe("upload-1", queue)

    await tracker.update("upload-1", 10, 100, FAILED)
    assert queue.empty()

    # Unknown subscriptions are ignored
    await tracker.unsubscribe("never-subscribed", queue)


@pytest.mark.asyncio
async def test_sweep_removes_inactive_records():
    clock = FakeClock()
    tracker = ProgressTracker(record_ttl_seconds=3600, clock=clock)

    await tracker.update("old", 10)
    clock.now += 3000
    await tracker.update("recent", 10)
    clock.now += 700

    assert await tracker.sweep() == 1
    assert await tracker.get("old") is None
    assert await tracker.get("recent") is not None
    assert len(tracker) == 1


def test_parse_track_message():
    message = {"type": "websocket.receive", "text": json.dumps({"type": "track", "uploadId": "abc"})}
    assert parse_track_message(message, 1024) == "abc"

    message = {"type": "websocket.receive", "bytes": json.dumps({"type": "track", "uploadId": "xyz"}).encode()}
    assert parse_track_message(message, 1024) == "xyz"


@pytest.mark.parametrize("text,code", [
    ("not json", 1002),
    (json.dumps(["track"]), 1002),
    (json.dumps({"type": "subscribe", "uploadId": "abc"}), 1002),
    (json.dumps({"type": "track"}), 1002),
    (json.dumps({"type": "track", "uploadId": 42}), 1002),
    (json.dumps({"type": "track", "uploadId": "x" * 2000}), 1009),
])
def test_parse_track_message_violations(text, code):
    with pytest.raises(ProtocolViolation) as exc_info:
        parse_track_message({"type": "websocket.receive", "text": text}, 1024)
    assert exc_info.value.code == code


def test_progress_after_streaming_upload(client):
    """A subscriber joining after the upload finished gets the final snapshot."""
    content = generate_random_content(64 * 1024)
    response = client.post(
        "/upload",
        params={"largeFile": "true", "uploadId": "upload-42", "key": TEST_KEY},
        files={"file": ("clip.mp4", content, "video/mp4")},
    )
    assert response.status_code == 200

    with client.websocket_connect("/ws/progress") as websocket:
        websocket.send_json({"type": "track", "uploadId": "upload-42"})
        snapshot = websocket.receive_json()

    assert snapshot["uploadId"] == "upload-42"
    assert snapshot["status"] == "completed"
    assert snapshot["bytesReceived"] == len(content)
    assert snapshot["totalBytes"] == len(content)


def test_malformed_message_closes_with_protocol_error(client):
    with client.websocket_connect("/ws/progress") as websocket:
        websocket.send_text("hello?")
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()
    assert exc_info.value.code == 1002


def test_oversized_message_closes(client):
    with client.websocket_connect("/ws/progress") as websocket:
        websocket.send_text(json.dumps({"type": "track", "uploadId": "a" * 4096}))
        with pytest.raises(WebSocketDisconnect) as exc_info:
            websocket.receive_text()
    assert exc_info.value.code == 1009


def test_idle_subscriber_is_closed(settings):
    idle = settings.model_copy(update={"progress": config.ProgressSettings(idle_timeout_seconds=0.1)})
    with TestClient(create_app(idle)) as client:
        with client.websocket_connect("/ws/progress") as websocket:
            websocket.send_json({"type": "track", "uploadId": "nothing-here"})
            with pytest.raises(WebSocketDisconnect) as exc_info:
                websocket.receive_text()
    assert exc_info.value.code == 1001
