import asyncio
import json
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status

from logger_config import setup_logger

logger = setup_logger()

router = APIRouter()

IDLE_CLOSE_CODE = status.WS_1001_GOING_AWAY
MAX_UPLOAD_ID_LENGTH = 128


class ProtocolViolation(Exception):
    def __init__(self, code: int, reason: str):
        super().__init__(reason)
        self.code = code
        self.reason = reason


def parse_track_message(message: dict, max_bytes: int) -> str:
    """Extract the upload id from a ``{"type": "track", "uploadId": ...}`` frame."""
    raw = message.get("text")
    if raw is None:
        data = message.get("bytes") or b""
        if len(data) > max_bytes:
            raise ProtocolViolation(status.WS_1009_MESSAGE_TOO_BIG, "Message too large")
        try:
            raw = data.decode("utf-8")
        except UnicodeDecodeError:
            raise ProtocolViolation(status.WS_1002_PROTOCOL_ERROR, "Message is not UTF-8")
    elif len(raw.encode("utf-8")) > max_bytes:
        raise ProtocolViolation(status.WS_1009_MESSAGE_TOO_BIG, "Message too large")

    try:
        payload = json.loads(raw)
    except ValueError:
        raise ProtocolViolation(status.WS_1002_PROTOCOL_ERROR, "Message is not valid JSON")

    if not isinstance(payload, dict) or payload.get("type") != "track":
        raise ProtocolViolation(status.WS_1002_PROTOCOL_ERROR, "Unknown message type")

    upload_id = payload.get("uploadId")
    if not isinstance(upload_id, str) or not upload_id or len(upload_id) > MAX_UPLOAD_ID_LENGTH:
        raise ProtocolViolation(status.WS_1002_PROTOCOL_ERROR, "Invalid uploadId")
    return upload_id


@router.websocket("/ws/progress")
async def progress_socket(websocket: WebSocket):
    """Push upload progress snapshots for the upload id the client tracks."""
    tracker = websocket.app.state.progress_tracker
    progress_settings = websocket.app.state.settings.progress

    await websocket.accept()

    upload_id: Optional[str] = None
    updates: Optional[asyncio.Queue] = None
    receiver = asyncio.ensure_future(websocket.receive())
    pusher: Optional[asyncio.Future] = None

    try:
        while True:
            waiting = {receiver} if pusher is None else {receiver, pusher}
            done, _ = await asyncio.wait(
                waiting,
                timeout=progress_settings.idle_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if not done:
                logger.info(f"Closing idle progress subscriber ({upload_id})")
                await websocket.close(code=IDLE_CLOSE_CODE, reason="Idle timeout")
                return

            if pusher is not None and pusher in done:
                await websocket.send_json(pusher.result())
                pusher = asyncio.ensure_future(updates.get())

            if receiver in done:
                message = receiver.result()
                if message["type"] == "websocket.disconnect":
                    return

                try:
                    new_upload_id = parse_track_message(message, progress_settings.max_message_bytes)
                except ProtocolViolation as e:
                    logger.info(f"Closing progress subscriber: {e.reason}")
                    await websocket.close(code=e.code, reason=e.reason)
                    return

                if new_upload_id != upload_id:
                    if pusher is not None:
                        pusher.cancel()
                        await tracker.unsubscribe(upload_id, updates)
                    upload_id = new_upload_id
                    updates = await tracker.subscribe(upload_id)
                    pusher = asyncio.ensure_future(updates.get())
                    logger.debug(f"Progress subscriber tracking {upload_id}")

                receiver = asyncio.ensure_future(websocket.receive())
    except WebSocketDisconnect:
        logger.debug(f"Progress subscriber disconnected ({upload_id})")
    finally:
        receiver.cancel()
        if pusher is not None:
            pusher.cancel()
        if updates is not None:
            await tracker.unsubscribe(upload_id, updates)
