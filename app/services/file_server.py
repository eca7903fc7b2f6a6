import mimetypes
import re
from pathlib import Path
from typing import AsyncIterator, Dict, Optional, Tuple
from urllib.parse import quote

import aiofiles
from fastapi.responses import Response, StreamingResponse

import config
from app.errors import ReadFailedError, StoredFileNotFoundError
from app.services.file_namer import file_extension
from app.services.storage_manager import StorageManager
from logger_config import setup_logger

logger = setup_logger()

CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".m4v": "video/x-m4v",
    ".mkv": "video/x-matroska",
    ".gif": "image/gif",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".avif": "image/avif",
}
VIDEO_EXTENSIONS = frozenset({".mp4", ".webm", ".m4v", ".mkv"})

LONG_CACHE = "public, max-age=31536000"  # 1 year
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
}

_RANGE_PATTERN = re.compile(r"^bytes=(\d*)-(\d*)$")


class RangeNotSatisfiable(ValueError):
    pass


def parse_range(header: str, file_size: int) -> Tuple[int, int]:
    """Parse a single ``bytes=start-end`` range into inclusive offsets.

    A missing end means "through the end of the file"; ``bytes=-N`` asks for
    the last N bytes.

    Raises:
        RangeNotSatisfiable: the header is malformed or outside the file
    """
    match = _RANGE_PATTERN.match(header.strip())
    if match is None:
        raise RangeNotSatisfiable(header)

    start_text, end_text = match.groups()
    if not start_text and not end_text:
        raise RangeNotSatisfiable(header)

    if not start_text:
        suffix = int(end_text)
        if suffix == 0:
            raise RangeNotSatisfiable(header)
        start = max(0, file_size - suffix)
        end = file_size - 1
    else:
        start = int(start_text)
        end = int(end_text) if end_text else file_size - 1

    if start >= file_size or end >= file_size or start > end:
        raise RangeNotSatisfiable(header)
    return start, end


async def iter_file(handle, start: int, length: int, name: str) -> AsyncIterator[bytes]:
    """Yield ``length`` bytes of an open file from ``start``, then close it.

    Errors here happen after the response headers were sent, so they are
    logged and re-raised to abort the connection.
    """
    try:
        await handle.seek(start)
        remaining = length
        while remaining > 0:
            chunk = await handle.read(min(config.CHUNK_SIZE, remaining))
            if not chunk:
                raise OSError(f"{name} ended {remaining} bytes early")
            remaining -= len(chunk)
            yield chunk
    except OSError as e:
        logger.error(f"Error streaming file {name}: {e}")
        raise
    finally:
        await handle.close()


class RangeFileServer:
    """Serves stored files: images inline, videos with byte ranges, anything else as a download."""

    def __init__(self, storage: StorageManager):
        self.storage = storage

    async def serve(self, filename: Optional[str], range_header: Optional[str] = None) -> Response:
        path = self.storage.resolve(filename)

        file_size = await self.storage.get_file_size(path)
        if file_size is None:
            raise StoredFileNotFoundError()

        ext = file_extension(path.name)
        content_type = CONTENT_TYPES.get(ext)

        if ext in VIDEO_EXTENSIONS:
            return await self._serve_video(path, file_size, content_type, range_header)

        if content_type is not None:
            headers = {
                "Content-Length": str(file_size),
                "Content-Disposition": "inline",
                "Cache-Control": LONG_CACHE,
            }
            return await self._stream(path, 0, file_size, 200, content_type, headers)

        guessed_type, _ = mimetypes.guess_type(path.name)
        headers = {
            "Content-Length": str(file_size),
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(path.name)}",
        }
        return await self._stream(path, 0, file_size, 200, guessed_type or "application/octet-stream", headers)

    async def _serve_video(self, path: Path, file_size: int, content_type: str,
                           range_header: Optional[str]) -> Response:
        base_headers = {
            "Accept-Ranges": "bytes",
            "Content-Disposition": "inline",
            "Cache-Control": LONG_CACHE,
        }

        if not range_header:
            headers = {"Content-Length": str(file_size), **base_headers}
            return await self._stream(path, 0, file_size, 200, content_type, headers)

        try:
            start, end = parse_range(range_header, file_size)
        except RangeNotSatisfiable:
            logger.info(f"Unsatisfiable range '{range_header}' for {path.name} ({file_size} bytes)")
            return Response(
                status_code=416,
                headers={"Content-Range": f"bytes */{file_size}", **SECURITY_HEADERS},
            )

        length = end - start + 1
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Content-Length": str(length),
            **base_headers,
        }
        return await self._stream(path, start, length, 206, content_type, headers)

    async def _stream(self, path: Path, start: int, length: int, status_code: int,
                      content_type: str, headers: Dict[str, str]) -> StreamingResponse:
        # Opened before any header is sent so failures still get an error response
        try:
            handle = await aiofiles.open(path, 'rb')
        except FileNotFoundError:
            raise StoredFileNotFoundError()
        except OSError as e:
            logger.error(f"Error opening file {path.name}: {e}")
            raise ReadFailedError("Error reading file") from e

        return StreamingResponse(
            iter_file(handle, start, length, path.name),
            status_code=status_code,
            media_type=content_type,
            headers={**headers, **SECURITY_HEADERS},
        )
