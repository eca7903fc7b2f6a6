"""Upload ingestion: buffered multipart uploads and streamed large uploads.

Both paths write into the staging directory and hand back a ``StagedUpload``
of the same shape. The caller decides whether to ``commit`` it into the
upload root (after authentication has succeeded) or ``discard`` it.
"""
import dataclasses
import enum
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterable, Collection, Dict, List, Mapping, Optional, Tuple

import aiofiles
from python_multipart.exceptions import MultipartParseError
from python_multipart.multipart import MultipartParser, parse_options_header
from starlette.datastructures import UploadFile
from starlette.requests import ClientDisconnect

import config
from app.errors import (
    ClientAbortedError,
    FileTooLargeError,
    InvalidExtensionError,
    MalformedUploadError,
    NoFileError,
    ReadFailedError,
    WriteFailedError,
)
from app.services.file_namer import FileNamer, file_extension
from app.services.progress import COMPLETED, FAILED, UPLOADING, ProgressTracker
from app.services.storage_manager import StorageManager
from logger_config import setup_logger, structured_log

logger = setup_logger()

GENERIC_CONTENT_TYPE = "application/octet-stream"


class IngestionPath(enum.Enum):
    REGULAR = "regular"
    STREAMING = "streaming"


def parse_content_length(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        return None
    return length if length >= 0 else None


def select_ingestion_path(content_length: Optional[int], large_file_flag: bool,
                          file_size_limit: int) -> IngestionPath:
    """Streaming when the client asks for it, declares more than the regular
    limit, or declares no length at all.
    """
    if large_file_flag or content_length is None:
        return IngestionPath.STREAMING
    if content_length > file_size_limit:
        return IngestionPath.STREAMING
    return IngestionPath.REGULAR


def streaming_size_limit(content_length: Optional[int], large_file_flag: bool,
                         file_size_limit: int, large_file_size_limit: int) -> int:
    """Ceiling for a streamed file. Bodies of unknown length keep the regular limit."""
    if large_file_flag or content_length is not None:
        return large_file_size_limit
    return file_size_limit


@dataclass
class StagedUpload:
    filename: str
    path: Path
    size: int
    content_type: str
    original_name: str
    fields: Dict[str, str] = field(default_factory=dict)


def _mb(num_bytes: int) -> float:
    return num_bytes / config.MIB


class UploadIngester:
    def __init__(self, storage: StorageManager, namer: FileNamer,
                 allowed_extensions: Optional[Collection[str]],
                 file_size_limit: int, large_file_size_limit: int,
                 progress: Optional[ProgressTracker] = None,
                 progress_log_interval: int = config.PROGRESS_LOG_INTERVAL):
        self.storage = storage
        self.namer = namer
        self.allowed_extensions = (
            None if allowed_extensions is None else {ext.lower() for ext in allowed_extensions}
        )
        self.file_size_limit = file_size_limit
        self.large_file_size_limit = large_file_size_limit
        self.progress = progress
        self.progress_log_interval = progress_log_interval

    def is_extension_allowed(self, filename: str) -> bool:
        if self.allowed_extensions is None:
            return True
        return file_extension(filename) in self.allowed_extensions

    async def report_progress(self, upload_id: Optional[str], bytes_received: int,
                              total_bytes: Optional[int] = None, status: str = UPLOADING):
        if self.progress is None or not upload_id:
            return
        await self.progress.update(upload_id, bytes_received, total_bytes, status)

    async def ingest_form(self, upload, upload_id: Optional[str] = None,
                          fields: Optional[Mapping[str, str]] = None) -> StagedUpload:
        """Store the file part of an already buffered multipart form."""
        if not isinstance(upload, UploadFile) or not upload.filename:
            raise NoFileError()

        if not self.is_extension_allowed(upload.filename):
            logger.info(f"File {upload.filename} has an invalid extension, aborting...")
            raise InvalidExtensionError()

        if upload.size is not None and upload.size > self.file_size_limit:
            logger.info(f"File {upload.filename} exceeds size limit, aborting...")
            raise FileTooLargeError()

        filename = self.namer.generate(upload.filename)
        path = self.storage.staging_path(filename)
        size = 0
        completed = False
        try:
            try:
                async with aiofiles.open(path, 'wb') as f:
                    while chunk := await self._read_part(upload):
                        size += len(chunk)
                        if size > self.file_size_limit:
                            logger.info(f"File {upload.filename} exceeds size limit, aborting...")
                            raise FileTooLargeError()
                        await f.write(chunk)
            except OSError as e:
                logger.error(f"Error writing file {path}: {e}")
                raise WriteFailedError() from e
            completed = True
        finally:
            if not completed:
                await self.storage.cleanup(path)
                await self.report_progress(upload_id, size, status=FAILED)

        await self.report_progress(upload_id, size, size, COMPLETED)
        return StagedUpload(
            filename=filename,
            path=path,
            size=size,
            content_type=upload.content_type or GENERIC_CONTENT_TYPE,
            original_name=upload.filename,
            fields=dict(fields or {}),
        )

    async def ingest_stream(self, chunks: AsyncIterable[bytes], content_type: Optional[str],
                            upload_id: Optional[str] = None,
                            total_bytes: Optional[int] = None,
                            size_limit: Optional[int] = None) -> StagedUpload:
        """Parse a multipart body chunk by chunk, writing the file part as it arrives.

        Bytes are written in receipt order; the next chunk is only pulled
        once the previous write has completed. ``size_limit`` caps the file
        part and defaults to the large file limit.
        """
        boundary = _parse_boundary(content_type)
        events: List[Tuple[str, bytes]] = []
        parser = _build_parser(boundary, events)
        upload = _StreamingUpload(self, upload_id, total_bytes, size_limit or self.large_file_size_limit)

        logger.info(f"Streaming upload of {total_bytes} bytes, limit {_mb(upload.size_limit):.2f} MB")

        completed = False
        try:
            iterator = chunks.__aiter__()
            while True:
                try:
                    chunk = await iterator.__anext__()
                except StopAsyncIteration:
                    break
                except ClientDisconnect as e:
                    logger.warning(f"Client disconnected during upload after {upload.bytes_received} bytes")
                    raise ClientAbortedError() from e
                except OSError as e:
                    logger.error(f"Error reading upload stream: {e}")
                    raise ReadFailedError() from e

                if not chunk:
                    continue

                try:
                    parser.write(chunk)
                except MultipartParseError as e:
                    logger.warning(f"Malformed multipart body: {e}")
                    raise MalformedUploadError() from e

                for event, data in events:
                    await upload.on_event(event, data)
                events.clear()

            if not upload.finished:
                logger.warning("Upload stream ended before the closing boundary")
                raise MalformedUploadError("Upload ended before the closing boundary")
            if upload.filename is None:
                raise NoFileError()
            completed = True
        finally:
            if not completed:
                await upload.abort()

        return await upload.complete()

    async def commit(self, staged: StagedUpload) -> StagedUpload:
        """Move a staged upload into the upload root."""
        try:
            path = await self.storage.commit(staged.path, staged.filename)
        except OSError as e:
            logger.error(f"Failed to commit {staged.filename}: {e}")
            await self.storage.cleanup(staged.path)
            raise WriteFailedError() from e
        return dataclasses.replace(staged, path=path)

    async def discard(self, staged: StagedUpload) -> None:
        await self.storage.cleanup(staged.path)

    @staticmethod
    async def _read_part(upload: UploadFile) -> bytes:
        try:
            return await upload.read(config.CHUNK_SIZE)
        except OSError as e:
            logger.error(f"Error reading buffered upload: {e}")
            raise ReadFailedError() from e


# Multipart parser events
PART_BEGIN = "part_begin"
HEADER_FIELD = "header_field"
HEADER_VALUE = "header_value"
HEADER_END = "header_end"
HEADERS_FINISHED = "headers_finished"
PART_DATA = "part_data"
PART_END = "part_end"
END = "end"


def _parse_boundary(content_type: Optional[str]) -> bytes:
    if not content_type:
        raise MalformedUploadError("Missing Content-Type header")
    media_type, params = parse_options_header(content_type)
    if media_type != b"multipart/form-data" or not params.get(b"boundary"):
        raise MalformedUploadError("Expected multipart/form-data with a boundary")
    return params[b"boundary"]


def _build_parser(boundary: bytes, events: List[Tuple[str, bytes]]) -> MultipartParser:
    """Push parser whose callbacks only record events; they are handled asynchronously afterwards."""

    def marker(event):
        return lambda: events.append((event, b""))

    def collector(event):
        return lambda data, start, end: events.append((event, data[start:end]))

    callbacks = {
        "on_part_begin": marker(PART_BEGIN),
        "on_header_field": collector(HEADER_FIELD),
        "on_header_value": collector(HEADER_VALUE),
        "on_header_end": marker(HEADER_END),
        "on_headers_finished": marker(HEADERS_FINISHED),
        "on_part_data": collector(PART_DATA),
        "on_part_end": marker(PART_END),
        "on_end": marker(END),
    }
    return MultipartParser(boundary, callbacks)


class _StreamingUpload:
    """State of one streamed multipart body."""

    FIELD = "field"
    FILE = "file"
    SKIP = "skip"

    def __init__(self, ingester: UploadIngester, upload_id: Optional[str],
                 total_bytes: Optional[int], size_limit: int):
        self.ingester = ingester
        self.size_limit = size_limit
        self.upload_id = upload_id
        self.total_bytes = total_bytes
        self.fields: Dict[str, str] = {}
        self.field_count = 0
        self.filename: Optional[str] = None
        self.original_name: Optional[str] = None
        self.path: Optional[Path] = None
        self._file = None
        self.file_seen = False
        self.bytes_received = 0
        self.last_progress_log = 0
        self.started = time.monotonic()
        self.finished = False

        self._headers: Dict[bytes, bytes] = {}
        self._header_field = b""
        self._header_value = b""
        self._part_kind: Optional[str] = None
        self._part_name = ""
        self._field_value = bytearray()
        self._field_truncated = False

    async def on_event(self, event: str, data: bytes):
        if event == PART_BEGIN:
            self._headers = {}
            self._header_field = b""
            self._header_value = b""
            self._part_kind = None
        elif event == HEADER_FIELD:
            self._header_field += data
        elif event == HEADER_VALUE:
            self._header_value += data
        elif event == HEADER_END:
            self._headers[self._header_field.lower()] = self._header_value
            self._header_field = b""
            self._header_value = b""
        elif event == HEADERS_FINISHED:
            await self._start_part()
        elif event == PART_DATA:
            await self._part_data(data)
        elif event == PART_END:
            await self._end_part()
        elif event == END:
            self.finished = True

    async def _start_part(self):
        disposition = self._headers.get(b"content-disposition")
        if disposition is None:
            raise MalformedUploadError("Multipart part without Content-Disposition")
        _, options = parse_options_header(disposition)
        self._part_name = options.get(b"name", b"").decode("utf-8", errors="replace")
        raw_filename = options.get(b"filename")

        if raw_filename is None:
            self._start_field()
        else:
            await self._start_file(raw_filename.decode("utf-8", errors="replace"))

    def _start_field(self):
        if self.field_count >= config.MAX_FIELDS:
            logger.warning(f"Field limit reached, ignoring form field: {self._part_name}")
            self._part_kind = self.SKIP
            return
        self.field_count += 1
        self._part_kind = self.FIELD
        self._field_value = bytearray()
        self._field_truncated = False

    async def _start_file(self, original_name: str):
        if self.file_seen:
            logger.warning(f"Only one file per upload, ignoring {original_name}")
            self._part_kind = self.SKIP
            return
        self.file_seen = True

        if not original_name:
            raise NoFileError("No filename provided")

        if not self.ingester.is_extension_allowed(original_name):
            logger.info(f"File {original_name} has an invalid extension, aborting...")
            raise InvalidExtensionError()

        if not self.upload_id:
            self.upload_id = self.fields.get("uploadId") or None

        self.original_name = original_name
        self.filename = self.ingester.namer.generate(original_name)
        self.path = self.ingester.storage.staging_path(self.filename)
        logger.info(f"Streaming file upload started: {original_name} -> {self.filename}")

        try:
            self._file = await aiofiles.open(self.path, 'wb')
        except OSError as e:
            logger.error(f"Failed to open {self.path} for writing: {e}")
            raise WriteFailedError() from e
        self._part_kind = self.FILE
        await self.ingester.report_progress(self.upload_id, 0, self.total_bytes)

    async def _part_data(self, data: bytes):
        if self._part_kind == self.FILE:
            await self._write(data)
        elif self._part_kind == self.FIELD and not self._field_truncated:
            self._field_value += data
            if len(self._field_value) > config.MAX_FIELD_SIZE:
                logger.warning(f"Form field truncated: {self._part_name}")
                self._field_truncated = True

    async def _write(self, data: bytes):
        if self.bytes_received + len(data) > self.size_limit:
            logger.warning(f"Upload of {self.original_name} exceeds the size limit, aborting...")
            raise FileTooLargeError()

        try:
            await self._file.write(data)
        except OSError as e:
            logger.error(f"Error writing file: {e}")
            raise WriteFailedError() from e
        self.bytes_received += len(data)

        if self.bytes_received - self.last_progress_log >= self.ingester.progress_log_interval:
            elapsed = max(time.monotonic() - self.started, 1e-6)
            logger.info(
                f"Upload progress: {int(_mb(self.bytes_received))}MB received "
                f"({_mb(self.bytes_received) / elapsed:.2f} MB/s)"
            )
            self.last_progress_log = self.bytes_received

        await self.ingester.report_progress(self.upload_id, self.bytes_received, self.total_bytes)

    async def _end_part(self):
        if self._part_kind == self.FIELD and not self._field_truncated:
            self.fields[self._part_name] = self._field_value.decode("utf-8", errors="replace")
            logger.debug(f"Received form field: {self._part_name}")
        elif self._part_kind == self.FILE:
            await self._close_file()
            elapsed = max(time.monotonic() - self.started, 1e-6)
            logger.info(
                f"File stream completed: {int(_mb(self.bytes_received))}MB in {elapsed:.2f}s "
                f"(avg: {_mb(self.bytes_received) / elapsed:.2f} MB/s)"
            )
        self._part_kind = None

    async def _close_file(self):
        handle, self._file = self._file, None
        if handle is None:
            return
        try:
            await handle.close()
        except OSError as e:
            logger.error(f"Error closing file {self.path}: {e}")
            raise WriteFailedError() from e

    async def abort(self):
        """Stop writing and remove the partial file."""
        handle, self._file = self._file, None
        if handle is not None:
            try:
                await handle.close()
            except OSError as e:
                logger.error(f"Error closing file {self.path}: {e}")
        await self.ingester.storage.cleanup(self.path)
        await self.ingester.report_progress(self.upload_id, self.bytes_received, status=FAILED)

    async def complete(self) -> StagedUpload:
        elapsed = time.monotonic() - self.started
        logger.info(structured_log(
            "Streaming upload completed",
            filename=self.filename,
            size_mb=int(_mb(self.bytes_received)),
            seconds=round(elapsed, 2),
        ))
        await self.ingester.report_progress(
            self.upload_id, self.bytes_received, self.bytes_received, COMPLETED
        )
        return StagedUpload(
            filename=self.filename,
            path=self.path,
            size=self.bytes_received,
            content_type=GENERIC_CONTENT_TYPE,
            original_name=self.original_name,
            fields=dict(self.fields),
        )
