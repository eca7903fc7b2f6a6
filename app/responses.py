from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from app.errors import FileHostError

ENVELOPE_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "Cache-Control": "no-cache, no-store, must-revalidate",
}


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision, e.g. 2024-01-01T12:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class SuccessEnvelope(BaseModel):
    success: bool = True
    message: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=utc_timestamp)


class ErrorBody(BaseModel):
    message: str
    code: str
    fix: Optional[str] = None
    timestamp: str = Field(default_factory=utc_timestamp)


class ErrorEnvelope(BaseModel):
    success: bool = False
    error: ErrorBody


def success_response(data: Optional[Dict[str, Any]] = None, message: str = "Success") -> JSONResponse:
    envelope = SuccessEnvelope(message=message, data=data or {})
    return JSONResponse(status_code=200, content=envelope.model_dump(), headers=ENVELOPE_HEADERS)


def error_response(error: FileHostError) -> JSONResponse:
    envelope = ErrorEnvelope(error=ErrorBody(message=error.message, code=error.code, fix=error.fix))
    headers = dict(ENVELOPE_HEADERS)
    headers.update(error.headers)
    return JSONResponse(
        status_code=error.status_code,
        content=envelope.model_dump(exclude_none=True),
        headers=headers,
    )


def uploaded_response(file_url: str, delete_url: str, **metadata) -> JSONResponse:
    data = {"file": {"url": file_url, "delete_url": delete_url, **metadata}}
    return success_response(data, "File uploaded successfully")


def deleted_response(filename: str) -> JSONResponse:
    return success_response({"filename": filename}, f"File '{filename}' deleted successfully")
