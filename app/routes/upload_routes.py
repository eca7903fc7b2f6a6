from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Request
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import ClientDisconnect

import config
from app.auth import extract_key, is_multipart, key_from_query
from app.dependencies import authenticate_request, rate_limit, rekey_rate_limit
from app.errors import AuthError, ClientAbortedError, MalformedUploadError, NoFileError, RateLimitError
from app.responses import uploaded_response
from app.services.upload_ingester import (
    IngestionPath,
    StagedUpload,
    UploadIngester,
    parse_content_length,
    select_ingestion_path,
    streaming_size_limit,
)
from logger_config import setup_logger, structured_log

logger = setup_logger()

router = APIRouter()

UPLOAD_LIMITER = "upload_limiter"


@router.post("/upload", dependencies=[Depends(rate_limit(UPLOAD_LIMITER))])
async def upload_file(request: Request):
    """Store an uploaded file and return its public and delete URLs.

    The key is checked before the body is read unless it can only be in the
    multipart body itself; then it is checked once the body is parsed and
    nothing is committed if it fails. A key found that way moves the request
    from the client address onto the user in the upload rate limiter.
    """
    settings = request.app.state.settings
    ingester: UploadIngester = request.app.state.ingester

    username = None
    query_key = key_from_query(request)
    if query_key:
        username = authenticate_request(request, query_key)
    elif not is_multipart(request):
        username = authenticate_request(request, extract_key(request))
    else:
        logger.info("Multipart form detected, key will be validated after parsing")

    if not is_multipart(request):
        logger.info(f"No file was sent, aborting... ({request.state.short_key})")
        raise NoFileError()

    content_length = parse_content_length(request.headers.get("content-length"))
    large_file = request.query_params.get("largeFile") == "true"
    upload_id = request.query_params.get("uploadId") or request.headers.get("x-upload-id")

    path = select_ingestion_path(content_length, large_file, settings.file_size_limit)
    if path is IngestionPath.STREAMING:
        size_limit = streaming_size_limit(
            content_length, large_file, settings.file_size_limit, settings.large_file_size_limit
        )
        staged = await ingester.ingest_stream(
            request.stream(), request.headers.get("content-type"), upload_id, content_length, size_limit
        )
        if username is None:
            try:
                username = authenticate_request(request, extract_key(request, staged.fields))
                await rekey_rate_limit(request, UPLOAD_LIMITER, username)
            except (AuthError, RateLimitError):
                await ingester.discard(staged)
                raise
    else:
        staged = await _ingest_buffered(request, ingester, username, upload_id)

    stored = await ingester.commit(staged)

    file_url = settings.file_base_url + stored.filename
    delete_url = f"{settings.server_url}/delete?" + urlencode(
        {"filename": stored.filename, "key": request.state.key}
    )
    logger.info(structured_log(
        f"Uploaded file {stored.original_name} to {stored.path} ({request.state.short_key})",
        event="file_uploaded",
        username=request.state.username,
        filename=stored.filename,
        size=stored.size,
        path=path.value,
    ))
    return uploaded_response(file_url, delete_url, filename=stored.filename, size=stored.size)


async def _ingest_buffered(request: Request, ingester: UploadIngester,
                           username: Optional[str], upload_id: Optional[str]) -> StagedUpload:
    try:
        form = await request.form(max_files=config.MAX_FILES, max_fields=config.MAX_FIELDS)
    except ClientDisconnect as e:
        logger.warning("Client disconnected during upload")
        raise ClientAbortedError() from e
    except StarletteHTTPException as e:
        logger.info(f"Rejected multipart body: {e.detail}")
        raise MalformedUploadError(str(e.detail)) from e

    try:
        fields = {name: value for name, value in form.multi_items() if isinstance(value, str)}
        if username is None:
            username = authenticate_request(request, extract_key(request, fields))
            await rekey_rate_limit(request, UPLOAD_LIMITER, username)
        return await ingester.ingest_form(form.get("file"), upload_id or fields.get("uploadId"), fields)
    finally:
        await form.close()
