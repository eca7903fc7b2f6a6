import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from app.dependencies import rate_limit, require_user
from app.errors import InvalidKeyError
from app.responses import deleted_response
from logger_config import setup_logger, structured_log

logger = setup_logger()

router = APIRouter()

SHAREX_CONFIG_VERSION = "17.0.0"


@router.get("/f/{filename}")
async def serve_file(filename: str, request: Request):
    """Raw file bytes; videos honor the Range header."""
    file_server = request.app.state.file_server
    return await file_server.serve(filename, request.headers.get("range"))


@router.get("/delete", dependencies=[Depends(rate_limit("delete_limiter"))])
async def delete_file(request: Request, username: str = Depends(require_user)):
    # Any valid key may delete any file; uploads are not tied to their owner
    filename = request.query_params.get("filename")
    short_key = request.state.short_key
    logger.info(f"Trying to delete {filename} ({short_key})")

    deleted = await request.app.state.storage_manager.delete(filename)

    logger.info(structured_log(
        f"Deleted file {deleted} ({short_key})",
        event="file_deleted",
        username=username,
        filename=deleted,
    ))
    return deleted_response(deleted)


@router.get("/config")
async def client_config(request: Request, username: str = Depends(require_user)):
    """ShareX custom uploader definition for the calling user."""
    settings = request.app.state.settings
    user_key = request.app.state.key_store.key_for(username)
    if not user_key:
        raise InvalidKeyError()

    sharex_config = {
        "Version": SHAREX_CONFIG_VERSION,
        "Name": f"{settings.name}-Uploader",
        "DestinationType": "ImageUploader, FileUploader",
        "RequestMethod": "POST",
        "RequestURL": f"{settings.server_url}/upload",
        "Body": "MultipartFormData",
        "Arguments": {
            "key": user_key,
        },
        "FileFormName": "file",
        "URL": "{json:data.file.url}",
        "DeletionURL": "{json:data.file.delete_url}",
    }
    body = json.dumps(sharex_config, indent=2)
    filename = f"{settings.name}-Uploader.sxcu"

    logger.info(f"Generated client config for {username}")
    return Response(
        content=body,
        media_type="application/json",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": "no-cache, no-store, must-revalidate",
        },
    )
