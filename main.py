from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request

import config
from app.background import start_background_job, stop_background_jobs
from app.errors import FileHostError, InternalError
from app.middleware import RateLimitHeadersMiddleware, RequestTimeoutMiddleware
from app.responses import error_response
from app.routes import file_routes, progress_routes, upload_routes
from app.services.file_namer import FileNamer
from app.services.file_server import RangeFileServer
from app.services.key_store import KeyStore
from app.services.progress import ProgressTracker
from app.services.rate_limiter import RateLimiter
from app.services.storage_manager import StorageManager
from app.services.upload_ingester import UploadIngester
from logger_config import setup_logger

VERSION = "2.0.0"

# Logger setup
logger = setup_logger()


async def handle_file_host_error(request: Request, exc: FileHostError):
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.url.path}: {exc.message}", exc_info=exc.__cause__)
    return error_response(exc)


async def handle_unexpected_error(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
    return error_response(InternalError())


def create_app(settings: config.Settings) -> FastAPI:
    """Build the application. Every component gets its settings explicitly."""
    storage_manager = StorageManager(settings.upload_directory, settings.staging_path)
    progress_tracker = ProgressTracker(settings.progress.record_ttl_seconds)
    upload_limiter = RateLimiter(
        "upload", settings.upload_rate_limit.max_requests, settings.upload_rate_limit.window_ms
    )
    delete_limiter = RateLimiter(
        "delete", settings.delete_rate_limit.max_requests, settings.delete_rate_limit.window_ms
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await storage_manager.initialize()
        jobs = [
            start_background_job(
                "progress-sweep", settings.progress.sweep_interval_seconds, progress_tracker.sweep
            ),
            start_background_job(
                "upload-rate-limit-purge", settings.rate_limit_purge_interval_seconds,
                upload_limiter.purge_stale
            ),
            start_background_job(
                "delete-rate-limit-purge", settings.rate_limit_purge_interval_seconds,
                delete_limiter.purge_stale
            ),
        ]
        yield
        await stop_background_jobs(jobs)

    app = FastAPI(title=f"{settings.name} File Host", version=VERSION, lifespan=lifespan)

    app.state.settings = settings
    app.state.key_store = KeyStore(settings.keys)
    app.state.storage_manager = storage_manager
    app.state.progress_tracker = progress_tracker
    app.state.upload_limiter = upload_limiter
    app.state.delete_limiter = delete_limiter
    app.state.file_server = RangeFileServer(storage_manager)
    app.state.ingester = UploadIngester(
        storage_manager,
        FileNamer(settings.file_name_length),
        settings.allowed_extensions,
        settings.file_size_limit,
        settings.large_file_size_limit,
        progress=progress_tracker,
    )

    app.include_router(upload_routes.router)
    app.include_router(file_routes.router)
    app.include_router(progress_routes.router)

    app.add_exception_handler(FileHostError, handle_file_host_error)
    app.add_exception_handler(Exception, handle_unexpected_error)

    app.add_middleware(RateLimitHeadersMiddleware)
    app.add_middleware(RequestTimeoutMiddleware, timeout_seconds=settings.request_timeout_seconds)

    return app


if __name__ == "__main__":
    settings = config.load_settings()

    logger.info(f"Starting file host {VERSION}...")
    logger.info(f"Upload directory: {settings.upload_directory}")
    logger.info(f"Staging directory: {settings.staging_path}")
    logger.info(f"Regular upload limit: {settings.file_size_limit / config.MIB:.2f} MB")
    logger.info(f"Large upload limit: {settings.large_file_size_limit / config.GIB:.2f} GB")

    ssl_options = {}
    if settings.ssl.use_ssl:
        ssl_options = {
            "ssl_keyfile": str(settings.ssl.private_key_path),
            "ssl_certfile": str(settings.ssl.certificate_path),
        }

    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        ws_max_size=settings.progress.max_message_bytes,
        **ssl_options,
    )
