"""Error taxonomy for the file host.

Every error a client can see is a ``FileHostError`` carrying its HTTP status,
a machine-readable code, a message and an optional suggested fix. The
exception handler registered in ``main.create_app`` turns them into the error
envelope.
"""
from typing import Dict, Optional


class FileHostError(Exception):
    status_code = 500
    code = "SERVER_ERROR"
    message = "Internal server error"
    fix: Optional[str] = "Please try again later or contact support"

    def __init__(self, message: Optional[str] = None, fix: Optional[str] = None,
                 headers: Optional[Dict[str, str]] = None):
        self.message = message or self.message
        if fix is not None:
            self.fix = fix
        self.headers = headers or {}
        super().__init__(self.message)


# Authentication

class AuthError(FileHostError):
    pass


class EmptyKeyError(AuthError):
    status_code = 400
    code = "EMPTY_KEY"
    message = "API key is required"
    fix = "Provide a valid API key in the request"


class InvalidKeyError(AuthError):
    status_code = 401
    code = "INVALID_KEY"
    message = "Invalid API key"
    fix = "Provide a valid API key"


# Validation

class ValidationError(FileHostError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Validation failed"
    fix = "Fix the validation errors and try again"


class EmptyFilenameError(ValidationError):
    code = "EMPTY_FILENAME"
    message = "Filename is required"
    fix = "Provide a valid filename"


class InvalidFilenameError(ValidationError):
    code = "INVALID_FILENAME"
    message = "Invalid filename"
    fix = "Provide a plain filename without path components"


class PathTraversalError(ValidationError):
    status_code = 403
    code = "PATH_TRAVERSAL"
    message = "Access denied"
    fix = None


class InvalidExtensionError(ValidationError):
    code = "INVALID_EXTENSION"
    message = "Invalid file extension"
    fix = "Upload a file with an allowed extension"


class NoFileError(ValidationError):
    code = "NO_FILE"
    message = "No file was uploaded"
    fix = "Select and upload a file"


class MalformedUploadError(ValidationError):
    code = "MALFORMED_UPLOAD"
    message = "Malformed multipart upload"
    fix = "Send the file as multipart/form-data"


# Resources

class ResourceError(FileHostError):
    pass


class StoredFileNotFoundError(ResourceError):
    status_code = 404
    code = "FILE_NOT_FOUND"
    message = "File not found"
    fix = "Verify the filename and try again"


class FileTooLargeError(ResourceError):
    status_code = 413
    code = "FILE_TOO_LARGE"
    message = "File exceeds size limit"
    fix = "Upload a smaller file or contact administrator"


class RateLimitError(FileHostError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many requests"
    fix = "Please wait before making more requests"


# I/O during ingestion or serving

class UploadIOError(FileHostError):
    pass


class WriteFailedError(UploadIOError):
    code = "WRITE_FAILED"
    message = "Failed to write uploaded file"


class ReadFailedError(UploadIOError):
    code = "READ_FAILED"
    message = "Failed to read file data"


class ClientAbortedError(UploadIOError):
    status_code = 400
    code = "CLIENT_ABORTED"
    message = "Client closed the connection before the upload completed"
    fix = None


class RequestTimeoutError(FileHostError):
    status_code = 408
    code = "REQUEST_TIMEOUT"
    message = "Request timed out"
    fix = "Retry the request or use a faster connection"


class InternalError(FileHostError):
    pass
