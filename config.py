"""Configuration settings for the file host."""
import json
import os
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# Size limits
KIB = 1024
MIB = 1024 * KIB
GIB = 1024 * MIB
DEFAULT_FILE_SIZE_LIMIT = 100 * MIB
DEFAULT_LARGE_FILE_SIZE_LIMIT = 5 * GIB

# Multipart constraints
MAX_FIELDS = 10
MAX_FILES = 1
MAX_FIELD_SIZE = 1 * MIB

# Streaming
CHUNK_SIZE = 64 * KIB
PROGRESS_LOG_INTERVAL = 100 * MIB  # log every 100MB received

# Keys
MIN_KEY_LENGTH = 10
SHORT_KEY_LENGTH = 3

# Generated file names
DEFAULT_FILE_NAME_LENGTH = 8

# Request lifecycle
REQUEST_TIMEOUT_SECONDS = 30 * 60

# Progress channel
PROGRESS_RECORD_TTL_SECONDS = 60 * 60
PROGRESS_SWEEP_INTERVAL_SECONDS = 10 * 60
PROGRESS_IDLE_TIMEOUT_SECONDS = 5 * 60
PROGRESS_MAX_MESSAGE_BYTES = 1 * KIB

# Rate limiting
RATE_LIMIT_WINDOW_MS = 15 * 60 * 1000
UPLOAD_RATE_LIMIT = 50
DELETE_RATE_LIMIT = 100
RATE_LIMIT_PURGE_INTERVAL_SECONDS = 5 * 60

DEFAULT_EXTENSIONS = [
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".avif",
    ".mp4", ".webm", ".m4v", ".mkv",
]

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.json")


class _CamelModel(BaseModel):
    # Accept the camelCase keys of config.json as well as snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExtensionCheck(_CamelModel):
    enabled: bool = True
    extensions_allowed: List[str] = Field(default_factory=lambda: list(DEFAULT_EXTENSIONS))

    @field_validator('extensions_allowed')
    @classmethod
    def normalize_extensions(cls, v):
        normalized = []
        for ext in v:
            ext = ext.strip().lower()
            if not ext.startswith('.'):
                ext = '.' + ext
            normalized.append(ext)
        return normalized


class SslSettings(_CamelModel):
    use_ssl: bool = Field(False, alias="useSSL")
    private_key_path: Optional[Path] = None
    certificate_path: Optional[Path] = None

    @model_validator(mode='after')
    def require_material(self):
        if self.use_ssl and not (self.private_key_path and self.certificate_path):
            raise ValueError('useSSL requires privateKeyPath and certificatePath')
        return self


class RateLimitSettings(_CamelModel):
    max_requests: int = Field(gt=0)
    window_ms: int = Field(RATE_LIMIT_WINDOW_MS, gt=0)


class ProgressSettings(_CamelModel):
    record_ttl_seconds: float = PROGRESS_RECORD_TTL_SECONDS
    sweep_interval_seconds: float = PROGRESS_SWEEP_INTERVAL_SECONDS
    idle_timeout_seconds: float = PROGRESS_IDLE_TIMEOUT_SECONDS
    max_message_bytes: int = PROGRESS_MAX_MESSAGE_BYTES


class Settings(_CamelModel):
    name: str = "ShareX"
    host: str = "0.0.0.0"
    port: int = 3000
    server_url: str
    static_file_server_url: Optional[str] = None
    upload_directory: Path = Path("uploads")
    staging_directory: Optional[Path] = None
    file_name_length: int = Field(DEFAULT_FILE_NAME_LENGTH, gt=0)
    file_size_limit: int = Field(DEFAULT_FILE_SIZE_LIMIT, gt=0)
    large_file_size_limit: int = Field(DEFAULT_LARGE_FILE_SIZE_LIMIT, gt=0)
    file_extension_check: ExtensionCheck = Field(default_factory=ExtensionCheck)
    keys: Dict[str, str]
    ssl: SslSettings = Field(default_factory=SslSettings)
    upload_rate_limit: RateLimitSettings = Field(
        default_factory=lambda: RateLimitSettings(max_requests=UPLOAD_RATE_LIMIT)
    )
    delete_rate_limit: RateLimitSettings = Field(
        default_factory=lambda: RateLimitSettings(max_requests=DELETE_RATE_LIMIT)
    )
    rate_limit_purge_interval_seconds: float = RATE_LIMIT_PURGE_INTERVAL_SECONDS
    request_timeout_seconds: float = REQUEST_TIMEOUT_SECONDS
    progress: ProgressSettings = Field(default_factory=ProgressSettings)

    @field_validator('server_url', 'static_file_server_url')
    @classmethod
    def strip_trailing_slash(cls, v):
        if v is None:
            return v
        return v.rstrip('/')

    @field_validator('keys')
    @classmethod
    def validate_keys(cls, v):
        if not v:
            raise ValueError('At least one API key must be configured')
        seen = {}
        for username, key in v.items():
            if len(key) < MIN_KEY_LENGTH:
                raise ValueError(f'Key for {username} is shorter than {MIN_KEY_LENGTH} characters')
            if key in seen:
                raise ValueError(f'Key for {username} is already assigned to {seen[key]}')
            seen[key] = username
        return v

    @property
    def file_base_url(self) -> str:
        return (self.static_file_server_url or f"{self.server_url}/f") + "/"

    @property
    def staging_path(self) -> Path:
        return self.staging_directory or self.upload_directory / ".incoming"

    @property
    def allowed_extensions(self) -> Optional[List[str]]:
        """Extension allow-list, or None when the check is disabled."""
        if not self.file_extension_check.enabled:
            return None
        return self.file_extension_check.extensions_allowed


def load_settings(path=None) -> Settings:
    """Load settings from the JSON config file. Missing or invalid config is fatal."""
    config_path = Path(path or CONFIG_PATH)
    with open(config_path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    return Settings.model_validate(data)
