import os
import shutil
import stat
from pathlib import Path
from typing import Optional

import aiofiles.os

from app.errors import (
    EmptyFilenameError,
    InvalidFilenameError,
    PathTraversalError,
    StoredFileNotFoundError,
)
from logger_config import setup_logger

logger = setup_logger()


def validate_filename(filename: Optional[str]) -> str:
    """Check a client-supplied stored-file name without touching the filesystem."""
    if not filename:
        raise EmptyFilenameError()

    if (
        ".." in filename
        or "\\" in filename
        or "\x00" in filename
        or os.path.basename(filename) != filename
        or filename.startswith(".")
    ):
        raise InvalidFilenameError()

    return filename


class StorageManager:
    """Owns the upload root and the staging directory uploads are written into.

    Files are staged first and renamed into the upload root only once
    complete, so a partially written file is never visible under its final
    name.
    """

    def __init__(self, upload_dir: Path, staging_dir: Path):
        self.upload_dir = Path(upload_dir)
        self.staging_dir = Path(staging_dir)

    async def initialize(self):
        """Create the storage directories and drop leftovers from interrupted uploads."""
        logger.info("Initializing storage manager...")

        self.upload_dir.mkdir(exist_ok=True, parents=True)
        self.staging_dir.mkdir(exist_ok=True, parents=True)
        logger.debug(f"Storage directories created/verified: {self.upload_dir}, {self.staging_dir}")

        files_removed = 0
        for file in self.staging_dir.glob("*"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        logger.info(f"Cleaned staging directory, removed {files_removed} files")

        _, _, free = shutil.disk_usage(str(self.upload_dir))
        logger.info(f"Free disk space: {free / (1024 * 1024 * 1024):.2f} GB")

    def resolve(self, filename: Optional[str]) -> Path:
        """Map a stored-file name to its path inside the upload root.

        Raises:
            EmptyFilenameError: no name given
            InvalidFilenameError: the name has path components or is hidden
            PathTraversalError: the resolved path escapes the upload root
        """
        filename = validate_filename(filename)

        root = self.upload_dir.resolve()
        resolved = (root / filename).resolve()
        if resolved == root or not resolved.is_relative_to(root):
            logger.warning(f"Path traversal attempt detected: {filename}")
            raise PathTraversalError()

        return resolved

    def staging_path(self, filename: str) -> Path:
        return self.staging_dir / filename

    async def get_file_size(self, path: Path) -> Optional[int]:
        """Size of a regular file, or None when it does not exist."""
        try:
            st = await aiofiles.os.stat(path)
        except FileNotFoundError:
            return None
        if not stat.S_ISREG(st.st_mode):
            return None
        return st.st_size

    async def commit(self, staged_path: Path, filename: str) -> Path:
        """Move a completely written staged file into the upload root."""
        destination = self.upload_dir / filename
        await aiofiles.os.rename(str(staged_path), str(destination))
        logger.debug(f"Committed {staged_path} -> {destination}")
        return destination

    async def delete(self, filename: Optional[str]) -> str:
        """Delete a stored file by name and return the name."""
        path = self.resolve(filename)

        if await self.get_file_size(path) is None:
            logger.info(f"File {filename} doesn't exist, aborting...")
            raise StoredFileNotFoundError()

        try:
            await aiofiles.os.unlink(path)
        except FileNotFoundError:
            # Removed concurrently between the check and the unlink
            raise StoredFileNotFoundError()

        return path.name

    async def cleanup(self, path: Optional[Path]) -> bool:
        """Best-effort removal of a partial file. Failures are logged, never raised."""
        if path is None:
            return False
        try:
            await aiofiles.os.unlink(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Failed to cleanup file {path}: {e}")
            return False

        logger.info(f"Cleaned up partial file: {path}")
        return True
