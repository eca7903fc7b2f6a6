import os
import re
import secrets
import string
from datetime import datetime
from typing import Callable, Optional

import config

ALPHABET = string.ascii_letters + string.digits
TIMESTAMP_FORMAT = "%Y_%b_%d-%H_%M_%S"
_EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]+$")


def file_extension(filename: str) -> str:
    """Lower-cased extension including the dot, or "" when there is none.

    Extensions with characters outside [a-z0-9] are treated as absent so a
    generated name can never carry a separator.
    """
    ext = os.path.splitext(filename or "")[1].lower()
    if not _EXTENSION_PATTERN.match(ext):
        return ""
    return ext


class FileNamer:
    """Builds stored file names: ``{timestamp}_{random}{extension}``.

    Names are not checked against existing files; second resolution plus the
    random suffix makes a collision negligible.
    """

    def __init__(self, random_length: int = config.DEFAULT_FILE_NAME_LENGTH,
                 clock: Callable[[], datetime] = datetime.now):
        if random_length <= 0:
            raise ValueError("random_length must be positive")
        self.random_length = random_length
        self._clock = clock

    def random_suffix(self) -> str:
        return ''.join(secrets.choice(ALPHABET) for _ in range(self.random_length))

    def generate(self, original_filename: str, now: Optional[datetime] = None) -> str:
        timestamp = (now or self._clock()).strftime(TIMESTAMP_FORMAT)
        return f"{timestamp}_{self.random_suffix()}{file_extension(original_filename)}"
