import json
import logging
import os
import platform
import socket
import sys
from datetime import datetime, timezone
from pathlib import Path

from logzio.handler import LogzioHandler

LOGGER_NAME = "file_host"
LOGS_DIR = Path(os.getenv("LOG_DIR", "logs"))
LOGZIO_TOKEN = os.getenv("LOGZIO_TOKEN")
LOGZIO_URL = os.getenv("LOGZIO_URL", "https://listener-eu.logz.io:8071")
APP_ENV = os.getenv("APP_ENV", "development")

# Authentication attempts get their own level, between INFO and WARNING
AUTH = 25
logging.addLevelName(AUTH, "AUTH")


class StructuredMessage:
    def __init__(self, message, **kwargs):
        self.message = message
        self.kwargs = kwargs

    def __str__(self):
        if not self.kwargs:
            return self.message
        fields = " ".join(f"{key}={value}" for key, value in self.kwargs.items())
        return f"{self.message} ({fields})"


class StructuredLogzioFormatter(logging.Formatter):
    def __init__(self):
        super().__init__()
        self.hostname = socket.gethostname()

    def format(self, record):
        if isinstance(record.msg, StructuredMessage):
            message = record.msg.message
            extra = record.msg.kwargs
        else:
            message = record.getMessage()
            extra = {}

        log_data = {
            'message': f"[file-host] {message}",
            'level': record.levelname,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'logger': record.name,
            'environment': APP_ENV,
            'application': 'file-host',
            'hostname': self.hostname,
            'platform': platform.platform(),
            'python_version': platform.python_version(),
            'function': record.funcName,
            'line_number': record.lineno,
            'filename': record.filename,
        }
        log_data.update(extra)

        return json.dumps(log_data, default=str)


def setup_logger():
    logger = logging.getLogger(LOGGER_NAME)
    # Every module calls this at import time; configure the handlers once
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    LOGS_DIR.mkdir(exist_ok=True, parents=True)

    file_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # File handler (for detailed logging)
    file_handler = logging.FileHandler(LOGS_DIR / "file_host.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    # Console handler (for basic logging)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    if LOGZIO_TOKEN:
        logzio_handler = LogzioHandler(
            token=LOGZIO_TOKEN,
            url=LOGZIO_URL,
            logs_drain_timeout=5,
            network_timeout=10.0
        )
        logzio_handler.setLevel(logging.INFO)
        logzio_handler.setFormatter(StructuredLogzioFormatter())
        logger.addHandler(logzio_handler)

    return logger


def structured_log(message, **kwargs):
    return StructuredMessage(message, **kwargs)
