import os
import sys

import pytest
from fastapi.testclient import TestClient

# Add the parent directory to sys.path so we can import main
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import config
from main import create_app

TEST_KEY = "alice-key-0123456789"
OTHER_KEY = "bob-key-9876543210"


@pytest.fixture
def settings(tmp_path):
    """Isolated settings: storage under tmp_path, two users, 1MB regular upload limit."""
    return config.Settings(
        server_url="http://testserver",
        upload_directory=tmp_path / "uploads",
        keys={"alice": TEST_KEY, "bob": OTHER_KEY},
        file_size_limit=1 * config.MIB,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    # The context manager runs the lifespan, which creates the storage directories
    with TestClient(app) as test_client:
        yield test_client


def stored_files(settings):
    """Names of committed files plus anything left in staging."""
    committed = [p.name for p in settings.upload_directory.iterdir() if p.is_file()]
    staged = [p.name for p in settings.staging_path.iterdir()] if settings.staging_path.exists() else []
    return committed + staged
