"""Shared test fixtures for the order board tests."""

import sys
from pathlib import Path

import pytest

# Ensure the repository root (kanban_server, pkg/) is importable
sys.path.insert(0, str(Path(__file__).parent.parent))

from kanban_server import create_app
from pkg.orderboard.config import Settings
from pkg.orderboard.files import FileArea, Upload
from pkg.orderboard.operations import BoardService
from pkg.orderboard.store import BoardStore


@pytest.fixture
def settings(tmp_path):
    return Settings(storage_dir=str(tmp_path / "storage"))


@pytest.fixture
def store(tmp_path):
    return BoardStore(tmp_path / "storage")


@pytest.fixture
def file_area(store):
    return FileArea(store.tasks_dir)


@pytest.fixture
def service(store, file_area):
    return BoardService(store, file_area)


@pytest.fixture
def make_task(service):
    """Create a task with the given file names (content = name as bytes)."""
    def _make(*names, customer="Acme", representative="Lee"):
        uploads = [Upload(filename=n, data=n.encode()) for n in names or ("a.pdf",)]
        return service.create_task(customer, representative, "2024-01-01", "", uploads).task
    return _make


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
